"""Message ledger endpoints for the inbox UI.

GET  /api/messages/{contact}            → full history, oldest first
GET  /api/messages/new/{contact}?since= → messages newer than since (ms)
GET  /api/contacts                      → contact sidebar, most recent first
POST /api/messages                      → store a locally sent message
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from leadflow.api.services import Services, get_services
from leadflow.errors import ValidationError
from leadflow.infra.time import now_millis
from leadflow.messaging.models import Direction, Message, MessageStatus
from leadflow.messaging.phone import normalize_contact_id
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import id_prefix, safe_log_context

router = APIRouter(prefix="/api", tags=["messages"])

logger = get_logger(__name__)


# ── Schemas ───────────────────────────────────────────────────────────────────


class StoreMessageRequest(BaseModel):
    phoneNumber: str | None = None
    message: dict[str, Any] | None = None


# ── Routes ────────────────────────────────────────────────────────────────────


@router.get("/messages/new/{contact}")
async def get_new_messages(
    contact: str,
    since: int = Query(0, ge=0),
    services: Services = Depends(get_services),
) -> dict:
    """Messages newer than ``since`` (epoch ms), for UI polling."""
    contact_id = normalize_contact_id(contact)
    messages = services.ledger.query(contact_id, since=since)
    return {
        "success": True,
        "phoneNumber": contact_id,
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
        "since": since,
    }


@router.get("/messages/{contact}")
async def get_messages(contact: str, services: Services = Depends(get_services)) -> dict:
    contact_id = normalize_contact_id(contact)
    messages = services.ledger.query(contact_id)
    return {
        "success": True,
        "phoneNumber": contact_id,
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
    }


@router.get("/contacts")
async def list_contacts(services: Services = Depends(get_services)) -> dict:
    contacts = services.ledger.list_contacts()
    return {
        "success": True,
        "contacts": [c.to_dict() for c in contacts],
        "count": len(contacts),
    }


@router.post("/messages")
async def store_message(
    body: StoreMessageRequest,
    services: Services = Depends(get_services),
) -> dict:
    """Store a message sent from this side (idempotent by id).

    Missing fields default to an outgoing, pending message stamped now;
    a missing id is synthesized as msg_{timestamp}_{now}.
    """
    if not body.phoneNumber or not body.message:
        raise ValidationError("Phone number and message are required")

    contact_id = normalize_contact_id(body.phoneNumber)
    now = now_millis()
    timestamp = body.message.get("timestamp") or now
    record = {
        "direction": Direction.OUTGOING.value,
        "status": MessageStatus.PENDING.value,
        **body.message,
        "timestamp": timestamp,
        "id": body.message.get("id") or f"msg_{timestamp}_{now}",
    }

    try:
        message = Message.from_dict(record, contact_id=contact_id)
    except (ValueError, TypeError) as exc:
        raise ValidationError("Invalid message", details={"error": str(exc)}) from None

    stored = await services.ledger.append(contact_id, message)
    logger.info(
        "local message stored" if stored else "local message duplicate skipped",
        extra={"extra_fields": safe_log_context(message_id_prefix=id_prefix(message.id))},
    )
    return {
        "success": True,
        "message": "Message stored successfully" if stored else "Message already exists, skipped duplicate",
        "id": message.id,
        "stored": stored,
    }
