"""Webhook event processor.

Turns one inbound WhatsApp webhook payload into ledger mutations and
live-update events. Every entry and change is processed in array order.
Per-unit failures are logged and counted, never raised.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from leadflow.errors import LeadflowError
from leadflow.infra.time import Clock, now_millis, utc_now
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import id_prefix, safe_log_context

from . import meta_adapter
from .ledger import MessageLedger
from .live import CONTACT_UPDATE, MESSAGE_STATUS_UPDATE, NEW_MESSAGE, LiveUpdateHub
from .models import Direction, Message, MessageStatus, parse_status
from .phone import normalize_contact_id

logger = get_logger(__name__)


@dataclass
class ProcessResult:
    appended: int = 0
    duplicates: int = 0
    status_updates: int = 0
    ignored: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class WebhookProcessor:
    def __init__(
        self,
        ledger: MessageLedger,
        hub: LiveUpdateHub,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._ledger = ledger
        self._hub = hub
        self._clock = clock

    async def process(self, payload: Any) -> ProcessResult:
        """Apply one webhook payload.

        Payloads that are not WhatsApp Business payloads are ignored with
        no side effect.
        """
        result = ProcessResult()

        if not meta_adapter.is_whatsapp_payload(payload):
            result.ignored += 1
            logger.info(
                "webhook payload ignored",
                extra={"extra_fields": safe_log_context(reason="unrecognized_object")},
            )
            return result

        for value in meta_adapter.iter_message_changes(payload):
            contacts = value.get("contacts")
            for raw in meta_adapter.raw_messages(value):
                await self._handle_message(raw, contacts, result)
            for raw in meta_adapter.raw_statuses(value):
                await self._handle_status(raw, result)

        logger.info(
            "webhook payload processed",
            extra={"extra_fields": safe_log_context(**result.to_dict())},
        )
        return result

    async def _handle_message(self, raw: Any, contacts: Any, result: ProcessResult) -> None:
        try:
            unit = meta_adapter.parse_inbound(raw, contacts)
            contact_id = normalize_contact_id(unit.sender)
        except (meta_adapter.InvalidPayloadError, LeadflowError) as exc:
            result.errors += 1
            logger.warning(
                "invalid inbound message skipped",
                extra={"extra_fields": safe_log_context(error=str(exc))},
            )
            return

        timestamp = (
            unit.timestamp_seconds * 1000
            if unit.timestamp_seconds is not None
            else now_millis(self._clock)
        )
        message = Message(
            id=unit.message_id,
            contact_id=contact_id,
            direction=Direction.INCOMING,
            text=unit.text,
            kind=unit.kind,
            timestamp=timestamp,
            status=MessageStatus.RECEIVED,
            profile_name=unit.profile_name,
        )

        try:
            appended = await self._ledger.append(contact_id, message)
        except LeadflowError as exc:
            result.errors += 1
            logger.error(
                "failed to store inbound message",
                extra={
                    "extra_fields": safe_log_context(
                        message_id_prefix=id_prefix(unit.message_id),
                        error_type=type(exc).__name__,
                    )
                },
            )
            return

        if not appended:
            result.duplicates += 1
            return

        result.appended += 1
        self._hub.publish(NEW_MESSAGE, {"contactId": contact_id, "message": message.to_dict()})
        self._hub.publish(
            CONTACT_UPDATE,
            {
                "phoneNumber": contact_id,
                "name": message.profile_name or contact_id,
                "lastMessage": message.text or "",
                "timestamp": message.timestamp,
            },
        )

    async def _handle_status(self, raw: Any, result: ProcessResult) -> None:
        try:
            unit = meta_adapter.parse_status_report(raw)
        except meta_adapter.InvalidPayloadError as exc:
            result.errors += 1
            logger.warning(
                "invalid status report skipped",
                extra={"extra_fields": safe_log_context(error=str(exc))},
            )
            return

        status = parse_status(unit.status)
        if status is None:
            result.ignored += 1
            return

        try:
            updated = await self._ledger.apply_status(unit.message_id, status)
        except LeadflowError as exc:
            result.errors += 1
            logger.error(
                "failed to store status update",
                extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
            )
            return

        if not updated:
            result.ignored += 1
            return

        result.status_updates += 1
        self._hub.publish(
            MESSAGE_STATUS_UPDATE,
            {
                "messageId": unit.message_id,
                "status": unit.status,
                "recipientId": unit.recipient_id,
            },
        )
