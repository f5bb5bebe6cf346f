"""WhatsApp webhook routes - Meta Cloud API integration.

IMPORTANT: POST always returns 200 to Meta, even on errors.
Meta retries on non-2xx responses, causing duplicate deliveries.
Processing runs as a background task after the acknowledgement.

Logs contain NO message text and NO phone numbers.
"""

import json
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, Response

from leadflow.messaging.meta_adapter import (
    SignatureVerificationError,
    verify_handshake,
    verify_signature,
)
from leadflow.messaging.processor import WebhookProcessor
from leadflow.observability.correlation import (
    generate_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from leadflow.api.services import Services, get_services

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


def _ok() -> Response:
    return Response(status_code=200, content="ok")


@router.get("/webhook")
async def webhook_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    services: Services = Depends(get_services),
) -> Response:
    """Meta webhook verification endpoint.

    Meta sends GET request during webhook setup to verify ownership.

    Returns:
        200 with hub.challenge if valid.
        403 if invalid.
    """
    expected_token = services.settings.webhook_verify_token
    challenge = verify_handshake(hub_mode, hub_verify_token, hub_challenge, expected_token)

    if challenge is not None:
        logger.info(
            "webhook verification successful",
            extra={"extra_fields": safe_log_context(hub_mode=hub_mode)},
        )
        return Response(status_code=200, content=challenge, media_type="text/plain")

    logger.warning(
        "webhook verification failed",
        extra={
            "extra_fields": safe_log_context(
                hub_mode=hub_mode or "missing",
                token_configured=bool(expected_token),
            )
        },
    )
    return Response(status_code=403, content="verification failed")


async def _process_in_background(processor: WebhookProcessor, payload: Any, cid: str) -> None:
    token = set_correlation_id(cid or generate_correlation_id())
    try:
        await processor.process(payload)
    except Exception:
        logger.exception("webhook background processing failed")
    finally:
        reset_correlation_id(token)


@router.post("/webhook")
async def webhook_receive(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
    services: Services = Depends(get_services),
) -> Response:
    """Receive Meta Cloud API webhook.

    Returns:
        200 OK always (Meta requirement).
    """
    correlation_id = get_correlation_id()

    body_bytes = await request.body()

    # Verify signature (if META_APP_SECRET configured)
    app_secret = services.settings.webhook_app_secret
    if app_secret:
        try:
            verify_signature(body_bytes, x_hub_signature_256 or "", app_secret)
        except SignatureVerificationError as e:
            logger.warning(
                "webhook signature verification failed",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        error=str(e),
                    )
                },
            )
            return _ok()

    try:
        payload = json.loads(body_bytes)
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _ok()

    logger.info(
        "webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                object_type=payload.get("object") if isinstance(payload, dict) else None,
            )
        },
    )
    background_tasks.add_task(_process_in_background, services.processor, payload, correlation_id)
    return _ok()
