"""Meta Cloud API adapter - validate and normalize webhook payloads.

Handles Meta WhatsApp Business API webhook payloads, including
signature verification, the subscription handshake and extraction of
inbound message and delivery status units.

Payload structure:
{
  "object": "whatsapp_business_account",
  "entry": [{
    "changes": [{
      "field": "messages",
      "value": {
        "metadata": {"phone_number_id": "..."},
        "contacts": [{"wa_id": "PHONE", "profile": {"name": "..."}}],
        "messages": [{"from": "PHONE", "id": "MSG_ID", "timestamp": "...",
                      "type": "text", "text": {"body": "..."}}],
        "statuses": [{"id": "MSG_ID", "status": "delivered",
                      "recipient_id": "PHONE", "timestamp": "..."}]
      }
    }]
  }]
}
"""

from dataclasses import dataclass
import hashlib
import hmac
from typing import Any, Iterator

WHATSAPP_OBJECT = "whatsapp_business_account"
MESSAGES_FIELD = "messages"

_CAPTIONED_KINDS = ("image", "video", "document")


class InvalidPayloadError(Exception):
    """Raised when a Meta payload unit has invalid shape."""

    pass


class SignatureVerificationError(Exception):
    """Raised when HMAC signature verification fails."""

    pass


@dataclass(frozen=True)
class InboundUnit:
    """One inbound message as reported by Meta (sender not yet normalized)."""

    message_id: str
    sender: str
    kind: str
    text: str | None
    timestamp_seconds: int | None
    profile_name: str | None


@dataclass(frozen=True)
class StatusUnit:
    """One delivery status report for a message we sent."""

    message_id: str
    status: str
    recipient_id: str | None


def verify_signature(payload_bytes: bytes, signature_header: str, app_secret: str) -> None:
    """Verify Meta webhook signature (HMAC-SHA256).

    Meta signs webhooks with sha256=<hex_signature> format.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: X-Hub-Signature-256 header value (sha256=...).
        app_secret: Meta App Secret for HMAC verification.

    Raises:
        SignatureVerificationError: If signature is invalid or missing.
    """
    if not signature_header:
        raise SignatureVerificationError("missing signature header")

    if not signature_header.startswith("sha256="):
        raise SignatureVerificationError("invalid signature format")

    expected_sig = signature_header[7:]

    computed_sig = hmac.new(
        key=app_secret.encode("utf-8"),
        msg=payload_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(computed_sig, expected_sig):
        raise SignatureVerificationError("signature mismatch")


def verify_handshake(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str | None:
    """Check a subscription handshake.

    Returns:
        The challenge to echo back, or None if the handshake is rejected.
    """
    if mode != "subscribe" or not expected_token or token is None:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge or ""


def is_whatsapp_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("object") == WHATSAPP_OBJECT


def iter_message_changes(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield the ``value`` of every messages change, in array order.

    Entries or changes with an unexpected shape are skipped.
    """
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        changes = entry.get("changes")
        if not isinstance(changes, list):
            continue
        for change in changes:
            if not isinstance(change, dict) or change.get("field") != MESSAGES_FIELD:
                continue
            value = change.get("value")
            if isinstance(value, dict):
                yield value


def raw_messages(value: dict[str, Any]) -> list[Any]:
    messages = value.get("messages")
    return messages if isinstance(messages, list) else []


def raw_statuses(value: dict[str, Any]) -> list[Any]:
    statuses = value.get("statuses")
    return statuses if isinstance(statuses, list) else []


def parse_inbound(message: Any, contacts: Any) -> InboundUnit:
    """Build an InboundUnit from one raw message.

    The profile name comes from the contact whose wa_id matches the sender,
    else from the first contact.

    Raises:
        InvalidPayloadError: If id or sender is missing.
    """
    if not isinstance(message, dict):
        raise InvalidPayloadError("message is not an object")

    message_id = message.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    sender = message.get("from")
    if not sender or not isinstance(sender, (str, int)):
        raise InvalidPayloadError("missing sender phone number")
    sender = str(sender)

    kind = str(message.get("type") or "unknown")

    return InboundUnit(
        message_id=message_id,
        sender=sender,
        kind=kind,
        text=_extract_text(message, kind),
        timestamp_seconds=_parse_timestamp(message.get("timestamp")),
        profile_name=_profile_name(contacts, sender),
    )


def parse_status_report(status: Any) -> StatusUnit:
    """Build a StatusUnit from one raw status entry.

    Raises:
        InvalidPayloadError: If id or status is missing.
    """
    if not isinstance(status, dict):
        raise InvalidPayloadError("status is not an object")

    message_id = status.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid status message id")

    value = status.get("status")
    if not value or not isinstance(value, str):
        raise InvalidPayloadError("missing status value")

    recipient = status.get("recipient_id")
    return StatusUnit(
        message_id=message_id,
        status=value,
        recipient_id=str(recipient) if recipient else None,
    )


def get_phone_number_id(value: dict[str, Any]) -> str | None:
    """Extract phone_number_id from a change value."""
    metadata = value.get("metadata")
    if not isinstance(metadata, dict):
        return None
    return metadata.get("phone_number_id")


def _extract_text(message: dict[str, Any], kind: str) -> str | None:
    if kind == "text":
        text_obj = message.get("text")
        return text_obj.get("body") if isinstance(text_obj, dict) else None
    if kind in _CAPTIONED_KINDS:
        media = message.get(kind)
        return media.get("caption") if isinstance(media, dict) else None
    if kind == "button":
        button = message.get("button")
        return button.get("text") if isinstance(button, dict) else None
    return None


def _parse_timestamp(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _profile_name(contacts: Any, sender: str) -> str | None:
    if not isinstance(contacts, list) or not contacts:
        return None

    chosen = None
    for contact in contacts:
        if isinstance(contact, dict) and str(contact.get("wa_id", "")) == sender:
            chosen = contact
            break
    if chosen is None:
        chosen = contacts[0] if isinstance(contacts[0], dict) else None
    if chosen is None:
        return None

    profile = chosen.get("profile")
    if not isinstance(profile, dict):
        return None
    name = profile.get("name")
    return name if isinstance(name, str) and name else None
