"""Message ledger models."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    """Delivery status of a message.

    received/pending carry no delivery rank; sent < delivered < read;
    failed is absorbing.
    """

    RECEIVED = "received"
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_STATUS_RANK = {
    MessageStatus.FAILED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def status_rank(status: MessageStatus) -> int:
    """Rank in the delivery lattice; statuses outside it rank 0."""
    return _STATUS_RANK.get(status, 0)


def should_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """Whether a reported status may replace the current one.

    Failed overrides any non-failed state and is never left again; every
    other transition must strictly raise the rank.
    """
    if current == MessageStatus.FAILED:
        return False
    if new == MessageStatus.FAILED:
        return True
    return status_rank(new) > status_rank(current)


def parse_status(value: Any) -> MessageStatus | None:
    """Map a provider status string to MessageStatus (None if unknown)."""
    try:
        return MessageStatus(str(value).lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class Message:
    """One entry of a contact's ledger.

    Attributes:
        id: Provider message id (wamid.*) or a locally synthesized id.
        contact_id: Normalized contact identifier (ledger partition key).
        direction: incoming (from the contact) or outgoing (sent by us).
        text: Text body; None for media messages.
        kind: Provider message type ("text", "image", ...).
        timestamp: Epoch milliseconds; 0 when unknown.
        status: Delivery status.
        profile_name: Contact display name carried by the provider, if any.
    """

    id: str
    contact_id: str
    direction: Direction
    text: str | None = None
    kind: str = "text"
    timestamp: int = 0
    status: MessageStatus = MessageStatus.RECEIVED
    profile_name: str | None = None

    def with_status(self, status: MessageStatus) -> "Message":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for the snapshot file and API responses."""
        return {
            "id": self.id,
            "contactId": self.contact_id,
            "direction": self.direction.value,
            "text": {"body": self.text} if self.text is not None else None,
            "type": self.kind,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "profile": {"name": self.profile_name} if self.profile_name else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], contact_id: str | None = None) -> "Message":
        """Create from dict.

        Raises:
            ValueError: If required fields are missing or have the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("message record must be an object")

        message_id = data.get("id")
        if not message_id or not isinstance(message_id, str):
            raise ValueError("missing or invalid message id")

        resolved_contact = contact_id or data.get("contactId")
        if not resolved_contact or not isinstance(resolved_contact, str):
            raise ValueError("missing contact id")

        text_obj = data.get("text")
        if isinstance(text_obj, dict):
            text = text_obj.get("body")
        elif isinstance(text_obj, str):
            text = text_obj
        else:
            text = None

        profile = data.get("profile")
        profile_name = profile.get("name") if isinstance(profile, dict) else None

        timestamp = data.get("timestamp") or 0
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float, str)):
            raise ValueError("invalid timestamp")
        try:
            timestamp = float(timestamp)
        except OverflowError as exc:
            raise ValueError("timestamp out of range") from exc
        if not math.isfinite(timestamp):
            raise ValueError("non-finite timestamp")

        status = parse_status(data.get("status", MessageStatus.RECEIVED.value))

        return cls(
            id=message_id,
            contact_id=resolved_contact,
            direction=Direction(data.get("direction", Direction.INCOMING.value)),
            text=text,
            kind=str(data.get("type") or data.get("kind") or "text"),
            timestamp=int(timestamp),
            status=status or MessageStatus.PENDING,
            profile_name=profile_name,
        )


@dataclass(frozen=True)
class ContactSummary:
    """Sidebar entry for one contact."""

    contact_id: str
    name: str
    last_message: str
    timestamp: int
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "phoneNumber": self.contact_id,
            "name": self.name,
            "hasMessages": self.message_count > 0,
            "lastMessage": self.last_message,
            "timestamp": self.timestamp,
            "messageCount": self.message_count,
        }
