"""Per-contact message ledger with snapshot persistence.

The ledger owns all message state. It is loaded once at startup from the
last snapshot and flushed after every mutation that changed something.

Guarantees:
- No two messages of a contact share an id (append is idempotent by id)
- Each contact keeps at most ``max_per_contact`` messages, oldest evicted
- Status updates follow the delivery lattice (see models.should_transition)
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any

from leadflow.errors import PersistenceError
from leadflow.infra.files import read_json, write_json_atomic
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import id_prefix, safe_log_context

from .models import ContactSummary, Direction, Message, MessageStatus, should_transition

logger = get_logger(__name__)

DEFAULT_MAX_PER_CONTACT = 1000


class MessageLedger:
    """Ordered, deduplicated message history per contact."""

    def __init__(
        self,
        snapshot_path: Path | None = None,
        *,
        max_per_contact: int = DEFAULT_MAX_PER_CONTACT,
    ) -> None:
        """Create an empty ledger.

        Args:
            snapshot_path: JSON file the ledger is loaded from and flushed to.
                None keeps the ledger purely in memory.
            max_per_contact: Retention bound per contact.
        """
        if max_per_contact < 1:
            raise ValueError("max_per_contact must be positive")
        self._path = snapshot_path
        self._max = max_per_contact
        self._contacts: dict[str, list[Message]] = {}
        self._write_lock = asyncio.Lock()

    def load(self) -> int:
        """Load the last snapshot, replacing in-memory state.

        Malformed contact records and malformed messages are skipped with a
        warning; a contact whose every message is malformed is dropped.

        Returns:
            Number of contacts loaded.

        Raises:
            PersistenceError: If the snapshot exists but cannot be read.
        """
        if self._path is None:
            return 0

        try:
            raw = read_json(self._path)
        except (OSError, ValueError) as exc:
            logger.error(
                "failed to read ledger snapshot",
                extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
            )
            raise PersistenceError("failed to read message ledger snapshot") from exc

        self._contacts = {}
        if raw is None:
            return 0
        if not isinstance(raw, dict):
            logger.warning("ledger snapshot is not an object, starting empty")
            return 0

        skipped_messages = 0
        for contact_id, records in raw.items():
            if not isinstance(contact_id, str) or not contact_id or not isinstance(records, list):
                logger.warning(
                    "skipping malformed ledger contact",
                    extra={"extra_fields": safe_log_context(record_type=type(records).__name__)},
                )
                continue

            messages: list[Message] = []
            seen: set[str] = set()
            for record in records:
                try:
                    message = Message.from_dict(record, contact_id=contact_id)
                except (ValueError, TypeError, AttributeError, ArithmeticError):
                    skipped_messages += 1
                    continue
                if message.id in seen:
                    continue
                seen.add(message.id)
                messages.append(message)

            if records and not messages:
                logger.warning("skipping ledger contact with no valid messages")
                continue
            self._contacts[contact_id] = messages[-self._max:]

        logger.info(
            "ledger snapshot loaded",
            extra={
                "extra_fields": safe_log_context(
                    contacts=len(self._contacts),
                    skipped_messages=skipped_messages,
                )
            },
        )
        return len(self._contacts)

    async def append(self, contact_id: str, message: Message) -> bool:
        """Append a message to a contact's ledger.

        The append and its flush happen together: if the snapshot cannot be
        written the contact is restored to its previous state.

        Args:
            contact_id: Normalized contact identifier.
            message: Message to store; its contact_id is aligned to contact_id.

        Returns:
            True if stored, False if a message with the same id already exists.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """
        async with self._write_lock:
            previous = self._contacts.get(contact_id)
            if previous and any(existing.id == message.id for existing in previous):
                logger.info(
                    "duplicate message skipped",
                    extra={"extra_fields": safe_log_context(message_id_prefix=id_prefix(message.id))},
                )
                return False

            if message.contact_id != contact_id:
                message = replace(message, contact_id=contact_id)
            # New list object so readers never see a half-trimmed one
            self._contacts[contact_id] = [*(previous or []), message][-self._max:]

            try:
                await self._flush_locked()
            except PersistenceError:
                if previous is None:
                    self._contacts.pop(contact_id, None)
                else:
                    self._contacts[contact_id] = previous
                raise
            return True

    async def apply_status(self, message_id: str, new_status: MessageStatus) -> bool:
        """Apply a delivery status to the outgoing message with this id.

        Every contact is scanned. Incoming messages never change status.
        Nothing changes in memory if the snapshot cannot be written.

        Returns:
            True if at least one message changed status.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """
        async with self._write_lock:
            previous: dict[str, list[Message]] = {}
            for contact_id, messages in list(self._contacts.items()):
                changed = list(messages)
                for index, message in enumerate(messages):
                    if message.id != message_id or message.direction != Direction.OUTGOING:
                        continue
                    if should_transition(message.status, new_status):
                        changed[index] = message.with_status(new_status)
                        logger.info(
                            "message status updated",
                            extra={
                                "extra_fields": safe_log_context(
                                    message_id_prefix=id_prefix(message_id),
                                    previous=message.status.value,
                                    status=new_status.value,
                                )
                            },
                        )
                if changed != messages:
                    previous[contact_id] = messages
                    self._contacts[contact_id] = changed

            if not previous:
                return False
            try:
                await self._flush_locked()
            except PersistenceError:
                self._contacts.update(previous)
                raise
            return True

    def query(self, contact_id: str, since: int = 0) -> list[Message]:
        """Messages of a contact newer than ``since``, oldest first.

        The returned list is a sorted copy; stored order is untouched.
        """
        messages = self._contacts.get(contact_id, [])
        return sorted(
            (m for m in messages if m.timestamp > since),
            key=lambda m: m.timestamp,
        )

    def has_contact(self, contact_id: str) -> bool:
        return contact_id in self._contacts

    def list_contacts(self) -> list[ContactSummary]:
        """Summaries of every contact, most recent activity first."""
        summaries: list[ContactSummary] = []
        for contact_id, messages in list(self._contacts.items()):
            try:
                summaries.append(_summarize(contact_id, messages))
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning(
                    "error summarizing contact, skipped",
                    extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
                )
        summaries.sort(key=lambda s: s.timestamp or 0, reverse=True)
        return summaries

    def stats(self) -> dict[str, int]:
        """Counts for the health snapshot."""
        contacts = list(self._contacts.values())
        return {
            "messageCount": sum(len(msgs) for msgs in contacts),
            "contactCount": len(contacts),
        }

    def set_aside_snapshot(self) -> Path | None:
        """Rename an unreadable snapshot to ``<name>.corrupt``.

        Keeps the bad file for inspection instead of letting the next flush
        overwrite it.

        Returns:
            New path of the snapshot, or None if there was nothing to move
            or the rename failed.
        """
        if self._path is None or not self._path.exists():
            return None
        target = self._path.with_name(self._path.name + ".corrupt")
        try:
            self._path.replace(target)
        except OSError as exc:
            logger.error(
                "failed to set aside ledger snapshot",
                extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
            )
            return None
        logger.warning("unreadable ledger snapshot set aside")
        return target

    def _snapshot(self) -> dict[str, Any]:
        return {
            contact_id: [m.to_dict() for m in messages]
            for contact_id, messages in self._contacts.items()
        }

    async def _flush_locked(self) -> None:
        """Write the snapshot. Caller holds the write lock."""
        if self._path is None:
            return
        snapshot = self._snapshot()
        try:
            await asyncio.to_thread(write_json_atomic, self._path, snapshot)
        except OSError as exc:
            logger.error(
                "failed to write ledger snapshot",
                extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
            )
            raise PersistenceError("failed to persist message ledger") from exc


def _summarize(contact_id: str, messages: list[Message]) -> ContactSummary:
    if not isinstance(contact_id, str) or not contact_id:
        raise ValueError("invalid contact id")

    name = contact_id
    for message in reversed(messages):
        if message.profile_name:
            name = message.profile_name
            break

    last: Message | None = None
    last_timestamp = 0
    for message in reversed(messages):
        if message.timestamp and message.timestamp > last_timestamp:
            last_timestamp = message.timestamp
            last = message

    if last is None and messages:
        last = messages[-1]

    return ContactSummary(
        contact_id=contact_id,
        name=name,
        last_message=(last.text or "") if last else "",
        timestamp=last.timestamp if last else 0,
        message_count=len(messages),
    )
