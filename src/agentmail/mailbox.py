"""Per-recipient append-only mailbox logs.

Each recipient owns ``.agentmail/mailboxes/<name>.jsonl``. Append order is
delivery order. Mutations hold the mailbox's exclusive lock:

- ``append`` and ``claim_oldest_unread`` block until the lock is free
- ``prune_delivered`` and ``delete_if_empty`` wait at most ``lock_timeout``
  and report a skipped outcome instead of blocking
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import InvalidRecipientError, LockTimeoutError, MessageIdExhaustedError
from .jsonl import Record, append_line, read_records, values, write_records
from .layout import MAILBOX_SUFFIX, StateLayout, validate_recipient_name
from .locking import exclusive_lock
from .models import DEFAULT_ID_LENGTH, Message, generate_id, utcnow

_logger = logging.getLogger(__name__)

# Attempts at drawing an id that is not already present in the log.
MAX_ID_ATTEMPTS = 16


@dataclass(slots=True)
class PruneOutcome:
    """Result of one collector step against one mailbox file."""

    recipient: str
    removed: int = 0
    remaining: int = 0
    skipped: bool = False


class MailboxStore:
    def __init__(
        self,
        layout: StateLayout,
        *,
        id_length: int = DEFAULT_ID_LENGTH,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.layout = layout
        self.id_length = id_length
        self._clock = clock

    def _read(self, recipient: str) -> list[Record[Message]]:
        return read_records(self.layout.mailbox_path(recipient), Message.from_dict)

    def _write(self, recipient: str, records: list[Record[Message]]) -> None:
        write_records(self.layout.mailbox_path(recipient), records, Message.to_dict)

    def append(self, recipient: str, sender: str, body: str) -> str:
        """Append a new unread message and return its id."""
        path = self.layout.mailbox_path(recipient)
        self.layout.ensure()
        with exclusive_lock(self.layout.mailbox_lock_path(recipient)):
            existing = {message.id for message in values(self._read(recipient))}
            message_id = generate_id(self.id_length)
            attempts = 1
            while message_id in existing:
                if attempts >= MAX_ID_ATTEMPTS:
                    raise MessageIdExhaustedError(recipient, attempts)
                _logger.info("mailbox.id_collision", extra={"recipient": recipient, "id": message_id})
                message_id = generate_id(self.id_length)
                attempts += 1
            message = Message(
                id=message_id,
                sender=sender,
                recipient=recipient,
                body=body,
                read=False,
                created_at=self._clock(),
            )
            append_line(path, message.to_dict())
        return message_id

    def claim_oldest_unread(self, recipient: str) -> Optional[Message]:
        """Mark the earliest unread message read and return it.

        Returns None, without touching the file, when nothing is unread.
        """
        path = self.layout.mailbox_path(recipient)
        if not path.exists():
            return None
        with exclusive_lock(self.layout.mailbox_lock_path(recipient)):
            records = self._read(recipient)
            for record in records:
                message = record.value
                if message is not None and not message.read:
                    message.read = True
                    self._write(recipient, records)
                    return message
        return None

    def read_all(self, recipient: str) -> list[Message]:
        return values(self._read(recipient))

    def find_unread(self, recipient: str) -> list[Message]:
        return [message for message in self.read_all(recipient) if not message.read]

    def has_unread(self, recipient: str) -> bool:
        return any(not message.read for message in self.read_all(recipient))

    def list_recipients(self) -> list[str]:
        """Names of every recipient that currently has a mailbox log.

        Log files whose name is not a valid recipient are left out.
        """
        directory = self.layout.mailbox_dir
        if not directory.is_dir():
            return []
        names: list[str] = []
        for path in directory.iterdir():
            if not path.is_file() or not path.name.endswith(MAILBOX_SUFFIX) or path.name.startswith("."):
                continue
            name = path.name[: -len(MAILBOX_SUFFIX)]
            try:
                validate_recipient_name(name)
            except InvalidRecipientError:
                _logger.warning("mailbox.invalid_name_ignored", extra={"path": str(path)})
                continue
            names.append(name)
        return sorted(names)

    def prune_delivered(
        self,
        recipient: str,
        max_age: timedelta,
        *,
        lock_timeout: float = 1.0,
        dry_run: bool = False,
    ) -> PruneOutcome:
        """Remove read messages created more than ``max_age`` ago.

        Unread messages and messages without ``created_at`` always survive.
        """
        outcome = PruneOutcome(recipient=recipient)
        cutoff = self._clock() - max_age
        try:
            with exclusive_lock(self.layout.mailbox_lock_path(recipient), timeout=lock_timeout):
                records = self._read(recipient)
                survivors = [
                    record for record in records if record.value is None or not record.value.is_prunable(cutoff)
                ]
                outcome.removed = len(records) - len(survivors)
                outcome.remaining = len(survivors)
                if outcome.removed and not dry_run:
                    self._write(recipient, survivors)
        except LockTimeoutError:
            _logger.warning("mailbox.prune_skipped", extra={"recipient": recipient, "timeout": lock_timeout})
            outcome.skipped = True
        return outcome

    def delete_if_empty(
        self,
        recipient: str,
        *,
        lock_timeout: float = 1.0,
        dry_run: bool = False,
        pending_removals: int = 0,
    ) -> PruneOutcome:
        """Remove the mailbox file when it holds no entries.

        In dry-run mode ``pending_removals`` entries are assumed to have been
        pruned already, so the verdict matches a real run.
        """
        outcome = PruneOutcome(recipient=recipient)
        path = self.layout.mailbox_path(recipient)
        try:
            with exclusive_lock(self.layout.mailbox_lock_path(recipient), timeout=lock_timeout):
                if not path.exists():
                    return outcome
                entries = len(self._read(recipient))
                if dry_run:
                    entries = max(entries - pending_removals, 0)
                outcome.remaining = entries
                if entries == 0:
                    if not dry_run:
                        path.unlink(missing_ok=True)
                    outcome.removed = 1
        except LockTimeoutError:
            _logger.warning("mailbox.delete_skipped", extra={"recipient": recipient, "timeout": lock_timeout})
            outcome.skipped = True
        return outcome
