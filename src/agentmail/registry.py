"""Shared recipient presence table stored in ``.agentmail/recipients.jsonl``.

Every mutation is a full read-modify-write of the file under one exclusive
lock. ``list_notifiable``, ``get`` and ``read_all`` are lock-free reads; the
atomic rewrite in ``jsonl.write_records`` keeps them consistent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Union

from .errors import LockTimeoutError
from .jsonl import Record, read_records, values, write_records
from .layout import StateLayout
from .locking import exclusive_lock
from .models import RecipientState, RecipientStatus, utcnow

if TYPE_CHECKING:
    from .mailbox import MailboxStore

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RegistryPruneOutcome:
    removed: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def count(self) -> int:
        return len(self.removed)


class RecipientRegistry:
    def __init__(self, layout: StateLayout, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.layout = layout
        self._clock = clock

    @property
    def path(self) -> Path:
        return self.layout.registry_path

    def _read(self) -> list[Record[RecipientState]]:
        return read_records(self.path, RecipientState.from_dict)

    def _write(self, records: list[Record[RecipientState]]) -> None:
        write_records(self.path, records, RecipientState.to_dict)

    def _find(self, records: list[Record[RecipientState]], recipient: str) -> Optional[RecipientState]:
        for record in records:
            if record.value is not None and record.value.recipient == recipient:
                return record.value
        return None

    def read_all(self) -> list[RecipientState]:
        return values(self._read())

    def get(self, recipient: str) -> Optional[RecipientState]:
        return self._find(self._read(), recipient)

    def set_status(self, recipient: str, status: Union[RecipientStatus, str]) -> RecipientState:
        """Create or update ``recipient`` with ``status``.

        Moving to ``work`` or ``offline`` clears ``notified_at`` so the next
        ``ready`` re-arms notification.
        """
        if not isinstance(status, RecipientStatus):
            status = RecipientStatus.parse(status)
        now = self._clock()
        self.layout.ensure()
        with exclusive_lock(self.layout.registry_lock_path):
            records = self._read()
            state = self._find(records, recipient)
            if state is None:
                state = RecipientState(recipient=recipient, status=status)
                records.append(Record(raw="", value=state))
            state.status = status
            state.updated_at = now
            if status.clears_notification:
                state.notified_at = None
            self._write(records)
        _logger.debug("registry.status_set", extra={"recipient": recipient, "status": status.value})
        return state

    def list_notifiable(
        self,
        active_names: Optional[Iterable[str]],
        mailbox: "MailboxStore",
    ) -> list[str]:
        """Recipients that are ready, armed, and have unread mail.

        ``active_names=None`` disables the active-window filter.
        """
        active = None if active_names is None else set(active_names)
        notifiable: list[str] = []
        for state in self.read_all():
            if state.status is not RecipientStatus.READY or not state.armed:
                continue
            if active is not None and state.recipient not in active:
                continue
            try:
                if mailbox.has_unread(state.recipient):
                    notifiable.append(state.recipient)
            except ValueError:
                # Registry names that are not valid mailbox names have no mail.
                continue
        return notifiable

    def mark_notified(self, recipient: str, timestamp: Optional[datetime] = None) -> bool:
        """Set ``notified_at``; unknown recipients are left alone."""
        when = timestamp or self._clock()
        with exclusive_lock(self.layout.registry_lock_path):
            records = self._read()
            state = self._find(records, recipient)
            if state is None:
                return False
            state.notified_at = when
            self._write(records)
        return True

    def update_last_read(self, recipient: str, timestamp: Optional[datetime] = None) -> RecipientState:
        when = timestamp or self._clock()
        self.layout.ensure()
        with exclusive_lock(self.layout.registry_lock_path):
            records = self._read()
            state = self._find(records, recipient)
            if state is None:
                state = RecipientState(recipient=recipient, status=RecipientStatus.READY, updated_at=when)
                records.append(Record(raw="", value=state))
            state.last_read_at = when
            self._write(records)
        return state

    def _prune(
        self,
        predicate: Callable[[RecipientState], bool],
        *,
        lock_timeout: Optional[float],
        dry_run: bool,
        event: str,
    ) -> RegistryPruneOutcome:
        outcome = RegistryPruneOutcome()
        if not self.path.exists():
            return outcome
        try:
            with exclusive_lock(self.layout.registry_lock_path, timeout=lock_timeout):
                records = self._read()
                survivors: list[Record[RecipientState]] = []
                for record in records:
                    if record.value is not None and predicate(record.value):
                        if record.value.recipient not in outcome.removed:
                            outcome.removed.append(record.value.recipient)
                    else:
                        survivors.append(record)
                if outcome.removed and not dry_run:
                    self._write(survivors)
        except LockTimeoutError:
            _logger.warning(f"{event}_skipped", extra={"path": str(self.path), "timeout": lock_timeout})
            outcome.skipped = True
            return outcome
        if outcome.removed:
            _logger.info(event, extra={"removed": outcome.removed, "dry_run": dry_run})
        return outcome

    def prune_offline(
        self,
        active_names: Iterable[str],
        *,
        lock_timeout: Optional[float] = None,
        dry_run: bool = False,
    ) -> RegistryPruneOutcome:
        """Drop recipients whose window no longer exists."""
        active = set(active_names)
        return self._prune(
            lambda state: state.recipient not in active,
            lock_timeout=lock_timeout,
            dry_run=dry_run,
            event="registry.prune_offline",
        )

    def prune_stale(
        self,
        max_age: timedelta,
        *,
        lock_timeout: Optional[float] = None,
        dry_run: bool = False,
        exclude: Iterable[str] = (),
    ) -> RegistryPruneOutcome:
        """Drop recipients whose ``updated_at`` is older than ``max_age``.

        Names in ``exclude`` are neither removed nor counted.
        """
        cutoff = self._clock() - max_age
        excluded = set(exclude)
        return self._prune(
            lambda state: state.recipient not in excluded and state.is_stale(cutoff),
            lock_timeout=lock_timeout,
            dry_run=dry_run,
            event="registry.prune_stale",
        )
