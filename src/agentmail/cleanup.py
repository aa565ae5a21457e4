"""One-shot garbage collection across the registry and every mailbox.

Phases run in order: offline recipients, stale recipients, delivered
messages, empty mailboxes. Every file is locked with a bounded wait; a file
that stays locked is skipped with a warning and the run continues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import structlog

from .config import CleanupSettings
from .errors import SessionUnavailableError
from .mailbox import MailboxStore
from .registry import RecipientRegistry
from .windows import WindowCollaborator

_logger = structlog.get_logger("agentmail.cleanup")

OFFLINE_SKIPPED_WARNING = "Warning: not running in tmux session, skipping offline recipient check"


@dataclass(slots=True, frozen=True)
class CleanupOptions:
    stale_hours: float = 48.0
    delivered_hours: float = 2.0
    dry_run: bool = False
    lock_timeout_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: CleanupSettings, *, dry_run: bool = False) -> "CleanupOptions":
        return cls(
            stale_hours=settings.stale_hours,
            delivered_hours=settings.delivered_hours,
            dry_run=dry_run,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )


@dataclass(slots=True)
class CleanupResult:
    offline_removed: int = 0
    stale_removed: int = 0
    messages_removed: int = 0
    mailboxes_removed: int = 0
    skipped_files: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def recipients_removed(self) -> int:
        return self.offline_removed + self.stale_removed

    @property
    def files_skipped(self) -> int:
        return len(self.skipped_files)

    def as_dict(self) -> dict[str, object]:
        return {
            "offline_removed": self.offline_removed,
            "stale_removed": self.stale_removed,
            "recipients_removed": self.recipients_removed,
            "messages_removed": self.messages_removed,
            "mailboxes_removed": self.mailboxes_removed,
            "files_skipped": self.files_skipped,
            "dry_run": self.dry_run,
        }


class GarbageCollector:
    def __init__(
        self,
        registry: RecipientRegistry,
        mailbox: MailboxStore,
        windows: WindowCollaborator,
    ) -> None:
        self.registry = registry
        self.mailbox = mailbox
        self.windows = windows

    def _warn(self, result: CleanupResult, message: str, **fields: object) -> None:
        result.warnings.append(message)
        _logger.warning("cleanup.warning", message=message, **fields)

    def _skip(self, result: CleanupResult, path: str) -> None:
        if path not in result.skipped_files:
            result.skipped_files.add(path)
            result.warnings.append(f"Warning: could not lock {path}, skipping")
            _logger.warning("cleanup.file_skipped", path=path)

    def _active_names(self, result: CleanupResult) -> Optional[list[str]]:
        try:
            return self.windows.list_active_names()
        except SessionUnavailableError:
            self._warn(result, OFFLINE_SKIPPED_WARNING)
            return None

    def run(self, options: CleanupOptions) -> CleanupResult:
        result = CleanupResult(dry_run=options.dry_run)
        timeout = options.lock_timeout_seconds
        registry_path = str(self.registry.path)

        offline: list[str] = []
        active = self._active_names(result)
        if active is not None:
            outcome = self.registry.prune_offline(active, lock_timeout=timeout, dry_run=options.dry_run)
            if outcome.skipped:
                self._skip(result, registry_path)
            offline = outcome.removed
            result.offline_removed = outcome.count

        outcome = self.registry.prune_stale(
            timedelta(hours=options.stale_hours),
            lock_timeout=timeout,
            dry_run=options.dry_run,
            exclude=offline,
        )
        if outcome.skipped:
            self._skip(result, registry_path)
        result.stale_removed = outcome.count

        delivered_age = timedelta(hours=options.delivered_hours)
        pruned: dict[str, int] = {}
        for name in self.mailbox.list_recipients():
            step = self.mailbox.prune_delivered(name, delivered_age, lock_timeout=timeout, dry_run=options.dry_run)
            if step.skipped:
                self._skip(result, str(self.mailbox.layout.mailbox_path(name)))
                continue
            pruned[name] = step.removed
            result.messages_removed += step.removed

        for name in self.mailbox.list_recipients():
            step = self.mailbox.delete_if_empty(
                name,
                lock_timeout=timeout,
                dry_run=options.dry_run,
                pending_removals=pruned.get(name, 0),
            )
            if step.skipped:
                self._skip(result, str(self.mailbox.layout.mailbox_path(name)))
                continue
            result.mailboxes_removed += step.removed

        _logger.info("cleanup.complete", **result.as_dict())
        return result
