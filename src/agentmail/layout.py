"""Filesystem layout of the shared ``.agentmail`` state directory."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import Settings
from .errors import InvalidRecipientError

STATE_DIR_NAME = ".agentmail"
MAILBOX_DIR_NAME = "mailboxes"
LOCK_DIR_NAME = "locks"
REGISTRY_FILE_NAME = "recipients.jsonl"
LEASE_FILE_NAME = "mailman.pid"
MAILBOX_SUFFIX = ".jsonl"
IGNORE_FILE_NAME = ".agentmailignore"


def find_git_root(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from ``start`` looking for a ``.git`` entry."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def resolve_root(settings: Settings, start: Optional[Path] = None) -> Path:
    if settings.mail.root:
        return Path(settings.mail.root).expanduser().resolve()
    return find_git_root(start) or (start or Path.cwd()).resolve()


@dataclass(slots=True, frozen=True)
class StateLayout:
    root: Path

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR_NAME

    @property
    def mailbox_dir(self) -> Path:
        return self.state_dir / MAILBOX_DIR_NAME

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / LOCK_DIR_NAME

    @property
    def registry_path(self) -> Path:
        return self.state_dir / REGISTRY_FILE_NAME

    @property
    def registry_lock_path(self) -> Path:
        return self.lock_dir / "registry.lock"

    @property
    def lease_path(self) -> Path:
        return self.state_dir / LEASE_FILE_NAME

    @property
    def lease_lock_path(self) -> Path:
        return self.lock_dir / "mailman.lock"

    @property
    def ignore_path(self) -> Path:
        return self.root / IGNORE_FILE_NAME

    def mailbox_path(self, recipient: str) -> Path:
        return self.mailbox_dir / f"{validate_recipient_name(recipient)}{MAILBOX_SUFFIX}"

    def mailbox_lock_path(self, recipient: str) -> Path:
        return self.lock_dir / f"mailbox-{validate_recipient_name(recipient)}.lock"

    def ensure(self) -> None:
        self.mailbox_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        self.lock_dir.mkdir(mode=0o750, parents=True, exist_ok=True)


def validate_recipient_name(name: str) -> str:
    """Reject names that could escape the mailbox directory."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidRecipientError(str(name))
    if "/" in name or "\\" in name or "\x00" in name or name in {".", ".."} or name.startswith(".."):
        raise InvalidRecipientError(name)
    return name
