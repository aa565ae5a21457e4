"""Front-end operations used by the CLI.

``AgentMail`` binds the two stores to a window collaborator and applies the
caller-facing policy: who the caller is, which targets are reachable, and
the ``.agentmailignore`` list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .cleanup import CleanupOptions, CleanupResult, GarbageCollector
from .config import Settings, get_settings
from .errors import RecipientNotFoundError, SessionUnavailableError
from .layout import StateLayout, resolve_root
from .mailbox import MailboxStore
from .models import Message, RecipientState, RecipientStatus
from .registry import RecipientRegistry
from .windows import TmuxWindows, WindowCollaborator

_logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RecipientListing:
    name: str
    is_self: bool = False


def load_ignore_list(path: Path) -> set[str]:
    """One window name per line; a missing or unreadable file ignores nothing."""
    try:
        text = path.read_text(encoding="utf-8")
    except (FileNotFoundError, PermissionError, IsADirectoryError):
        return set()
    return {line.strip() for line in text.splitlines() if line.strip()}


class AgentMail:
    def __init__(
        self,
        layout: StateLayout,
        windows: WindowCollaborator,
        *,
        settings: Optional[Settings] = None,
        mailbox: Optional[MailboxStore] = None,
        registry: Optional[RecipientRegistry] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.layout = layout
        self.windows = windows
        self.mailbox = mailbox or MailboxStore(layout, id_length=self.settings.mail.id_length)
        self.registry = registry or RecipientRegistry(layout)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        windows: Optional[WindowCollaborator] = None,
        start: Optional[Path] = None,
    ) -> "AgentMail":
        settings = settings or get_settings()
        layout = StateLayout(resolve_root(settings, start))
        return cls(layout, windows or TmuxWindows(), settings=settings)

    def ignored(self) -> set[str]:
        return load_ignore_list(self.layout.ignore_path)

    def send(self, recipient: str, body: str) -> str:
        """Append ``body`` to ``recipient``'s mailbox and return the message id.

        Targets that are not active windows, the caller itself, and ignored
        names all fail with the same ``RecipientNotFoundError``.
        """
        sender = self.windows.current_name()
        active = set(self.windows.list_active_names())
        if recipient not in active or recipient == sender or recipient in self.ignored():
            raise RecipientNotFoundError(recipient)
        message_id = self.mailbox.append(recipient, sender, body)
        _logger.info("mail.sent", extra={"sender": sender, "recipient": recipient, "id": message_id})
        return message_id

    def receive(self) -> Optional[Message]:
        me = self.windows.current_name()
        message = self.mailbox.claim_oldest_unread(me)
        if message is not None:
            self.registry.update_last_read(me)
        return message

    def set_status(self, status: Union[RecipientStatus, str]) -> Optional[RecipientState]:
        """Record the caller's status; outside a session this does nothing."""
        try:
            me = self.windows.current_name()
        except SessionUnavailableError:
            return None
        return self.registry.set_status(me, status)

    def list_recipients(self) -> list[RecipientListing]:
        me = self.windows.current_name()
        ignored = self.ignored()
        listings: list[RecipientListing] = []
        for name in self.windows.list_active_names():
            if name == me:
                listings.append(RecipientListing(name=name, is_self=True))
            elif name not in ignored:
                listings.append(RecipientListing(name=name))
        return listings

    def cleanup(self, options: Optional[CleanupOptions] = None) -> CleanupResult:
        options = options or CleanupOptions.from_settings(self.settings.cleanup)
        return GarbageCollector(self.registry, self.mailbox, self.windows).run(options)
