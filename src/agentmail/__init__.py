"""File-backed mail between agents sharing a terminal session."""

from __future__ import annotations

from .errors import AgentMailError
from .mailbox import MailboxStore
from .models import Message, RecipientState, RecipientStatus
from .registry import RecipientRegistry
from .service import AgentMail

__all__ = [
    "AgentMail",
    "AgentMailError",
    "MailboxStore",
    "Message",
    "RecipientRegistry",
    "RecipientState",
    "RecipientStatus",
]
