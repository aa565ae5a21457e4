"""Record types stored in mailbox logs and the recipient registry."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import InvalidStatusError

ID_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
DEFAULT_ID_LENGTH = 8

# Fractional seconds longer than microseconds (Go writes nanoseconds).
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class RecipientStatus(str, Enum):
    READY = "ready"
    WORK = "work"
    OFFLINE = "offline"

    @classmethod
    def parse(cls, value: str) -> "RecipientStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise InvalidStatusError(value) from None

    @property
    def clears_notification(self) -> bool:
        return self is not RecipientStatus.READY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(length: int = DEFAULT_ID_LENGTH) -> str:
    """Return a random base62 identifier drawn from ``secrets``."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 with Z/offset support and normalize to UTC.

    Returns None for empty values and for the zero time (year 1) that Go
    serializes for unset timestamps.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(r"\1", text)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    if dt.year <= 1:
        return None
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, bool):
        raise ValueError("last_read_at must be a number")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    return parse_timestamp(value)


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


@dataclass(slots=True)
class Message:
    id: str
    sender: str
    recipient: str
    body: str
    read: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "message": self.body,
            "read_flag": self.read,
        }
        if self.created_at is not None:
            payload["created_at"] = format_timestamp(self.created_at)
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "Message":
        if not isinstance(payload, dict):
            raise ValueError("message record must be a JSON object")
        read_flag = payload.get("read_flag", False)
        if not isinstance(read_flag, bool):
            raise ValueError("field 'read_flag' must be a boolean")
        return cls(
            id=_require_str(payload, "id"),
            sender=_require_str(payload, "from"),
            recipient=_require_str(payload, "to"),
            body=_require_str(payload, "message"),
            read=read_flag,
            created_at=parse_timestamp(payload.get("created_at")),
        )

    def is_prunable(self, cutoff: datetime) -> bool:
        """Read and dated before ``cutoff``; unread or undated never qualify."""
        if not self.read or self.created_at is None:
            return False
        return self.created_at < cutoff


@dataclass(slots=True)
class RecipientState:
    recipient: str
    status: RecipientStatus
    updated_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def armed(self) -> bool:
        return self.notified_at is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "recipient": self.recipient,
                "status": self.status.value,
                "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
            }
        )
        if payload["updated_at"] is None:
            del payload["updated_at"]
        if self.notified_at is not None:
            payload["notified_at"] = format_timestamp(self.notified_at)
        if self.last_read_at is not None:
            payload["last_read_at"] = _epoch_ms(self.last_read_at)
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "RecipientState":
        if not isinstance(payload, dict):
            raise ValueError("recipient record must be a JSON object")
        known = {"recipient", "status", "updated_at", "notified_at", "last_read_at"}
        return cls(
            recipient=_require_str(payload, "recipient"),
            status=RecipientStatus(_require_str(payload, "status")),
            updated_at=parse_timestamp(payload.get("updated_at")),
            notified_at=parse_timestamp(payload.get("notified_at")),
            last_read_at=_from_epoch_ms(payload.get("last_read_at")),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def is_stale(self, cutoff: datetime) -> bool:
        # Entries without updated_at behave like Go's zero time: always stale.
        return self.updated_at is None or self.updated_at < cutoff
