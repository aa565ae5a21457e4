"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        # Fall back to an empty repository (reads only os.environ; all .env lookups use defaults)
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class MailSettings:
    """Mailbox and registry storage settings."""

    # Empty means: enclosing git repository root, else the current directory
    root: str
    id_length: int


@dataclass(slots=True, frozen=True)
class CleanupSettings:
    """Defaults for the one-shot garbage collector."""

    stale_hours: float
    delivered_hours: float
    lock_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class MailmanSettings:
    """Notification daemon timing and behaviour.

    The daemon watches ``.agentmail/`` and ``.agentmail/mailboxes/`` for
    changes, debounces bursts of events into one evaluation pass, and keeps a
    slow fallback timer running as a safety net. When watching cannot be set
    up it polls instead.

    Example .env:
        MAILMAN_DEBOUNCE_MS=250
        MAILMAN_NOTIFY_DELAY_MS=1500
    """

    debounce_ms: int
    fallback_interval_seconds: float
    poll_interval_seconds: float
    notify_delay_ms: int
    notification_text: str
    startup_stale_hours: float
    stateless_enabled: bool
    stateless_interval_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    mail: MailSettings
    cleanup: CleanupSettings
    mailman: MailmanSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    mail_settings = MailSettings(
        root=_decouple_config("AGENTMAIL_ROOT", default="").strip(),
        id_length=max(4, _int(_decouple_config("AGENTMAIL_ID_LENGTH", default="8"), default=8)),
    )

    cleanup_settings = CleanupSettings(
        stale_hours=_float(_decouple_config("CLEANUP_STALE_HOURS", default="48"), default=48.0),
        delivered_hours=_float(_decouple_config("CLEANUP_DELIVERED_HOURS", default="2"), default=2.0),
        lock_timeout_seconds=_float(_decouple_config("CLEANUP_LOCK_TIMEOUT_SECONDS", default="1.0"), default=1.0),
    )

    mailman_settings = MailmanSettings(
        debounce_ms=_int(_decouple_config("MAILMAN_DEBOUNCE_MS", default="500"), default=500),
        fallback_interval_seconds=_float(
            _decouple_config("MAILMAN_FALLBACK_INTERVAL_SECONDS", default="60"), default=60.0
        ),
        poll_interval_seconds=_float(_decouple_config("MAILMAN_POLL_INTERVAL_SECONDS", default="2"), default=2.0),
        notify_delay_ms=_int(_decouple_config("MAILMAN_NOTIFY_DELAY_MS", default="1000"), default=1000),
        notification_text=_decouple_config("MAILMAN_NOTIFICATION_TEXT", default="Check your agentmail"),
        startup_stale_hours=_float(_decouple_config("MAILMAN_STARTUP_STALE_HOURS", default="1"), default=1.0),
        stateless_enabled=_bool(_decouple_config("MAILMAN_STATELESS_ENABLED", default="true"), default=True),
        stateless_interval_seconds=_float(
            _decouple_config("MAILMAN_STATELESS_INTERVAL_SECONDS", default="60"), default=60.0
        ),
    )

    return Settings(
        environment=environment,
        mail=mail_settings,
        cleanup=cleanup_settings,
        mailman=mailman_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
