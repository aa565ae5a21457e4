from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agentmail.config import clear_settings_cache
from agentmail.layout import StateLayout
from agentmail.mailbox import MailboxStore
from agentmail.registry import RecipientRegistry
from agentmail.windows import StaticWindows


class FakeClock:
    """Settable UTC clock shared by the stores under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point agentmail at a throwaway repository and reset cached settings."""
    root: Path = tmp_path / "repo"
    root.mkdir()
    (root / ".git").mkdir()
    monkeypatch.setenv("AGENTMAIL_ROOT", str(root))
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("MAILMAN_NOTIFY_DELAY_MS", "0")
    monkeypatch.chdir(root)
    clear_settings_cache()
    try:
        yield root
    finally:
        clear_settings_cache()


@pytest.fixture
def layout(isolated_env) -> StateLayout:
    state = StateLayout(isolated_env.resolve())
    state.ensure()
    return state


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailbox(layout, clock) -> MailboxStore:
    return MailboxStore(layout, clock=clock)


@pytest.fixture
def registry(layout, clock) -> RecipientRegistry:
    return RecipientRegistry(layout, clock=clock)


@pytest.fixture
def windows() -> StaticWindows:
    return StaticWindows.of(["alice", "bob", "carol"], current="alice")
