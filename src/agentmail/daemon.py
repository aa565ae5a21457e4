"""The ``mailman`` notification daemon.

Lifecycle: ``Starting -> {Watching | Polling} -> ShuttingDown``.

Starting
    Take the singleton lease in ``.agentmail/mailman.pid`` and sweep
    registry entries that have not been updated for a while.
Watching
    A watchdog observer reports changes to the registry file and to mailbox
    logs. Events are debounced into a single evaluation pass. A slow fallback
    timer also requests passes in case an event was missed.
Polling
    Used when the observer cannot be started. Passes run on a fixed interval.
ShuttingDown
    SIGTERM or SIGINT stops the loop, abandons the pass in flight, stops the
    observer and releases the lease.

Passes never overlap: a single consumer task runs them one at a time.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import psutil
import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import MailmanSettings
from .errors import AgentMailError, SingletonConflictError
from .jsonl import dumps
from .layout import MAILBOX_SUFFIX, REGISTRY_FILE_NAME, StateLayout
from .locking import exclusive_lock, pid_alive
from .mailbox import MailboxStore
from .models import format_timestamp, parse_timestamp, utcnow
from .registry import RecipientRegistry
from .windows import WindowCollaborator

_logger = structlog.get_logger("agentmail.mailman")

DAEMON_CHILD_ENV = "AGENTMAIL_DAEMON_CHILD"


def is_daemon_child() -> bool:
    return os.environ.get(DAEMON_CHILD_ENV) == "1"


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Lease:
    pid: int
    acquired_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"pid": self.pid}
        if self.acquired_at is not None:
            payload["acquired_at"] = format_timestamp(self.acquired_at)
        return payload

    @classmethod
    def parse(cls, text: str) -> "Lease":
        """Parse a lease file; a bare integer pid is accepted as well."""
        text = text.strip()
        if text.isdigit():
            return cls(pid=int(text))
        payload = json.loads(text)
        if not isinstance(payload, dict) or not isinstance(payload.get("pid"), int):
            raise ValueError("lease must hold an integer pid")
        return cls(pid=payload["pid"], acquired_at=parse_timestamp(payload.get("acquired_at")))

    @property
    def alive(self) -> bool:
        return pid_alive(self.pid)


class LeaseState(str, Enum):
    NONE = "none"
    RUNNING = "running"
    STALE = "stale"


class LeaseFile:
    """Singleton lease guarding the daemon.

    Reads and writes of ``mailman.pid`` happen under the ``mailman.lock``
    sidecar so two daemons starting together cannot both win.
    """

    def __init__(self, layout: StateLayout, *, pid: Optional[int] = None) -> None:
        self.layout = layout
        self.pid = pid if pid is not None else os.getpid()
        self.discarded: Optional[Lease] = None

    @property
    def path(self) -> Path:
        return self.layout.lease_path

    def read(self) -> Optional[Lease]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Lease.parse(text)
        except (ValueError, json.JSONDecodeError):
            _logger.warning("mailman.lease_unreadable", path=str(self.path))
            return Lease(pid=0)

    def state(self) -> tuple[LeaseState, Optional[Lease]]:
        lease = self.read()
        if lease is None:
            return LeaseState.NONE, None
        if lease.alive:
            return LeaseState.RUNNING, lease
        return LeaseState.STALE, lease

    def acquire(self) -> Lease:
        self.layout.ensure()
        with exclusive_lock(self.layout.lease_lock_path):
            current = self.read()
            if current is not None and current.pid != self.pid:
                if current.alive:
                    raise SingletonConflictError(current.pid)
                _logger.warning("mailman.stale_lease_discarded", pid=current.pid)
                self.discarded = current
            lease = Lease(pid=self.pid, acquired_at=utcnow())
            tmp = self.path.with_name(f".{self.path.name}.{self.pid}.tmp")
            tmp.write_text(dumps(lease.to_dict()) + "\n", encoding="utf-8")
            os.replace(tmp, self.path)
        return lease

    def release(self) -> bool:
        """Delete the lease only when it still names this process."""
        if not self.path.exists():
            return False
        with exclusive_lock(self.layout.lease_lock_path):
            current = self.read()
            if current is None or current.pid != self.pid:
                return False
            self.path.unlink(missing_ok=True)
        return True

    def discard_stale(self) -> Optional[Lease]:
        with exclusive_lock(self.layout.lease_lock_path):
            current = self.read()
            if current is None or current.alive:
                return None
            self.path.unlink(missing_ok=True)
        return current


# ---------------------------------------------------------------------------
# Event sources
# ---------------------------------------------------------------------------


class MonitoringMode(str, Enum):
    WATCHING = "watching"
    POLLING = "polling"


class Debouncer:
    """Trailing-edge debounce on the event loop.

    Each ``trigger`` restarts the timer; ``callback`` runs once the timer
    expires without a new trigger.
    """

    def __init__(self, delay: float, callback: Callable[[], None], loop: asyncio.AbstractEventLoop) -> None:
        self.delay = delay
        self._callback = callback
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._callback()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class StateChangeHandler(FileSystemEventHandler):
    """Forward relevant watchdog events to the event loop.

    Runs on the observer thread; the only thing it does is hand the event to
    the loop with ``call_soon_threadsafe``.
    """

    def __init__(self, layout: StateLayout, loop: asyncio.AbstractEventLoop, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.layout = layout
        self._loop = loop
        self._on_change = on_change

    def is_relevant(self, event: FileSystemEvent) -> bool:
        if event.is_directory or event.event_type not in {"created", "modified", "moved", "deleted", "closed"}:
            return False
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        return any(self._is_state_file(Path(os.fsdecode(path))) for path in paths)

    def _is_state_file(self, path: Path) -> bool:
        if path.name.startswith("."):
            return False
        if path.name == REGISTRY_FILE_NAME and path.parent == self.layout.state_dir:
            return True
        return path.suffix == MAILBOX_SUFFIX and path.parent == self.layout.mailbox_dir

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self.is_relevant(event):
            self._loop.call_soon_threadsafe(self._on_change)


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


class Mailman:
    def __init__(
        self,
        layout: StateLayout,
        registry: RecipientRegistry,
        mailbox: MailboxStore,
        windows: WindowCollaborator,
        settings: MailmanSettings,
        *,
        lease: Optional[LeaseFile] = None,
        clock: Callable[[], datetime] = utcnow,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.layout = layout
        self.registry = registry
        self.mailbox = mailbox
        self.windows = windows
        self.settings = settings
        self.lease = lease or LeaseFile(layout)
        self._clock = clock
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._debouncer: Optional[Debouncer] = None
        self._tasks: list[asyncio.Task[None]] = []
        self._wake: Optional[asyncio.Event] = None
        self._stop: Optional[asyncio.Event] = None
        self._stateless_seen: dict[str, float] = {}
        self.mode: Optional[MonitoringMode] = None
        self.passes = 0

    # -- delivery -----------------------------------------------------------

    async def deliver(self, name: str) -> None:
        """Inject the notification text, wait, then press Enter."""
        await asyncio.to_thread(self.windows.inject_text, name, self.settings.notification_text)
        await asyncio.sleep(self.settings.notify_delay_ms / 1000.0)
        await asyncio.to_thread(self.windows.inject_activation, name)

    async def _active_names(self) -> Optional[set[str]]:
        try:
            return set(await asyncio.to_thread(self.windows.list_active_names))
        except AgentMailError as exc:
            # Without a window list every ready recipient is tried and failures are per recipient.
            _logger.warning("mailman.active_names_unavailable", error=str(exc))
            return None

    async def evaluate(self) -> list[str]:
        """Run one evaluation pass and return the names that were notified."""
        active = await self._active_names()
        notifiable = await asyncio.to_thread(self.registry.list_notifiable, active, self.mailbox)
        notified: list[str] = []
        for name in notifiable:
            try:
                await self.deliver(name)
            except (AgentMailError, OSError) as exc:
                _logger.warning("mailman.delivery_failed", recipient=name, error=str(exc))
                continue
            await asyncio.to_thread(self.registry.mark_notified, name, self._clock())
            _logger.info("mailman.notified", recipient=name)
            notified.append(name)
        if self.settings.stateless_enabled:
            notified.extend(await self._notify_stateless(active))
        self.passes += 1
        _logger.debug("mailman.pass_complete", notified=len(notified), passes=self.passes)
        return notified

    async def _notify_stateless(self, active: Optional[set[str]]) -> list[str]:
        """Notify mailbox owners that never registered a status.

        They have no ``notified_at`` to arm, so an in-memory timestamp limits
        them to one notification per interval.
        """
        registered = {state.recipient for state in await asyncio.to_thread(self.registry.read_all)}
        names = await asyncio.to_thread(self.mailbox.list_recipients)
        for forgotten in set(self._stateless_seen) - set(names):
            del self._stateless_seen[forgotten]
        interval = self.settings.stateless_interval_seconds
        notified: list[str] = []
        for name in names:
            if name in registered:
                continue
            if not await asyncio.to_thread(self.mailbox.has_unread, name):
                continue
            last = self._stateless_seen.get(name)
            now = time.monotonic()
            if last is not None and now - last < interval:
                continue
            self._stateless_seen[name] = now
            if active is not None and name not in active:
                continue
            try:
                await self.deliver(name)
            except (AgentMailError, OSError) as exc:
                _logger.warning("mailman.delivery_failed", recipient=name, stateless=True, error=str(exc))
                continue
            _logger.info("mailman.notified", recipient=name, stateless=True)
            notified.append(name)
        return notified

    # -- scheduling ---------------------------------------------------------

    def request_pass(self) -> None:
        if self._wake is not None:
            self._wake.set()

    def notify_change(self) -> None:
        """Called for every relevant filesystem event."""
        if self._debouncer is not None:
            self._debouncer.trigger()
        else:
            self.request_pass()

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def _tick(self, interval: float, reason: str) -> None:
        while True:
            await asyncio.sleep(interval)
            _logger.debug("mailman.timer", reason=reason)
            self.request_pass()

    def _start_watching(self, loop: asyncio.AbstractEventLoop) -> bool:
        self.layout.ensure()
        handler = StateChangeHandler(self.layout, loop, self.notify_change)
        try:
            observer = self._observer_factory()
            observer.schedule(handler, str(self.layout.state_dir), recursive=False)
            observer.schedule(handler, str(self.layout.mailbox_dir), recursive=False)
            observer.start()
        except (OSError, RuntimeError) as exc:
            _logger.warning("mailman.watch_unavailable", error=str(exc), fallback="polling")
            return False
        self._observer = observer
        self._debouncer = Debouncer(self.settings.debounce_ms / 1000.0, self.request_pass, loop)
        return True

    def _stop_watching(self) -> None:
        if self._debouncer is not None:
            self._debouncer.cancel()
            self._debouncer = None
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            observer.join(timeout=5)

    async def _serve(self) -> None:
        assert self._wake is not None and self._stop is not None
        stopping = asyncio.ensure_future(self._stop.wait())
        try:
            while not self._stop.is_set():
                waking = asyncio.ensure_future(self._wake.wait())
                await asyncio.wait({waking, stopping}, return_when=asyncio.FIRST_COMPLETED)
                if self._stop.is_set():
                    waking.cancel()
                    break
                self._wake.clear()
                current = asyncio.ensure_future(self.evaluate())
                await asyncio.wait({current, stopping}, return_when=asyncio.FIRST_COMPLETED)
                if not current.done():
                    current.cancel()
                    _logger.info("mailman.pass_abandoned")
                    break
                exc = current.exception()
                if exc is not None:
                    _logger.error("mailman.pass_failed", error=str(exc), error_type=type(exc).__name__)
        finally:
            stopping.cancel()

    # -- lifecycle ----------------------------------------------------------

    def startup_sweep(self) -> int:
        outcome = self.registry.prune_stale(timedelta(hours=self.settings.startup_stale_hours))
        if outcome.count:
            _logger.info("mailman.startup_sweep", removed=outcome.removed)
        return outcome.count

    async def run(self, *, install_signal_handlers: bool = True) -> None:
        """Serve until stopped.

        Raises ``SingletonConflictError`` when another live daemon holds the
        lease.
        """
        loop = asyncio.get_running_loop()
        self.lease.acquire()
        atexit.register(self.lease.release)
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        installed: list[int] = []
        try:
            if install_signal_handlers:
                for signum in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(signum, self.stop)
                    installed.append(signum)
            try:
                await asyncio.to_thread(self.startup_sweep)
            except AgentMailError as exc:
                _logger.warning("mailman.startup_sweep_failed", error=str(exc))
            if self._start_watching(loop):
                self.mode = MonitoringMode.WATCHING
            else:
                self.mode = MonitoringMode.POLLING
                self._tasks.append(asyncio.ensure_future(self._tick(self.settings.poll_interval_seconds, "poll")))
            # The fallback timer runs in both modes.
            self._tasks.append(
                asyncio.ensure_future(self._tick(self.settings.fallback_interval_seconds, "fallback"))
            )
            _logger.info("mailman.started", pid=self.lease.pid, mode=self.mode.value, root=str(self.layout.root))
            self.request_pass()
            await self._serve()
        finally:
            for task in self._tasks:
                task.cancel()
            self._tasks.clear()
            self._stop_watching()
            for signum in installed:
                loop.remove_signal_handler(signum)
            self.lease.release()
            atexit.unregister(self.lease.release)
            _logger.info("mailman.stopped", pid=self.lease.pid)


# ---------------------------------------------------------------------------
# Background control
# ---------------------------------------------------------------------------


def spawn_background(root: Path, *, argv: Optional[list[str]] = None) -> int:
    """Start a detached daemon process for ``root`` and return its pid."""
    command = argv or [sys.executable, "-m", "agentmail", "mailman", "start"]
    env = dict(os.environ)
    env[DAEMON_CHILD_ENV] = "1"
    env.setdefault("AGENTMAIL_ROOT", str(root))
    process = subprocess.Popen(
        command,
        cwd=str(root),
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return process.pid


def stop_daemon(lease: LeaseFile, *, timeout: float = 5.0) -> Optional[int]:
    """Send SIGTERM to the lease holder and wait for it to exit.

    Returns the pid that was signalled, or None when no live daemon holds the
    lease.
    """
    state, current = lease.state()
    if state is not LeaseState.RUNNING or current is None:
        return None
    try:
        process = psutil.Process(current.pid)
        process.terminate()
        process.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        pass
    except psutil.TimeoutExpired:
        _logger.warning("mailman.stop_timeout", pid=current.pid, timeout=timeout)
    return current.pid
