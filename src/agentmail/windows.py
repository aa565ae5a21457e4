"""Window collaborator: the terminal session that agents run in.

``TmuxWindows`` drives the real ``tmux`` binary; ``StaticWindows`` is an
in-memory stand-in used by tests and dry runs.
"""

from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from .errors import SessionUnavailableError, WindowCommandError

_PANE_ID_RE = re.compile(r"^%\d+$")


@runtime_checkable
class WindowCollaborator(Protocol):
    def list_active_names(self) -> list[str]: ...

    def current_name(self) -> str: ...

    def inject_text(self, name: str, text: str) -> None: ...

    def inject_activation(self, name: str) -> None: ...


class TmuxWindows:
    """Window names of the tmux session this process runs in."""

    def __init__(self, *, binary: str = "tmux", timeout: float = 5.0, env: Optional[Mapping[str, str]] = None) -> None:
        self.binary = binary
        self.timeout = timeout
        self._env = env if env is not None else os.environ

    def in_session(self) -> bool:
        return bool(self._env.get("TMUX"))

    def _require_session(self) -> None:
        if not self.in_session():
            raise SessionUnavailableError()

    def _run(self, *args: str) -> str:
        self._require_session()
        command = [self.binary, *args]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout, check=False)
        except FileNotFoundError:
            raise SessionUnavailableError(f"{self.binary} not found in PATH") from None
        except subprocess.TimeoutExpired:
            raise WindowCommandError(" ".join(args[:1]), "timed out") from None
        if result.returncode != 0:
            raise WindowCommandError(" ".join(args[:1]), result.stderr.strip())
        return result.stdout

    def list_active_names(self) -> list[str]:
        output = self._run("list-windows", "-F", "#{window_name}")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def current_name(self) -> str:
        """Name of the window owning this process's pane.

        Uses ``$TMUX_PANE`` rather than the focused window so a background
        pane resolves to itself.
        """
        self._require_session()
        pane = self._env.get("TMUX_PANE", "")
        if not _PANE_ID_RE.match(pane):
            raise SessionUnavailableError("TMUX_PANE is missing or invalid")
        name = self._run("display-message", "-t", pane, "-p", "#W").strip()
        if not name:
            raise WindowCommandError("display-message", "empty window name")
        return name

    def inject_text(self, name: str, text: str) -> None:
        # -l sends the text literally instead of interpreting key names
        self._run("send-keys", "-t", name, "-l", text)

    def inject_activation(self, name: str) -> None:
        self._run("send-keys", "-t", name, "Enter")


@dataclass
class StaticWindows:
    """Fixed set of window names that records every injection."""

    names: list[str] = field(default_factory=list)
    current: Optional[str] = None
    session_available: bool = True
    failing: set[str] = field(default_factory=set)
    injections: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def of(cls, names: Iterable[str], current: Optional[str] = None) -> "StaticWindows":
        return cls(names=list(names), current=current)

    def _require_session(self) -> None:
        if not self.session_available:
            raise SessionUnavailableError()

    def list_active_names(self) -> list[str]:
        self._require_session()
        return list(self.names)

    def current_name(self) -> str:
        self._require_session()
        if self.current is None:
            raise SessionUnavailableError("no current window")
        return self.current

    def inject_text(self, name: str, text: str) -> None:
        self._require_session()
        if name in self.failing:
            raise WindowCommandError("send-keys", f"can't find window: {name}")
        self.injections.append((name, text))

    def inject_activation(self, name: str) -> None:
        self._require_session()
        if name in self.failing:
            raise WindowCommandError("send-keys", f"can't find window: {name}")
        self.injections.append((name, "Enter"))
