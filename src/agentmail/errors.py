"""Error taxonomy shared by the stores, the daemon, and the front-ends."""

from __future__ import annotations

from typing import Any, Optional


class AgentMailError(Exception):
    """Base class for every error raised by agentmail itself.

    ``error_type`` is a stable machine-readable tag; ``recoverable`` tells a
    caller whether retrying later (or skipping) is a reasonable response.
    """

    error_type = "AGENTMAIL_ERROR"
    recoverable = False

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class SessionUnavailableError(AgentMailError):
    """No active terminal session context (for example, not inside tmux)."""

    error_type = "SESSION_UNAVAILABLE"

    def __init__(self, message: str = "not running inside a tmux session", **kwargs: Any):
        super().__init__(message, **kwargs)


class RecipientNotFoundError(AgentMailError):
    """Uniform "recipient not found" for inactive, ignored, or self targets."""

    error_type = "RECIPIENT_NOT_FOUND"

    def __init__(self, recipient: str):
        super().__init__("recipient not found", data={"recipient": recipient})
        self.recipient = recipient


class LockTimeoutError(AgentMailError):
    error_type = "LOCK_TIMEOUT"
    recoverable = True

    def __init__(self, path: str, timeout: float):
        super().__init__(
            f"could not lock {path} within {timeout:.2f}s",
            data={"path": path, "timeout_seconds": timeout},
        )
        self.path = path
        self.timeout = timeout


class MalformedRecordError(AgentMailError):
    """A log line that cannot be decoded into a record."""

    error_type = "MALFORMED_RECORD"
    recoverable = True

    def __init__(self, path: str, line_number: int, reason: str):
        super().__init__(
            f"{path}:{line_number}: {reason}",
            data={"path": path, "line": line_number, "reason": reason},
        )
        self.path = path
        self.line_number = line_number


class SingletonConflictError(AgentMailError):
    """The daemon lease is held by a live process."""

    error_type = "SINGLETON_CONFLICT"

    def __init__(self, pid: int):
        super().__init__(f"mailman daemon already running (PID: {pid})", data={"pid": pid})
        self.pid = pid


class InvalidStatusError(AgentMailError, ValueError):
    error_type = "INVALID_STATUS"

    def __init__(self, status: str):
        super().__init__(
            f"Invalid status: {status}. Valid: ready, work, offline",
            data={"status": status},
        )
        self.status = status


class InvalidRecipientError(AgentMailError, ValueError):
    """Recipient name would escape the mailbox directory."""

    error_type = "INVALID_RECIPIENT"

    def __init__(self, recipient: str):
        super().__init__(
            f"invalid recipient name: {recipient!r}",
            data={"recipient": recipient},
        )
        self.recipient = recipient


class WindowCommandError(AgentMailError):
    """The terminal multiplexer rejected a command."""

    error_type = "WINDOW_COMMAND_FAILED"
    recoverable = True

    def __init__(self, command: str, detail: str = ""):
        super().__init__(
            f"{command} failed: {detail}" if detail else f"{command} failed",
            data={"command": command, "detail": detail},
        )
        self.command = command


class MessageIdExhaustedError(AgentMailError):
    """No unused message id was found within the attempt budget."""

    error_type = "MESSAGE_ID_EXHAUSTED"
    recoverable = True

    def __init__(self, recipient: str, attempts: int):
        super().__init__(
            f"could not generate a unique message id for {recipient} after {attempts} attempts",
            data={"recipient": recipient, "attempts": attempts},
        )
        self.recipient = recipient
