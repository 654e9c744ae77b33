"""Exception taxonomy shared by the transport, decoder, and connection layers."""

from __future__ import annotations


class AgentPipeError(Exception):
    """Base class for every error raised by agentpipe."""


class InvalidStateError(AgentPipeError):
    """Operation attempted while the lifecycle forbids it.

    Examples: writing after stdin was closed, sending before ``connect()``,
    starting a supervisor that already owns a running process.
    """


class CLIConnectionError(AgentPipeError):
    """The CLI could not be launched, or an OS-level pipe operation failed.

    Also raised when a control request comes back with an ``error`` subtype.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class DecodeError(AgentPipeError):
    """Malformed or oversize JSON framing on the CLI's stdout."""

    def __init__(self, message: str, *, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class RequestTimeoutError(AgentPipeError, TimeoutError):
    """A bounded wait (control response) expired."""

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class UnexpectedTerminationError(AgentPipeError):
    """The CLI process exited while the caller expected it to be running."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
