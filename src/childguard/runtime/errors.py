"""Runtime exception classes.

childguard runtime v0.1.0

The supervisor never raises these for expected failures; it returns them in
``RunResult.error``. The credential resolver raises the ``IdentityError``
family and the supervisor wraps them into ``ProcessSetupError``.
"""

from __future__ import annotations

__all__ = [
    "SupervisorError",
    "ProcessSetupError",
    "CommandStartError",
    "CommandTimeoutError",
    "WaitError",
    "CommandExitError",
    "IdentityError",
    "UserNotFoundError",
    "IdentityReportError",
    "IdentityLookupError",
    "InvalidIdentityError",
]


class SupervisorError(Exception):
    """Base class for every error produced by a supervised run."""
    pass


class ProcessSetupError(SupervisorError):
    """Pre-launch setup failed; no process was created."""
    pass


class CommandStartError(SupervisorError):
    """The child process could not be created.

    Attributes:
        command: Executable that failed to start
    """

    def __init__(self, command: str, reason: str = "") -> None:
        self.command = command
        self.reason = reason
        message = f"error occurred starting the command: {command}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class CommandTimeoutError(SupervisorError):
    """The child outlived its timeout and was killed.

    Attributes:
        command: Executable that timed out
        timeout: Configured timeout in seconds
    """

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"command execute timeout after {timeout}s: {command}")


class WaitError(SupervisorError):
    """Waiting for the child returned no terminal process state."""
    pass


class CommandExitError(SupervisorError):
    """The child exited normally with a non-zero exit code.

    Attributes:
        exit_code: The child's exit code
    """

    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"command exited with code {exit_code}")


class IdentityError(SupervisorError):
    """Base class for credential resolution failures."""
    pass


class UserNotFoundError(IdentityError):
    """The user name is unknown to the identity database."""

    def __init__(self, username: str) -> None:
        self.username = username
        super().__init__(f"user not found: {username}")


class IdentityReportError(IdentityError):
    """The identity report could not be parsed."""
    pass


class IdentityLookupError(IdentityError):
    """The identity lookup itself could not be performed."""
    pass


class InvalidIdentityError(IdentityError):
    """Resolved uid or gid is not a strictly positive integer."""

    def __init__(self, username: str, uid: int, gid: int) -> None:
        self.username = username
        self.uid = uid
        self.gid = gid
        super().__init__(f"invalid identity for {username}: uid={uid} gid={gid}")
