"""Runtime type definitions.

childguard runtime v0.1.0

Defines the launch description and the resolved credentials, plus run results.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, Union

if TYPE_CHECKING:
    from .errors import SupervisorError

__all__ = [
    "SENTINEL_EXIT_CODE",
    "Credentials",
    "OutputSink",
    "ProcessSpec",
    "RunResult",
    "RunState",
    "RunStatus",
]

# Exit code reported when the child produced no real exit code
SENTINEL_EXIT_CODE = 1


class _Writable(Protocol):
    def write(self, data: bytes, /) -> Any: ...


# Callable receiving raw chunks, or a binary file-like object
OutputSink = Union[Callable[[bytes], Any], _Writable]


class RunStatus(str, Enum):
    """Classification of a finished run."""

    SUCCESS = "success"
    FAIL = "fail"
    TIMEOUT = "timeout"


class RunState(str, Enum):
    """Lifecycle state of the run owned by a supervisor.

    unstarted -> starting -> running -> {exited, timed_out, kill_requested}
    -> terminal. A setup or start failure goes straight from starting to
    terminal.
    """

    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    KILL_REQUESTED = "kill_requested"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ProcessSpec:
    """Description of one supervised run.

    Attributes:
        command: Executable path or name looked up on PATH
        timeout: Wall-clock timeout in seconds, must be positive
        args: Arguments passed after the command
        cwd: Working directory (None = caller's cwd)
        env: Environment variables (None = inherit parent)
        user: Run as this user (None = no impersonation)
        home_dir: Value forced into HOME for the child
    """

    command: str
    timeout: float
    args: Sequence[str] = field(default_factory=tuple)
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    user: str | None = None
    home_dir: str | None = None

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError("command is required")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        # Freeze args so the spec cannot change under a running supervisor
        object.__setattr__(self, "args", tuple(self.args))
        if isinstance(self.cwd, str):
            object.__setattr__(self, "cwd", Path(self.cwd))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class Credentials:
    """Numeric identity a child is launched under.

    Attributes:
        uid: User id
        gid: Primary group id
        groups: Supplementary group ids, in lookup order
    """

    uid: int
    gid: int
    groups: tuple[int, ...] = ()


@dataclass(frozen=True)
class RunResult:
    """Outcome of one supervised run.

    Attributes:
        exit_code: Child exit code, or SENTINEL_EXIT_CODE when unavailable
        status: Success, fail or timeout
        error: Diagnostic error (None on success)
        pid: Child pid (None when no process was created)
        duration: Seconds from launch attempt to result
    """

    exit_code: int
    status: RunStatus
    error: SupervisorError | None = None
    pid: int | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """Whether the child ran to completion and exited with code 0."""
        return self.status is RunStatus.SUCCESS and self.exit_code == 0
