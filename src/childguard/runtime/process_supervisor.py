"""Process supervisor with timeout enforcement and process-group cleanup.

childguard runtime v0.1.0

This module provides:
- One supervised child per run, isolated in its own process group
- Optional impersonation (uid/gid/supplementary groups applied at exec time)
- A wait task raced against the run's timeout
- Process-group kill on timeout, cancellation and caller cancellation
- Stdout/stderr forwarding to caller-provided sinks

Key design points:
- POSIX: start_new_session=True makes the child its own group leader, so
  os.killpg(pid, ...) reaches every descendant that stayed in the group
- Windows: CREATE_NEW_PROCESS_GROUP; kills fall back to the leader only
- Expected failures are returned in RunResult, never raised
- Cleanup is shielded from cancellation of the calling task
"""

from __future__ import annotations

import asyncio
import functools
import io
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

from ..config import get_config
from .credentials import CredentialResolver, get_lookup
from .errors import (
    CommandExitError,
    CommandStartError,
    CommandTimeoutError,
    ProcessSetupError,
    SupervisorError,
    WaitError,
)
from .types import (
    SENTINEL_EXIT_CODE,
    Credentials,
    OutputSink,
    ProcessSpec,
    RunResult,
    RunState,
    RunStatus,
)

__all__ = [
    "IS_WINDOWS",
    "KILL_SIGNAL",
    "ProcessSupervisor",
]

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# SIGKILL does not exist on Windows
KILL_SIGNAL: int = getattr(signal, "SIGKILL", signal.SIGTERM)

# Read size for output forwarding
CHUNK_SIZE = 4096

# StreamReader buffer limit, same as asyncio.create_subprocess_exec
STREAM_LIMIT = 2**16


@dataclass
class _WaitOutcome:
    """What the wait task observed.

    returncode is None when the wait produced no terminal process state.
    """

    returncode: int | None
    error: Exception | None = None


class _ExitWatchProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also resolves a future when the child exits.

    Process.wait() returns only after every pipe is closed, and a descendant
    holding stdout open keeps it blocked after the child itself is gone.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[None] = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


def _as_callback(sink: OutputSink) -> Callable[[bytes], Any]:
    """Turn a sink (callable or object with write()) into a callable."""
    if isinstance(sink, io.TextIOBase):
        raise TypeError(f"Output sink must accept bytes, got a text stream: {sink!r}")
    write = getattr(sink, "write", None)
    if callable(write):
        return write
    if callable(sink):
        return sink
    raise TypeError(f"Output sink must be callable or have write(): {sink!r}")


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


class ProcessSupervisor:
    """Run one external process at a time under a timeout.

    Each run starts the child in a new process group, races its exit
    against the timeout and returns a classified RunResult. On timeout the
    whole group is killed. An instance supervises a single run at a time;
    overlapping run() calls raise RuntimeError.

    Example:
        supervisor = ProcessSupervisor()
        spec = ProcessSpec(command="echo", args=["hello"], timeout=5)

        out = bytearray()
        result = await supervisor.run(spec, stdout=out.extend)
        # RunResult(exit_code=0, status=RunStatus.SUCCESS, ...)
    """

    def __init__(
        self,
        *,
        resolver: CredentialResolver | None = None,
        flush_grace: float | None = None,
        reap_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            resolver: Credential resolver for impersonated runs
                (default: built from CG_IDENTITY_BACKEND)
            flush_grace: Seconds to let output drain after a natural exit
            reap_timeout: Seconds to wait for a killed child to be reaped
            logger: Diagnostic sink (default: this module's logger)
        """
        config = get_config()
        self.resolver = (
            resolver
            if resolver is not None
            else CredentialResolver(get_lookup(config.identity_backend))
        )
        self.flush_grace = flush_grace if flush_grace is not None else config.flush_grace
        self.reap_timeout = reap_timeout if reap_timeout is not None else config.reap_timeout
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self._process: asyncio.subprocess.Process | None = None
        self._state = RunState.UNSTARTED
        self._transitions: list[RunState] = []
        self._in_run = False

    @property
    def state(self) -> RunState:
        """Current lifecycle state."""
        return self._state

    @property
    def transitions(self) -> tuple[RunState, ...]:
        """States entered by the current or most recent run."""
        return tuple(self._transitions)

    @property
    def pid(self) -> int | None:
        """Pid of the live child, if any."""
        return self._process.pid if self._process is not None else None

    def _enter(self, state: RunState) -> None:
        self._state = state
        self._transitions.append(state)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        spec: ProcessSpec,
        stdout: OutputSink | None = None,
        stderr: OutputSink | None = None,
    ) -> RunResult:
        """Run ``spec`` to completion, timeout or failure.

        Args:
            spec: What to run
            stdout: Sink for the child's stdout (None = discard)
            stderr: Sink for the child's stderr (None = discard)

        Returns:
            RunResult describing exactly one of: natural exit, timeout kill,
            setup/start failure

        Raises:
            RuntimeError: If this supervisor is already running a process
        """
        if self._in_run:
            raise RuntimeError("ProcessSupervisor is already running a process")

        self._in_run = True
        self._transitions = []
        self._enter(RunState.STARTING)
        started = time.monotonic()

        try:
            try:
                kwargs, credentials = self._build_subprocess_kwargs(spec, stdout, stderr)
                stdout_cb = _as_callback(stdout) if stdout is not None else None
                stderr_cb = _as_callback(stderr) if stderr is not None else None
            except (SupervisorError, TypeError) as e:
                self.logger.error(f"Setup for {spec.command} failed: {e}")
                error = e if isinstance(e, ProcessSetupError) else ProcessSetupError(str(e))
                if error is not e:
                    error.__cause__ = e
                return self._result(SENTINEL_EXIT_CODE, RunStatus.FAIL, error, None, started)

            try:
                process, exited = await self._spawn(spec, kwargs)
            except (OSError, subprocess.SubprocessError, ValueError, TypeError) as e:
                self.logger.error(f"start command fail: {spec.command}: {e}")
                error = CommandStartError(spec.command, str(e))
                error.__cause__ = e
                return self._result(SENTINEL_EXIT_CODE, RunStatus.FAIL, error, None, started)

            self._process = process
            self._enter(RunState.RUNNING)
            self.logger.debug(
                f"Started subprocess pid={process.pid} "
                f"argv={spec.command} cwd={spec.cwd or Path.cwd()}"
            )
            return await self._supervise(
                process, exited, spec, stdout_cb, stderr_cb, credentials, started
            )
        finally:
            self._process = None
            self._in_run = False
            self._enter(RunState.TERMINAL)

    def run_sync(
        self,
        spec: ProcessSpec,
        stdout: OutputSink | None = None,
        stderr: OutputSink | None = None,
    ) -> RunResult:
        """Blocking variant of run() for callers without an event loop."""
        return anyio.run(functools.partial(self.run, spec, stdout, stderr))

    async def run_simple(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float = 60.0,
        cwd: Path | None = None,
    ) -> SupervisorError | None:
        """Run a command discarding its output.

        Returns:
            None if the command exited with code 0, CommandExitError for a
            non-zero exit, otherwise the run's error
        """
        result = await self.run(ProcessSpec(command=command, args=args, timeout=timeout, cwd=cwd))
        if result.status is RunStatus.SUCCESS and result.exit_code != 0:
            return CommandExitError(result.exit_code)
        return result.error

    def cancel(self, sig: int = signal.SIGTERM) -> None:
        """Signal the running child's process group.

        Safe to call at any time, from any thread. Does nothing when no
        child is running or it has already exited. The run then completes
        through its normal exit path, or the timeout path if the child
        ignores ``sig``.
        """
        process = self._process
        if process is None or process.returncode is not None:
            self.logger.debug("Cancel requested but no process is running")
            return

        self.logger.info(f"Cancel requested, sending {_signal_name(sig)} to pid={process.pid}")
        if self._signal_group(process, sig):
            self._enter(RunState.KILL_REQUESTED)

    def release_credentials(self, user: str, credentials: Credentials) -> None:
        """Tear down per-run session state of an impersonated user.

        Called after every impersonated run whatever its outcome. Reserved
        extension point; the base implementation does nothing.
        """

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def _build_subprocess_kwargs(
        self,
        spec: ProcessSpec,
        stdout: OutputSink | None = None,
        stderr: OutputSink | None = None,
    ) -> tuple[dict[str, Any], Credentials | None]:
        """Build kwargs for loop.subprocess_exec.

        Returns:
            (kwargs, credentials), credentials is None without impersonation

        Raises:
            SupervisorError: If credentials cannot be resolved or
                impersonation is unsupported
        """
        pipe, devnull = asyncio.subprocess.PIPE, asyncio.subprocess.DEVNULL
        kwargs: dict[str, Any] = {
            # Never hand our own stdin to the child
            "stdin": devnull,
            "stdout": pipe if stdout is not None else devnull,
            "stderr": pipe if stderr is not None else devnull,
            "env": self._build_env(spec),
        }
        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        credentials = None
        if spec.user:
            if IS_WINDOWS:
                raise ProcessSetupError("Running as another user is not supported on Windows")
            credentials = self.resolver.resolve(spec.user)
            kwargs["user"] = credentials.uid
            kwargs["group"] = credentials.gid
            kwargs["extra_groups"] = list(credentials.groups)

        return kwargs, credentials

    async def _spawn(
        self, spec: ProcessSpec, kwargs: dict[str, Any]
    ) -> tuple[asyncio.subprocess.Process, asyncio.Future[None]]:
        """Start the child; also return a future resolved when it exits."""
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.subprocess_exec(
            lambda: _ExitWatchProtocol(STREAM_LIMIT, loop), *spec.argv, **kwargs
        )
        return asyncio.subprocess.Process(transport, protocol, loop), protocol.exited

    @staticmethod
    def _build_env(spec: ProcessSpec) -> dict[str, str]:
        # An empty mapping inherits, same as None
        env = dict(spec.env) if spec.env else dict(os.environ)
        if spec.home_dir:
            env["HOME"] = spec.home_dir
        return env

    # ------------------------------------------------------------------
    # Supervised wait
    # ------------------------------------------------------------------

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        exited: asyncio.Future[None],
        spec: ProcessSpec,
        stdout_cb: Callable[[bytes], Any] | None,
        stderr_cb: Callable[[bytes], Any] | None,
        credentials: Credentials | None,
        started: float,
    ) -> RunResult:
        pumps: list[asyncio.Task[None]] = []
        if stdout_cb is not None and process.stdout is not None:
            pumps.append(asyncio.create_task(self._pump(process.stdout, stdout_cb, "stdout", process.pid)))
        if stderr_cb is not None and process.stderr is not None:
            pumps.append(asyncio.create_task(self._pump(process.stderr, stderr_cb, "stderr", process.pid)))
        wait_task = asyncio.create_task(self._wait_for_exit(process, exited))

        try:
            done, _ = await asyncio.wait({wait_task}, timeout=spec.timeout)
            if wait_task in done:
                return await self._on_exit(process, spec, wait_task.result(), pumps, started)
            return await self._on_timeout(process, spec, wait_task, pumps, started)
        finally:
            try:
                await self._safe_cleanup(process, wait_task, pumps)
            finally:
                if credentials is not None and spec.user:
                    self._release_after_run(spec.user, credentials)

    def _release_after_run(self, user: str, credentials: Credentials) -> None:
        try:
            self.release_credentials(user, credentials)
        except Exception as e:
            self.logger.warning(f"Failed to release credentials of {user}: {e}")

    async def _wait_for_exit(
        self, process: asyncio.subprocess.Process, exited: asyncio.Future[None]
    ) -> _WaitOutcome:
        """Wait for the child itself, not its pipes.

        Never raises so the task result is always retrievable.
        """
        try:
            await exited
        except Exception as e:
            return _WaitOutcome(process.returncode, e)
        return _WaitOutcome(process.returncode)

    async def _on_exit(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        outcome: _WaitOutcome,
        pumps: list[asyncio.Task[None]],
        started: float,
    ) -> RunResult:
        if self._state is not RunState.KILL_REQUESTED:
            self._enter(RunState.EXITED)
        self.logger.info(f"Command: {spec.command} execute completed pid={process.pid}")

        if outcome.returncode is None:
            self.logger.error(f"Wait for pid={process.pid} returned no process state: {outcome.error}")
            error = WaitError(f"no process state for pid={process.pid}: {outcome.error}")
            error.__cause__ = outcome.error
            return self._result(SENTINEL_EXIT_CODE, RunStatus.FAIL, error, process.pid, started)

        if outcome.error is not None:
            self.logger.warning(
                f"Wait for pid={process.pid} returned error with valid process state: {outcome.error}"
            )

        await self._flush_output(pumps, process.pid)
        self.logger.debug(f"Subprocess completed pid={process.pid} returncode={outcome.returncode}")
        return self._result(outcome.returncode, RunStatus.SUCCESS, None, process.pid, started)

    async def _on_timeout(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        wait_task: asyncio.Task[_WaitOutcome],
        pumps: list[asyncio.Task[None]],
        started: float,
    ) -> RunResult:
        self._enter(RunState.TIMED_OUT)
        self.logger.warning(
            f"command: {spec.command} execute timeout after {spec.timeout}s pid={process.pid}"
        )

        self._signal_group(process, KILL_SIGNAL)
        done, _ = await asyncio.wait({wait_task}, timeout=self.reap_timeout)
        if not done:
            self.logger.warning(f"Subprocess did not exit after kill pid={process.pid}")
        await self._flush_output(pumps, process.pid)

        error = CommandTimeoutError(spec.command, spec.timeout)
        return self._result(SENTINEL_EXIT_CODE, RunStatus.TIMEOUT, error, process.pid, started)

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        sink: Callable[[bytes], Any],
        name: str,
        pid: int,
    ) -> None:
        """Copy a child stream into its sink until EOF.

        A failing sink stops receiving data but the pipe keeps being
        drained so the child cannot block on a full pipe.
        """
        sink_broken = False
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            if sink_broken:
                continue
            try:
                sink(chunk)
            except Exception as e:
                sink_broken = True
                self.logger.warning(f"{name} sink failed for pid={pid}, discarding output: {e}")

    async def _flush_output(self, pumps: list[asyncio.Task[None]], pid: int) -> None:
        """Give the output pumps up to flush_grace to reach EOF."""
        if not pumps:
            return
        _, pending = await asyncio.wait(pumps, timeout=self.flush_grace)
        if pending:
            # Usually a descendant that still holds the pipe open
            self.logger.debug(f"Output still open after {self.flush_grace}s pid={pid}")
            for task in pending:
                task.cancel()

    # ------------------------------------------------------------------
    # Termination and cleanup
    # ------------------------------------------------------------------

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> bool:
        """Send ``sig`` to the child's process group.

        Returns:
            True if the signal was delivered
        """
        pid = process.pid
        try:
            if IS_WINDOWS:
                if sig == KILL_SIGNAL:
                    process.kill()
                else:
                    os.kill(pid, signal.CTRL_BREAK_EVENT)
            else:
                # pgid == pid since the child leads its own session
                os.killpg(pid, sig)
            self.logger.debug(f"Sent {_signal_name(sig)} to process group pgid={pid}")
            return True
        except ProcessLookupError:
            self.logger.debug(f"Process group already exited pgid={pid}")
            return False
        except OSError as e:
            self.logger.debug(f"killpg failed, falling back to the leader: {e}")
            try:
                process.send_signal(sig)
                return True
            except ProcessLookupError:
                return False
            except OSError as e2:
                self.logger.warning(f"Failed to signal pid={pid}: {e2}")
                return False

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process,
        wait_task: asyncio.Task[_WaitOutcome],
        pumps: list[asyncio.Task[None]],
    ) -> None:
        """Cleanup shielded from cancellation of the calling task."""
        try:
            await asyncio.shield(self._do_cleanup(process, wait_task, pumps))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, wait_task, pumps)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process,
        wait_task: asyncio.Task[_WaitOutcome],
        pumps: list[asyncio.Task[None]],
    ) -> None:
        if process.returncode is None:
            self._signal_group(process, KILL_SIGNAL)
            await asyncio.wait({wait_task}, timeout=self.reap_timeout)
        elif not IS_WINDOWS:
            # The leader is gone; take down descendants left in its group
            self._signal_group(process, KILL_SIGNAL)

        if not wait_task.done():
            wait_task.cancel()
        for task in pumps:
            if not task.done():
                task.cancel()
        await asyncio.gather(wait_task, *pumps, return_exceptions=True)

    def _result(
        self,
        exit_code: int,
        status: RunStatus,
        error: SupervisorError | None,
        pid: int | None,
        started: float,
    ) -> RunResult:
        return RunResult(
            exit_code=exit_code,
            status=status,
            error=error,
            pid=pid,
            duration=time.monotonic() - started,
        )
