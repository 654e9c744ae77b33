"""ProcessSupervisor: owns one CLI subprocess and its pipes."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import signal
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from agentpipe.config.models import TransportConfig
from agentpipe.constants import ENTRYPOINT_ENV
from agentpipe.errors import (
    CLIConnectionError,
    InvalidStateError,
    UnexpectedTerminationError,
)

logger = logging.getLogger(__name__)


class ProcessState(enum.Enum):
    """Lifecycle of a supervised process.

    ``idle -> starting -> running -> terminating -> terminated``. A
    terminated supervisor may start again but never returns to ``idle``.
    """

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ProcessIO:
    """I/O handles of a started process."""

    stdin: asyncio.StreamWriter
    stdout: asyncio.StreamReader
    stderr_path: Path


class ProcessSupervisor:
    """Starts, feeds, and tears down a single CLI subprocess.

    All state lives on one event loop; no method holds an ``await`` between
    reading and updating ``_state``, which is what makes :meth:`terminate`
    safe to call concurrently.
    """

    def __init__(self, config: TransportConfig | None = None) -> None:
        self._config = config or TransportConfig()
        self._state = ProcessState.IDLE
        self._process: asyncio.subprocess.Process | None = None
        self._stdin_closed = False
        self._stderr_file: IO[bytes] | None = None
        self._stderr_path: Path | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._write_lock = asyncio.Lock()
        self._terminated = asyncio.Event()

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        if self._process is None:
            return None
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        """True while the process is alive and in the ``running`` state."""
        return (
            self._state is ProcessState.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def stdin_closed(self) -> bool:
        return self._stdin_closed

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(
        self,
        arguments: Sequence[str],
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessIO:
        """Launch the CLI with *arguments*.

        Args:
            arguments: Argument vector, without the executable.
            cwd: Working directory for the child, or None to inherit.
            env: Full child environment, or None to inherit ``os.environ``.
                The entrypoint marker is added unless already present.

        Raises:
            InvalidStateError: If a process is already starting or running.
            CLIConnectionError: If the OS refuses to launch the executable.
        """
        if self._state not in (ProcessState.IDLE, ProcessState.TERMINATED):
            msg = f"Cannot start process in state '{self._state.value}'"
            raise InvalidStateError(msg)

        self._state = ProcessState.STARTING
        self._terminated = asyncio.Event()
        self._stdin_closed = False

        child_env = dict(os.environ if env is None else env)
        child_env.setdefault(ENTRYPOINT_ENV, self._config.entrypoint)

        try:
            stderr_file = tempfile.NamedTemporaryFile(
                mode="wb",
                prefix="agentpipe_stderr_",
                suffix=".log",
                delete=False,
            )
        except OSError as exc:
            self._state = ProcessState.TERMINATED
            msg = f"Failed to create stderr capture file: {exc}"
            raise CLIConnectionError(msg) from exc

        stderr_path = Path(stderr_file.name)
        self._stderr_path = stderr_path
        self._stderr_file = stderr_file

        cli_path = self._config.cli_path
        try:
            proc = await asyncio.create_subprocess_exec(
                cli_path,
                *arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=stderr_file,
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                limit=self._config.max_buffer_size,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self._abort_start()
            msg = (
                f"CLI not found: {cli_path}\n"
                f"Make sure '{cli_path}' is installed and on your PATH."
            )
            raise CLIConnectionError(msg) from exc
        except OSError as exc:
            self._abort_start()
            msg = f"Failed to start CLI '{cli_path}': {exc}"
            raise CLIConnectionError(msg) from exc

        self._process = proc

        if self._state is not ProcessState.STARTING:
            # terminate() ran while we were spawning.
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            self._abort_start()
            msg = "Process was terminated while starting"
            raise InvalidStateError(msg)

        if proc.stdin is None or proc.stdout is None:
            await self.terminate()
            msg = "CLI process started without stdio pipes"
            raise CLIConnectionError(msg)

        self._state = ProcessState.RUNNING
        logger.info("Started %s (pid %d)", cli_path, proc.pid)
        logger.debug("Arguments: %s", list(arguments))

        return ProcessIO(stdin=proc.stdin, stdout=proc.stdout, stderr_path=stderr_path)

    def _abort_start(self) -> None:
        """Undo a failed start: drop the stderr file and mark terminated."""
        self._close_stderr_file()
        self._remove_stderr_file()
        self._state = ProcessState.TERMINATED
        self._terminated.set()

    async def terminate(self) -> None:
        """Stop the process and release every resource. Never raises.

        Sequence: cancel tracked tasks -> close handles -> SIGTERM and wait
        ``terminate_timeout`` -> SIGINT and wait ``kill_grace`` -> SIGKILL ->
        delete the stderr file. Concurrent callers wait for the single
        in-flight run; later calls return immediately. A supervisor that never
        started stays idle.
        """
        if self._state in (ProcessState.IDLE, ProcessState.TERMINATED):
            return
        if self._state is ProcessState.TERMINATING:
            await self._terminated.wait()
            return

        self._state = ProcessState.TERMINATING
        done = self._terminated
        try:
            await self._cancel_background_tasks()
            self._close_stdin_now()
            self._close_stderr_file()
            await self._stop_process()
        except Exception:
            logger.warning("Error while terminating CLI process", exc_info=True)
        finally:
            self._remove_stderr_file()
            self._state = ProcessState.TERMINATED
            done.set()
            logger.info("CLI process terminated (exit code %s)", self.returncode)

    async def _stop_process(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return

        # 1. SIGTERM.
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.terminate_timeout)
            return
        except TimeoutError:
            logger.warning(
                "CLI (pid %d) still running %.1fs after SIGTERM, sending SIGINT",
                proc.pid,
                self._config.terminate_timeout,
            )

        # 2. SIGINT.
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(signal.SIGINT)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.kill_grace)
            return
        except TimeoutError:
            logger.warning("CLI (pid %d) ignored SIGINT, sending SIGKILL", proc.pid)

        # 3. SIGKILL.
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()

    # ------------------------------------------------------------------ #
    # Background tasks
    # ------------------------------------------------------------------ #

    def track(self, task: asyncio.Task[Any]) -> None:
        """Register *task* so :meth:`terminate` cancels it."""
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _cancel_background_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [
            t for t in self._background_tasks if t is not current and not t.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background_tasks.clear()

    # ------------------------------------------------------------------ #
    # I/O primitives
    # ------------------------------------------------------------------ #

    async def write(self, data: bytes) -> None:
        """Write *data* to stdin and wait for it to drain.

        Concurrent writers are serialized, so each call's bytes reach the
        pipe contiguously and in call order.

        Raises:
            InvalidStateError: If stdin is closed or the process is not running.
            UnexpectedTerminationError: If the process has already exited.
            CLIConnectionError: If the pipe write fails.
        """
        async with self._write_lock:
            proc = self._process
            if self._state is not ProcessState.RUNNING or proc is None:
                msg = f"Cannot write to stdin in state '{self._state.value}'"
                raise InvalidStateError(msg)
            if self._stdin_closed or proc.stdin is None:
                msg = "Cannot write to stdin: already closed"
                raise InvalidStateError(msg)
            if proc.returncode is not None:
                msg = f"CLI process exited with code {proc.returncode}"
                raise UnexpectedTerminationError(msg, exit_code=proc.returncode)

            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                msg = f"Failed to write to CLI stdin: {exc}"
                raise CLIConnectionError(
                    msg, exit_code=proc.returncode, stderr=self.stderr_contents()
                ) from exc

    async def close_stdin(self) -> None:
        """Signal end-of-input without terminating the process. Idempotent."""
        async with self._write_lock:
            stdin = self._close_stdin_now()
        if stdin is not None:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                await stdin.wait_closed()

    def _close_stdin_now(self) -> asyncio.StreamWriter | None:
        if self._stdin_closed:
            return None
        self._stdin_closed = True
        proc = self._process
        if proc is None or proc.stdin is None:
            return None
        with contextlib.suppress(OSError):
            proc.stdin.close()
        return proc.stdin

    def interrupt_signal(self) -> None:
        """Send SIGINT to a running process; no-op otherwise."""
        proc = self._process
        if not self.is_running or proc is None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(signal.SIGINT)

    async def wait_for_exit(self) -> int:
        """Wait (without timeout) for the process to exit; return its code."""
        proc = self._process
        if proc is None:
            msg = "No process has been started"
            raise InvalidStateError(msg)
        return await proc.wait()

    # ------------------------------------------------------------------ #
    # Diagnostics
    # ------------------------------------------------------------------ #

    def stderr_contents(self) -> str:
        """Best-effort read of captured stderr; empty string on any failure."""
        path = self._stderr_path
        if path is None:
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def _close_stderr_file(self) -> None:
        fh = self._stderr_file
        self._stderr_file = None
        if fh is not None:
            with contextlib.suppress(OSError):
                fh.close()

    def _remove_stderr_file(self) -> None:
        path = self._stderr_path
        self._stderr_path = None
        if path is not None:
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)
