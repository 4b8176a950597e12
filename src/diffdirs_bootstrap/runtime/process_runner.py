"""Process runner that collects a child's full result without blocking.

diffdirs-bootstrap runtime module v0.1.0

This module provides:
- ProcessSpec: what to run (argv, cwd, environment overrides, timeout)
- ProcessResult: exit code plus append-only stdout/stderr accumulators
- ProcessRunner: awaits one child to completion and returns its result

Key design points:
- Both pipes are drained concurrently with execution, so a chatty child
  can never stall on a full OS pipe buffer
- The result is published only once the exit code is recorded AND both
  streams reached EOF; "process no longer running" alone is not enough
- Spawn failure is reported in the result, never as an exception
- Cancellation or timeout terminates the child's whole process group
  (SIGTERM -> timeout -> SIGKILL), shielded from further cancellation
- Both pipes are closed on every exit path, even while a grandchild
  that left the process group still holds their write ends
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

__all__ = [
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment overrides merged onto the parent environment
        timeout: Seconds before the child is terminated (None = wait forever)
    """

    argv: Sequence[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout: float | None = None

    @property
    def executable(self) -> str:
        return self.argv[0]


@dataclass
class ProcessResult:
    """Outcome of a single ProcessSpec execution.

    ``exit_code`` stays None until the child has fully terminated, and for
    a child that never spawned at all.
    """

    exit_code: int | None = None
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    spawn_error: str | None = None
    timed_out: bool = False

    @property
    def spawned(self) -> bool:
        return self.spawn_error is None

    @property
    def succeeded(self) -> bool:
        return self.spawned and not self.timed_out and self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def append_diagnostic(self, message: str) -> None:
        """Record a non-fatal problem alongside the child's own stderr."""
        if self.stderr and not self.stderr.endswith(b"\n"):
            self.stderr.extend(b"\n")
        self.stderr.extend(message.encode("utf-8", errors="replace"))
        self.stderr.extend(b"\n")


@dataclass
class ProcessRunner:
    """Runs one external process to completion and returns its result.

    The call site reads as a single blocking call, while the awaiting task
    is suspended on the exit future and the two drain tasks.

    Example:
        runner = ProcessRunner()
        result = await runner.run(
            ProcessSpec(argv=["cargo", "build", "--release"], cwd=root)
        )
        if not result.succeeded:
            print(result.stderr_text)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE

    async def run(self, spec: ProcessSpec) -> ProcessResult:
        """Run the subprocess and collect exit code, stdout and stderr.

        Args:
            spec: Process specification

        Returns:
            The filled ProcessResult. Process-level failures (spawn error,
            non-zero exit, timeout, stream read errors) are reported in the
            result rather than raised.

        Raises:
            asyncio.CancelledError: If the awaiting task is cancelled; the
                child is terminated before the error propagates.
        """
        result = ProcessResult()
        process: asyncio.subprocess.Process | None = None
        tasks: list[asyncio.Task[Any]] = []

        kwargs = self._build_subprocess_kwargs(spec)

        try:
            try:
                # stdin=DEVNULL so the child never competes for the host's stdin
                process = await asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=spec.cwd,
                    **kwargs,
                )
            except OSError as e:
                result.spawn_error = f"failed to start {spec.executable}: {e}"
                result.append_diagnostic(result.spawn_error)
                logger.debug(result.spawn_error)
                return result

            logger.debug(
                f"Started subprocess pid={process.pid} "
                f"argv={spec.executable} cwd={spec.cwd}"
            )

            tasks = [
                asyncio.create_task(process.wait()),
                asyncio.create_task(
                    self._drain(process.stdout, result.stdout, result, "stdout")
                ),
                asyncio.create_task(
                    self._drain(process.stderr, result.stderr, result, "stderr")
                ),
            ]

            _, pending = await asyncio.wait(tasks, timeout=spec.timeout)

            if pending:
                result.timed_out = True
                logger.debug(
                    f"Subprocess timed out after {spec.timeout}s pid={process.pid}"
                )
                await self._terminate_process(process)
                # Killing the group closes the pipes; collect what is left
                await asyncio.wait(pending, timeout=self.kill_timeout)
                result.append_diagnostic(
                    f"{spec.executable} timed out after {spec.timeout}s"
                )

            result.exit_code = process.returncode

            logger.debug(
                f"Subprocess completed pid={process.pid} "
                f"returncode={process.returncode}"
            )
            return result

        finally:
            await self._safe_cleanup(process, tasks)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = {**os.environ, **spec.env}

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        sink: bytearray,
        result: ProcessResult,
        label: str,
    ) -> None:
        """Append every chunk of ``stream`` to ``sink`` until EOF.

        A read error ends this drain only and is recorded on stderr.
        """
        if stream is None:
            return

        while True:
            try:
                chunk = await stream.read(self.chunk_size)
            except OSError as e:
                logger.debug(f"{label} read error: {e}")
                result.append_diagnostic(f"{label} read error: {e}")
                return
            if not chunk:
                return
            sink.extend(chunk)

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        tasks: list[asyncio.Task[Any]],
    ) -> None:
        """Run cleanup shielded from cancellation.

        Runs even when spawning failed, so the shape of every exit path
        stays the same.
        """
        try:
            await asyncio.shield(self._do_cleanup(process, tasks))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, tasks)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        tasks: list[asyncio.Task[Any]],
    ) -> None:
        # Terminate first so the drains see EOF instead of being cut short
        if process is not None and process.returncode is None:
            await self._terminate_process(process)

        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if process is not None:
            # A grandchild outside the group can still hold the pipes open,
            # so EOF alone never closes them
            process._transport.close()  # type: ignore[attr-defined]
            # Pipe fds are released by callbacks scheduled on the loop
            await asyncio.sleep(0)

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM to the group (CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL to the group (kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            self._signal_group(process, graceful=True)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            self._signal_group(process, graceful=False)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    def _signal_group(
        self,
        process: asyncio.subprocess.Process,
        *,
        graceful: bool,
    ) -> None:
        """Signal the child's process group, falling back to the child alone."""
        if IS_WINDOWS:
            if graceful:
                try:
                    # Works because of CREATE_NEW_PROCESS_GROUP
                    os.kill(process.pid, signal.CTRL_BREAK_EVENT)
                    return
                except OSError as e:
                    logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
                process.terminate()
            else:
                process.kill()
            return

        sig = signal.SIGTERM if graceful else signal.SIGKILL
        try:
            # start_new_session makes the child its own group leader, and
            # the group outlives it while grandchildren hold the pipes
            pgid = process.pid
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to single process: {e}")
            if graceful:
                process.terminate()
            else:
                process.kill()
