"""Bootstrap sequence: make the native artifact available at a fixed path.

Steps, each gated on the previous one:

    mkdir -> download --ok--> done
                      --fail--> build -> relocate -> done

The download is expected to fail now and then (offline, asset not yet
published) and only falls back to a local build. Build and relocation
failures are fatal: their captured output is dumped verbatim, followed by
one error event, and the sequence stops.

Every step reports a ProcessResult, so one success predicate
(``ProcessResult.succeeded``) covers both external processes and the
in-process filesystem steps.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import anyio
import anyio.to_thread

from .config import ARTIFACT_PREFIX, Config, get_config
from .errors import BootstrapError, StepFailedError
from .events import LoggingSink, ProgressEvent, ProgressLevel, ProgressSink
from .host import (
    HostInfo,
    artifact_name,
    built_artifact_candidates,
    detect_host,
    download_url,
)
from .runtime import ProcessResult, ProcessRunner, ProcessSpec

__all__ = [
    "BootstrapOutcome",
    "BootstrapSequencer",
    "Continuation",
    "OutcomeStatus",
    "SequenceStep",
    "StepName",
    "bootstrap",
]

logger = logging.getLogger(__name__)


class StepName(str, Enum):
    MKDIR = "mkdir"
    DOWNLOAD = "download"
    BUILD = "build"
    RELOCATE = "relocate"


class Continuation(str, Enum):
    """What the sequence does when a step fails."""

    PROCEED = "proceed"
    FALL_BACK = "fall_back"
    ABORT = "abort"


class OutcomeStatus(str, Enum):
    DOWNLOADED = "downloaded"
    BUILT = "built"
    FAILED = "failed"


@dataclass(frozen=True)
class SequenceStep:
    """A named stage of the sequence.

    Attributes:
        name: Stage name
        action: Zero-argument coroutine factory; the step's ProcessSpec is
            only built when the action runs
        on_failure: Continuation policy when the result is not a success
    """

    name: StepName
    action: Callable[[], Awaitable[ProcessResult]]
    on_failure: Continuation = Continuation.ABORT

    def succeeded(self, result: ProcessResult) -> bool:
        return result.succeeded


@dataclass
class BootstrapOutcome:
    """Final state of one sequence run."""

    status: OutcomeStatus
    artifact: Path
    failed_step: StepName | None = None
    result: ProcessResult | None = None

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    @property
    def exit_code(self) -> int | None:
        return self.result.exit_code if self.result is not None else None

    def raise_for_status(self) -> None:
        """Raise StepFailedError if the sequence failed."""
        if self.failed_step is not None and self.result is not None:
            raise StepFailedError(self.failed_step.value, self.result)


def _filesystem_result(error: str | None = None) -> ProcessResult:
    """Result of an in-process step: exit code 0, or 1 with the error text."""
    if error is None:
        return ProcessResult(exit_code=0)
    result = ProcessResult(exit_code=1)
    result.append_diagnostic(error)
    return result


class BootstrapSequencer:
    """Drives the mkdir/download/build/relocate sequence.

    Args:
        config: Paths, executables and the release URL
        host: Platform facts selecting the artifact
        runner: Runs the external steps (curl, cargo)
        sink: Host callback receiving ProgressEvents
    """

    def __init__(
        self,
        config: Config,
        host: HostInfo,
        runner: ProcessRunner | None = None,
        sink: ProgressSink | None = None,
    ) -> None:
        if config.destination is None:
            raise BootstrapError("no destination path configured")
        self.config = config
        self.destination: Path = config.destination
        self.host = host
        self.runner = runner or ProcessRunner()
        self.sink = sink or LoggingSink()

    @property
    def artifact_name(self) -> str:
        return artifact_name(self.host, ARTIFACT_PREFIX)

    @property
    def download_url(self) -> str:
        return download_url(self.config.release_url, self.artifact_name)

    def emit(
        self,
        message: str,
        level: ProgressLevel = ProgressLevel.INFO,
        step: StepName | None = None,
    ) -> None:
        self.sink(
            ProgressEvent(
                message=message,
                level=level,
                step=step.value if step is not None else None,
            )
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def mkdir_step(self) -> SequenceStep:
        async def ensure_directory() -> ProcessResult:
            directory = anyio.Path(self.destination.parent)
            try:
                await directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                return _filesystem_result(f"cannot create {directory}: {e}")
            return _filesystem_result()

        return SequenceStep(StepName.MKDIR, ensure_directory, Continuation.ABORT)

    def download_step(self) -> SequenceStep:
        async def download() -> ProcessResult:
            before = await _stat_or_none(self.destination)
            spec = ProcessSpec(
                argv=[
                    self.config.curl,
                    "--fail",
                    "--location",
                    "--silent",
                    "--show-error",
                    "--output",
                    str(self.destination),
                    self.download_url,
                ],
                cwd=self.destination.parent,
                timeout=self.config.step_timeout,
            )
            result = await self.runner.run(spec)
            if not result.succeeded:
                await self._discard_partial_download(before)
            return result

        return SequenceStep(StepName.DOWNLOAD, download, Continuation.FALL_BACK)

    def build_step(self) -> SequenceStep:
        async def build() -> ProcessResult:
            spec = ProcessSpec(
                argv=[
                    self.config.cargo,
                    "build",
                    "--release",
                    "--locked",
                    "--features",
                    self.host.version_tier,
                ],
                cwd=self.config.plugin_root,
                timeout=self.config.step_timeout,
            )
            self.emit(f"Building from source: {' '.join(spec.argv)}", step=StepName.BUILD)
            return await self.runner.run(spec)

        return SequenceStep(StepName.BUILD, build, Continuation.ABORT)

    def relocate_step(self) -> SequenceStep:
        async def relocate() -> ProcessResult:
            candidates = built_artifact_candidates(
                self.config.target_dir, self.host.os_name, ARTIFACT_PREFIX
            )
            error = await anyio.to_thread.run_sync(
                _move_first_existing, candidates, self.destination
            )
            return _filesystem_result(error)

        return SequenceStep(StepName.RELOCATE, relocate, Continuation.ABORT)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self) -> BootstrapOutcome:
        """Run the sequence to a terminal outcome."""
        logger.debug(
            f"Bootstrap start artifact={self.artifact_name} dest={self.destination}"
        )

        step = self.mkdir_step()
        result = await self._execute(step)
        if not step.succeeded(result):
            outcome = self._handle_failure(step, result)
            if outcome is not None:
                return outcome

        if self.config.skip_download:
            self.emit("Download skipped, building from source", step=StepName.DOWNLOAD)
        else:
            step = self.download_step()
            self.emit(f"Downloading {self.download_url}", step=step.name)
            result = await self._execute(step)
            if step.succeeded(result):
                return self._done(OutcomeStatus.DOWNLOADED)
            outcome = self._handle_failure(step, result)
            if outcome is not None:
                return outcome

        for step in (self.build_step(), self.relocate_step()):
            result = await self._execute(step)
            if not step.succeeded(result):
                outcome = self._handle_failure(step, result)
                if outcome is not None:
                    return outcome

        return self._done(OutcomeStatus.BUILT)

    async def _execute(self, step: SequenceStep) -> ProcessResult:
        logger.debug(f"Step {step.name.value} started")
        result = await step.action()
        logger.debug(
            f"Step {step.name.value} finished exit_code={result.exit_code} "
            f"spawn_error={result.spawn_error} timed_out={result.timed_out}"
        )
        return result

    def _handle_failure(
        self,
        step: SequenceStep,
        result: ProcessResult,
    ) -> BootstrapOutcome | None:
        """Apply the step's continuation policy.

        Returns:
            A failed outcome when the sequence must stop, otherwise None
        """
        if step.on_failure is Continuation.ABORT:
            self.emit(result.stdout_text, ProgressLevel.INFO, step.name)
            self.emit(result.stderr_text, ProgressLevel.WARN, step.name)
            self.emit(_failure_message(step, result), ProgressLevel.ERROR, step.name)
            return self._failed(step, result)

        if step.on_failure is Continuation.FALL_BACK:
            self.emit(
                f"{_failure_message(step, result)}, building from source",
                ProgressLevel.WARN,
                step.name,
            )
        else:
            self.emit(_failure_message(step, result), ProgressLevel.WARN, step.name)
        return None

    def _failed(self, step: SequenceStep, result: ProcessResult) -> BootstrapOutcome:
        return BootstrapOutcome(
            status=OutcomeStatus.FAILED,
            artifact=self.destination,
            failed_step=step.name,
            result=result,
        )

    def _done(self, status: OutcomeStatus) -> BootstrapOutcome:
        self.emit("Done", ProgressLevel.TRACE)
        return BootstrapOutcome(status=status, artifact=self.destination)

    async def _discard_partial_download(self, before: os.stat_result | None) -> None:
        """Remove a destination file the failed download created or touched."""
        after = await _stat_or_none(self.destination)
        if after is None:
            return
        if before is not None and (before.st_size, before.st_mtime_ns) == (
            after.st_size,
            after.st_mtime_ns,
        ):
            return
        try:
            await anyio.Path(self.destination).unlink()
            logger.debug(f"Removed partial download {self.destination}")
        except OSError as e:
            logger.warning(f"Cannot remove partial download {self.destination}: {e}")


def _failure_message(step: SequenceStep, result: ProcessResult) -> str:
    if result.spawn_error:
        return f"{step.name.value} failed: {result.spawn_error}"
    if result.timed_out:
        return f"{step.name.value} timed out (exit code {result.exit_code})"
    return f"{step.name.value} failed with exit code {result.exit_code}"


async def _stat_or_none(path: Path) -> os.stat_result | None:
    try:
        return await anyio.Path(path).stat()
    except OSError:
        return None


def _move_first_existing(candidates: list[Path], destination: Path) -> str | None:
    """Move the first candidate that can be moved onto ``destination``.

    Returns:
        None on success, otherwise a description of every failed attempt
    """
    attempts: list[str] = []
    for candidate in candidates:
        try:
            os.replace(candidate, destination)
        except FileNotFoundError:
            attempts.append(f"{candidate}: not found")
            continue
        except OSError as e:
            if e.errno != errno.EXDEV:
                attempts.append(f"{candidate}: {e}")
                continue
            try:
                shutil.move(str(candidate), str(destination))
            except OSError as move_error:
                attempts.append(f"{candidate}: {move_error}")
                continue
        logger.debug(f"Moved {candidate} -> {destination}")
        return None

    return "no built artifact could be moved:\n" + "\n".join(attempts)


async def bootstrap(
    config: Config | None = None,
    sink: ProgressSink | None = None,
    runner: ProcessRunner | None = None,
) -> BootstrapOutcome:
    """Detect the host and run the whole sequence.

    Raises:
        UnsupportedHostError: If the version tier cannot be determined
    """
    config = config or get_config()
    runner = runner or ProcessRunner()
    host = await detect_host(runner, config)
    sequencer = BootstrapSequencer(config, host, runner=runner, sink=sink)
    return await sequencer.run()
