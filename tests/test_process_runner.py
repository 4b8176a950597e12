"""ProcessRunner unit tests.

Test coverage:
- Basic process execution (exit code, stdout, stderr)
- Continuous draining of both pipes beyond the OS pipe buffer
- Spawn failure reported in the result, never raised
- Environment overrides and working directory
- Process isolation (new session/process group)
- Timeout and cancellation terminate the child and close both pipes
- Stream read errors are diagnostic only
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from diffdirs_bootstrap.runtime.process_runner import (
    IS_WINDOWS,
    ProcessResult,
    ProcessRunner,
    ProcessSpec,
)

# chatty_cli.py writes "<label>-0123456789abcdef\n" repeated
sys.path.insert(0, str(Path(__file__).parent / "fixtures"))
from chatty_cli import pattern  # noqa: E402


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


def python_spec(code: str, cwd: Path | None = None, **kwargs) -> ProcessSpec:
    return ProcessSpec(argv=[sys.executable, "-c", code], cwd=cwd, **kwargs)


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test basic process execution."""

    @pytest.mark.asyncio
    async def test_simple_command(self, temp_workspace: Path, runner: ProcessRunner):
        """Exit code and stdout of a simple command."""
        result = await runner.run(python_spec("print('hello')", temp_workspace))

        assert result.exit_code == 0
        assert result.succeeded
        assert result.stdout_text.strip() == "hello"
        assert result.stderr == b""

    @pytest.mark.asyncio
    async def test_stdout_and_stderr_separated(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """Each stream lands in its own accumulator."""
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stdout-text", "to stdout", "--stderr-text", "to stderr"],
            cwd=temp_workspace,
        )
        result = await runner.run(spec)

        assert result.stdout_text == "to stdout"
        assert result.stderr_text == "to stderr"

    @pytest.mark.asyncio
    async def test_exit_code_nonzero(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """Non-zero exit is reported, not raised."""
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stderr-text", "missing compiler", "--exit-code", "3"],
            cwd=temp_workspace,
        )
        result = await runner.run(spec)

        assert result.exit_code == 3
        assert result.spawned
        assert not result.succeeded
        assert "missing compiler" in result.stderr_text

    @pytest.mark.asyncio
    async def test_empty_output(self, temp_workspace: Path, runner: ProcessRunner):
        """Process with no output."""
        result = await runner.run(python_spec("pass", temp_workspace))

        assert result.exit_code == 0
        assert result.stdout == b""
        assert result.stderr == b""

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_workspace: Path, runner: ProcessRunner):
        """Test that working directory is correctly set."""
        result = await runner.run(python_spec("import os; print(os.getcwd())", temp_workspace))

        assert Path(result.stdout_text.strip()).resolve() == temp_workspace.resolve()


# =============================================================================
# Draining Tests
# =============================================================================


class TestDraining:
    """Both pipes are drained while the child runs."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_large_output_on_both_streams(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """Volumes far beyond the pipe buffer arrive complete and in order."""
        size = 1024 * 1024
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stdout-bytes", str(size), "--stderr-bytes", str(size)],
            cwd=temp_workspace,
        )
        result = await runner.run(spec)

        assert result.exit_code == 0
        assert bytes(result.stdout) == pattern("out", size)
        assert bytes(result.stderr) == pattern("err", size)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_large_stderr_with_failure(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """A failing child flooding stderr still reports its exit code."""
        size = 256 * 1024
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stderr-bytes", str(size), "--exit-code", "1"],
            cwd=temp_workspace,
        )
        result = await runner.run(spec)

        assert result.exit_code == 1
        assert len(result.stderr) == size

    @pytest.mark.asyncio
    async def test_small_chunk_size(
        self, temp_workspace: Path, chatty_cli: list[str]
    ):
        """Output is reassembled regardless of the read chunk size."""
        runner = ProcessRunner(chunk_size=7)
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stdout-bytes", "5000"],
            cwd=temp_workspace,
        )
        result = await runner.run(spec)

        assert bytes(result.stdout) == pattern("out", 5000)

    @pytest.mark.asyncio
    async def test_read_error_is_diagnostic(self, runner: ProcessRunner):
        """A stream read error is appended to stderr and ends that drain only."""

        class BrokenStream:
            def __init__(self) -> None:
                self.calls = 0

            async def read(self, n: int) -> bytes:
                self.calls += 1
                if self.calls == 1:
                    return b"partial"
                raise OSError("pipe broke")

        result = ProcessResult()
        await runner._drain(BrokenStream(), result.stdout, result, "stdout")  # type: ignore[arg-type]

        assert result.stdout == b"partial"
        assert "stdout read error: pipe broke" in result.stderr_text
        assert result.exit_code is None


# =============================================================================
# Spawn Failure Tests
# =============================================================================


class TestSpawnFailure:
    """Spawn failure is a distinct outcome, never an exception."""

    @pytest.mark.asyncio
    async def test_nonexistent_command(self, temp_workspace: Path, runner: ProcessRunner):
        spec = ProcessSpec(argv=["nonexistent_command_xyz_123"], cwd=temp_workspace)

        result = await runner.run(spec)

        assert not result.spawned
        assert not result.succeeded
        assert result.exit_code is None
        assert "nonexistent_command_xyz_123" in result.spawn_error
        assert "failed to start" in result.stderr_text

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, tmp_path: Path, runner: ProcessRunner):
        spec = python_spec("pass", tmp_path / "does-not-exist")

        result = await runner.run(spec)

        assert not result.spawned
        assert result.exit_code is None


# =============================================================================
# Environment Tests
# =============================================================================


class TestEnvironment:
    """Test environment variable handling."""

    @pytest.mark.asyncio
    async def test_overrides_are_merged(self, temp_workspace: Path, runner: ProcessRunner):
        """Overrides are added on top of the inherited environment."""
        spec = python_spec(
            "import os; print(os.environ['TEST_VAR']); print(bool(os.environ.get('PATH')))",
            temp_workspace,
            env={"TEST_VAR": "test_value_123"},
        )
        result = await runner.run(spec)

        lines = result.stdout_text.split()
        assert lines == ["test_value_123", "True"]

    @pytest.mark.asyncio
    async def test_inherit_environment(self, temp_workspace: Path, runner: ProcessRunner):
        """Environment is inherited when env=None."""
        spec = python_spec("import os; print(os.environ.get('PATH', ''))", temp_workspace)

        result = await runner.run(spec)

        assert len(result.stdout_text.strip()) > 0


# =============================================================================
# Process Isolation Tests
# =============================================================================


class TestProcessIsolation:
    """Test process isolation (new session/process group)."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_process_group_leader(self, temp_workspace: Path, runner: ProcessRunner):
        """Process is its own process group leader on POSIX."""
        spec = python_spec("import os; print(os.getpid(), os.getpgid(0))", temp_workspace)

        result = await runner.run(spec)

        pid, pgid = result.stdout_text.split()
        assert pid == pgid
        assert int(pgid) != os.getpgid(0)


# =============================================================================
# Termination Tests
# =============================================================================


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


class TestTermination:
    """Timeout and cancellation terminate the child."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timeout_terminates(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        spec = ProcessSpec(
            argv=[*chatty_cli, "--stdout-text", "started", "--sleep", "60"],
            cwd=temp_workspace,
            timeout=0.5,
        )
        result = await runner.run(spec)

        assert result.timed_out
        assert not result.succeeded
        assert result.exit_code is not None
        assert result.exit_code != 0
        assert result.stdout_text == "started"
        assert "timed out" in result.stderr_text

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_no_timeout_waits_for_exit(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        spec = ProcessSpec(argv=[*chatty_cli, "--sleep", "0.3"], cwd=temp_workspace)

        result = await runner.run(spec)

        assert not result.timed_out
        assert result.exit_code == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_no_timeout_hung_child_blocks_caller(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """Without a timeout, a hung child keeps run() pending indefinitely.

        Known open question: a step that never exits stalls the whole
        bootstrap unless DIFFDIRS_STEP_TIMEOUT or --timeout is set. Only an
        outer deadline gets the caller back, and cancelling run() still
        terminates the child.
        """
        spec = ProcessSpec(argv=[*chatty_cli, "--sleep", "30"], cwd=temp_workspace)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(runner.run(spec), timeout=0.5)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    @pytest.mark.skipif(
        not Path("/proc/self/fd").is_dir(), reason="needs /proc/self/fd"
    )
    async def test_timeout_closes_pipes_held_by_detached_grandchild(
        self, temp_workspace: Path, runner: ProcessRunner
    ):
        """Pipes are closed even when a setsid grandchild keeps them open."""
        code = (
            "import subprocess, sys, time\n"
            "grandchild = subprocess.Popen(\n"
            "    [sys.executable, '-c', 'import time; time.sleep(8)'],\n"
            "    start_new_session=True,\n"
            ")\n"
            "print(grandchild.pid, flush=True)\n"
            "time.sleep(30)\n"
        )
        fds_before = len(os.listdir("/proc/self/fd"))

        result = await runner.run(python_spec(code, temp_workspace, timeout=1.0))
        fds_after = len(os.listdir("/proc/self/fd"))

        grandchild_pid = int(result.stdout_text.split()[0])
        try:
            assert result.timed_out
            assert fds_after == fds_before
        finally:
            os.kill(grandchild_pid, signal.SIGKILL)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_cancellation_terminates_process(
        self, temp_workspace: Path, runner: ProcessRunner, chatty_cli: list[str]
    ):
        """Task cancellation terminates the subprocess before propagating."""
        pid_file = temp_workspace / "child.pid"
        spec = ProcessSpec(
            argv=[*chatty_cli, "--pid-file", str(pid_file), "--sleep", "100"],
            cwd=temp_workspace,
        )

        task = asyncio.create_task(runner.run(spec))
        for _ in range(50):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.1)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not _is_alive(pid)


# =============================================================================
# Data Model Tests
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_frozen(self, temp_workspace: Path):
        spec = ProcessSpec(argv=["echo", "test"], cwd=temp_workspace)

        with pytest.raises(AttributeError):
            spec.argv = ["other"]  # type: ignore

    def test_default_values(self):
        spec = ProcessSpec(argv=["echo"])

        assert spec.cwd is None
        assert spec.env is None
        assert spec.timeout is None
        assert spec.executable == "echo"


class TestProcessResult:
    """Test ProcessResult predicates."""

    def test_unset_exit_code_is_not_success(self):
        assert not ProcessResult().succeeded

    def test_zero_exit_is_success(self):
        assert ProcessResult(exit_code=0).succeeded

    def test_timed_out_is_not_success(self):
        assert not ProcessResult(exit_code=0, timed_out=True).succeeded

    def test_append_diagnostic_keeps_lines_apart(self):
        result = ProcessResult(stderr=bytearray(b"child said"))

        result.append_diagnostic("runner said")

        assert result.stderr_text == "child said\nrunner said\n"

    def test_invalid_utf8_is_replaced(self):
        result = ProcessResult(stdout=bytearray(b"ok \xff"))

        assert result.stdout_text.startswith("ok ")
