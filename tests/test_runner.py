"""Tests for nanoclaw_harness.runner.

Workloads are real Python subprocesses started through FakeRuntime, so
timeouts, cancellation and cleanup are exercised against live processes.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from pathlib import Path

import pytest

from nanoclaw_harness.errors import LaunchError, NameConflictError
from nanoclaw_harness.ipc import CloseSignal, IpcDirectory
from nanoclaw_harness.protocol import decode_output
from nanoclaw_harness.runner import ProcessRunner
from nanoclaw_harness.runtime import ContainerRuntime
from nanoclaw_harness.types import ContainerSpec
from tests.conftest import HANG_SCRIPT, FakeRuntime, agent_script


def _spec(name: str = "c1", script: str | None = None) -> ContainerSpec:
    command = [sys.executable, "-c", script] if script else []
    return ContainerSpec(image="img", name=name, command=command)


class ReadOnlyIpc(IpcDirectory):
    """IPC directory whose close marker cannot be written."""

    def write_close(self) -> None:
        raise PermissionError("read-only file system")


class SlowToStopSignal(CloseSignal):
    """Close-signal poller that takes 2s to wind down once cancelled."""

    async def watch(self, stdout_path: Path) -> None:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            await asyncio.sleep(2.0)


class TestRun:
    """Basic capture behaviour."""

    async def test_success_captures_output(self, runner: ProcessRunner) -> None:
        """The smoke workload's output decodes to success."""
        script = agent_script({"status": "success", "result": "SMOKE_TEST_OK"})
        async with runner.run(_spec(script=script), b'{"prompt":"x"}\n', 10) as captured:
            assert captured.exit_code == 0
            assert not captured.timed_out
            result = decode_output(captured.stdout)
        assert result.status == "success"
        assert result.result == "SMOKE_TEST_OK"

    async def test_payload_reaches_stdin(self, runner: ProcessRunner) -> None:
        script = "import sys; sys.stdout.write(sys.stdin.read().upper())"
        async with runner.run(_spec(script=script), b"hello\n", 10) as captured:
            assert captured.stdout == "HELLO\n"

    async def test_nonzero_exit_is_data(self, runner: ProcessRunner) -> None:
        """A failing workload is reported through exit_code and stderr."""
        script = agent_script(None, exit_code=1, stderr="error: out of memory\n")
        async with runner.run(_spec(script=script), b"{}\n", 10) as captured:
            assert captured.exit_code == 1
            assert "out of memory" in captured.stderr_tail()

    async def test_workload_ignoring_stdin(self, runner: ProcessRunner) -> None:
        """A workload that exits without reading stdin is not an error."""
        async with runner.run(_spec(script="pass"), b"x" * 200_000, 10) as captured:
            assert captured.exit_code == 0

    async def test_output_truncated(self, fake_runtime: FakeRuntime) -> None:
        runner = ProcessRunner(fake_runtime, max_output_size=10)
        script = "print('x' * 100)"
        async with runner.run(_spec(script=script), b"", 10) as captured:
            assert captured.stdout == "x" * 10
            assert captured.truncated

    async def test_duration_recorded(self, runner: ProcessRunner) -> None:
        async with runner.run(_spec(script="import time; time.sleep(0.2)"), b"", 10) as captured:
            assert captured.duration_ms >= 150


class TestTimeout:
    """Watchdog enforcement."""

    async def test_hung_workload_is_stopped(self, runner: ProcessRunner, fake_runtime: FakeRuntime) -> None:
        """A 1s deadline on a never-exiting workload finishes well within 5s."""
        start = time.monotonic()
        async with runner.run(_spec(script=HANG_SCRIPT), b"", 1) as captured:
            assert captured.timed_out
        elapsed = time.monotonic() - start
        assert elapsed < 5
        assert fake_runtime.stopped == ["c1"]
        assert fake_runtime.procs["c1"].returncode is not None
        assert runner.active_names == set()

    async def test_stubborn_workload_is_killed(self, fake_runtime: FakeRuntime) -> None:
        """A workload ignoring the graceful stop is hard-killed."""
        runner = ProcessRunner(fake_runtime, stop_grace_s=0.1)
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "while True:\n    time.sleep(0.1)\n"
        )
        start = time.monotonic()
        async with runner.run(_spec(script=script), b"", 0.5) as captured:
            assert captured.timed_out
        assert time.monotonic() - start < 5
        assert fake_runtime.killed == ["c1"]
        assert fake_runtime.procs["c1"].returncode is not None

    async def test_fast_workload_not_stopped(self, runner: ProcessRunner, fake_runtime: FakeRuntime) -> None:
        async with runner.run(_spec(script="pass"), b"", 5) as captured:
            assert not captured.timed_out
        assert fake_runtime.stopped == []


class TestNameBinding:
    """Container names are exclusive while bound."""

    async def test_name_known_to_runtime(self, runner: ProcessRunner, fake_runtime: FakeRuntime) -> None:
        fake_runtime.existing.add("c1")
        with pytest.raises(NameConflictError):
            async with runner.run(_spec(script="pass"), b"", 5):
                pass
        assert fake_runtime.specs == []

    async def test_concurrent_same_name(self, runner: ProcessRunner, fake_runtime: FakeRuntime) -> None:
        """A second run with a bound name fails fast."""

        async def first() -> None:
            async with runner.run(_spec(script=HANG_SCRIPT), b"", 10):
                pass

        task = asyncio.create_task(first())
        while "c1" not in fake_runtime.procs:
            await asyncio.sleep(0.01)
        with pytest.raises(NameConflictError):
            async with runner.run(_spec(script="pass"), b"", 5):
                pass
        assert await runner.cancel("c1") is True
        await task
        assert runner.active_names == set()

    async def test_name_released_after_run(self, runner: ProcessRunner) -> None:
        async with runner.run(_spec(script="pass"), b"", 5):
            pass
        async with runner.run(_spec(script="pass"), b"", 5) as captured:
            assert captured.exit_code == 0

    async def test_cancel_unknown_name(self, runner: ProcessRunner) -> None:
        assert await runner.cancel("nope") is False


class TestCleanup:
    """Resources are released on every exit path."""

    async def test_capture_dir_removed_after_exit(self, runner: ProcessRunner) -> None:
        async with runner.run(_spec(script="print('x')"), b"", 5) as captured:
            capture_dir = captured.stdout_path.parent
            assert capture_dir.exists()
        assert not capture_dir.exists()

    async def test_capture_dir_removed_when_caller_raises(self, runner: ProcessRunner) -> None:
        capture_dir: Path | None = None
        with pytest.raises(RuntimeError):
            async with runner.run(_spec(script="pass"), b"", 5) as captured:
                capture_dir = captured.stdout_path.parent
                raise RuntimeError("caller failed")
        assert capture_dir is not None
        assert not capture_dir.exists()
        assert runner.active_names == set()

    async def test_outer_cancellation_stops_workload(
        self, runner: ProcessRunner, fake_runtime: FakeRuntime
    ) -> None:
        """Cancelling the caller stops the container and unbinds the name."""

        async def invoke() -> None:
            async with runner.run(_spec(script=HANG_SCRIPT), b"", 30):
                pass

        task = asyncio.create_task(invoke())
        while "c1" not in fake_runtime.procs:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert fake_runtime.procs["c1"].returncode is not None
        assert runner.active_names == set()


class TestLaunchFailure:
    """Runtime-reserved exit codes."""

    async def test_reserved_exit_code_raises(self) -> None:
        runtime = FakeRuntime(launch_failure_codes=(125,))
        runner = ProcessRunner(runtime)
        script = "import sys; sys.stderr.write('Error: image not known\\n'); sys.exit(125)"
        with pytest.raises(LaunchError, match="image not known"):
            async with runner.run(_spec(script=script), b"", 5):
                pass
        assert runner.active_names == set()


class TestCloseSignal:
    """The IPC close signal lets a lingering workload exit by itself."""

    async def test_close_marker_ends_workload(
        self, runner: ProcessRunner, fake_runtime: FakeRuntime, tmp_path: Path
    ) -> None:
        ipc = IpcDirectory(tmp_path / "ipc")
        ipc.ensure()
        script = agent_script({"status": "success", "result": "done"}, wait_for_close=True)
        spec = _spec(script=script)
        spec.command.append(str(ipc.root))
        signal = CloseSignal(ipc, grace_s=0.05, poll_interval_s=0.02)
        async with runner.run(spec, b"{}\n", 10, signal) as captured:
            assert not captured.timed_out
            assert captured.exit_code == 0
            assert decode_output(captured.stdout).result == "done"
        assert signal.sent
        assert ipc.close_path.exists()
        assert fake_runtime.stopped == []

    async def test_no_close_marker_without_response(
        self, runner: ProcessRunner, tmp_path: Path
    ) -> None:
        """A workload that never answers gets no close marker."""
        ipc = IpcDirectory(tmp_path / "ipc")
        ipc.ensure()
        signal = CloseSignal(ipc, grace_s=0.0, poll_interval_s=0.02)
        async with runner.run(_spec(script=HANG_SCRIPT), b"", 0.5, signal) as captured:
            assert captured.timed_out
        await asyncio.sleep(0.1)
        assert not signal.sent
        assert not ipc.close_path.exists()

    async def test_close_signal_failure_is_logged(
        self,
        runner: ProcessRunner,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A close marker that cannot be written is logged, not raised or lost."""
        ipc = ReadOnlyIpc(tmp_path / "ipc")
        ipc.ensure()
        script = agent_script({"status": "success", "result": "done"}, wait_for_close=True)
        spec = _spec(script=script)
        spec.command.append(str(ipc.root))
        signal = CloseSignal(ipc, grace_s=0.0, poll_interval_s=0.02)
        with caplog.at_level(logging.WARNING, logger="nanoclaw_harness.runner"):
            async with runner.run(spec, b"{}\n", 1, signal) as captured:
                assert captured.timed_out
                assert decode_output(captured.stdout).result == "done"
        assert not signal.sent
        failures = [r for r in caplog.records if "Close signal" in r.getMessage()]
        assert len(failures) == 1
        assert failures[0].exc_info is not None
        assert "read-only" in failures[0].getMessage()

    async def test_deadline_during_poller_shutdown_is_not_a_timeout(
        self, runner: ProcessRunner, fake_runtime: FakeRuntime, tmp_path: Path
    ) -> None:
        """Once the workload has exited, a late deadline no longer counts."""
        signal = SlowToStopSignal(IpcDirectory(tmp_path / "ipc"))
        async with runner.run(_spec(script="pass"), b"", 1.0, signal) as captured:
            assert not captured.timed_out
            assert captured.exit_code == 0
        assert fake_runtime.stopped == []


class TestUnresponsiveRuntime:
    async def test_hanging_runtime_cli_raises_launch_error(self, hanging_cli: Path) -> None:
        """A runtime that never answers `container exists` fails the run cleanly."""
        runner = ProcessRunner(ContainerRuntime(cli=str(hanging_cli), control_timeout_s=0.2))
        with pytest.raises(LaunchError, match="did not answer"):
            async with runner.run(_spec(), b"{}", 5.0):
                pass
        assert runner.active_names == set()
