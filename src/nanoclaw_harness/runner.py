"""Run one agent container to completion under supervision.

The foreground wait on the container, the watchdog timer and the optional
IPC close-signal poller run as separate asyncio tasks. Output goes to files
in a private temporary directory so the poller can read it while the
container is still running; the directory is removed when the caller
leaves the ``run()`` context, whatever the exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path

from nanoclaw_harness.errors import LaunchError, NameConflictError
from nanoclaw_harness.ipc import CloseSignal
from nanoclaw_harness.runtime import ContainerRuntime
from nanoclaw_harness.types import ContainerSpec
from nanoclaw_harness.watchdog import Watchdog

logger = logging.getLogger(__name__)

# Extra time allowed on top of the stop grace period before a hard kill.
_STOP_MARGIN_S = 2.0


class CapturedOutput:
    """Captured stdout/stderr and exit status of one invocation.

    Output is read from the capture files on first access and cached, so
    read it inside the ``run()`` context.

    Args:
        stdout_path: File holding stdout.
        stderr_path: File holding stderr.
        exit_code: Process exit code.
        timed_out: Whether the watchdog stopped the container.
        duration_ms: Wall-clock run time.
        max_bytes: Cap on bytes read back per stream.
    """

    def __init__(
        self,
        stdout_path: Path,
        stderr_path: Path,
        exit_code: int,
        timed_out: bool = False,
        duration_ms: int = 0,
        max_bytes: int = 10_485_760,
    ) -> None:
        """Initialize from capture file paths."""
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.duration_ms = duration_ms
        self.truncated = False
        self._max_bytes = max_bytes
        self._stdout: str | None = None
        self._stderr: str | None = None

    @property
    def stdout(self) -> str:
        """Captured stdout as text."""
        if self._stdout is None:
            self._stdout = self._read(self.stdout_path)
        return self._stdout

    @property
    def stderr(self) -> str:
        """Captured stderr as text."""
        if self._stderr is None:
            self._stderr = self._read(self.stderr_path)
        return self._stderr

    def stderr_tail(self, lines: int = 20) -> str:
        """Return the last *lines* lines of stderr."""
        return "\n".join(self.stderr.splitlines()[-lines:])

    def _read(self, path: Path) -> str:
        with path.open("rb") as f:
            data = f.read(self._max_bytes + 1)
        if len(data) > self._max_bytes:
            data = data[: self._max_bytes]
            self.truncated = True
            logger.warning("Captured %s truncated at %d bytes", path.name, self._max_bytes)
        return data.decode(errors="replace")


class ProcessRunner:
    """Launch and supervise agent containers.

    Container names are bound from the start of ``run()`` until its context
    exits. A second run with a bound name fails fast.

    Args:
        runtime: Container runtime adapter.
        stop_grace_s: Grace period for the graceful stop before a hard kill.
        max_output_size: Maximum bytes read back per captured stream.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        stop_grace_s: float = 5.0,
        max_output_size: int = 10_485_760,
    ) -> None:
        """Initialize the runner."""
        self.runtime = runtime
        self.stop_grace_s = stop_grace_s
        self.max_output_size = max_output_size
        self._active: dict[str, asyncio.subprocess.Process | None] = {}

    @property
    def active_names(self) -> set[str]:
        """Names currently bound by in-flight invocations."""
        return set(self._active)

    @contextlib.asynccontextmanager
    async def run(
        self,
        spec: ContainerSpec,
        payload: bytes,
        timeout_s: float,
        close_signal: CloseSignal | None = None,
    ) -> AsyncIterator[CapturedOutput]:
        """Run *spec* with *payload* on stdin and yield its captured output.

        A non-zero exit code is returned as data. Only runtime-reserved exit
        codes (see ContainerRuntime.launch_failure_codes) raise.

        Args:
            spec: The invocation descriptor. ``spec.name`` must be unused.
            payload: Bytes written to the container's stdin, then closed.
            timeout_s: Wall-clock deadline enforced by the watchdog.
            close_signal: Optional IPC close signal to run alongside.

        Yields:
            CapturedOutput for the finished invocation.

        Raises:
            NameConflictError: If the name is already bound.
            LaunchError: If the container could not be started.
        """
        name = spec.name
        if name in self._active:
            raise NameConflictError(name)
        self._active[name] = None
        try:
            if await self.runtime.exists(name):
                raise NameConflictError(name)
            try:
                capture_dir = tempfile.TemporaryDirectory(
                    prefix="nanoclaw-capture-", ignore_cleanup_errors=True
                )
            except OSError as exc:
                raise LaunchError(f"Could not create capture directory for {name}: {exc}") from exc
            with capture_dir as tmp:
                stdout_path = Path(tmp) / "stdout"
                stderr_path = Path(tmp) / "stderr"
                exit_code, timed_out, duration_ms = await self._supervise(
                    spec, payload, timeout_s, close_signal, stdout_path, stderr_path
                )
                captured = CapturedOutput(
                    stdout_path,
                    stderr_path,
                    exit_code,
                    timed_out=timed_out,
                    duration_ms=duration_ms,
                    max_bytes=self.max_output_size,
                )
                if not timed_out and self.runtime.is_launch_failure(exit_code):
                    raise LaunchError(
                        f"Container {name} failed to launch (exit {exit_code}): "
                        f"{captured.stderr_tail(5)}"
                    )
                yield captured
        finally:
            self._active.pop(name, None)

    async def cancel(self, name: str) -> bool:
        """Stop an in-flight invocation by name.

        Uses the same stop-then-kill path as the watchdog.

        Returns:
            True if a running container was found and stopped.
        """
        proc = self._active.get(name)
        if proc is None:
            return False
        await self._terminate(name, proc)
        return True

    async def _supervise(
        self,
        spec: ContainerSpec,
        payload: bytes,
        timeout_s: float,
        close_signal: CloseSignal | None,
        stdout_path: Path,
        stderr_path: Path,
    ) -> tuple[int, bool, int]:
        """Spawn the container and wait for it, racing the watchdog.

        Returns:
            Tuple of (exit code, timed out, duration in ms).
        """
        name = spec.name
        try:
            with stdout_path.open("wb") as out, stderr_path.open("wb") as err:
                proc = await self.runtime.spawn(spec, out, err)
        except OSError as exc:
            raise LaunchError(f"Could not open capture files for {name}: {exc}") from exc
        self._active[name] = proc
        start = time.monotonic()
        logger.info("Container %s started (timeout %.0fs)", name, timeout_s)

        watchdog = Watchdog(timeout_s, functools.partial(self._terminate, name, proc), label=name)
        watchdog.arm()
        poller: asyncio.Task[None] | None = None
        if close_signal is not None:
            poller = asyncio.create_task(close_signal.watch(stdout_path))

        try:
            await self._feed_stdin(name, proc, payload)
            await proc.wait()
        except asyncio.CancelledError:
            if watchdog.cancel():
                logger.warning("Invocation of %s cancelled, stopping container", name)
                await asyncio.shield(self._terminate(name, proc))
            raise
        finally:
            watchdog.cancel()
            if poller is not None:
                poller.cancel()
                await asyncio.wait({poller})
                if not poller.cancelled() and poller.exception() is not None:
                    exc = poller.exception()
                    logger.warning("Close signal for %s failed: %s", name, exc, exc_info=exc)
            await watchdog.join()

        exit_code = proc.returncode if proc.returncode is not None else -1
        duration_ms = int((time.monotonic() - start) * 1000)
        if watchdog.fired:
            logger.error("Container %s stopped after timeout (%dms)", name, duration_ms)
        else:
            logger.info("Container %s exited with code %d after %dms", name, exit_code, duration_ms)
        return exit_code, watchdog.fired, duration_ms

    async def _feed_stdin(
        self, name: str, proc: asyncio.subprocess.Process, payload: bytes
    ) -> None:
        """Write *payload* to stdin and close it."""
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(payload)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Container %s closed stdin early: %s", name, exc)
        finally:
            proc.stdin.close()

    async def _terminate(self, name: str, proc: asyncio.subprocess.Process) -> None:
        """Graceful stop by name, then a hard kill if it does not exit in time."""
        if proc.returncode is not None:
            return
        await self.runtime.stop(name, self.stop_grace_s)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_s + _STOP_MARGIN_S)
        except TimeoutError:
            logger.error("Container %s ignored stop request, killing", name)
            await self.runtime.kill(name)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
