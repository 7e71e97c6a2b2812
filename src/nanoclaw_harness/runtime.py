"""Container runtime CLI adapter.

Everything that shells out to podman (or docker) goes through
ContainerRuntime, so stop/kill are always addressed by container name and
never by signalling the CLI client process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import IO

from nanoclaw_harness.errors import LaunchError
from nanoclaw_harness.types import ContainerSpec, VolumeMount

logger = logging.getLogger(__name__)

# Bound on short management commands (exists, kill, image exists).
_CONTROL_TIMEOUT_S = 10.0


class ContainerRuntime:
    """Thin async wrapper around a docker-compatible runtime CLI.

    Args:
        cli: Runtime executable name or path.
        userns_keep_id: Add ``--userns=keep-id`` to run invocations.
        launch_failure_codes: Exit codes reserved by the runtime for its own
            failures.
        control_timeout_s: Bound on short management commands.
    """

    def __init__(
        self,
        cli: str = "podman",
        userns_keep_id: bool = True,
        launch_failure_codes: tuple[int, ...] | list[int] = (125, 126, 127),
        control_timeout_s: float = _CONTROL_TIMEOUT_S,
    ) -> None:
        """Initialize the runtime adapter."""
        self.cli = cli
        self.userns_keep_id = userns_keep_id
        self.launch_failure_codes = frozenset(launch_failure_codes)
        self.control_timeout_s = control_timeout_s

    def build_run_args(self, spec: ContainerSpec) -> list[str]:
        """Build the argument list for a ``run`` invocation.

        Args:
            spec: The invocation descriptor.

        Returns:
            Full argv, starting with the runtime executable.
        """
        args = [self.cli, "run", "-i", "--rm", "--name", spec.name]
        if self.userns_keep_id:
            args.append("--userns=keep-id")
        if spec.limits.memory:
            args += ["--memory", spec.limits.memory]
        if spec.limits.cpus is not None:
            args += ["--cpus", f"{spec.limits.cpus:g}"]
        if spec.limits.pids_limit is not None:
            args += ["--pids-limit", str(spec.limits.pids_limit)]
        for key, value in spec.env.items():
            args += ["-e", f"{key}={value}"]
        args += mount_args(spec.mounts)
        args.append(spec.image)
        args += spec.command
        return args

    async def spawn(
        self,
        spec: ContainerSpec,
        stdout: IO[bytes],
        stderr: IO[bytes],
    ) -> asyncio.subprocess.Process:
        """Start the workload with a stdin pipe and the given output files.

        Args:
            spec: The invocation descriptor.
            stdout: Open binary file receiving stdout.
            stderr: Open binary file receiving stderr.

        Returns:
            The running process.

        Raises:
            LaunchError: If the runtime executable cannot be started.
        """
        args = self.build_run_args(spec)
        logger.debug("Spawning: %s", " ".join(args))
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as exc:
            raise LaunchError(f"Could not start container runtime '{args[0]}': {exc}") from exc

    def is_launch_failure(self, exit_code: int) -> bool:
        """Return True if *exit_code* means the runtime itself failed."""
        return exit_code in self.launch_failure_codes

    async def exists(self, name: str) -> bool:
        """Return True if a container with *name* is known to the runtime.

        Raises:
            LaunchError: If the runtime executable cannot be started or
                does not answer in time.
        """
        code, _ = await self._run_control("container", "exists", name)
        return code == 0

    async def image_exists(self, image: str) -> bool:
        """Return True if *image* is present locally.

        Raises:
            LaunchError: If the runtime executable cannot be started or
                does not answer in time.
        """
        code, _ = await self._run_control("image", "exists", image)
        return code == 0

    async def stop(self, name: str, grace_s: float) -> bool:
        """Ask the runtime to stop *name* within *grace_s* seconds.

        Failures are logged and reported as False so the caller can fall
        back to a hard kill.

        Returns:
            True if the stop command exited 0.
        """
        grace = max(int(grace_s), 1)
        try:
            code, output = await self._run_control(
                "stop", "-t", str(grace), name, timeout=grace_s + self.control_timeout_s
            )
        except LaunchError as exc:
            logger.warning("Graceful stop of %s failed: %s", name, exc)
            return False
        if code != 0:
            logger.warning("Graceful stop of %s exited %d: %s", name, code, output.strip())
        return code == 0

    async def kill(self, name: str) -> bool:
        """Force-kill *name*. Returns True if the kill command exited 0."""
        try:
            code, output = await self._run_control("kill", name)
        except LaunchError as exc:
            logger.warning("Kill of %s failed: %s", name, exc)
            return False
        if code != 0:
            logger.debug("Kill of %s exited %d: %s", name, code, output.strip())
        return code == 0

    async def build_image(self, tag: str, context_dir: Path) -> tuple[int, str]:
        """Build an image from ``context_dir`` (its Dockerfile) as *tag*.

        Returns:
            Tuple of (exit code, combined build output).

        Raises:
            LaunchError: If the runtime executable cannot be started.
        """
        logger.info("Building image %s from %s", tag, context_dir)
        proc = await self._exec(self.cli, "build", "-t", tag, str(context_dir))
        out, _ = await proc.communicate()
        return proc.returncode or 0, out.decode(errors="replace")

    async def _run_control(self, *args: str, timeout: float | None = None) -> tuple[int, str]:
        """Run a short management command and return (exit code, output).

        Raises:
            LaunchError: If the command cannot be started or does not finish
                within *timeout* (default ``control_timeout_s``).
        """
        limit = timeout if timeout is not None else self.control_timeout_s
        proc = await self._exec(self.cli, *args)
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise LaunchError(
                f"Container runtime '{self.cli} {args[0]}' did not answer within {limit:.1f}s"
            ) from exc
        return proc.returncode or 0, out.decode(errors="replace")

    async def _exec(self, *args: str) -> asyncio.subprocess.Process:
        """Start a management command with combined stdout/stderr capture."""
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise LaunchError(f"Could not start container runtime '{args[0]}': {exc}") from exc


def mount_args(mounts: list[VolumeMount]) -> list[str]:
    """Translate mounts to runtime flags.

    Read-only mounts use the explicit ``--mount`` form, read-write mounts
    the short ``-v`` form.
    """
    args: list[str] = []
    for mount in mounts:
        if mount.readonly:
            args += [
                "--mount",
                f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
            ]
        else:
            args += ["-v", f"{mount.host_path}:{mount.container_path}"]
    return args
