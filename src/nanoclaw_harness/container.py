"""Agent container invocation for the nanoclaw harness.

Builds the workspace layout and mounts, names the container, encodes the
request, runs it through ProcessRunner with the IPC close signal, and
decodes the sentinel-wrapped response. New session ids are written to the
session store as soon as a response parses, before its status is checked.
"""

from __future__ import annotations

import logging
import re
import secrets as _secrets
import time
from dataclasses import dataclass
from pathlib import Path

from nanoclaw_harness.config import AppConfig
from nanoclaw_harness.errors import LaunchError, MalformedOutput, TimeoutExceeded, WorkloadError
from nanoclaw_harness.ipc import CloseSignal, IpcDirectory
from nanoclaw_harness.protocol import decode_output, encode_request
from nanoclaw_harness.runner import CapturedOutput, ProcessRunner
from nanoclaw_harness.sessions import SessionStore
from nanoclaw_harness.types import (
    ContainerSpec,
    InvocationRequest,
    InvocationResult,
    ResourceLimits,
    VolumeMount,
)

logger = logging.getLogger(__name__)

GROUP_MOUNT = "/workspace/group"
PROJECT_MOUNT = "/workspace/project"
CLAUDE_MOUNT = "/home/node/.claude"
IPC_MOUNT = "/workspace/ipc"


@dataclass
class Workspace:
    """Host-side working directory for one workspace folder.

    Attributes:
        folder: Logical workspace folder name (``groupFolder``).
        root: Host directory mounted at /workspace/group.
    """

    folder: str
    root: Path

    @classmethod
    def for_group(cls, nanoclaw_dir: Path, folder: str, explicit: Path | None = None) -> Workspace:
        """Return the workspace for *folder*.

        Args:
            nanoclaw_dir: The nanoclaw checkout.
            folder: Workspace folder name.
            explicit: Directory to use instead of ``<nanoclaw_dir>/groups/<folder>``.
        """
        root = explicit.expanduser().resolve() if explicit else nanoclaw_dir / "groups" / folder
        return cls(folder=folder, root=root)

    @property
    def claude_dir(self) -> Path:
        """Agent SDK state, mounted at /home/node/.claude."""
        return self.root / ".claude"

    @property
    def ipc(self) -> IpcDirectory:
        """Shared IPC directory, mounted at /workspace/ipc."""
        return IpcDirectory(self.root / "ipc")

    @property
    def logs_dir(self) -> Path:
        """Per-run container logs."""
        return self.root / "logs"

    def prepare(self) -> None:
        """Create the workspace directories."""
        self.root.mkdir(parents=True, exist_ok=True)
        self.claude_dir.mkdir(parents=True, exist_ok=True)
        self.ipc.ensure()


def build_volume_mounts(workspace: Workspace, nanoclaw_dir: Path | None = None) -> list[VolumeMount]:
    """Build the mount list for an agent container.

    Args:
        workspace: The prepared workspace.
        nanoclaw_dir: nanoclaw checkout mounted read-only at
            /workspace/project, or None to leave it out.

    Returns:
        List of VolumeMount objects.
    """
    mounts = [VolumeMount(host_path=str(workspace.root), container_path=GROUP_MOUNT)]
    if nanoclaw_dir is not None:
        mounts.append(
            VolumeMount(host_path=str(nanoclaw_dir), container_path=PROJECT_MOUNT, readonly=True)
        )
    mounts.append(VolumeMount(host_path=str(workspace.claude_dir), container_path=CLAUDE_MOUNT))
    mounts.append(VolumeMount(host_path=str(workspace.ipc.root), container_path=IPC_MOUNT))
    return mounts


def make_container_name(prefix: str, folder: str) -> str:
    """Return a container name unique to this invocation.

    Args:
        prefix: Name prefix, e.g. 'nanoclaw-chat'.
        folder: Workspace folder, sanitized into the name.
    """
    safe = re.sub(r"[^a-zA-Z0-9-]", "-", folder)
    return f"{prefix}-{safe}-{int(time.time() * 1000)}-{_secrets.token_hex(3)}"


class AgentInvoker:
    """Run request/response turns against the agent image.

    Args:
        runner: Process runner used for every turn.
        sessions: Store receiving new session ids.
        config: Application config (image, limits, IPC timing, model).
        nanoclaw_dir: Checkout mounted read-only into the container, or None.
        name_prefix: Prefix for generated container names.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        sessions: SessionStore,
        config: AppConfig,
        nanoclaw_dir: Path | None = None,
        name_prefix: str = "nanoclaw-chat",
    ) -> None:
        """Initialize the invoker."""
        self.runner = runner
        self.sessions = sessions
        self.config = config
        self.nanoclaw_dir = nanoclaw_dir
        self.name_prefix = name_prefix

    def build_spec(self, workspace: Workspace, model: str | None = None) -> ContainerSpec:
        """Build the invocation descriptor for *workspace*."""
        container = self.config.container
        return ContainerSpec(
            image=self.config.runtime.image,
            name=make_container_name(self.name_prefix, workspace.folder),
            mounts=build_volume_mounts(workspace, self.nanoclaw_dir),
            env={"CLAUDE_MODEL": model or container.model},
            limits=ResourceLimits(
                memory=container.memory,
                cpus=container.cpus,
                pids_limit=container.pids_limit,
            ),
        )

    async def invoke(
        self,
        request: InvocationRequest,
        workspace: Workspace,
        timeout_s: float | None = None,
        model: str | None = None,
    ) -> InvocationResult:
        """Run one turn and return the decoded, successful result.

        Args:
            request: The request to send. Its ``workspace_folder`` keys the
                session store.
            workspace: Host workspace to mount.
            timeout_s: Deadline override. Defaults to ``container.timeout_s``.
            model: Model override. Defaults to ``container.model``.

        Returns:
            The InvocationResult with status 'success'.

        Raises:
            LaunchError: The workspace or container could not be set up.
            StorageError: The new session id could not be saved.
            MalformedOutput: No parsable sentinel-wrapped payload.
            TimeoutExceeded: The watchdog fired before a payload was produced.
            WorkloadError: The payload has a non-success status.
        """
        try:
            workspace.prepare()
        except OSError as exc:
            raise LaunchError(f"Could not prepare workspace {workspace.root}: {exc}") from exc
        spec = self.build_spec(workspace, model)
        deadline = timeout_s if timeout_s is not None else self.config.container.timeout_s
        close_signal = None
        if self.config.ipc.enabled:
            close_signal = CloseSignal(
                workspace.ipc,
                grace_s=self.config.ipc.close_grace_s,
                poll_interval_s=self.config.ipc.poll_interval_s,
            )

        logger.info("Invoking %s for %s (%d mounts)", spec.name, workspace.folder, len(spec.mounts))
        async with self.runner.run(spec, encode_request(request), deadline, close_signal) as captured:
            try:
                result = decode_output(captured.stdout)
            except MalformedOutput as exc:
                write_run_log(workspace.logs_dir, spec, request, captured)
                if captured.timed_out:
                    raise TimeoutExceeded(spec.name, deadline, captured.stderr_tail()) from exc
                raise MalformedOutput(
                    f"No valid response from agent (exit code: {captured.exit_code}): {exc}",
                    raw=exc.raw,
                    stderr_tail=captured.stderr_tail(),
                ) from exc

            if captured.timed_out:
                logger.warning("Container %s answered but had to be stopped", spec.name)
            if result.new_session_id:
                self.sessions.save(request.workspace_folder, result.new_session_id)

            if result.status != "success":
                write_run_log(workspace.logs_dir, spec, request, captured)
                raise WorkloadError(result)
            if logger.isEnabledFor(logging.DEBUG):
                write_run_log(workspace.logs_dir, spec, request, captured)
            return result


def write_run_log(
    logs_dir: Path,
    spec: ContainerSpec,
    request: InvocationRequest,
    captured: CapturedOutput,
) -> Path | None:
    """Write a container run log file for diagnostics.

    Secrets travel on stdin only and are never written here.

    Args:
        logs_dir: Directory to write the log file into.
        spec: The invocation descriptor.
        request: The request that was sent.
        captured: Captured output of the run.

    Returns:
        Path of the written log, or None if it could not be written.
    """
    ts = time.strftime("%Y%m%dT%H%M%S")
    log_file = logs_dir / f"container-{ts}-{spec.name}.log"
    lines = [
        "=== Container Run Log ===",
        f"Timestamp: {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())}",
        f"Container: {spec.name}",
        f"Image: {spec.image}",
        f"Group: {request.workspace_folder}",
        f"IsMain: {request.is_primary}",
        f"Session: {request.session_id or '(new)'}",
        f"Duration: {captured.duration_ms}ms",
        f"Exit Code: {captured.exit_code}",
        f"Timed Out: {captured.timed_out}",
        f"Stdout Truncated: {captured.truncated}",
        "",
        "=== Mounts ===",
        "\n".join(
            f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
            for m in spec.mounts
        ),
        "",
        "=== Stderr ===",
        captured.stderr,
        "",
        f"=== Stdout {'(TRUNCATED)' if captured.truncated else ''} ===",
        captured.stdout,
    ]
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file.write_text("\n".join(lines))
    except OSError as exc:
        logger.warning("Failed to write container log: %s", exc)
        return None
    logger.debug("Container log written to %s", log_file)
    return log_file
