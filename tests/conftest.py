"""Shared fixtures for harness tests.

FakeRuntime stands in for podman: instead of ``podman run`` it starts a
short Python script as the workload, so the runner, watchdog and IPC code
run against real processes. The host path of the IPC mount is passed to
the script as its first argument.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
import textwrap
from pathlib import Path
from typing import IO

import pytest

from nanoclaw_harness.config import AppConfig
from nanoclaw_harness.container import IPC_MOUNT
from nanoclaw_harness.protocol import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from nanoclaw_harness.runner import ProcessRunner
from nanoclaw_harness.runtime import ContainerRuntime
from nanoclaw_harness.types import ContainerSpec


def agent_script(
    payload: dict | None = None,
    exit_code: int = 0,
    stderr: str = "",
    stdout: str = "",
    wait_for_close: bool = False,
) -> str:
    """Return a workload script that mimics the nanoclaw agent-runner.

    Args:
        payload: JSON body printed between the sentinels. ``{session}`` in
            a string value is replaced with the request's sessionId.
        exit_code: Exit code of the script.
        stderr: Text written to stderr.
        stdout: Free text written to stdout before any sentinels.
        wait_for_close: Keep running until ``<ipc>/input/_close`` exists.
    """
    return textwrap.dedent(
        f"""
        import json, os, sys, time
        raw = sys.stdin.read()
        try:
            req = json.loads(raw)
        except ValueError:
            req = {{}}
        ipc = sys.argv[1] if len(sys.argv) > 1 else ""
        if ipc:
            with open(os.path.join(ipc, "last-request.json"), "w") as f:
                f.write(raw)
        sys.stderr.write({stderr!r})
        sys.stdout.write({stdout!r})
        payload = {json.dumps(payload)!r}
        if payload != "null":
            payload = payload.replace("{{session}}", str(req.get("sessionId")))
            print({OUTPUT_START_MARKER!r})
            print(payload)
            print({OUTPUT_END_MARKER!r}, flush=True)
        if {wait_for_close!r} and ipc:
            while not os.path.exists(os.path.join(ipc, "input", "_close")):
                time.sleep(0.05)
        sys.exit({exit_code})
        """
    )


HANG_SCRIPT = "import time\nwhile True:\n    time.sleep(0.1)\n"


class FakeRuntime(ContainerRuntime):
    """ContainerRuntime that runs local Python scripts instead of containers.

    Args:
        scripts: Workload scripts, consumed one per spawn. The last one is
            reused once the list runs out.
        images: Image references reported as present.
        build_code: Exit code returned by build_image.
        launch_failure_codes: Exit codes treated as launch failures.
    """

    def __init__(
        self,
        scripts: list[str] | None = None,
        images: set[str] | None = None,
        build_code: int = 0,
        launch_failure_codes: tuple[int, ...] = (),
    ) -> None:
        super().__init__(cli="fake", userns_keep_id=False, launch_failure_codes=launch_failure_codes)
        self.scripts = list(scripts or [agent_script({"status": "success", "result": "ok"})])
        self.images = set(images or ())
        self.build_code = build_code
        self.procs: dict[str, asyncio.subprocess.Process] = {}
        self.specs: list[ContainerSpec] = []
        self.existing: set[str] = set()
        self.stopped: list[str] = []
        self.killed: list[str] = []
        self.builds: list[tuple[str, Path]] = []

    def build_run_args(self, spec: ContainerSpec) -> list[str]:
        if spec.command:
            return list(spec.command)
        script = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        ipc = next((m.host_path for m in spec.mounts if m.container_path == IPC_MOUNT), "")
        return [sys.executable, "-c", script, ipc]

    async def spawn(
        self, spec: ContainerSpec, stdout: IO[bytes], stderr: IO[bytes]
    ) -> asyncio.subprocess.Process:
        proc = await super().spawn(spec, stdout, stderr)
        self.procs[spec.name] = proc
        self.specs.append(spec)
        return proc

    async def exists(self, name: str) -> bool:
        proc = self.procs.get(name)
        return name in self.existing or (proc is not None and proc.returncode is None)

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def stop(self, name: str, grace_s: float) -> bool:
        self.stopped.append(name)
        proc = self.procs.get(name)
        if proc is None or proc.returncode is not None:
            return False
        proc.terminate()
        return True

    async def kill(self, name: str) -> bool:
        self.killed.append(name)
        proc = self.procs.get(name)
        if proc is None or proc.returncode is not None:
            return False
        proc.kill()
        return True

    async def build_image(self, tag: str, context_dir: Path) -> tuple[int, str]:
        self.builds.append((tag, context_dir))
        if self.build_code == 0:
            self.images.add(tag)
            return 0, f"Successfully tagged {tag}\n"
        return self.build_code, "Error: building at STEP 3: exit status 1\n"


def last_request(ipc_dir: Path) -> dict:
    """Return the request the last workload received in *ipc_dir*."""
    return json.loads((ipc_dir / "last-request.json").read_text())


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """A FakeRuntime with the default successful agent script."""
    return FakeRuntime()


@pytest.fixture
def runner(fake_runtime: FakeRuntime) -> ProcessRunner:
    """A ProcessRunner over fake_runtime with a short stop grace."""
    return ProcessRunner(fake_runtime, stop_grace_s=0.5)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """An AppConfig with fast IPC timing and paths under tmp_path."""
    return AppConfig.model_validate(
        {
            "container": {"timeout_ms": 10_000, "stop_grace_ms": 500, "model": "haiku"},
            "ipc": {"close_grace_ms": 50, "poll_interval_ms": 20},
            "paths": {
                "nanoclaw_dir": str(tmp_path / "nanoclaw"),
                "data_dir": str(tmp_path / "data"),
            },
        }
    )


@pytest.fixture
def hanging_cli(tmp_path: Path) -> Path:
    """A runtime executable that never answers."""
    if shutil.which("sleep") is None:
        pytest.skip("requires the sleep utility")
    script = tmp_path / "hanging-podman"
    script.write_text("#!/bin/sh\nexec sleep 30\n")
    script.chmod(0o755)
    return script
