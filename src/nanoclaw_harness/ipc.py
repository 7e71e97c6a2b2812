"""IPC close signal for long-lived agent containers.

The nanoclaw agent-runner keeps polling ``/workspace/ipc/input`` for
follow-up messages after it has answered, and only exits once a ``_close``
file shows up there. For one-shot turns the harness watches captured stdout
for the end sentinel and then drops that file so the container exits on its
own instead of being stopped by the watchdog.

The IPC directory is shared with the container. The harness only ever
creates the close marker; it never truncates or removes files there.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from nanoclaw_harness.protocol import contains_end_marker

logger = logging.getLogger(__name__)

CLOSE_SENTINEL_NAME = "_close"
IPC_SUBDIRS = ("messages", "tasks", "input")


class IpcDirectory:
    """Host side of the shared IPC directory mounted at /workspace/ipc.

    Args:
        root: Host path of the IPC directory.
    """

    def __init__(self, root: Path) -> None:
        """Initialize with the IPC root path."""
        self.root = root

    @property
    def input_dir(self) -> Path:
        """Directory the agent-runner polls for input and the close marker."""
        return self.root / "input"

    @property
    def close_path(self) -> Path:
        """Path of the close marker file."""
        return self.input_dir / CLOSE_SENTINEL_NAME

    def ensure(self) -> None:
        """Create the IPC subdirectories if missing."""
        for sub in IPC_SUBDIRS:
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    def write_close(self) -> None:
        """Create the zero-byte close marker.

        An existing marker is left as is (touch does not truncate).
        """
        self.input_dir.mkdir(parents=True, exist_ok=True)
        self.close_path.touch(exist_ok=True)
        logger.debug("Close signal written to %s", self.close_path)


class CloseSignal:
    """Watch captured stdout and signal the container to close.

    Args:
        ipc: The shared IPC directory.
        grace_s: Delay after the end sentinel is seen, to let trailing
            writes land.
        poll_interval_s: How often the capture file is re-read.
    """

    def __init__(self, ipc: IpcDirectory, grace_s: float = 0.5, poll_interval_s: float = 0.25) -> None:
        """Initialize the close signal watcher."""
        self.ipc = ipc
        self.grace_s = grace_s
        self.poll_interval_s = poll_interval_s
        self.sent = False

    async def watch(self, stdout_path: Path) -> None:
        """Poll *stdout_path* until an end sentinel line appears, then close.

        Runs until the marker is written or the task is cancelled. Cancel it
        when the invocation ends so a stale marker never lands in a later
        invocation's directory.

        Args:
            stdout_path: The growing file receiving the container's stdout.
        """
        offset = 0
        partial = ""
        while True:
            chunk, offset = _read_from(stdout_path, offset)
            if chunk:
                # Only complete lines are checked; the tail waits for its newline.
                complete, _, partial = (partial + chunk).rpartition("\n")
                if contains_end_marker(complete):
                    break
            await asyncio.sleep(self.poll_interval_s)

        logger.debug("End sentinel seen in %s, closing in %.2fs", stdout_path, self.grace_s)
        await asyncio.sleep(self.grace_s)
        self.ipc.write_close()
        self.sent = True


def _read_from(path: Path, offset: int) -> tuple[str, int]:
    """Read whatever was appended to *path* since *offset*.

    Returns:
        Tuple of (new text, new offset). A missing file reads as empty.
    """
    try:
        with path.open("rb") as f:
            f.seek(offset)
            data = f.read()
    except FileNotFoundError:
        return "", offset
    return data.decode(errors="replace"), offset + len(data)
