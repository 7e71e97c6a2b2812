"""Exception taxonomy for the harness.

Every failure that reaches a user-facing surface is one of these. Raw
``OSError``s from process or filesystem calls are wrapped first.
"""

from __future__ import annotations

from nanoclaw_harness.types import InvocationResult


class HarnessError(Exception):
    """Base class for all harness errors."""


class LaunchError(HarnessError):
    """The workload could not be started (runtime or image missing)."""


class NameConflictError(LaunchError):
    """A container with the requested name is already bound.

    Args:
        name: The conflicting container name.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"Container name already in use: {name}")
        self.name = name


class MalformedOutput(HarnessError):
    """Sentinels missing or the enclosed payload could not be parsed.

    Args:
        message: What went wrong.
        raw: The raw enclosed text, or a tail of captured output when the
            markers were not found.
        stderr_tail: Tail of captured stderr, when available.
    """

    def __init__(self, message: str, raw: str = "", stderr_tail: str = "") -> None:
        super().__init__(message)
        self.raw = raw
        self.stderr_tail = stderr_tail


class WorkloadError(HarnessError):
    """The workload answered with a non-success status.

    Args:
        result: The decoded result carrying the error text.
    """

    def __init__(self, result: InvocationResult) -> None:
        super().__init__(result.message or f"Agent returned status '{result.status}'")
        self.result = result


class TimeoutExceeded(HarnessError):
    """The watchdog stopped the workload before it produced a response.

    Args:
        name: Container name that was stopped.
        timeout_s: The deadline that elapsed.
        tail: Tail of captured stderr for diagnostics.
    """

    def __init__(self, name: str, timeout_s: float, tail: str = "") -> None:
        super().__init__(f"Container {name} timed out after {timeout_s:.0f}s")
        self.name = name
        self.timeout_s = timeout_s
        self.tail = tail


class StorageError(HarnessError):
    """The session store could not be read or written."""
