"""Wall-clock deadline for a single container invocation.

The watchdog is an asyncio timer task racing the invocation's foreground
wait. Whichever side finishes first decides the terminal state, and the
state never changes again, so a late firing can never stop a later
container that reuses the same name.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class WatchdogState(enum.Enum):
    """Lifecycle of a Watchdog."""

    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"
    CANCELLED = "cancelled"


class Watchdog:
    """Fire *on_fire* once if not cancelled within *timeout_s* seconds.

    Args:
        timeout_s: Deadline in seconds from arm().
        on_fire: Coroutine function run when the deadline passes. It should
            stop the workload and return once the stop has been handled.
        label: Name used in log messages (the container name).
    """

    def __init__(
        self,
        timeout_s: float,
        on_fire: Callable[[], Coroutine[Any, Any, None]],
        label: str = "",
    ) -> None:
        """Initialize an unarmed watchdog."""
        self.timeout_s = timeout_s
        self._on_fire = on_fire
        self._label = label
        self._state = WatchdogState.IDLE
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> WatchdogState:
        """Current state."""
        return self._state

    @property
    def fired(self) -> bool:
        """Whether the deadline passed before cancel()."""
        return self._state is WatchdogState.FIRED

    def arm(self) -> None:
        """Start the timer. May only be called once."""
        if self._state is not WatchdogState.IDLE:
            raise RuntimeError(f"Watchdog already {self._state.value}")
        self._state = WatchdogState.ARMED
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> bool:
        """Cancel the timer if it has not fired.

        Returns:
            True if this call moved the watchdog to CANCELLED, False if it
            had already fired or been cancelled.
        """
        if self._state is not WatchdogState.ARMED:
            return False
        self._state = WatchdogState.CANCELLED
        if self._task is not None:
            self._task.cancel()
        return True

    async def join(self) -> None:
        """Wait until the timer task is finished, including any stop in progress."""
        if self._task is None:
            return
        await asyncio.wait({self._task})

    async def _run(self) -> None:
        await asyncio.sleep(self.timeout_s)
        # No await between the check and the transition, so cancel() cannot
        # interleave here.
        if self._state is not WatchdogState.ARMED:
            return
        self._state = WatchdogState.FIRED
        logger.error("Deadline of %.1fs passed for %s, stopping", self.timeout_s, self._label)
        try:
            await self._on_fire()
        except Exception as exc:
            logger.error("Stop after timeout failed for %s: %s", self._label, exc, exc_info=True)
