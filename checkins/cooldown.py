import asyncio
import logging
import math
import time
from typing import Callable, Optional

from .events import CooldownTick, EventStream

"""
cooldown.py — local minimum interval between one identity's check-ins.

Not authoritative: the relay runs its own limiter. This one exists so the
user sees a countdown instead of a rejection round-trip. Only the last
submission instant is stored; `remaining` and its text form are derived.
"""

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


def format_remaining(seconds: float) -> str:
    """'4m 59s' style; 'Available now' once the cooldown is over."""
    if seconds <= 0:
        return "Available now"
    total = math.ceil(seconds)
    return f"{total // 60}m {total % 60}s"


class CooldownGate:
    """
    Per-identity gate. `clock` returns wall-clock seconds (time.time by default)
    so tests can drive it without sleeping.
    """

    def __init__(
        self,
        period: float,
        clock: Callable[[], float] = time.time,
        events: Optional[EventStream] = None,
        tick: float = TICK_SECONDS,
    ) -> None:
        self.period = float(period)
        self.clock = clock
        self.events = events
        self.tick = tick
        self.last_submission: Optional[float] = None
        self._ticker: Optional[asyncio.Task] = None

    def can_submit(self) -> bool:
        if self.last_submission is None:
            return True
        return self.clock() - self.last_submission >= self.period

    def remaining(self) -> float:
        if self.last_submission is None:
            return 0.0
        return max(0.0, self.period - (self.clock() - self.last_submission))

    def formatted(self) -> str:
        return format_remaining(self.remaining())

    def record(self, at: Optional[float] = None) -> Optional[float]:
        """
        Mark a submission. Optimistic: called before sending, not on relay ack.
        Returns the previous instant so a failed send can hand it to restore().
        """
        previous = self.last_submission
        self.last_submission = self.clock() if at is None else at
        logger.debug("Cooldown started, %.0fs until next check-in", self.remaining())
        return previous

    def restore(self, previous: Optional[float]) -> None:
        """Undo record() for a submission that never left."""
        self.last_submission = previous

    def start_ticker(self) -> Optional[asyncio.Task]:
        """Emit CooldownTick once per `tick` until remaining hits zero."""
        if self.events is None or self.remaining() <= 0:
            return None
        self.stop_ticker()
        self._ticker = asyncio.create_task(self._run_ticker())
        return self._ticker

    def stop_ticker(self) -> None:
        if self._ticker is not None and not self._ticker.done():
            self._ticker.cancel()
        self._ticker = None

    async def _run_ticker(self) -> None:
        while True:
            remaining = self.remaining()
            self.events.emit(CooldownTick(remaining))
            if remaining <= 0:
                return
            await asyncio.sleep(min(self.tick, remaining))
