"""Wake sources: Deliver a parameterless "system resumed" callback.

ClockGapWakeSource polls the clocks: monotonic time does not advance while
the machine is suspended but wall-clock time does, so a wall-clock jump
much larger than the monotonic one between two polls means we just woke.

SignalWakeSource treats SIGUSR1 as a resume event, for hosts where an
external hook (sleepwatcher, a launchd job) already knows when we woke.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from waked.config import Settings, get_settings
from waked.logging_config import get_logger

logger = get_logger(__name__)

WakeCallback = Callable[[], Any]


class WakeSource(Protocol):
    async def watch(self, on_wake: WakeCallback) -> None: ...


class ClockGapWakeSource:
    """Detects resume from sleep by comparing wall-clock and monotonic time."""

    def __init__(
        self,
        poll_interval: float = 5.0,
        gap_threshold: float = 30.0,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.poll_interval = poll_interval
        self.gap_threshold = gap_threshold
        self._wall_clock = wall_clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._last_wall = 0.0
        self._last_mono = 0.0
        self.reset()

    def reset(self) -> None:
        self._last_wall = self._wall_clock()
        self._last_mono = self._monotonic()

    def check(self) -> Optional[float]:
        """Return the suspended duration if a resume happened since the last check."""
        wall, mono = self._wall_clock(), self._monotonic()
        gap = (wall - self._last_wall) - (mono - self._last_mono)
        self._last_wall, self._last_mono = wall, mono
        if gap > self.gap_threshold:
            return gap
        return None

    async def watch(self, on_wake: WakeCallback) -> None:
        self.reset()
        logger.info("wake_source_started", source="clock", poll_interval=self.poll_interval)
        while True:
            await self._sleep(self.poll_interval)
            slept = self.check()
            if slept is not None:
                logger.info("resume_detected", source="clock", slept=round(slept, 1))
                on_wake()


class SignalWakeSource:
    """Treats a POSIX signal (SIGUSR1 by default) as a resume event."""

    def __init__(self, sig: signal.Signals = signal.SIGUSR1) -> None:
        self.sig = sig

    async def watch(self, on_wake: WakeCallback) -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(self.sig, self._fire, on_wake)
        logger.info("wake_source_started", source="signal", signal=self.sig.name)
        try:
            await asyncio.Event().wait()
        finally:
            loop.remove_signal_handler(self.sig)

    def _fire(self, on_wake: WakeCallback) -> None:
        logger.info("resume_detected", source="signal", signal=self.sig.name)
        on_wake()


def build_wake_source(settings: Optional[Settings] = None) -> WakeSource:
    """Return the wake source selected by waked_wake_source."""
    settings = settings or get_settings()
    if settings.waked_wake_source == "signal":
        return SignalWakeSource()
    return ClockGapWakeSource(
        poll_interval=settings.waked_clock_poll_interval,
        gap_threshold=settings.waked_clock_gap_threshold,
    )
