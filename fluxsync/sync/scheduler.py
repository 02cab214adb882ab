"""
POLL SCHEDULER
Interval-driven refresh with visibility suspension and in-flight coalescing

States:
- STOPPED: polling disabled
- RUNNING: ticks fire on interval boundaries
- SUSPENDED: enabled but the view is hidden, ticks are withheld

Clock, sleep and visibility are injected so tests can drive time by hand.
"""
import asyncio
import math
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from config.settings import settings

logger = structlog.get_logger(__name__)


class PollState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    SUSPENDED = "suspended"


class PollScheduler:
    """
    Owns the polling state machine for one view.

    Boundaries are anchored when polling is enabled (or the interval changes)
    and advance in whole intervals, so a manual refresh or a resume from
    SUSPENDED never shifts the schedule. Only one refresh runs at a time;
    anything arriving while it is outstanding is skipped, not queued.
    """

    def __init__(
        self,
        refresh: Callable[[str], Awaitable[Any]],
        interval_s: Optional[float] = None,
        min_interval_s: Optional[float] = None,
        is_visible: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._refresh = refresh
        self.min_interval_s = settings.MIN_POLL_INTERVAL_S if min_interval_s is None else min_interval_s
        self.interval_s = self._clamp(settings.POLL_INTERVAL_S if interval_s is None else interval_s)
        self.is_visible = is_visible
        self.clock = clock
        self.sleep = sleep

        self._enabled = False
        self._state = PollState.STOPPED
        self._next_due: float = 0.0
        self._in_flight = False
        self._wake: Optional[asyncio.Event] = None

        # Stats
        self._tick_count = 0
        self._refresh_count = 0
        self._coalesced_count = 0
        self._suspended_ticks = 0

    # ========== STATE ==========

    @property
    def state(self) -> PollState:
        """Last known state; call sync_visibility() to re-read the view"""
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def next_due(self) -> Optional[float]:
        return self._next_due if self._enabled else None

    def sync_visibility(self) -> PollState:
        """Re-read the visibility source and move RUNNING <-> SUSPENDED"""
        if not self._enabled:
            return self._state
        target = PollState.RUNNING if self.is_visible() else PollState.SUSPENDED
        if target != self._state:
            self._transition_to(target)
        return self._state

    def _transition_to(self, new_state: PollState) -> None:
        old_state = self._state
        self._state = new_state
        logger.info(
            "poll_state_change",
            old_state=old_state.value,
            new_state=new_state.value,
            interval_s=self.interval_s,
        )

    # ========== OPERATOR CONTROLS ==========

    def enable(self) -> None:
        if self._enabled:
            return
        self._enabled = True
        self._next_due = self.clock() + self.interval_s
        self._transition_to(PollState.RUNNING if self.is_visible() else PollState.SUSPENDED)

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        self._transition_to(PollState.STOPPED)
        self._wake_run_loop()

    def set_interval(self, seconds: float) -> float:
        """Apply a new period, clamped up to the floor; returns the applied value"""
        applied = self._clamp(seconds)
        if applied != seconds:
            logger.info("poll_interval_clamped", requested=seconds, applied=applied)
        self.interval_s = applied
        if self._enabled:
            self._next_due = self.clock() + applied
            self._wake_run_loop()
        return applied

    def _clamp(self, seconds: float) -> float:
        try:
            seconds = float(seconds)
        except (TypeError, ValueError):
            seconds = settings.POLL_INTERVAL_S
        if math.isnan(seconds):
            seconds = settings.POLL_INTERVAL_S
        return max(self.min_interval_s, seconds)

    async def refresh_now(self) -> bool:
        """One-off refresh regardless of state; leaves the boundary untouched"""
        return await self._run_refresh("manual")

    # ========== TICKING ==========

    async def advance(self) -> bool:
        """
        Fire the tick if a boundary has passed.
        Returns True if a refresh actually ran.
        """
        if not self._enabled:
            return False
        now = self.clock()
        if now < self._next_due:
            return False

        # Skip every boundary already passed; missed ticks are not replayed
        missed = math.floor((now - self._next_due) / self.interval_s) + 1
        self._next_due += missed * self.interval_s
        self._tick_count += 1

        if self.sync_visibility() != PollState.RUNNING:
            self._suspended_ticks += 1
            logger.debug("poll_tick_suspended")
            return False
        return await self._run_refresh("tick")

    async def run(self) -> None:
        """
        Drive ticks until disabled.
        A new interval or disable() cuts the current wait short, so a
        shorter period takes effect at once.
        """
        logger.info("poll_scheduler_starting", interval_s=self.interval_s)
        self._wake = asyncio.Event()
        try:
            while self._enabled:
                delay = max(0.0, self._next_due - self.clock())
                await self._wait(delay)
                if not self._enabled:
                    break
                try:
                    await self.advance()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("poll_tick_error", error=f"{type(e).__name__}: {e}")
        finally:
            self._wake = None
        logger.info("poll_scheduler_stopped")

    async def _wait(self, delay: float) -> None:
        """Sleep until the delay passes or the run loop is woken"""
        self._wake.clear()
        sleeper = asyncio.ensure_future(self.sleep(delay))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()

    def _wake_run_loop(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def _run_refresh(self, trigger: str) -> bool:
        if self._in_flight:
            self._coalesced_count += 1
            logger.debug("refresh_coalesced", trigger=trigger)
            return False
        self._in_flight = True
        try:
            await self._refresh(trigger)
            self._refresh_count += 1
            return True
        finally:
            self._in_flight = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "interval_s": self.interval_s,
            "tick_count": self._tick_count,
            "refresh_count": self._refresh_count,
            "coalesced_count": self._coalesced_count,
            "suspended_ticks": self._suspended_ticks,
            "in_flight": self._in_flight,
        }
