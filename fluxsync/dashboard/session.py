"""
DASHBOARD SESSION
View-layer owner of the live dashboard state

Poll Scheduler -> Snapshot Aggregator -> Fingerprint Differ -> publish

The previous snapshot, the change set and the highlight set live here and
are only touched from the event loop, so no locking is needed.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Sequence

import structlog

from config.settings import settings
from fluxsync.api.client import BackendClient
from fluxsync.core.errors import FetchError
from fluxsync.core.models import ChangeSet, Snapshot
from fluxsync.dashboard import viewmodel
from fluxsync.sync.aggregator import Lookback, ResourceSpec, SnapshotAggregator, dashboard_resources
from fluxsync.sync.fingerprint import diff
from fluxsync.sync.scheduler import PollScheduler, PollState

logger = structlog.get_logger(__name__)


class DashboardSession:
    """
    Keeps one dashboard view consistent with the backend.

    Scheduled refresh failures only mark the view stale. A manual refresh
    or a primary-resource failure also surfaces an explicit, dismissible
    error. Nothing already published is ever mutated.
    """

    def __init__(
        self,
        client: BackendClient,
        resources: Optional[Sequence[ResourceSpec]] = None,
        precision: Optional[int] = None,
        interval_s: Optional[float] = None,
        is_visible: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_publish: Optional[Callable[[Snapshot, ChangeSet], Any]] = None,
    ):
        self.client = client
        self.precision = settings.FINGERPRINT_PRECISION if precision is None else precision
        self.on_publish = on_publish

        # Dashboard lookbacks: a row count, or "today"/"week" for trades and "all" for shadow logs
        self.trade_lookback: Lookback = settings.TRADE_LOOKBACK
        self.shadow_lookback: Lookback = settings.SHADOW_LOOKBACK
        self.chart_days = settings.CHART_DAYS

        self.aggregator = SnapshotAggregator(
            client,
            resources or self._default_resources(),
            clock=clock,
        )
        self._visible = True
        self.scheduler = PollScheduler(
            self._refresh,
            interval_s=interval_s,
            is_visible=is_visible or (lambda: self._visible),
            clock=monotonic,
            sleep=sleep,
        )

        # Published state
        self.snapshot: Optional[Snapshot] = None
        self.change_set = ChangeSet()
        self.highlighted: FrozenSet[str] = frozenset()
        self.error: Optional[FetchError] = None

    def _default_resources(self):
        return dashboard_resources(
            trade_lookback=self.trade_lookback,
            shadow_lookback=self.shadow_lookback,
            chart_days=self.chart_days,
            lookback_days=settings.LOOKBACK_DAYS,
        )

    # ========== OPERATOR CONTROLS ==========

    def enable_polling(self) -> None:
        self.scheduler.enable()

    def disable_polling(self) -> None:
        self.scheduler.disable()

    def set_interval(self, seconds: float) -> float:
        return self.scheduler.set_interval(seconds)

    def set_visible(self, visible: bool) -> PollState:
        """Host view visibility changed (tab focus / blur)"""
        self._visible = visible
        return self.scheduler.sync_visibility()

    async def refresh_now(self) -> bool:
        """Manual refresh; skipped if a refresh is already in flight"""
        return await self.scheduler.refresh_now()

    def set_lookbacks(
        self,
        trade_lookback: Optional[Lookback] = None,
        shadow_lookback: Optional[Lookback] = None,
        chart_days: Optional[int] = None,
    ) -> None:
        """
        New lookbacks apply from the next refresh.
        Raises ValueError on an unknown mode and keeps the previous ones.
        """
        resources = dashboard_resources(
            trade_lookback=self.trade_lookback if trade_lookback is None else trade_lookback,
            shadow_lookback=self.shadow_lookback if shadow_lookback is None else shadow_lookback,
            chart_days=self.chart_days if chart_days is None else chart_days,
            lookback_days=settings.LOOKBACK_DAYS,
        )
        if trade_lookback is not None:
            self.trade_lookback = trade_lookback
        if shadow_lookback is not None:
            self.shadow_lookback = shadow_lookback
        if chart_days is not None:
            self.chart_days = chart_days
        self.aggregator.set_resources(resources)
        logger.info(
            "lookbacks_changed",
            trade_lookback=self.trade_lookback,
            shadow_lookback=self.shadow_lookback,
            chart_days=self.chart_days,
        )

    def clear_error(self) -> None:
        self.error = None

    # ========== LIFECYCLE ==========

    async def run(self) -> None:
        """Initial load, then poll until disabled"""
        await self.refresh_now()
        self.enable_polling()
        await self.scheduler.run()

    def stop(self) -> None:
        self.disable_polling()

    # ========== REFRESH ==========

    async def _refresh(self, trigger: str) -> None:
        manual = trigger == "manual"
        if manual:
            self.error = None

        previous = self.snapshot
        snapshot = await self.aggregator.refresh(previous)
        # Always the immediately preceding published snapshot
        change_set = diff(previous, snapshot, self.precision)

        self.snapshot = snapshot
        self.change_set = change_set
        self.highlighted = change_set.changed

        surfaced = self._error_to_surface(snapshot, manual)
        if surfaced is not None:
            self.error = surfaced

        logger.info(
            "snapshot_published",
            trigger=trigger,
            sequence=snapshot.sequence,
            valid=snapshot.valid,
            changed=sorted(change_set.changed),
            appeared=len(change_set.appeared),
            disappeared=len(change_set.disappeared),
            degraded=sorted(snapshot.degraded),
        )

        if self.on_publish:
            await self._safe_callback(self.on_publish, snapshot, change_set)

    def _error_to_surface(self, snapshot: Snapshot, manual: bool) -> Optional[FetchError]:
        primary = {r.name for r in self.aggregator.resources if r.primary}
        optional = {r.name for r in self.aggregator.resources if r.optional}
        for name, err in snapshot.errors.items():
            if name in primary:
                return err
        if manual:
            for name, err in snapshot.errors.items():
                if name not in optional:
                    return err
        return None

    async def _safe_callback(self, callback: Callable, *args) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("publish_callback_error", error=str(e))

    # ========== VIEW ==========

    def view(self, now: Optional[float] = None) -> Dict[str, Any]:
        model = viewmodel.dashboard_view(
            self.snapshot, self.change_set, self.highlighted, now, trade_lookback=self.trade_lookback
        )
        model["polling"] = self.scheduler.get_stats()
        model["error"] = self.error.to_dict() if self.error is not None else None
        return model
