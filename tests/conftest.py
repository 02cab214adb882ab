"""
Shared fakes for the sync engine tests
"""
import asyncio
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fluxsync.core.errors import FetchError, FetchErrorKind, FetchResult  # noqa: E402
from fluxsync.core.models import Snapshot  # noqa: E402


def cycle_payload(rows: List[Dict[str, Any]], ts: str = "2024-01-02T15:30:00Z") -> Dict[str, Any]:
    return {"ok": True, "cycle": {"ts": ts, "rows": rows}}


def make_snapshot(rows: List[Dict[str, Any]], sequence: int = 1, timestamp: float = 100.0) -> Snapshot:
    return Snapshot(
        resources={"latest_cycle": cycle_payload(rows)},
        timestamp=timestamp,
        valid=True,
        sequence=sequence,
        last_good_at=timestamp,
    )


class FakeClock:
    """Hand-driven clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """
    Stand-in for BackendClient.

    `responses` maps resource -> payload dict, FetchError, or a callable
    returning either. `gates` holds a resource's calls open until set.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {
            "status": {"ok": True, "mode": "paper"},
            "latest_cycle": cycle_payload([]),
            "recent_trades": {"ok": True, "trades": [], "today_pnl": 0.0},
            "shadow_logs": {"ok": True, "logs": []},
            "positions": {"ok": True, "positions": []},
            "daily_pnl": {"ok": True, "data": []},
            "performance": {"ok": True, "metrics": {}},
            "system_settings": {"ok": True, "settings": {"preset_id": "balanced"}},
            "suggestions": {"ok": True, "suggestions": []},
            "quick_backtest": {"ok": True, "current": {"win_rate": 0.5}},
            "trial_backtest": {"ok": True, "current": {}, "optimized": {}, "improvement": {}},
            "apply_settings": {"ok": True},
            "suggestion_action": {"ok": True},
        }
        self.calls: List[Tuple[str, tuple]] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(
        self,
        resource: str,
        kind: FetchErrorKind = FetchErrorKind.HTTP,
        status: Optional[int] = 500,
        message: str = "Internal Server Error",
    ) -> None:
        self.responses[resource] = FetchError(kind=kind, resource=resource, message=message, status=status)

    def calls_to(self, resource: str) -> List[tuple]:
        return [args for name, args in self.calls if name == resource]

    async def _respond(self, resource: str, *args) -> FetchResult:
        self.calls.append((resource, args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(resource)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            response = self.responses.get(resource, {"ok": True})
            if callable(response):
                response = response(*args)
            if isinstance(response, FetchError):
                return FetchResult(resource=resource, error=response)
            return FetchResult.success(resource, response)
        finally:
            self.in_flight -= 1

    async def get_status(self):
        return await self._respond("status")

    async def get_latest_cycle(self):
        return await self._respond("latest_cycle")

    async def get_recent_trades(self, limit=10, trading_mode=None):
        return await self._respond("recent_trades", limit)

    async def get_recent_shadow_logs(self, limit=10):
        return await self._respond("shadow_logs", limit)

    async def get_active_positions(self):
        return await self._respond("positions")

    async def get_daily_pnl(self, days=7):
        return await self._respond("daily_pnl", days)

    async def get_performance_metrics(self, lookback=30):
        return await self._respond("performance", lookback)

    async def get_system_settings(self):
        return await self._respond("system_settings")

    async def get_suggested_settings(self, lookback=30):
        return await self._respond("suggestions", lookback)

    async def get_quick_backtest(self, lookback=30):
        return await self._respond("quick_backtest", lookback)

    async def run_trial_backtest(self, settings_map, lookback=30, is_custom=True):
        return await self._respond("trial_backtest", dict(settings_map), lookback, is_custom)

    async def apply_settings(self, partial):
        return await self._respond("apply_settings", dict(partial))

    async def log_suggestion_decision(self, setting_name, current_value, suggested_value, decision):
        return await self._respond(
            "suggestion_action", setting_name, current_value, suggested_value, decision
        )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
