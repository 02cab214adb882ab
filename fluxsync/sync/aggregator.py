"""
SNAPSHOT AGGREGATOR
Fans out all resource fetches of one poll cycle and merges them into one Snapshot

Policy:
- Secondary resource fails -> slot keeps its previous payload (or empty), marked degraded
- Primary resource fails   -> slot keeps its previous payload, snapshot marked invalid
- Optional resource fails  -> slot keeps its previous payload (or empty), nothing marked
- Exactly one Snapshot per refresh, timestamps strictly increasing
"""
import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog

from fluxsync.api.client import BackendClient
from fluxsync.core.errors import FetchError, FetchErrorKind, FetchResult
from fluxsync.core.models import Snapshot

logger = structlog.get_logger(__name__)

# Smallest step used to keep timestamps strictly increasing under a coarse clock
_TIMESTAMP_EPSILON = 1e-6

# Named lookbacks and how many rows each fetches before date filtering
TRADE_LOOKBACK_LIMITS: Dict[str, int] = {"today": 100, "week": 500}
SHADOW_LOOKBACK_LIMITS: Dict[str, int] = {"all": 100}

Lookback = Union[int, str]


@dataclass(frozen=True)
class ResourceSpec:
    """
    One slot of the snapshot and how to fill it.
    Optional slots degrade silently: their failures are recorded but never
    surfaced to the operator or counted as stale data.
    """
    name: str
    fetch: Callable[[BackendClient], Awaitable[FetchResult]]
    primary: bool = False
    empty: Any = None
    optional: bool = False


def resolve_lookback(lookback: Lookback, named: Dict[str, int]) -> int:
    """Row count to fetch for a numeric or named lookback"""
    if isinstance(lookback, str):
        if lookback in named:
            return named[lookback]
        try:
            lookback = int(lookback)
        except ValueError:
            raise ValueError(
                f"unknown lookback '{lookback}', expected a count or one of {sorted(named)}"
            ) from None
    if isinstance(lookback, bool) or not isinstance(lookback, int) or lookback <= 0:
        raise ValueError(f"lookback must be a positive count, got {lookback!r}")
    return lookback


def dashboard_resources(
    trade_lookback: Lookback = 10,
    shadow_lookback: Lookback = 10,
    chart_days: int = 14,
    lookback_days: int = 30,
) -> List[ResourceSpec]:
    """Resources polled by the main dashboard"""
    trades_limit = resolve_lookback(trade_lookback, TRADE_LOOKBACK_LIMITS)
    shadow_limit = resolve_lookback(shadow_lookback, SHADOW_LOOKBACK_LIMITS)
    return [
        ResourceSpec("status", lambda c: c.get_status(), primary=True),
        ResourceSpec("latest_cycle", lambda c: c.get_latest_cycle(), primary=True),
        ResourceSpec(
            "recent_trades",
            lambda c: c.get_recent_trades(trades_limit),
            empty={"trades": []},
        ),
        ResourceSpec(
            "shadow_logs",
            lambda c: c.get_recent_shadow_logs(shadow_limit),
            empty={"logs": []},
        ),
        ResourceSpec("positions", lambda c: c.get_active_positions(), empty={"positions": []}),
        ResourceSpec("daily_pnl", lambda c: c.get_daily_pnl(chart_days), empty={"data": []}),
        ResourceSpec("performance", lambda c: c.get_performance_metrics(lookback_days)),
        ResourceSpec("system_settings", lambda c: c.get_system_settings(), optional=True),
    ]


class SnapshotAggregator:
    """
    Pure aggregation: the only side effects are the fetches themselves.
    """

    def __init__(
        self,
        client: BackendClient,
        resources: Sequence[ResourceSpec],
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.resources = self._validated(resources)
        self.clock = clock
        self._refresh_count = 0

    def set_resources(self, resources: Sequence[ResourceSpec]) -> None:
        """Swap the slot configuration (e.g. new lookback limits); applies from the next refresh"""
        self.resources = self._validated(resources)

    @staticmethod
    def _validated(resources: Sequence[ResourceSpec]) -> List[ResourceSpec]:
        if not any(r.primary for r in resources):
            raise ValueError("at least one primary resource is required")
        names = [r.name for r in resources]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate resource names: {names}")
        return list(resources)

    async def refresh(self, previous: Optional[Snapshot] = None) -> Snapshot:
        """Fetch every resource concurrently and publish one Snapshot"""
        previous = previous or Snapshot.empty()
        specs = list(self.resources)
        self._refresh_count += 1

        results = await asyncio.gather(
            *(spec.fetch(self.client) for spec in specs),
            return_exceptions=True,
        )

        payloads: Dict[str, Optional[Dict[str, Any]]] = {}
        errors: Dict[str, FetchError] = {}
        degraded: List[str] = []
        valid = True

        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                # Contract breach by a fetch callable; treat as a failed slot
                logger.error(
                    "resource_fetch_raised",
                    resource=spec.name,
                    error=f"{type(result).__name__}: {result}"[:200],
                )
                result = FetchResult.failure(
                    spec.name, FetchErrorKind.NETWORK, f"{type(result).__name__}: {result}"[:200]
                )

            if result.ok:
                payloads[spec.name] = result.payload
                continue

            errors[spec.name] = result.error
            fallback = previous.resources.get(spec.name)
            if spec.primary:
                valid = False
                payloads[spec.name] = fallback
            else:
                if not spec.optional:
                    degraded.append(spec.name)
                payloads[spec.name] = fallback if fallback is not None else copy.deepcopy(spec.empty)

        timestamp = max(self.clock(), previous.timestamp + _TIMESTAMP_EPSILON)
        snapshot = Snapshot(
            resources=payloads,
            timestamp=timestamp,
            valid=valid,
            sequence=previous.sequence + 1,
            errors=errors,
            degraded=frozenset(degraded),
            last_good_at=timestamp if valid else previous.last_good_at,
        )

        if errors:
            logger.info(
                "snapshot_partial",
                sequence=snapshot.sequence,
                valid=valid,
                failed=sorted(errors),
            )
        else:
            logger.debug("snapshot_built", sequence=snapshot.sequence)

        return snapshot

    def get_stats(self) -> Dict[str, Any]:
        return {
            "refresh_count": self._refresh_count,
            "resources": [r.name for r in self.resources],
            "primary": [r.name for r in self.resources if r.primary],
        }
