"""
Data models for the live-data synchronization engine
Snapshots are immutable once published; suggestions are replaced wholesale on reload
"""
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from fluxsync.core.errors import FetchError


# Resource whose rows are compared cycle to cycle
ROWS_RESOURCE = "latest_cycle"

# Identity key and operational fields of a decision row, in digest order
ENTITY_KEY = "symbol"
ENTITY_FIELDS: Tuple[str, ...] = (
    "decision",
    "confidence",
    "hold_reason",
    "position_side",
    "position_qty",
    "position_avg",
)

# Backtest metrics shown side by side on the optimize page
METRIC_KEYS: Tuple[str, ...] = (
    "win_rate",
    "total_return_pct",
    "max_drawdown_pct",
    "profit_factor",
    "total_trades",
)


@dataclass(frozen=True)
class EntityRow:
    """
    One symbol's decision/position state within a cycle.
    Only the declared operational fields are kept; everything else on the
    wire row is display metadata and never affects change detection.
    """
    key: str
    fields: Tuple[Tuple[str, Any], ...]

    def get(self, name: str, default: Any = None) -> Any:
        for field_name, value in self.fields:
            if field_name == name:
                return value
        return default

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["EntityRow"]:
        """Parse a wire row; rows without an identity key are skipped"""
        key = row.get(ENTITY_KEY)
        if key is None or key == "":
            return None
        return cls(
            key=str(key),
            fields=tuple((name, row.get(name)) for name in ENTITY_FIELDS),
        )


@dataclass(frozen=True)
class Snapshot:
    """Aggregate of all resources fetched in one poll cycle"""
    resources: Mapping[str, Optional[Dict[str, Any]]]
    timestamp: float
    valid: bool
    sequence: int = 0
    errors: Mapping[str, FetchError] = field(default_factory=dict)
    degraded: FrozenSet[str] = frozenset()
    last_good_at: Optional[float] = None

    def __post_init__(self):
        # Read-only views so a published snapshot can't be patched in place
        object.__setattr__(self, "resources", MappingProxyType(dict(self.resources)))
        object.__setattr__(self, "errors", MappingProxyType(dict(self.errors)))
        object.__setattr__(self, "degraded", frozenset(self.degraded))

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(resources={}, timestamp=0.0, valid=False, sequence=0)

    def get(self, name: str, default: Any = None) -> Any:
        payload = self.resources.get(name)
        return default if payload is None else payload

    @property
    def is_stale(self) -> bool:
        """True when any slot is showing data older than this cycle"""
        return not self.valid or bool(self.degraded)

    @property
    def cycle(self) -> Optional[Dict[str, Any]]:
        payload = self.resources.get(ROWS_RESOURCE) or {}
        cycle = payload.get("cycle")
        return cycle if isinstance(cycle, dict) else None

    @property
    def raw_rows(self) -> List[Dict[str, Any]]:
        cycle = self.cycle or {}
        rows = cycle.get("rows")
        if not isinstance(rows, list):
            return []
        return [r for r in rows if isinstance(r, dict)]

    def entity_rows(self) -> Dict[str, EntityRow]:
        """Identity-keyed rows of the primary resource (last row wins on duplicate keys)"""
        rows: Dict[str, EntityRow] = {}
        for raw in self.raw_rows:
            row = EntityRow.from_row(raw)
            if row is not None:
                rows[row.key] = row
        return rows


@dataclass(frozen=True)
class ChangeSet:
    """Identity keys that changed between two adjacent snapshots"""
    changed: FrozenSet[str] = frozenset()
    appeared: FrozenSet[str] = frozenset()
    disappeared: FrozenSet[str] = frozenset()

    def __contains__(self, key: object) -> bool:
        return key in self.changed

    def __bool__(self) -> bool:
        return bool(self.changed)

    def __len__(self) -> int:
        return len(self.changed)

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.appeared or self.disappeared)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "changed": sorted(self.changed),
            "appeared": sorted(self.appeared),
            "disappeared": sorted(self.disappeared),
        }


@dataclass(frozen=True)
class Suggestion:
    """A backend-proposed single-parameter change"""
    setting_name: str
    current_value: Any
    suggested_value: Any
    confidence: float
    reason: Optional[str] = None
    impact_estimate: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Suggestion"]:
        name = data.get("setting_name")
        if not name:
            return None
        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0
        return cls(
            setting_name=str(name),
            current_value=data.get("current_value"),
            suggested_value=data.get("suggested_value"),
            confidence=max(0.0, min(1.0, confidence)),
            reason=data.get("reason"),
            impact_estimate=data.get("impact_estimate"),
        )


@dataclass(frozen=True)
class TrialResult:
    """
    Non-committed what-if evaluation of a selection against history.
    Shown next to the baseline, never written back.
    """
    settings: Mapping[str, Any]
    lookback_days: int
    baseline: Mapping[str, Any]
    trial: Mapping[str, Any]
    improvement: Mapping[str, Any]
    raw: Mapping[str, Any] = field(default_factory=dict)
    previous: Optional["TrialResult"] = None

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        settings: Dict[str, Any],
        lookback_days: int,
        previous: Optional["TrialResult"] = None,
    ) -> "TrialResult":
        return cls(
            settings=MappingProxyType(dict(settings)),
            lookback_days=lookback_days,
            baseline=MappingProxyType(dict(payload.get("current") or {})),
            trial=MappingProxyType(dict(payload.get("optimized") or {})),
            improvement=MappingProxyType(dict(payload.get("improvement") or {})),
            raw=MappingProxyType(dict(payload)),
            previous=previous,
        )

    def delta_from_previous(self) -> Dict[str, float]:
        """Per-metric change of this trial versus the one it replaced"""
        if self.previous is None:
            return {}
        deltas: Dict[str, float] = {}
        for key in METRIC_KEYS:
            now = self.trial.get(key)
            before = self.previous.trial.get(key)
            if isinstance(now, (int, float)) and isinstance(before, (int, float)):
                deltas[key] = float(now) - float(before)
        return deltas
