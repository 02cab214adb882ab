"""
Derived dashboard figures computed from a published Snapshot
"""
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Union

from config.settings import settings
from fluxsync.core.models import ChangeSet, Snapshot


@dataclass(frozen=True)
class Freshness:
    tier: str   # "fresh" | "stale" | "old"
    label: str


def freshness(last_update: Optional[float], now: Optional[float] = None) -> Freshness:
    """Age bucket and human label of the last refresh"""
    if not last_update:
        return Freshness(tier="old", label="No data")
    now = time.time() if now is None else now
    elapsed = max(0.0, now - last_update)

    if elapsed < settings.FRESH_AFTER_S:
        tier = "fresh"
    elif elapsed < settings.STALE_AFTER_S:
        tier = "stale"
    else:
        tier = "old"

    seconds = int(elapsed)
    if seconds < 60:
        label = f"{seconds}s ago"
    elif seconds < 3600:
        label = f"{seconds // 60}m ago"
    else:
        label = f"{seconds // 3600}h ago"
    return Freshness(tier=tier, label=label)


def confidence_tier(confidence: float) -> str:
    if confidence >= 0.8:
        return "High"
    if confidence >= 0.6:
        return "Medium"
    return "Low"


def cycle_summary(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    total = len(rows)
    no_price = sum(1 for r in rows if r.get("last_price") is None)
    active_positions = sum(1 for r in rows if r.get("position_qty"))
    candles_ok_pct = round((total - no_price) / total * 100) if total else 0
    return {
        "total": total,
        "no_price": no_price,
        "active_positions": active_positions,
        "candles_ok_pct": candles_ok_pct,
    }


def trade_stats(trades: List[Dict[str, Any]]) -> Dict[str, Optional[int]]:
    """
    Win rate and losing streaks over closed trades.
    Trades are expected newest first. A trade is closed once it carries a
    "win" field; open trades omit it. Any falsy "win" (including null) is a loss.
    """
    completed = [t for t in trades if "win" in t]
    if not completed:
        return {"win_rate": None, "consecutive_losses": 0, "max_consecutive_losses": 0}

    wins = sum(1 for t in completed if t["win"])

    current = 0
    for t in completed:
        if t["win"]:
            break
        current += 1

    longest = run = 0
    for t in completed:
        run = 0 if t["win"] else run + 1
        longest = max(longest, run)

    return {
        "win_rate": round(wins / len(completed) * 100),
        "consecutive_losses": current,
        "max_consecutive_losses": longest,
    }


def _parse_ts(value: Any) -> Optional[datetime]:
    """Trade timestamp as an aware datetime; naive strings are local time"""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.astimezone()


def filter_trades(
    trades: List[Dict[str, Any]],
    lookback: Union[int, str, None],
    now: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Narrow fetched trades to a named lookback.
    "today" keeps the current local calendar day, "week" the last 7 days.
    Numeric lookbacks were already applied by the fetch limit.
    Trades without a readable "ts" are dropped by the named lookbacks.
    """
    if lookback not in ("today", "week"):
        return list(trades)
    current = datetime.fromtimestamp(time.time() if now is None else now).astimezone()
    week_ago = current - timedelta(days=7)

    kept = []
    for t in trades:
        ts = _parse_ts(t.get("ts"))
        if ts is None:
            continue
        if lookback == "today":
            if ts.astimezone().date() == current.date():
                kept.append(t)
        elif ts >= week_ago:
            kept.append(t)
    return kept


def active_profile(snapshot: Optional[Snapshot]) -> Optional[str]:
    """Preset id of the live settings, "custom" if none; None until it has loaded"""
    payload = snapshot.get("system_settings") if snapshot is not None else None
    if not payload:
        return None
    nested = payload.get("settings")
    preset = nested.get("preset_id") if isinstance(nested, dict) else None
    return preset or payload.get("preset_id") or "custom"


def stale_since(snapshot: Optional[Snapshot]) -> Optional[float]:
    """
    Time of the last good refresh when the primary data is stale, else None.
    Degraded secondary slots are reported separately and don't count here.
    """
    if snapshot is None or snapshot.valid:
        return None
    return snapshot.last_good_at


def dashboard_view(
    snapshot: Optional[Snapshot],
    change_set: ChangeSet,
    highlighted: FrozenSet[str],
    now: Optional[float] = None,
    trade_lookback: Union[int, str, None] = None,
) -> Dict[str, Any]:
    """Render-ready view-model of the main dashboard"""
    if snapshot is None:
        return {"loaded": False, "freshness": asdict(freshness(None, now))}

    rows = snapshot.raw_rows
    cycle = snapshot.cycle or {}
    trades_payload = snapshot.get("recent_trades", {})
    trades = filter_trades(trades_payload.get("trades") or [], trade_lookback, now)

    return {
        "loaded": True,
        "sequence": snapshot.sequence,
        "valid": snapshot.valid,
        "status": snapshot.get("status"),
        "cycle_ts": cycle.get("ts"),
        "unrealized": cycle.get("unrealized"),
        "rows": [
            dict(r, _changed=r.get("symbol") in highlighted, _new=r.get("symbol") in change_set.appeared)
            for r in rows
        ],
        "disappeared": sorted(change_set.disappeared),
        "summary": cycle_summary(rows),
        "trades": trades,
        "today_pnl": trades_payload.get("today_pnl"),
        "trade_stats": trade_stats(trades),
        "shadow_logs": snapshot.get("shadow_logs", {}).get("logs") or [],
        "positions": snapshot.get("positions", {}).get("positions") or [],
        "daily_pnl": snapshot.get("daily_pnl", {}).get("data") or [],
        "performance": snapshot.get("performance"),
        "active_profile": active_profile(snapshot),
        "freshness": asdict(freshness(snapshot.last_good_at, now)),
        "stale_since": stale_since(snapshot),
        "degraded": sorted(snapshot.degraded),
        "errors": {name: err.to_dict() for name, err in snapshot.errors.items()},
    }
