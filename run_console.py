#!/usr/bin/env python3
"""
Flux Console headless runner
Polls the backend, publishes snapshots and logs what changed each cycle

Usage:
  python run_console.py                              # Uses API_BASE from .env
  python run_console.py --api-base https://host      # Explicit backend
  python run_console.py --interval 5 --trades 25     # Faster polling, more trades
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Callable

# Add project root to path (works with absolute paths)
PROJECT_ROOT = Path(__file__).parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

import structlog

from config.settings import settings
from fluxsync.api.client import BackendClient
from fluxsync.core.models import ChangeSet, Snapshot
from fluxsync.dashboard import DashboardSession, viewmodel

logger = structlog.get_logger(__name__)


def lookback_arg(value: str):
    """A row count, or a named lookback validated later by set_lookbacks"""
    return int(value) if value.isdigit() else value


def parse_args():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Flux Console live-data runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--api-base",
        default=None,
        help="Backend base URL (default: API_BASE setting)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.POLL_INTERVAL_S,
        help=f"Poll interval in seconds, floor {settings.MIN_POLL_INTERVAL_S:g}s",
    )
    parser.add_argument(
        "--trades",
        type=lookback_arg,
        default=settings.TRADE_LOOKBACK,
        help="Recent trades to show: a count, 'today' or 'week'",
    )
    parser.add_argument(
        "--shadow",
        type=lookback_arg,
        default=settings.SHADOW_LOOKBACK,
        help="Recent shadow logs to show: a count or 'all'",
    )
    parser.add_argument(
        "--precision",
        type=int,
        default=settings.FINGERPRINT_PRECISION,
        help="Decimal places kept when fingerprinting rows",
    )
    return parser.parse_args()


def log_publish(session: DashboardSession) -> Callable[[Snapshot, ChangeSet], None]:
    """One log line per published snapshot, using the session's current trade lookback"""

    def publish(snapshot: Snapshot, change_set: ChangeSet) -> None:
        summary = viewmodel.cycle_summary(snapshot.raw_rows)
        trades = viewmodel.filter_trades(
            snapshot.get("recent_trades", {}).get("trades") or [], session.trade_lookback
        )
        stats = viewmodel.trade_stats(trades)
        logger.info(
            "cycle_view",
            sequence=snapshot.sequence,
            rows=summary["total"],
            active_positions=summary["active_positions"],
            candles_ok_pct=summary["candles_ok_pct"],
            win_rate=stats["win_rate"],
            profile=viewmodel.active_profile(snapshot),
            changed=sorted(change_set.changed),
            appeared=sorted(change_set.appeared),
            disappeared=sorted(change_set.disappeared),
            stale_since=viewmodel.stale_since(snapshot),
        )

    return publish


async def run(args) -> None:
    client = BackendClient(api_base=args.api_base)
    session = DashboardSession(
        client,
        precision=args.precision,
        interval_s=args.interval,
    )
    session.on_publish = log_publish(session)
    try:
        session.set_lookbacks(trade_lookback=args.trades, shadow_lookback=args.shadow)
    except ValueError as e:
        logger.error("invalid_lookback", error=str(e))
        await client.aclose()
        return

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("shutdown_signal_received")
        session.stop()
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(signal_handler))

    runner = asyncio.create_task(session.run())
    await shutdown_event.wait()

    runner.cancel()
    try:
        await runner
    except asyncio.CancelledError:
        pass
    await client.aclose()
    logger.info("flux_console_shutdown_complete", stats=client.get_stats())


def main():
    """Main entry point"""
    args = parse_args()
    if not (args.api_base or settings.API_BASE):
        print("ERROR: no backend configured (set API_BASE or pass --api-base)")
        sys.exit(1)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")


if __name__ == "__main__":
    main()
