"""
DASHBOARD SESSION TESTS
Scheduler -> aggregator -> differ -> publish, end to end over FakeBackend

    python -m pytest tests/test_session.py -v
"""
import pytest

from conftest import FakeClock, cycle_payload


def make_session(backend, clock=None, monotonic=None, **kwargs):
    from fluxsync.dashboard import DashboardSession

    return DashboardSession(
        backend,
        precision=kwargs.pop("precision", 4),
        interval_s=kwargs.pop("interval_s", 10.0),
        clock=clock or FakeClock(1000.0),
        monotonic=monotonic or FakeClock(0.0),
        **kwargs,
    )


def qqq(decision="BUY", confidence=0.812):
    return {"symbol": "QQQ", "decision": decision, "confidence": confidence, "last_price": 401.0}


class TestPublish:

    @pytest.mark.asyncio
    async def test_first_refresh_publishes(self, backend):
        backend.responses["latest_cycle"] = cycle_payload([qqq()])
        session = make_session(backend)

        assert await session.refresh_now() is True

        assert session.snapshot.sequence == 1
        assert session.change_set.appeared == {"QQQ"}
        assert session.highlighted == frozenset()
        assert session.error is None

    @pytest.mark.asyncio
    async def test_highlight_follows_changes_and_decays(self, backend):
        backend.responses["latest_cycle"] = cycle_payload([qqq()])
        session = make_session(backend)
        await session.refresh_now()

        backend.responses["latest_cycle"] = cycle_payload([qqq(decision="HOLD")])
        await session.refresh_now()
        assert session.highlighted == {"QQQ"}

        await session.refresh_now()
        assert session.highlighted == frozenset()

    @pytest.mark.asyncio
    async def test_jitter_below_precision_not_highlighted(self, backend):
        backend.responses["latest_cycle"] = cycle_payload([qqq(confidence=0.812)])
        session = make_session(backend, precision=2)
        await session.refresh_now()

        backend.responses["latest_cycle"] = cycle_payload([qqq(confidence=0.8121)])
        await session.refresh_now()

        assert session.highlighted == frozenset()

    @pytest.mark.asyncio
    async def test_on_publish_called(self, backend):
        published = []

        async def on_publish(snapshot, change_set):
            published.append((snapshot.sequence, change_set))

        session = make_session(backend, on_publish=on_publish)
        await session.refresh_now()
        await session.refresh_now()

        assert [seq for seq, _ in published] == [1, 2]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_refresh(self, backend):
        def on_publish(snapshot, change_set):
            raise RuntimeError("renderer crashed")

        session = make_session(backend, on_publish=on_publish)
        assert await session.refresh_now() is True
        assert session.snapshot.sequence == 1


class TestErrorSurfacing:

    @pytest.mark.asyncio
    async def test_scheduled_secondary_failure_only_marks_stale(self, backend):
        monotonic = FakeClock(0.0)
        session = make_session(backend, monotonic=monotonic)
        session.enable_polling()

        backend.fail("recent_trades")
        monotonic.advance(10)
        assert await session.scheduler.advance() is True

        assert session.error is None
        assert session.snapshot.degraded == {"recent_trades"}
        assert session.view()["degraded"] == ["recent_trades"]

    @pytest.mark.asyncio
    async def test_manual_refresh_surfaces_secondary_failure(self, backend):
        from fluxsync.core.errors import FetchErrorKind

        backend.fail("shadow_logs")
        session = make_session(backend)
        await session.refresh_now()

        assert session.error is not None
        assert session.error.kind == FetchErrorKind.HTTP
        assert session.error.resource == "shadow_logs"

        session.clear_error()
        assert session.view()["error"] is None

    @pytest.mark.asyncio
    async def test_primary_failure_surfaces_and_shows_stale_since(self, backend):
        clock = FakeClock(1000.0)
        monotonic = FakeClock(0.0)
        backend.responses["latest_cycle"] = cycle_payload([qqq()])
        session = make_session(backend, clock=clock, monotonic=monotonic)
        await session.refresh_now()
        session.enable_polling()

        backend.fail("latest_cycle")
        clock.advance(10)
        monotonic.advance(10)
        await session.scheduler.advance()

        view = session.view(now=1010.0)
        assert session.error.resource == "latest_cycle"
        assert view["valid"] is False
        assert view["stale_since"] == 1000.0
        assert view["freshness"] == {"tier": "fresh", "label": "10s ago"}
        # Last good rows are still shown
        assert [r["symbol"] for r in view["rows"]] == ["QQQ"]

    @pytest.mark.asyncio
    async def test_manual_refresh_clears_resolved_error(self, backend):
        backend.fail("status")
        session = make_session(backend)
        await session.refresh_now()
        assert session.error is not None

        backend.responses["status"] = {"ok": True, "mode": "paper"}
        await session.refresh_now()
        assert session.error is None


class TestOperatorControls:

    @pytest.mark.asyncio
    async def test_hidden_view_issues_no_fetch(self, backend):
        from fluxsync.sync.scheduler import PollState

        monotonic = FakeClock(0.0)
        session = make_session(backend, monotonic=monotonic)
        session.enable_polling()

        assert session.set_visible(False) == PollState.SUSPENDED
        monotonic.advance(30)
        assert await session.scheduler.advance() is False
        assert backend.calls == []

        assert session.set_visible(True) == PollState.RUNNING

    @pytest.mark.asyncio
    async def test_set_lookbacks_applies_next_refresh(self, backend):
        session = make_session(backend)
        session.set_lookbacks(trade_lookback=25, chart_days=30)
        await session.refresh_now()

        assert backend.calls_to("recent_trades") == [(25,)]
        assert backend.calls_to("daily_pnl") == [(30,)]

    def test_set_interval_clamps(self, backend):
        session = make_session(backend)
        assert session.set_interval(1) == 3.0

    @pytest.mark.asyncio
    async def test_run_loads_then_polls(self, backend):
        monotonic = FakeClock(0.0)
        session = None

        async def fake_sleep(delay):
            monotonic.advance(delay)
            if session.snapshot is not None and session.snapshot.sequence >= 3:
                session.stop()

        session = make_session(backend, monotonic=monotonic, sleep=fake_sleep)
        await session.run()

        assert session.snapshot.sequence == 3
        assert session.view()["polling"]["state"] == "stopped"


class TestLookbackModes:

    @pytest.mark.asyncio
    async def test_today_fetches_wide_and_filters_by_day(self, backend):
        from datetime import datetime

        now = datetime(2024, 1, 10, 12, 0).timestamp()
        backend.responses["recent_trades"] = {"ok": True, "trades": [
            {"id": 3, "ts": datetime(2024, 1, 10, 9, 30).isoformat(), "win": True},
            {"id": 2, "ts": datetime(2024, 1, 9, 23, 0).isoformat(), "win": False},
            {"id": 1, "win": False},
        ]}
        session = make_session(backend)
        session.set_lookbacks(trade_lookback="today", shadow_lookback="all")
        await session.refresh_now()

        view = session.view(now=now)

        assert backend.calls_to("recent_trades") == [(100,)]
        assert backend.calls_to("shadow_logs") == [(100,)]
        assert [t["id"] for t in view["trades"]] == [3]
        assert view["trade_stats"]["win_rate"] == 100

    @pytest.mark.asyncio
    async def test_week_fetches_wide_and_filters_last_seven_days(self, backend):
        from datetime import datetime

        now = datetime(2024, 1, 10, 12, 0).timestamp()
        backend.responses["recent_trades"] = {"ok": True, "trades": [
            {"id": 2, "ts": datetime(2024, 1, 4, 12, 0).isoformat()},
            {"id": 1, "ts": datetime(2024, 1, 2, 12, 0).isoformat()},
        ]}
        session = make_session(backend)
        session.set_lookbacks(trade_lookback="week")
        await session.refresh_now()

        assert backend.calls_to("recent_trades") == [(500,)]
        assert [t["id"] for t in session.view(now=now)["trades"]] == [2]

    def test_unknown_mode_keeps_previous_lookbacks(self, backend):
        session = make_session(backend)
        session.set_lookbacks(trade_lookback="week")

        with pytest.raises(ValueError):
            session.set_lookbacks(trade_lookback="fortnight", chart_days=3)

        assert session.trade_lookback == "week"
        assert session.chart_days != 3


class TestActiveProfile:

    @pytest.mark.asyncio
    async def test_profile_shown_in_view(self, backend):
        session = make_session(backend)
        await session.refresh_now()

        assert session.view()["active_profile"] == "balanced"

    @pytest.mark.asyncio
    async def test_profile_failure_never_surfaces(self, backend):
        backend.fail("system_settings", status=404, message="Not Found")
        session = make_session(backend)

        await session.refresh_now()

        assert session.error is None
        assert session.view()["active_profile"] is None
        assert session.view()["degraded"] == []
