"""Tests for marketpulse/alert_engine.py."""

import asyncio
import dataclasses
from unittest.mock import AsyncMock, patch

import pytest

from marketpulse.alert_engine import AlertEngine, AlertState
from marketpulse.models import (
    ActionResult,
    Alert,
    AlertCondition,
    AlertValidationError,
    ConditionType,
    NotifyAction,
    Operator,
    WebhookAction,
)
from marketpulse.store import InMemoryAlertStore, YamlAlertStore
from tests.factories import MINUTE, NOW, make_snapshot


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    """Mutable per-market metrics served by the snapshot provider."""
    return {"M1": {"price": 0.72}}


@pytest.fixture
def engine(mock_dispatcher, clock, metrics):
    return AlertEngine(
        mock_dispatcher,
        snapshot_provider=lambda now: make_snapshot(now, **metrics),
        clock=clock,
    )


class TestAlertCrud:
    """Tests for add/update/remove."""

    def test_add_and_get(self, engine, price_alert):
        engine.add_alert(price_alert)
        assert engine.get_alert("alert-price") is price_alert
        assert engine.get_all_alerts() == [price_alert]

    def test_add_invalid(self, engine, price_alert):
        price_alert.conditions = []
        with pytest.raises(AlertValidationError):
            engine.add_alert(price_alert)
        assert engine.get_all_alerts() == []

    def test_remove(self, engine, price_alert):
        engine.add_alert(price_alert)
        assert engine.remove_alert("alert-price") is True
        assert engine.remove_alert("alert-price") is False

    def test_update(self, engine, price_alert):
        engine.add_alert(price_alert)

        updated = engine.update_alert("alert-price", cooldown_period_minutes=5)

        assert updated.cooldown_period_minutes == 5
        assert engine.get_alert("alert-price").cooldown_period_minutes == 5

    def test_update_unknown(self, engine):
        with pytest.raises(KeyError):
            engine.update_alert("missing", name="x")

    def test_update_cannot_change_id(self, engine, price_alert):
        engine.add_alert(price_alert)
        with pytest.raises(AlertValidationError):
            engine.update_alert("alert-price", id="other")

    def test_update_validated(self, engine, price_alert):
        engine.add_alert(price_alert)
        with pytest.raises(AlertValidationError):
            engine.update_alert("alert-price", actions=[])
        assert engine.get_alert("alert-price").actions == price_alert.actions


class TestTick:
    """Tests for AlertEngine.tick."""

    @pytest.mark.asyncio
    async def test_fires_notify_once(self, engine, price_alert, mock_dispatcher):
        engine.add_alert(price_alert)

        records = await engine.tick()

        assert len(records) == 1
        assert records[0].market_id == "M1"
        assert records[0].all_succeeded
        mock_dispatcher.dispatch.assert_awaited_once()
        action = mock_dispatcher.dispatch.await_args.args[0]
        assert action == NotifyAction(message="Crossed 70%")
        assert price_alert.last_triggered == NOW

    @pytest.mark.asyncio
    async def test_condition_not_met(self, engine, price_alert, metrics, mock_dispatcher):
        metrics["M1"] = {"price": 0.5}
        engine.add_alert(price_alert)

        assert await engine.tick() == []
        mock_dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_cooldown_fires_every_tick(self, engine, price_alert, clock, mock_dispatcher):
        engine.add_alert(price_alert)

        for _ in range(3):
            await engine.tick()
            clock.advance(5000)

        assert mock_dispatcher.dispatch.await_count == 3

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_then_rearms(self, engine, price_alert, clock, mock_dispatcher):
        price_alert.cooldown_period_minutes = 10
        engine.add_alert(price_alert)

        assert len(await engine.tick()) == 1
        assert engine.state_of("alert-price") is AlertState.COOLING_DOWN

        clock.advance(5 * MINUTE)
        assert await engine.tick() == []

        clock.advance(5 * MINUTE)
        assert engine.state_of("alert-price") is AlertState.ARMED
        assert len(await engine.tick()) == 1
        assert mock_dispatcher.dispatch.await_count == 2

    @pytest.mark.asyncio
    async def test_inactive_alert_skipped(self, engine, price_alert, mock_dispatcher):
        price_alert.is_active = False
        engine.add_alert(price_alert)

        assert await engine.tick() == []
        assert engine.state_of("alert-price") is AlertState.IDLE

    @pytest.mark.asyncio
    async def test_and_semantics(self, engine, price_alert, metrics):
        price_alert.conditions = [
            AlertCondition(type=ConditionType.PRICE, operator=Operator.GT, value=0.7),
            AlertCondition(type=ConditionType.VOLUME, operator=Operator.GT, value=1000),
        ]
        metrics["M1"] = {"price": 0.72, "volume": 500.0}
        engine.add_alert(price_alert)

        assert await engine.tick() == []

        metrics["M1"] = {"price": 0.72, "volume": 5000.0}
        assert len(await engine.tick()) == 1

    @pytest.mark.asyncio
    async def test_missing_metric_does_not_fire(self, engine, price_alert):
        price_alert.conditions = [AlertCondition(type=ConditionType.DEPTH, operator=Operator.LT, value=1000)]
        engine.add_alert(price_alert)

        assert await engine.tick() == []

    @pytest.mark.asyncio
    async def test_global_alert_every_market(self, engine, price_alert, metrics):
        metrics.update({"M2": {"price": 0.9}, "M3": {"price": 0.1}})
        price_alert.market_id = None
        engine.add_alert(price_alert)

        records = await engine.tick()

        assert sorted(r.market_id for r in records) == ["M1", "M2"]

    @pytest.mark.asyncio
    async def test_global_alert_with_cooldown_fires_once(self, engine, price_alert, metrics):
        metrics["M2"] = {"price": 0.9}
        price_alert.market_id = None
        price_alert.cooldown_period_minutes = 10
        engine.add_alert(price_alert)

        assert len(await engine.tick()) == 1

    @pytest.mark.asyncio
    async def test_failing_action_still_sets_last_triggered(self, engine, price_alert, mock_dispatcher):
        mock_dispatcher.dispatch.side_effect = RuntimeError("boom")
        price_alert.cooldown_period_minutes = 10
        engine.add_alert(price_alert)

        records = await engine.tick()

        assert records[0].results == [ActionResult(action_type="notify", success=False, error="boom")]
        assert price_alert.last_triggered == NOW
        assert await engine.tick() == []

    @pytest.mark.asyncio
    async def test_one_failing_action_does_not_block_others(self, engine, price_alert, mock_dispatcher):
        async def dispatch(action, alert, market_id, now, conditions=None):
            if action.type == "webhook":
                return ActionResult(action_type="webhook", success=False, error="HTTP 500")
            return ActionResult(action_type=action.type, success=True)

        mock_dispatcher.dispatch.side_effect = dispatch
        price_alert.actions = [WebhookAction(url="https://example.com/hook"), NotifyAction()]
        engine.add_alert(price_alert)

        records = await engine.tick()

        assert [r.success for r in records[0].results] == [False, True]
        assert not records[0].all_succeeded

    @pytest.mark.asyncio
    async def test_one_snapshot_per_tick(self, mock_dispatcher, clock, price_alert):
        calls = []

        def provider(now):
            calls.append(now)
            return make_snapshot(now, M1={"price": 0.72})

        engine = AlertEngine(mock_dispatcher, snapshot_provider=provider, clock=clock)
        engine.add_alert(price_alert)
        engine.add_alert(dataclasses.replace(price_alert, id="second"))

        await engine.tick()

        assert calls == [NOW]

    @pytest.mark.asyncio
    async def test_market_filter(self, engine, price_alert, metrics):
        metrics["M2"] = {"price": 0.9}
        engine.add_alert(price_alert)

        assert await engine.tick(market_id="M2") == []
        assert len(await engine.tick(market_id="M1")) == 1

    @pytest.mark.asyncio
    async def test_trigger_history(self, engine, price_alert):
        engine.add_alert(price_alert)
        await engine.tick()

        history = engine.get_trigger_history("alert-price")

        assert len(history) == 1
        assert history[0].triggered_at == NOW
        assert engine.get_trigger_history("other") == []

    @pytest.mark.asyncio
    async def test_records_trigger_in_store(self, mock_dispatcher, clock, price_alert):
        store = InMemoryAlertStore([price_alert])
        engine = AlertEngine(
            mock_dispatcher,
            snapshot_provider=lambda now: make_snapshot(now, M1={"price": 0.72}),
            clock=clock,
            store=store,
        )
        await engine.sync_from_store()

        await engine.tick()

        assert len(store.triggers) == 1
        assert store.triggers[0].alert_id == "alert-price"

    @pytest.mark.asyncio
    async def test_tick_without_provider(self, mock_dispatcher):
        with pytest.raises(RuntimeError):
            await AlertEngine(mock_dispatcher).tick()


class SlowDispatcher:
    """Dispatcher whose actions block until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def dispatch(self, action, alert, market_id, now, conditions=None):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return ActionResult(action_type=action.type, success=True)


class TestEditsWhileActionsRun:
    """Cooldown holds when an alert changes while its actions are still running."""

    @pytest.fixture
    def slow_dispatcher(self):
        return SlowDispatcher()

    @pytest.fixture
    def cooling_alert(self, price_alert):
        price_alert.cooldown_period_minutes = 10
        return price_alert

    async def fire_and_interleave(self, engine, dispatcher, clock, edit):
        first = asyncio.create_task(engine.tick())
        await dispatcher.entered.wait()
        await edit()
        dispatcher.release.set()
        await first

        clock.advance(MINUTE)
        return await engine.tick()

    @pytest.mark.asyncio
    async def test_update_during_slow_action(self, slow_dispatcher, clock, metrics, cooling_alert):
        engine = AlertEngine(
            slow_dispatcher, snapshot_provider=lambda now: make_snapshot(now, **metrics), clock=clock
        )
        engine.add_alert(cooling_alert)

        async def rename():
            engine.update_alert("alert-price", name="Renamed")

        second = await self.fire_and_interleave(engine, slow_dispatcher, clock, rename)

        assert second == []
        assert slow_dispatcher.calls == 1
        assert engine.get_alert("alert-price").name == "Renamed"
        assert engine.get_alert("alert-price").last_triggered == NOW
        assert engine.state_of("alert-price") is AlertState.COOLING_DOWN

    @pytest.mark.asyncio
    async def test_store_resync_during_slow_action(self, slow_dispatcher, clock, metrics, cooling_alert):
        store = InMemoryAlertStore([dataclasses.replace(cooling_alert)])
        engine = AlertEngine(
            slow_dispatcher,
            snapshot_provider=lambda now: make_snapshot(now, **metrics),
            clock=clock,
            store=store,
        )
        await engine.sync_from_store()
        store.record_trigger = AsyncMock()  # the store never learns about the trigger

        async def resync():
            store.save_alert(dataclasses.replace(cooling_alert, last_triggered=None))
            await engine.sync_from_store()

        second = await self.fire_and_interleave(engine, slow_dispatcher, clock, resync)

        assert second == []
        assert slow_dispatcher.calls == 1
        assert engine.get_alert("alert-price").last_triggered == NOW

    @pytest.mark.asyncio
    async def test_readd_during_slow_action(self, slow_dispatcher, clock, metrics, cooling_alert):
        engine = AlertEngine(
            slow_dispatcher, snapshot_provider=lambda now: make_snapshot(now, **metrics), clock=clock
        )
        engine.add_alert(cooling_alert)

        async def readd():
            engine.remove_alert("alert-price")
            engine.add_alert(dataclasses.replace(cooling_alert, last_triggered=None))

        second = await self.fire_and_interleave(engine, slow_dispatcher, clock, readd)

        assert second == []
        assert slow_dispatcher.calls == 1


class TestRefreshFromStore:
    """Alerts added to the store are evaluated without a restart."""

    @pytest.fixture
    def store(self):
        return InMemoryAlertStore()

    @pytest.fixture
    def store_engine(self, mock_dispatcher, clock, metrics, store):
        return AlertEngine(
            mock_dispatcher,
            snapshot_provider=lambda now: make_snapshot(now, **metrics),
            clock=clock,
            store=store,
        )

    @pytest.mark.asyncio
    async def test_new_alert_in_store_fires(self, store_engine, store, price_alert, mock_dispatcher):
        await store_engine.sync_from_store()
        assert await store_engine.tick() == []

        store.save_alert(price_alert)
        assert await store_engine.refresh_from_store() is True
        records = await store_engine.tick()

        assert [r.alert_id for r in records] == ["alert-price"]
        mock_dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unchanged_store_not_reloaded(self, store_engine, store, price_alert):
        store.save_alert(price_alert)
        await store_engine.sync_from_store()

        assert await store_engine.refresh_from_store() is False

    @pytest.mark.asyncio
    async def test_deleted_alert_dropped(self, store_engine, store, price_alert):
        store.save_alert(price_alert)
        await store_engine.sync_from_store()

        store.delete_alert("alert-price")
        await store_engine.refresh_from_store()

        assert store_engine.get_alert("alert-price") is None

    @pytest.mark.asyncio
    async def test_forced_resync_after_interval(self, store_engine, store):
        with patch("marketpulse.alert_engine.time.monotonic", return_value=1000.0):
            await store_engine.sync_from_store()
        with patch("marketpulse.alert_engine.time.monotonic", return_value=1030.0):
            assert await store_engine.refresh_from_store() is False
        with patch("marketpulse.alert_engine.time.monotonic", return_value=1060.0):
            assert await store_engine.refresh_from_store() is True

    @pytest.mark.asyncio
    async def test_first_refresh_syncs(self, store_engine, store, price_alert):
        store.save_alert(price_alert)
        assert await store_engine.refresh_from_store() is True
        assert store_engine.get_alert("alert-price") is not None

    @pytest.mark.asyncio
    async def test_without_store(self, engine):
        assert await engine.refresh_from_store() is False

    @pytest.mark.asyncio
    async def test_yaml_file_edit_picked_up(self, mock_dispatcher, clock, metrics, tmp_path):
        path = tmp_path / "alerts.yaml"
        path.write_text("alerts: []\n")
        engine = AlertEngine(
            mock_dispatcher,
            snapshot_provider=lambda now: make_snapshot(now, **metrics),
            clock=clock,
            store=YamlAlertStore(path),
        )
        await engine.sync_from_store()

        path.write_text(
            "alerts:\n"
            "  - id: above-70\n"
            "    name: Above 70\n"
            "    marketId: M1\n"
            "    conditions: [{type: price, operator: gt, value: 0.7}]\n"
            "    actions: [{type: notify}]\n"
        )
        await engine.refresh_from_store()

        assert [r.alert_id for r in await engine.tick()] == ["above-70"]

    @pytest.mark.asyncio
    async def test_run_loop_picks_up_new_alert(self, store_engine, store, price_alert, mock_dispatcher):
        store_engine.tick_interval = 0.01
        await store_engine.sync_from_store()
        store_engine.start()

        store.save_alert(price_alert)
        await asyncio.sleep(0.05)
        await store_engine.stop()

        assert mock_dispatcher.dispatch.await_count >= 1
        assert store_engine.get_alert("alert-price") is not None


class TestTestAlert:
    """Tests for AlertEngine.test_alert."""

    @pytest.mark.asyncio
    async def test_no_side_effects(self, engine, price_alert, mock_dispatcher):
        result = await engine.test_alert(price_alert)

        assert result.would_trigger is True
        assert result.conditions[0].current_value == 0.72
        mock_dispatcher.dispatch.assert_not_awaited()
        assert price_alert.last_triggered is None
        assert engine.get_trigger_history() == []

    @pytest.mark.asyncio
    async def test_ignores_cooldown(self, engine, price_alert):
        price_alert.cooldown_period_minutes = 10
        price_alert.last_triggered = NOW
        assert (await engine.test_alert(price_alert)).would_trigger is True


class TestStoreSync:
    """Tests for sync_from_store and replace_all."""

    @pytest.mark.asyncio
    async def test_sync_keeps_newer_local_trigger(self, mock_dispatcher, price_alert):
        store = InMemoryAlertStore([dataclasses.replace(price_alert, last_triggered=NOW - MINUTE)])
        engine = AlertEngine(mock_dispatcher, store=store)
        engine.add_alert(dataclasses.replace(price_alert, last_triggered=NOW))

        assert await engine.sync_from_store() is True
        assert engine.get_alert("alert-price").last_triggered == NOW

    @pytest.mark.asyncio
    async def test_sync_failure_logged(self, mock_dispatcher, price_alert, caplog):
        class BrokenStore:
            async def list_alerts(self):
                raise OSError("database down")

            async def record_trigger(self, record):
                pass

        engine = AlertEngine(mock_dispatcher, store=BrokenStore())
        engine.add_alert(price_alert)

        with caplog.at_level("ERROR"):
            assert await engine.sync_from_store() is False

        assert "database down" in caplog.text
        assert engine.get_alert("alert-price") is price_alert

    def test_replace_all_skips_invalid(self, engine, price_alert):
        invalid = Alert(id="bad", name="bad")

        assert engine.replace_all([price_alert, invalid]) == 1
        assert engine.get_alert("bad") is None


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, price_alert, mock_dispatcher):
        engine.tick_interval = 0.01
        engine.add_alert(price_alert)

        engine.start()
        assert engine.running
        await asyncio.sleep(0.05)
        await engine.stop()

        assert not engine.running
        assert mock_dispatcher.dispatch.await_count >= 1

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, engine):
        await engine.stop()
        assert not engine.running

    def test_reset(self, engine, price_alert):
        engine.add_alert(price_alert)
        engine.reset()
        assert engine.get_all_alerts() == []

    def test_state_of_unknown(self, engine):
        with pytest.raises(KeyError):
            engine.state_of("missing")
