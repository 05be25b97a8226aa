"""Rule-based alert engine: evaluates active alerts each tick and fires their actions."""

import asyncio
import dataclasses
import logging
import time
from collections import deque
from contextlib import suppress
from enum import Enum
from typing import Callable

from .alerter import ActionDispatcher
from .evaluator import conditions_met, dry_run, evaluate_conditions, validate_alert
from .feed import MarketSnapshot
from .models import (
    ActionResult,
    Alert,
    AlertTestResult,
    AlertValidationError,
    ConditionResult,
    TriggerRecord,
)
from .store import AlertStore

logger = logging.getLogger("marketpulse.alert_engine")

MINUTE_MS = 60 * 1000

SnapshotProvider = Callable[[int], MarketSnapshot]
Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


class AlertState(str, Enum):
    IDLE = "idle"  # inactive
    ARMED = "armed"  # active, eligible to fire
    COOLING_DOWN = "cooling_down"  # active, suppressed until the cooldown lapses


@dataclasses.dataclass
class PendingTrigger:
    """An alert whose conditions all passed for one market in a snapshot."""

    alert: Alert
    market_id: str | None
    conditions: list[ConditionResult]


def has_cooldown(alert: Alert) -> bool:
    return bool(alert.cooldown_period_minutes) and alert.cooldown_period_minutes > 0


class AlertEngine:
    """
    Owns the in-memory alert set and runs the evaluation loop.

    Each tick takes a single MarketSnapshot so every alert sees the same
    data. A failing alert or action is logged and never aborts the tick.
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        snapshot_provider: SnapshotProvider | None = None,
        clock: Clock | None = None,
        store: AlertStore | None = None,
        tick_interval: float = 5.0,
        history_limit: int = 100,
        sync_interval: float = 60.0,
    ):
        self.dispatcher = dispatcher
        self.snapshot_provider = snapshot_provider
        self.clock = clock or now_ms
        self.store = store
        self.tick_interval = tick_interval
        self.sync_interval = sync_interval  # seconds; 0 resyncs only on reported changes
        self._alerts: dict[str, Alert] = {}
        self._history: deque[TriggerRecord] = deque(maxlen=history_limit)
        self._in_flight: dict[str, int] = {}  # alert id -> trigger time of actions still running
        self._last_sync: float | None = None
        self._task: asyncio.Task | None = None

    # CRUD

    def _latest_trigger(self, alert_id: str) -> int | None:
        existing = self._alerts.get(alert_id)
        known = [
            t
            for t in (self._in_flight.get(alert_id), existing.last_triggered if existing else None)
            if t is not None
        ]
        return max(known) if known else None

    def add_alert(self, alert: Alert) -> Alert:
        """Validate and register an alert, replacing any alert with the same id."""
        validate_alert(alert)
        if alert.id in self._alerts:
            logger.debug(f"Replacing alert {alert.id}")
        in_flight = self._in_flight.get(alert.id)
        if in_flight is not None and (alert.last_triggered is None or alert.last_triggered < in_flight):
            alert = dataclasses.replace(alert, last_triggered=in_flight)
        self._alerts[alert.id] = alert
        logger.info(f"Alert added: {alert.name} ({alert.id})")
        return alert

    def remove_alert(self, alert_id: str) -> bool:
        removed = self._alerts.pop(alert_id, None)
        if removed is not None:
            logger.info(f"Alert removed: {removed.name} ({alert_id})")
        return removed is not None

    def update_alert(self, alert_id: str, **patch) -> Alert:
        """Apply field updates to an alert; the result is validated before it is stored."""
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if "id" in patch and patch["id"] != alert_id:
            raise AlertValidationError("Alert id cannot be changed")

        updated = dataclasses.replace(alert, **patch)
        validate_alert(updated)
        self._alerts[alert_id] = updated
        return updated

    def get_alert(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    def get_all_alerts(self) -> list[Alert]:
        return list(self._alerts.values())

    def replace_all(self, alerts: list[Alert]) -> int:
        """
        Replace the alert set, e.g. after a store resync.

        Invalid alerts are logged and skipped. A trigger time recorded
        locally, including one whose actions are still running, is kept
        when it is newer than the incoming one.
        """
        replaced: dict[str, Alert] = {}
        for alert in alerts:
            try:
                validate_alert(alert)
            except AlertValidationError as e:
                logger.error(f"Skipping invalid alert: {e}")
                continue

            latest = self._latest_trigger(alert.id)
            if latest is not None and (alert.last_triggered is None or alert.last_triggered < latest):
                alert = dataclasses.replace(alert, last_triggered=latest)
            replaced[alert.id] = alert

        self._alerts = replaced
        return len(replaced)

    async def sync_from_store(self) -> bool:
        """Reload alerts from the store; store failures are logged, not raised."""
        if self.store is None:
            return False
        self._last_sync = time.monotonic()
        try:
            alerts = await self.store.list_alerts()
        except Exception as e:
            logger.error(f"Failed to load alerts from store: {e}")
            return False

        count = self.replace_all(alerts)
        logger.info(f"Synced {count} alerts from store")
        return True

    async def refresh_from_store(self) -> bool:
        """
        Resync when the store reports a change or sync_interval has elapsed.

        Called before every tick of the run loop so edits to the store are
        picked up without a restart.
        """
        if self.store is None:
            return False

        due = self._last_sync is None or (
            self.sync_interval > 0 and time.monotonic() - self._last_sync >= self.sync_interval
        )
        if not due:
            try:
                due = self.store.has_changed()
            except Exception as e:
                logger.warning(f"Failed to check alert store for changes: {e}")
                return False
        if not due:
            return False
        return await self.sync_from_store()

    # State

    def in_cooldown(self, alert: Alert, now: int) -> bool:
        """True while now is within cooldown_period_minutes of the last trigger."""
        if not has_cooldown(alert) or alert.last_triggered is None:
            return False
        return now - alert.last_triggered < alert.cooldown_period_minutes * MINUTE_MS

    def state_of(self, alert_id: str, now: int | None = None) -> AlertState:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if not alert.is_active:
            return AlertState.IDLE
        if self.in_cooldown(alert, self.clock() if now is None else now):
            return AlertState.COOLING_DOWN
        return AlertState.ARMED

    def get_trigger_history(self, alert_id: str | None = None) -> list[TriggerRecord]:
        """Recent triggers, oldest first."""
        return [r for r in self._history if alert_id is None or r.alert_id == alert_id]

    # Evaluation

    def collect_triggers(
        self, snapshot: MarketSnapshot, now: int, market_id: str | None = None
    ) -> list[PendingTrigger]:
        """
        Decide which alerts fire against one snapshot, without side effects.

        Global alerts are evaluated for every market in the snapshot. An
        alert with a cooldown fires for at most one market per tick, since
        its first firing starts the cooldown.
        """
        pending = []

        for alert in list(self._alerts.values()):
            if not alert.is_active or self.in_cooldown(alert, now):
                continue
            if market_id is not None and alert.market_id not in (None, market_id):
                continue

            if alert.market_id is not None:
                markets = [alert.market_id]
            elif market_id is not None:
                markets = [market_id]
            else:
                markets = snapshot.market_ids

            try:
                for target in markets:
                    results = evaluate_conditions(alert, target, snapshot.lookup)
                    if not conditions_met(results):
                        continue
                    pending.append(PendingTrigger(alert=alert, market_id=target, conditions=results))
                    if has_cooldown(alert):
                        break
            except Exception as e:
                logger.error(f"Failed to evaluate alert {alert.id}: {e}")

        return pending

    async def _fire(self, trigger: PendingTrigger, now: int) -> TriggerRecord:
        alert = trigger.alert
        results: list[ActionResult] = []

        # Recorded before the actions run and kept when they fail; edits and
        # resyncs made while they are in flight carry it over
        alert.last_triggered = now
        current = self._alerts.get(alert.id)
        if current is not None and current is not alert:
            if current.last_triggered is None or current.last_triggered < now:
                current.last_triggered = now
        self._in_flight[alert.id] = now
        try:
            for action in alert.actions:
                try:
                    result = await self.dispatcher.dispatch(
                        action, alert, trigger.market_id, now, trigger.conditions
                    )
                except Exception as e:
                    logger.error(f"Action {action.type} for alert {alert.id} raised: {e}")
                    result = ActionResult(action_type=action.type, success=False, error=str(e))
                results.append(result)
        finally:
            self._in_flight.pop(alert.id, None)

        record = TriggerRecord(
            alert_id=alert.id,
            alert_name=alert.name,
            market_id=trigger.market_id,
            triggered_at=now,
            conditions=trigger.conditions,
            results=results,
        )
        self._history.append(record)

        failed = [r for r in results if not r.success]
        if failed:
            logger.warning(
                f"Alert {alert.name} fired on {trigger.market_id or 'global'} with "
                f"{len(failed)}/{len(results)} failed actions"
            )
        else:
            logger.info(f"Alert {alert.name} fired on {trigger.market_id or 'global'}")

        if self.store is not None:
            try:
                await self.store.record_trigger(record)
            except Exception as e:
                logger.warning(f"Failed to record trigger for alert {alert.id}: {e}")

        return record

    def _take_snapshot(self, now: int) -> MarketSnapshot:
        if self.snapshot_provider is None:
            raise RuntimeError("AlertEngine has no snapshot provider")
        return self.snapshot_provider(now)

    async def tick(self, market_id: str | None = None) -> list[TriggerRecord]:
        """Evaluate every active alert against one snapshot and fire what matched."""
        now = self.clock()
        snapshot = self._take_snapshot(now)
        records = []

        for trigger in self.collect_triggers(snapshot, now, market_id):
            try:
                records.append(await self._fire(trigger, now))
            except Exception as e:
                logger.error(f"Failed to fire alert {trigger.alert.id}: {e}")

        return records

    async def test_alert(self, alert: Alert, market_id: str | None = None) -> AlertTestResult:
        """Dry-run an alert against a fresh snapshot; no actions, no state changes."""
        snapshot = self._take_snapshot(self.clock())
        return dry_run(alert, snapshot.lookup, market_id)

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.info(f"Alert engine started (tick every {self.tick_interval}s)")
        while True:
            try:
                await self.refresh_from_store()
                await self.tick()
            except Exception as e:
                logger.error(f"Alert tick failed: {e}")
            await asyncio.sleep(self.tick_interval)

    def start(self) -> None:
        """Start the periodic tick loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Alert engine stopped")

    def reset(self) -> None:
        """Forget every alert and the trigger history."""
        self._alerts.clear()
        self._history.clear()
