"""Alert definition stores."""

import logging
from pathlib import Path
from typing import Protocol

import yaml

from .models import Alert, AlertValidationError, TriggerRecord, alert_from_dict

logger = logging.getLogger("marketpulse.store")


class AlertStore(Protocol):
    """Source of alert definitions and sink for trigger timestamps."""

    async def list_alerts(self) -> list[Alert]: ...

    async def record_trigger(self, record: TriggerRecord) -> None: ...

    def has_changed(self) -> bool:
        """True when the alert list changed since the last list_alerts call."""
        ...


class InMemoryAlertStore:
    """Holds alerts in memory; useful for tests and for embedding."""

    def __init__(self, alerts: list[Alert] | None = None):
        self.alerts: dict[str, Alert] = {a.id: a for a in alerts or []}
        self.triggers: list[TriggerRecord] = []
        self._version = 0
        self._listed_version: int | None = None

    def save_alert(self, alert: Alert) -> None:
        self.alerts[alert.id] = alert
        self._version += 1

    def delete_alert(self, alert_id: str) -> bool:
        removed = self.alerts.pop(alert_id, None)
        if removed is not None:
            self._version += 1
        return removed is not None

    def has_changed(self) -> bool:
        return self._listed_version != self._version

    async def list_alerts(self) -> list[Alert]:
        self._listed_version = self._version
        return list(self.alerts.values())

    async def record_trigger(self, record: TriggerRecord) -> None:
        self.triggers.append(record)
        alert = self.alerts.get(record.alert_id)
        if alert is not None:
            alert.last_triggered = record.triggered_at


class YamlAlertStore:
    """
    Loads alert definitions from a YAML file.

    The file holds a top-level `alerts:` list in the camelCase JSON shape
    accepted by alert_from_dict. Invalid entries are logged and skipped.
    Trigger timestamps are kept in memory and reapplied on reload. Edits
    are detected from the file's modification time and size.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.last_triggered: dict[str, int] = {}
        self._loaded_signature: tuple[int, int] | None = None
        self._loaded = False

    def _signature(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def has_changed(self) -> bool:
        return not self._loaded or self._signature() != self._loaded_signature

    def load(self) -> list[Alert]:
        signature = self._signature()
        if signature is None:
            logger.warning(f"Alerts file not found: {self.path}")
            self._loaded_signature = None
            self._loaded = True
            return []

        with open(self.path) as f:
            data = yaml.safe_load(f) or {}

        self._loaded_signature = signature
        self._loaded = True

        entries = data.get("alerts", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise AlertValidationError(f"{self.path}: 'alerts' must be a list")

        alerts = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                logger.error(f"Skipping alert #{index} in {self.path}: not a mapping")
                continue
            try:
                alert = alert_from_dict(entry)
            except AlertValidationError as e:
                logger.error(f"Skipping alert #{index} in {self.path}: {e}")
                continue
            if alert.id in self.last_triggered:
                alert.last_triggered = self.last_triggered[alert.id]
            alerts.append(alert)

        logger.info(f"Loaded {len(alerts)} alerts from {self.path}")
        return alerts

    async def list_alerts(self) -> list[Alert]:
        return self.load()

    async def record_trigger(self, record: TriggerRecord) -> None:
        self.last_triggered[record.alert_id] = record.triggered_at
