"""Runs every enabled detector over a detection window and ranks the results."""

import dataclasses
import logging
import math
from collections import deque
from typing import Callable

from .config import DEFAULT_DETECTION_CONFIG, DetectionConfig
from .detector import (
    detect_breakout,
    detect_cross_market_mispricing,
    detect_depth_shift,
    detect_flow_imbalance,
    detect_linked_event_anomaly,
    detect_new_wallet_impact,
    detect_participant_spike,
    detect_pre_expiry_activity,
    detect_price_spike,
    detect_slippage_change,
    detect_spread_tightening,
    detect_spread_widening,
    detect_volatility_spike,
    detect_volume_spike,
    detect_wallet_concentration,
    detect_whale_trades,
)
from .models import (
    AnomalyDetectionResult,
    AnomalyEvent,
    AnomalyType,
    DetectionWindow,
    Severity,
    Trade,
)
from .scoring import compute_heat_scores

logger = logging.getLogger("marketpulse.aggregator")

# (market_id, trades, window, config) -> anomalies
MarketDetector = Callable[[str, list[Trade], DetectionWindow, DetectionConfig], list[AnomalyEvent]]

DETECTORS: dict[AnomalyType, MarketDetector] = {
    AnomalyType.VOLUME_SPIKE: lambda m, t, w, c: detect_volume_spike(m, t, w.now, w.window_ms, c),
    AnomalyType.PRICE_SPIKE: lambda m, t, w, c: detect_price_spike(m, t, w.now, w.window_ms, c),
    AnomalyType.VOLATILITY_SPIKE: lambda m, t, w, c: detect_volatility_spike(m, t, w.now, w.window_ms, c),
    AnomalyType.FLOW_IMBALANCE: lambda m, t, w, c: detect_flow_imbalance(m, t, w.now, w.window_ms, c),
    AnomalyType.DEPTH_SHIFT: lambda m, t, w, c: detect_depth_shift(
        m, w.order_books_by_market.get(m, []), w.now, c
    ),
    AnomalyType.SPREAD_WIDENING: lambda m, t, w, c: detect_spread_widening(
        m, w.order_books_by_market.get(m, []), w.now, c
    ),
    AnomalyType.PARTICIPANT_SPIKE: lambda m, t, w, c: detect_participant_spike(
        m, t, w.now, w.window_ms, c
    ),
    AnomalyType.WHALE_TRADE: lambda m, t, w, c: detect_whale_trades(m, t, w.now, w.window_ms, c),
    AnomalyType.CROSS_MARKET_MISPRICING: lambda m, t, w, c: detect_cross_market_mispricing(
        m, w.trades_by_market, w.metadata_by_market, w.now, c
    ),
    AnomalyType.BREAKOUT: lambda m, t, w, c: detect_breakout(m, t, w.now, w.window_ms, c),
    AnomalyType.SPREAD_TIGHTENING: lambda m, t, w, c: detect_spread_tightening(
        m, w.order_books_by_market.get(m, []), w.now, c
    ),
    AnomalyType.SLIPPAGE_CHANGE: lambda m, t, w, c: detect_slippage_change(
        m, w.order_books_by_market.get(m, []), w.now, c
    ),
    AnomalyType.WALLET_CONCENTRATION: lambda m, t, w, c: detect_wallet_concentration(
        m, t, w.now, w.window_ms, c
    ),
    AnomalyType.NEW_WALLET_IMPACT: lambda m, t, w, c: detect_new_wallet_impact(
        m, t, w.now, w.window_ms, c
    ),
    AnomalyType.PRE_EXPIRY: lambda m, t, w, c: detect_pre_expiry_activity(
        m, t, w.metadata_by_market.get(m), w.now, w.window_ms, c
    ),
}

# (market_id, anomalies from the first pass, window, config) -> anomalies
CompositeDetector = Callable[[str, list[AnomalyEvent], DetectionWindow, DetectionConfig], list[AnomalyEvent]]

# Run after DETECTORS, over everything they found this tick
COMPOSITE_DETECTORS: dict[AnomalyType, CompositeDetector] = {
    AnomalyType.LINKED_EVENT: lambda m, a, w, c: detect_linked_event_anomaly(
        m, a, w.metadata_by_market, w.now, c
    ),
}


def is_valid_trade(trade: Trade) -> bool:
    """A trade the detectors can safely use."""
    return (
        isinstance(trade, Trade)
        and bool(trade.market_id)
        and isinstance(trade.price, (int, float))
        and isinstance(trade.size, (int, float))
        and math.isfinite(trade.price)
        and math.isfinite(trade.size)
        and 0 <= trade.price <= 1
        and trade.size >= 0
        and isinstance(trade.timestamp, int)
    )


def compute_market_anomalies(
    window: DetectionWindow, config: DetectionConfig | None = None
) -> AnomalyDetectionResult:
    """
    Run every enabled detector for every market key in the window.

    Malformed trades are dropped first, for every detector including the
    ones reading other markets. A detector that raises is logged and
    skipped for that market only. Composite detectors then run over the
    first pass's anomalies. Anomalies are de-duplicated by id and every
    market key gets a heat score, 0 when nothing fired.
    """
    config = config or DEFAULT_DETECTION_CONFIG
    anomalies: dict[str, AnomalyEvent] = {}

    valid_trades = {}
    for market_id, raw_trades in window.trades_by_market.items():
        trades = [t for t in raw_trades if is_valid_trade(t)]
        if len(trades) != len(raw_trades):
            logger.debug(f"Dropped {len(raw_trades) - len(trades)} malformed trades for {market_id}")
        valid_trades[market_id] = trades
    window = dataclasses.replace(window, trades_by_market=valid_trades)

    for market_id, trades in valid_trades.items():
        for anomaly_type, detector in DETECTORS.items():
            if anomaly_type.value not in config.detectors:
                continue
            try:
                found = detector(market_id, trades, window, config)
            except Exception as e:
                logger.error(f"Detector {anomaly_type.value} failed for {market_id}: {e}")
                continue
            for anomaly in found:
                anomalies.setdefault(anomaly.id, anomaly)

    first_pass = list(anomalies.values())
    for market_id in valid_trades:
        for anomaly_type, detector in COMPOSITE_DETECTORS.items():
            if anomaly_type.value not in config.detectors:
                continue
            try:
                found = detector(market_id, first_pass, window, config)
            except Exception as e:
                logger.error(f"Detector {anomaly_type.value} failed for {market_id}: {e}")
                continue
            for anomaly in found:
                anomalies.setdefault(anomaly.id, anomaly)

    result = list(anomalies.values())
    heat_scores = compute_heat_scores(list(window.trades_by_market.keys()), result, window.now, config)

    if result:
        logger.info(f"Detected {len(result)} anomalies across {len(window.trades_by_market)} markets")

    return AnomalyDetectionResult(anomalies=result, heat_scores=heat_scores)


def sort_anomalies(anomalies: list[AnomalyEvent]) -> list[AnomalyEvent]:
    """Severity descending, then most recent first."""
    return sorted(anomalies, key=lambda a: (a.severity, a.timestamp), reverse=True)


def filter_anomalies(
    anomalies: list[AnomalyEvent],
    since: int | None = None,
    types: set[AnomalyType] | None = None,
    severities: set[Severity] | None = None,
    market_ids: set[str] | None = None,
    min_severity: Severity | None = None,
) -> list[AnomalyEvent]:
    result = []
    for anomaly in anomalies:
        if since is not None and anomaly.timestamp < since:
            continue
        if types and anomaly.type not in types:
            continue
        if severities and anomaly.severity not in severities:
            continue
        if min_severity is not None and anomaly.severity < min_severity:
            continue
        if market_ids and anomaly.market_id not in market_ids:
            continue
        result.append(anomaly)
    return result


def diff_anomalies(
    previous: list[AnomalyEvent], current: list[AnomalyEvent]
) -> tuple[list[AnomalyEvent], list[AnomalyEvent]]:
    """Return (new, resolved) between two ticks by anomaly id."""
    previous_ids = {a.id for a in previous}
    current_ids = {a.id for a in current}
    new = [a for a in current if a.id not in previous_ids]
    resolved = [a for a in previous if a.id not in current_ids]
    return new, resolved


class AnomalyHistory:
    """Bounded per-market history of anomalies seen across ticks."""

    def __init__(self, max_per_market: int = 50):
        self.max_per_market = max_per_market
        self._by_market: dict[str, deque] = {}
        self._seen: set[str] = set()

    def record(self, anomalies: list[AnomalyEvent]) -> list[AnomalyEvent]:
        """Store anomalies not seen before; returns the newly stored ones."""
        added = []
        for anomaly in anomalies:
            if anomaly.id in self._seen:
                continue
            history = self._by_market.setdefault(
                anomaly.market_id, deque(maxlen=self.max_per_market)
            )
            if len(history) == history.maxlen:
                self._seen.discard(history[0].id)
            history.append(anomaly)
            self._seen.add(anomaly.id)
            added.append(anomaly)
        return added

    def for_market(self, market_id: str) -> list[AnomalyEvent]:
        return sort_anomalies(list(self._by_market.get(market_id, [])))

    def all(self) -> list[AnomalyEvent]:
        return sort_anomalies([a for history in self._by_market.values() for a in history])

    def prune(self, before: int) -> int:
        """Forget anomalies older than before and markets left with none; returns how many went."""
        removed = 0
        for market_id in list(self._by_market.keys()):
            history = self._by_market[market_id]
            kept = [a for a in history if a.timestamp >= before]
            for anomaly in history:
                if anomaly.timestamp < before:
                    self._seen.discard(anomaly.id)
            removed += len(history) - len(kept)
            if kept:
                self._by_market[market_id] = deque(kept, maxlen=self.max_per_market)
            else:
                del self._by_market[market_id]
        return removed

    def clear(self) -> None:
        self._by_market.clear()
        self._seen.clear()

    def __len__(self) -> int:
        return sum(len(h) for h in self._by_market.values())
