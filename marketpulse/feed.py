"""Inbound market data: parsing, per-market trade buffers and tick snapshots."""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from .config import DetectionConfig
from .models import (
    ConditionType,
    DetectionWindow,
    MarketMetadata,
    MetricUnavailableError,
    OrderBookLevel,
    OrderBookSnapshot,
    Outcome,
    Trade,
    normalize_timestamp,
)
from .statistics import RollingWindow

logger = logging.getLogger("marketpulse.feed")

DAY_MS = 24 * 60 * 60 * 1000


def _parse_float(value: Any) -> float | None:
    """Parse a number that may arrive as a string; None when missing or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (ValueError, TypeError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_trade(raw: dict) -> Trade | None:
    """
    Convert a raw feed record into a Trade.

    Understands the Polymarket activity payload (conditionId, outcome,
    price, size, timestamp in seconds, proxyWallet, transactionHash) as
    well as already-normalized camelCase records. Notional size is taken
    from amount/usdcSize when present, otherwise from size.

    Returns None for malformed records so a bad message never aborts a tick.
    """
    if not isinstance(raw, dict):
        return None

    market_id = _first(raw, "marketId", "market_id", "market", "conditionId")
    if not market_id:
        return None

    outcome = Outcome.parse(raw.get("outcome"))
    if outcome is None:
        return None

    price = _parse_float(raw.get("price"))
    if price is None or price < 0 or price > 1:
        return None

    size = _parse_float(_first(raw, "amount", "usdcSize", "size"))
    if size is None or size < 0:
        return None

    timestamp = normalize_timestamp(raw.get("timestamp"))
    if timestamp is None:
        return None

    wallet = _first(raw, "walletAddress", "wallet_address", "proxyWallet", "user")
    tx_hash = _first(raw, "transactionHash", "transaction_hash", "id")

    return Trade(
        market_id=str(market_id),
        outcome=outcome,
        price=price,
        size=size,
        timestamp=timestamp,
        wallet_address=str(wallet) if wallet else None,
        transaction_hash=str(tx_hash) if tx_hash else None,
    )


def _parse_levels(levels: Any) -> list[OrderBookLevel]:
    parsed = []
    for level in levels or []:
        if isinstance(level, dict):
            price = _parse_float(level.get("price"))
            size = _parse_float(level.get("size"))
        elif isinstance(level, (list, tuple)) and len(level) >= 2:
            price = _parse_float(level[0])
            size = _parse_float(level[1])
        else:
            continue
        if price is None or size is None or price <= 0 or size < 0:
            continue
        parsed.append(OrderBookLevel(price=price, size=size))
    return parsed


def parse_order_book(raw: dict, market_id: str | None = None) -> OrderBookSnapshot | None:
    """Convert a CLOB book payload into an OrderBookSnapshot (bids best-first, asks best-first)."""
    if not isinstance(raw, dict):
        return None

    market_id = market_id or _first(raw, "marketId", "market", "asset_id")
    timestamp = normalize_timestamp(raw.get("timestamp"))
    if not market_id or timestamp is None:
        return None

    bids = sorted(_parse_levels(raw.get("bids")), key=lambda lvl: lvl.price, reverse=True)
    asks = sorted(_parse_levels(raw.get("asks")), key=lambda lvl: lvl.price)

    return OrderBookSnapshot(market_id=str(market_id), timestamp=timestamp, bids=bids, asks=asks)


def parse_market_metadata(raw: dict) -> MarketMetadata | None:
    """Convert a Gamma market payload into MarketMetadata."""
    if not isinstance(raw, dict):
        return None

    market_id = _first(raw, "id", "conditionId", "marketId")
    if not market_id:
        return None

    event_id = _first(raw, "eventId", "event_id")
    if event_id is None:
        events = raw.get("events")
        if isinstance(events, list) and events and isinstance(events[0], dict):
            event_id = events[0].get("id")

    return MarketMetadata(
        id=str(market_id),
        question=raw.get("question", "") or "",
        category=raw.get("category", "") or "",
        volume=_parse_float(_first(raw, "volumeNum", "volume")),
        liquidity=_parse_float(_first(raw, "liquidityNum", "liquidity")),
        event_id=str(event_id) if event_id is not None else None,
        end_date=normalize_timestamp(raw.get("endDate")),
    )


@dataclass(frozen=True)
class MarketMetrics:
    """Live metrics backing alert conditions; None means not loaded yet."""

    market_id: str
    price: float | None = None  # YES probability, 0..1
    volume: float | None = None  # rolling 24h USDC
    depth: float | None = None  # total book size
    spread: float | None = None  # bid-ask spread, percent of mid
    flow: float | None = None  # (YES - NO) / total window volume, percent
    last_trade_at: int | None = None

    def value_for(self, condition_type: ConditionType) -> float | None:
        match condition_type:
            case ConditionType.PRICE:
                return self.price
            case ConditionType.VOLUME:
                return self.volume
            case ConditionType.DEPTH:
                return self.depth
            case ConditionType.SPREAD:
                return self.spread
            case ConditionType.FLOW:
                return self.flow
        raise ValueError(f"Unknown condition type: {condition_type!r}")


@dataclass(frozen=True)
class MarketSnapshot:
    """Immutable view of every market's metrics at one instant."""

    taken_at: int
    metrics: Mapping[str, MarketMetrics] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))

    @property
    def market_ids(self) -> list[str]:
        return list(self.metrics.keys())

    def lookup(self, market_id: str, condition_type: ConditionType) -> float:
        """Return the metric for a condition type, raising MetricUnavailableError when missing."""
        metrics = self.metrics.get(market_id)
        if metrics is None:
            raise MetricUnavailableError(market_id, condition_type.value, "market not tracked")
        value = metrics.value_for(condition_type)
        if value is None:
            raise MetricUnavailableError(market_id, condition_type.value)
        return value


class MarketDataFeed:
    """
    Owns the per-market trade buffers, order book history and metadata.

    All mutation happens on the single event-loop thread that feeds it;
    readers take a DetectionWindow or MarketSnapshot copy per tick.
    """

    def __init__(self, config: DetectionConfig | None = None, max_books: int = 120):
        self.config = config or DetectionConfig()
        self.max_books = max_books
        self._trades: dict[str, RollingWindow] = {}
        self._books: dict[str, deque] = {}
        self._metadata: dict[str, MarketMetadata] = {}
        self._last_active: dict[str, int] = {}  # metadata id -> last prune that saw trades or books
        self.rejected = 0

    @property
    def market_ids(self) -> list[str]:
        ids = list(self._trades.keys())
        for market_id in list(self._books.keys()) + list(self._metadata.keys()):
            if market_id not in ids:
                ids.append(market_id)
        return ids

    def ingest_trade(self, trade: Trade) -> None:
        window = self._trades.get(trade.market_id)
        if window is None:
            window = RollingWindow(duration_ms=self.config.windows.retention)
            self._trades[trade.market_id] = window
        window.add(trade, trade.timestamp)

    def ingest_raw(self, raw: dict) -> Trade | None:
        """Parse and buffer a raw feed record; malformed records are counted and skipped."""
        trade = parse_trade(raw)
        if trade is None:
            self.rejected += 1
            logger.debug(f"Skipping malformed trade record: {raw!r}")
            return None
        self.ingest_trade(trade)
        return trade

    def update_order_book(self, snapshot: OrderBookSnapshot) -> None:
        books = self._books.setdefault(snapshot.market_id, deque(maxlen=self.max_books))
        books.append(snapshot)

    def update_metadata(self, metadata: MarketMetadata) -> None:
        self._metadata[metadata.id] = metadata

    def get_metadata(self, market_id: str) -> MarketMetadata | None:
        return self._metadata.get(market_id)

    def trades_for(self, market_id: str, now: int | None = None) -> list[Trade]:
        window = self._trades.get(market_id)
        if window is None:
            return []
        return window.values(now)

    def latest_book(self, market_id: str) -> OrderBookSnapshot | None:
        books = self._books.get(market_id)
        return books[-1] if books else None

    def prune(self, now: int) -> int:
        """
        Drop trades and book snapshots past retention; forget markets left empty.

        Metadata is kept while its market has trades or books, and for one
        retention period after that. Returns the number of trades dropped.
        """
        retention = self.config.windows.retention
        cutoff = now - retention

        dropped = 0
        for market_id in list(self._trades.keys()):
            window = self._trades[market_id]
            dropped += window.trim(now)
            if len(window) == 0:
                del self._trades[market_id]

        stale_books = 0
        for market_id in list(self._books.keys()):
            books = self._books[market_id]
            while books and books[0].timestamp < cutoff:
                books.popleft()
                stale_books += 1
            if not books:
                del self._books[market_id]

        forgotten = 0
        for market_id in list(self._metadata.keys()):
            if market_id in self._trades or market_id in self._books:
                self._last_active[market_id] = now
                continue
            if now - self._last_active.setdefault(market_id, now) >= retention:
                del self._metadata[market_id]
                del self._last_active[market_id]
                forgotten += 1

        if dropped or stale_books or forgotten:
            logger.debug(
                f"Pruned {dropped} expired trades, {stale_books} book snapshots, "
                f"{forgotten} idle markets"
            )
        return dropped

    def detection_window(self, now: int, window_ms: int | None = None) -> DetectionWindow:
        """Copy the buffers into a DetectionWindow for one anomaly pass."""
        self.prune(now)
        return DetectionWindow(
            now=now,
            window_ms=window_ms or self.config.windows.short,
            trades_by_market={mid: w.values() for mid, w in self._trades.items()},
            metadata_by_market=dict(self._metadata),
            order_books_by_market={mid: list(books) for mid, books in self._books.items()},
        )

    def compute_metrics(self, market_id: str, now: int) -> MarketMetrics:
        trades = [t for t in self.trades_for(market_id) if t.timestamp <= now]
        book = self.latest_book(market_id)
        metadata = self._metadata.get(market_id)

        price = None
        last_trade_at = None
        if trades:
            last = max(trades, key=lambda t: t.timestamp)
            price = last.yes_price
            last_trade_at = last.timestamp
        elif book is not None and book.mid_price is not None:
            price = book.mid_price

        day_trades = [t for t in trades if t.timestamp >= now - DAY_MS]
        if day_trades:
            volume = math.fsum(t.size for t in day_trades)
        elif metadata is not None and metadata.volume is not None:
            volume = metadata.volume
        else:
            volume = None

        depth = None
        spread = None
        if book is not None:
            depth = book.total_depth
            spread = book.spread_percent

        flow = None
        window_start = now - self.config.windows.short
        window_trades = [t for t in trades if t.timestamp >= window_start]
        yes_volume = math.fsum(t.size for t in window_trades if t.outcome is Outcome.YES)
        no_volume = math.fsum(t.size for t in window_trades if t.outcome is Outcome.NO)
        if yes_volume + no_volume > 0:
            flow = (yes_volume - no_volume) / (yes_volume + no_volume) * 100

        return MarketMetrics(
            market_id=market_id,
            price=price,
            volume=volume,
            depth=depth,
            spread=spread,
            flow=flow,
            last_trade_at=last_trade_at,
        )

    def snapshot(self, now: int) -> MarketSnapshot:
        """Freeze every market's metrics so one alert tick sees a single consistent view."""
        return MarketSnapshot(
            taken_at=now,
            metrics={market_id: self.compute_metrics(market_id, now) for market_id in self.market_ids},
        )
