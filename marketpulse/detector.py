"""Anomaly detectors for MarketPulse.

Every detector is a pure function over one market's data that returns a
(possibly empty) list of AnomalyEvents. Insufficient data is never an
error: the detector simply reports nothing.
"""

import logging
import math

from .config import DEFAULT_DETECTION_CONFIG, DetectionConfig
from .models import (
    AnomalyEvent,
    AnomalyType,
    MarketMetadata,
    OrderBookSnapshot,
    Outcome,
    Severity,
    Trade,
)
from .statistics import mean, percentile, stddev, zscore

logger = logging.getLogger("marketpulse.detector")


def bucket_start(now: int, bucket_ms: int) -> int:
    """Start of the time bucket containing now; anomaly ids are stable within it."""
    return now // bucket_ms * bucket_ms


def anomaly_id(
    anomaly_type: AnomalyType,
    market_id: str,
    now: int,
    config: DetectionConfig,
    suffix: str | None = None,
) -> str:
    base = f"{anomaly_type.value}-{market_id}-{bucket_start(now, config.windows.bucket)}"
    return f"{base}-{suffix}" if suffix else base


def band_severity(value: float, bands: tuple[float, float, float]) -> Severity | None:
    """
    Map a metric to a severity using (medium, high, extreme) cutoffs.

    Returns None when the value is below the medium cutoff or not finite.
    """
    if not math.isfinite(value):
        return None
    medium, high, extreme = bands
    if value >= extreme:
        return Severity.EXTREME
    if value >= high:
        return Severity.HIGH
    if value >= medium:
        return Severity.MEDIUM
    return None


def _strongest(*severities: Severity | None) -> Severity | None:
    found = [s for s in severities if s is not None]
    return max(found) if found else None


def _chronological(trades: list[Trade]) -> list[Trade]:
    return sorted(trades, key=lambda t: t.timestamp)


def _in_window(trades: list[Trade], now: int, window_ms: int) -> list[Trade]:
    start = now - window_ms
    return [t for t in trades if start <= t.timestamp <= now]


def _baseline_buckets(
    trades: list[Trade], now: int, window_ms: int, multiplier: int
) -> list[list[Trade]]:
    """
    Split the span before the current window into window-sized buckets.

    Bucket i covers [now - (i+1)*window, now - i*window); empty buckets are
    kept so a quiet baseline counts as zero activity.
    """
    buckets: list[list[Trade]] = [[] for _ in range(multiplier)]
    baseline_start = now - (multiplier + 1) * window_ms
    window_start = now - window_ms
    for trade in trades:
        if baseline_start <= trade.timestamp < window_start:
            index = (window_start - 1 - trade.timestamp) // window_ms
            buckets[index].append(trade)
    return buckets


def _volume(trades: list[Trade]) -> float:
    return math.fsum(t.size for t in trades)


def _minutes(window_ms: int) -> int:
    return round(window_ms / 60000)


def detect_volume_spike(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a burst of traded notional in the current window.

    Current window volume is compared with the per-window volumes of the
    preceding baseline (baseline_multiplier windows). Triggers when the
    z-score or the volume ratio reaches the medium cutoff.

    Score: min(100, max(z * 20, ratio * 10)).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if len(window_trades) < config.minimums.samples:
        return []

    current = _volume(window_trades)
    if current < config.minimums.volume_notional:
        return []

    buckets = _baseline_buckets(trades, now, window_ms, config.windows.baseline_multiplier)
    if sum(len(b) for b in buckets) < config.minimums.samples:
        return []

    baseline = [_volume(b) for b in buckets]
    mu = mean(baseline)
    std = stddev(baseline, mu)
    z = zscore(current, mu, std)
    ratio = current / mu if mu > 0 else 0.0

    severity = _strongest(
        band_severity(z, config.thresholds.volume_zscore),
        band_severity(ratio, config.thresholds.volume_ratio),
    )
    if severity is None:
        return []

    score = min(100.0, max(0.0, z * 20, ratio * 10))
    message = (
        f"Last {_minutes(window_ms)}m volume: {current:,.0f} USDC vs avg {mu:,.0f} USDC "
        f"({ratio:.1f}x, z={z:.2f})"
    )
    logger.info(f"Volume spike: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.VOLUME_SPIKE, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.VOLUME_SPIKE,
            severity=severity,
            score=score,
            message=message,
            timestamp=now,
            label="Volume spike",
            context={
                "volumeInWindow": current,
                "meanVolume": mu,
                "stdVolume": std,
                "zScore": z,
                "volumeRatio": ratio,
                "tradeCount": len(window_trades),
                "windowMs": window_ms,
            },
        )
    ]


def detect_price_spike(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a large move between the first and last trade of the window.

    Prices are compared as YES probabilities so mixed-outcome fills agree.
    Score: min(100, |change%| * 2).
    """
    window_trades = _in_window(_chronological(trades), now, window_ms)
    if len(window_trades) < 2:
        return []

    price_before = window_trades[0].yes_price
    price_after = window_trades[-1].yes_price

    # Avoid division by zero on a zero opening price
    if price_before == 0:
        return []

    change = (price_after - price_before) / price_before * 100
    severity = band_severity(abs(change), config.thresholds.price_change_percent)
    if severity is None:
        return []

    direction = "up" if change > 0 else "down"
    message = (
        f"Price moved {direction} {abs(change):.1f}% in {_minutes(window_ms)}m "
        f"({price_before:.4f} → {price_after:.4f})"
    )
    logger.info(f"Price spike: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.PRICE_SPIKE, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.PRICE_SPIKE,
            severity=severity,
            score=min(100.0, abs(change) * 2),
            message=message,
            timestamp=now,
            label=f"Price {direction}",
            context={
                "priceChange": change,
                "priceBefore": price_before,
                "priceAfter": price_after,
                "direction": direction,
                "windowMs": window_ms,
            },
        )
    ]


def _price_moves(trades: list[Trade]) -> list[float]:
    return [abs(b.yes_price - a.yes_price) for a, b in zip(trades, trades[1:])]


def detect_volatility_spike(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect short-window volatility well above the long-window baseline.

    Volatility is the population stddev of trade-to-trade price moves.
    Score: min(100, ratio * 20).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    window_start = now - window_ms
    long_start = now - max(config.windows.long, window_ms)
    baseline_trades = [t for t in trades if long_start <= t.timestamp < window_start]

    short_moves = _price_moves(window_trades)
    long_moves = _price_moves(baseline_trades)
    if len(short_moves) < config.minimums.samples or len(long_moves) < config.minimums.samples:
        return []

    short_vol = stddev(short_moves)
    long_vol = stddev(long_moves)
    if long_vol == 0:
        return []

    ratio = short_vol / long_vol
    severity = band_severity(ratio, config.thresholds.volatility_ratio)
    if severity is None:
        return []

    message = f"Volatility {ratio:.1f}x the {_minutes(config.windows.long)}m baseline"
    logger.info(f"Volatility spike: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.VOLATILITY_SPIKE, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.VOLATILITY_SPIKE,
            severity=severity,
            score=min(100.0, ratio * 20),
            message=message,
            timestamp=now,
            label="Volatility spike",
            context={
                "shortVolatility": short_vol,
                "longVolatility": long_vol,
                "volatilityRatio": ratio,
                "windowMs": window_ms,
            },
        )
    ]


def detect_breakout(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect the latest price leaving the range the market has traded in.

    The range is the configured low/high percentiles of YES prices over
    breakout.lookback, excluding the current window. Distance is measured
    beyond the broken bound as a percentage of it.
    Score: min(100, distance * 10).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if not window_trades:
        return []

    price = window_trades[-1].yes_price
    if not math.isfinite(price) or price <= 0:
        return []

    window_start = now - window_ms
    history_start = now - config.breakout.lookback
    history = [
        t.yes_price for t in trades if history_start <= t.timestamp < window_start and t.yes_price > 0
    ]
    if len(history) < config.breakout.min_history:
        return []

    low_pct, high_pct = config.breakout.percentiles
    lower = percentile(history, low_pct)
    upper = percentile(history, high_pct)

    if price > upper and upper > 0:
        direction, bound = "up", upper
    elif price < lower:
        direction, bound = "down", lower
    else:
        return []

    distance = abs(price - bound) / bound * 100
    severity = band_severity(distance, config.thresholds.breakout_distance_percent)
    if severity is None:
        return []

    side = "upper" if direction == "up" else "lower"
    message = (
        f"Price broke {direction} to {price * 100:.1f}% "
        f"({bound * 100:.1f}% {side} bound, {distance:.1f}% beyond)"
    )
    logger.info(f"Breakout: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.BREAKOUT, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.BREAKOUT,
            severity=severity,
            score=min(100.0, distance * 10),
            message=message,
            timestamp=now,
            label=f"Breakout {direction}",
            context={
                "currentPrice": price,
                "lowerBound": lower,
                "upperBound": upper,
                "distance": distance,
                "direction": direction,
                "windowMs": window_ms,
            },
        )
    ]


def _imbalance(trades: list[Trade]) -> tuple[float, float, float] | None:
    """(imbalance, yes_volume, no_volume), or None when nothing traded."""
    yes_volume = math.fsum(t.size for t in trades if t.outcome is Outcome.YES)
    no_volume = math.fsum(t.size for t in trades if t.outcome is Outcome.NO)
    total = yes_volume + no_volume
    if total <= 0:
        return None
    return abs(yes_volume - no_volume) / total, yes_volume, no_volume


def detect_flow_imbalance(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect one-sided YES vs NO flow in the window.

    imbalance = |yes - no| / (yes + no). When the baseline holds enough
    active windows the imbalance must also reach their configured
    percentile. Score: min(100, imbalance * 100).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if len(window_trades) < config.minimums.samples:
        return []

    flow = _imbalance(window_trades)
    if flow is None:
        return []
    imbalance, yes_volume, no_volume = flow

    severity = band_severity(imbalance, config.thresholds.flow_imbalance)
    if severity is None:
        return []

    baseline = [
        result[0]
        for result in (
            _imbalance(b)
            for b in _baseline_buckets(trades, now, window_ms, config.windows.baseline_multiplier)
        )
        if result is not None
    ]
    baseline_cutoff = None
    if len(baseline) >= config.minimums.samples:
        baseline_cutoff = percentile(baseline, config.flow_imbalance.baseline_percentile)
        if imbalance < baseline_cutoff:
            logger.debug(
                f"Flow imbalance {imbalance:.2f} on {market_id} within baseline "
                f"p{config.flow_imbalance.baseline_percentile:g} {baseline_cutoff:.2f}"
            )
            return []

    total = yes_volume + no_volume
    direction = "YES" if yes_volume >= no_volume else "NO"
    message = (
        f"Flow imbalance {imbalance * 100:.0f}% toward {direction} "
        f"({yes_volume / total * 100:.0f}% YES, {no_volume / total * 100:.0f}% NO "
        f"in last {_minutes(window_ms)}m)"
    )
    logger.info(f"Flow imbalance: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.FLOW_IMBALANCE, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.FLOW_IMBALANCE,
            severity=severity,
            score=min(100.0, imbalance * 100),
            message=message,
            timestamp=now,
            label="Flow imbalance",
            context={
                "imbalancePercentage": imbalance * 100,
                "buyVolume": yes_volume,
                "sellVolume": no_volume,
                "totalVolume": total,
                "direction": direction,
                "baselineCutoff": baseline_cutoff,
                "windowMs": window_ms,
            },
        )
    ]


def _books_until(books: list[OrderBookSnapshot], now: int) -> list[OrderBookSnapshot]:
    return sorted((b for b in books if b.timestamp <= now), key=lambda b: b.timestamp)


def detect_depth_shift(
    market_id: str,
    books: list[OrderBookSnapshot],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a collapse or surge in total book depth versus earlier snapshots.

    No-op without an order book feed. Score: min(100, |z| * 20).
    """
    books = _books_until(books, now)
    if len(books) < config.minimums.samples + 1:
        return []

    current = books[-1].total_depth
    history = [b.total_depth for b in books[:-1] if b.total_depth > 0]
    if len(history) < config.minimums.samples:
        return []

    mu = mean(history)
    std = stddev(history, mu)
    z = zscore(current, mu, std)
    severity = band_severity(abs(z), config.thresholds.depth_zscore)
    if severity is None:
        return []

    direction = "collapse" if current < mu else "surge"
    ratio = current / mu if mu > 0 else 0.0
    message = f"Book depth {direction}: {current:,.0f} vs avg {mu:,.0f} (z={z:.2f})"
    logger.info(f"Depth shift: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.DEPTH_SHIFT, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.DEPTH_SHIFT,
            severity=severity,
            score=min(100.0, abs(z) * 20),
            message=message,
            timestamp=now,
            label=f"Depth {direction}",
            context={
                "currentDepth": current,
                "meanDepth": mu,
                "zScore": z,
                "depthRatio": ratio,
                "direction": direction,
            },
        )
    ]


def _spread_stats(
    books: list[OrderBookSnapshot], now: int, config: DetectionConfig
) -> tuple[float, float, float, float] | None:
    """(current, mean, std, z) of the latest spread against earlier snapshots."""
    books = _books_until(books, now)
    if not books:
        return None

    current = books[-1].spread_percent
    if current is None:
        return None

    history = [s for s in (b.spread_percent for b in books[:-1]) if s is not None]
    if len(history) < config.minimums.samples:
        return None

    mu = mean(history)
    std = stddev(history, mu)
    return current, mu, std, zscore(current, mu, std)


def detect_spread_widening(
    market_id: str,
    books: list[OrderBookSnapshot],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a bid-ask spread significantly wider than its recent average.

    Severity is at least high once the spread doubles. Score:
    min(100, ratio / 3 * 100).
    """
    stats = _spread_stats(books, now, config)
    if stats is None:
        return []

    current, mu, std, z = stats
    if current <= mu:
        return []

    severity = band_severity(z, config.thresholds.spread_zscore)
    if severity is None:
        return []

    ratio = current / mu if mu > 0 else 0.0
    if ratio >= 2 and severity < Severity.HIGH:
        severity = Severity.HIGH

    message = f"Spread widened to {current:.2f}% (avg {mu:.2f}%, {ratio:.1f}x, z={z:.2f})"
    logger.info(f"Spread widening: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.SPREAD_WIDENING, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.SPREAD_WIDENING,
            severity=severity,
            score=min(100.0, ratio / 3 * 100),
            message=message,
            timestamp=now,
            label="Spread widening",
            context={
                "currentSpread": current,
                "meanSpread": mu,
                "zScore": z,
                "spreadRatio": ratio,
            },
        )
    ]


def detect_spread_tightening(
    market_id: str,
    books: list[OrderBookSnapshot],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a bid-ask spread significantly narrower than its recent average.

    Often a market maker stepping in ahead of news. Severity is at least
    high once the spread halves. Score: min(100, (1 - ratio) / 0.5 * 100).
    """
    stats = _spread_stats(books, now, config)
    if stats is None:
        return []

    current, mu, std, z = stats
    if current >= mu:
        return []

    severity = band_severity(-z, config.thresholds.spread_zscore)
    if severity is None:
        return []

    ratio = current / mu
    if ratio <= 0.5 and severity < Severity.HIGH:
        severity = Severity.HIGH

    message = f"Spread tightened to {current:.2f}% (avg {mu:.2f}%, {ratio:.2f}x, z={z:.2f})"
    logger.info(f"Spread tightening: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.SPREAD_TIGHTENING, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.SPREAD_TIGHTENING,
            severity=severity,
            score=min(100.0, max(0.0, (1 - ratio) / 0.5 * 100)),
            message=message,
            timestamp=now,
            label="Spread tightening",
            context={
                "currentSpread": current,
                "meanSpread": mu,
                "zScore": z,
                "spreadRatio": ratio,
            },
        )
    ]


def book_slippage(book: OrderBookSnapshot, size: float, side: str) -> float | None:
    """
    Percent slippage from mid for an order of size walked through the book.

    Buys walk the asks, sells the bids; the execution price is the last
    level touched. None for a one-sided or non-positive book.
    """
    bid, ask = book.best_bid, book.best_ask
    if bid is None or ask is None or bid <= 0 or ask <= 0:
        return None

    mid = (bid + ask) / 2
    executed = mid
    remaining = size
    for level in book.asks if side == "buy" else book.bids:
        if remaining <= 0:
            break
        executed = level.price
        remaining -= min(remaining, level.size or 0.0)

    slippage = abs(executed - mid) / mid * 100
    return slippage if math.isfinite(slippage) else None


def detect_slippage_change(
    market_id: str,
    books: list[OrderBookSnapshot],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a change in the cost of a standard-size order versus earlier books.

    Each configured test size is tried on both sides; the first size and
    side whose slippage z-score reaches the band is reported.
    Score: min(100, |z| * 20).
    """
    books = _books_until(books, now)
    if len(books) < config.minimums.samples + 1:
        return []

    current_book = books[-1]
    for size in config.slippage.test_sizes:
        for side in ("buy", "sell"):
            current = book_slippage(current_book, size, side)
            if current is None:
                continue

            history = [
                s for s in (book_slippage(b, size, side) for b in books[:-1]) if s is not None
            ]
            if len(history) < config.minimums.samples:
                continue

            mu = mean(history)
            if mu == 0:
                continue
            std = stddev(history, mu)
            z = zscore(current, mu, std)
            severity = band_severity(abs(z), config.thresholds.slippage_zscore)
            if severity is None:
                continue

            change = "increase" if current > mu else "decrease"
            ratio = current / mu
            message = (
                f"Slippage for {size:,.0f} USDC {side} {change}d to {current:.2f}% "
                f"(avg {mu:.2f}%, {ratio:.1f}x, z={z:.2f})"
            )
            logger.info(f"Slippage change: {market_id} {message}")

            return [
                AnomalyEvent(
                    id=anomaly_id(
                        AnomalyType.SLIPPAGE_CHANGE, market_id, now, config, f"{size:g}-{side}"
                    ),
                    market_id=market_id,
                    type=AnomalyType.SLIPPAGE_CHANGE,
                    severity=severity,
                    score=min(100.0, abs(z) * 20),
                    message=message,
                    timestamp=now,
                    label=f"Slippage {change}",
                    context={
                        "currentSlippage": current,
                        "meanSlippage": mu,
                        "stdSlippage": std,
                        "slippageRatio": ratio,
                        "zScore": z,
                        "tradeSize": size,
                        "side": side,
                    },
                )
            ]

    return []


def _participants(trades: list[Trade]) -> int:
    return len({t.wallet_address for t in trades if t.wallet_address})


def detect_participant_spike(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a jump in distinct wallets trading in the window.

    Mirrors the volume spike test with wallet counts in place of notional.
    Score: min(100, max(z * 20, ratio * 10)).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if len(window_trades) < config.minimums.samples:
        return []

    current = _participants(window_trades)
    if current == 0:
        return []

    buckets = _baseline_buckets(trades, now, window_ms, config.windows.baseline_multiplier)
    if sum(len(b) for b in buckets) < config.minimums.samples:
        return []

    baseline = [float(_participants(b)) for b in buckets]
    mu = mean(baseline)
    std = stddev(baseline, mu)
    z = zscore(current, mu, std)
    ratio = current / mu if mu > 0 else 0.0

    severity = _strongest(
        band_severity(z, config.thresholds.participant_zscore),
        band_severity(ratio, config.thresholds.participant_ratio),
    )
    if severity is None:
        return []

    message = (
        f"{current} wallets traded in last {_minutes(window_ms)}m vs avg {mu:.1f} "
        f"({ratio:.1f}x, z={z:.2f})"
    )
    logger.info(f"Participant spike: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.PARTICIPANT_SPIKE, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.PARTICIPANT_SPIKE,
            severity=severity,
            score=min(100.0, max(0.0, z * 20, ratio * 10)),
            message=message,
            timestamp=now,
            label="Participant spike",
            context={
                "participantsInWindow": current,
                "meanParticipants": mu,
                "zScore": z,
                "participantRatio": ratio,
                "windowMs": window_ms,
            },
        )
    ]


def _top_wallet(trades: list[Trade]) -> tuple[str, float] | None:
    """(wallet, share of volume) of the largest wallet; trades without a wallet are skipped."""
    volumes: dict[str, float] = {}
    for trade in trades:
        if trade.wallet_address and trade.size > 0:
            volumes[trade.wallet_address] = volumes.get(trade.wallet_address, 0.0) + trade.size
    total = math.fsum(volumes.values())
    if total <= 0:
        return None
    wallet = max(volumes, key=volumes.get)
    return wallet, volumes[wallet] / total


def detect_wallet_concentration(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect one wallet dominating the window's traded volume.

    The top wallet's share must reach the band and the configured
    percentile of the top shares seen in earlier windows over
    wallet_concentration.lookback (needs minimums.samples active windows).
    Score: min(100, share * 100).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if len(window_trades) < config.minimums.samples:
        return []

    top = _top_wallet(window_trades)
    if top is None:
        return []
    wallet, share = top

    severity = band_severity(share, config.thresholds.wallet_concentration)
    if severity is None:
        return []

    buckets = _baseline_buckets(
        trades, now, window_ms, max(1, config.wallet_concentration.lookback // window_ms)
    )
    baseline = [result[1] for result in (_top_wallet(b) for b in buckets) if result is not None]
    if len(baseline) < config.minimums.samples:
        return []

    cutoff = percentile(baseline, config.wallet_concentration.baseline_percentile)
    if share < cutoff:
        logger.debug(
            f"Wallet concentration {share:.2f} on {market_id} within baseline "
            f"p{config.wallet_concentration.baseline_percentile:g} {cutoff:.2f}"
        )
        return []

    message = f"Top wallet controls {share * 100:.0f}% of volume in last {_minutes(window_ms)}m"
    logger.info(f"Wallet concentration: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.WALLET_CONCENTRATION, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.WALLET_CONCENTRATION,
            severity=severity,
            score=min(100.0, share * 100),
            message=message,
            timestamp=now,
            label="Wallet concentration",
            context={
                "topWalletShare": share,
                "baselineCutoff": cutoff,
                "baselineWindows": len(baseline),
                "windowMs": window_ms,
            },
            meta={"wallet": wallet},
        )
    ]


def _price_near(trades: list[Trade], start: int, end: int, latest: bool) -> float | None:
    """Price of the first (or latest) trade with start <= timestamp <= end."""
    inside = [t for t in trades if start <= t.timestamp <= end]
    if not inside:
        return None
    return (inside[-1] if latest else inside[0]).price


def detect_new_wallet_impact(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a large fill from a wallet with little history that moved the price.

    A wallet is new with fewer than new_wallet.max_prior_trades trades
    before the window. Its fill must be at least size_fraction of the
    whale threshold. Prices are compared on the fill's own outcome: the
    last trade within price_window before it and the first within
    price_window after it. Triggers on a relative move or a
    percentage-point move reaching the band.
    """
    trades = _chronological(trades)
    window_start = now - window_ms
    window_trades = _in_window(trades, now, window_ms)
    if not window_trades:
        return []

    prior: dict[str, int] = {}
    for trade in trades:
        if trade.timestamp < window_start and trade.wallet_address:
            prior[trade.wallet_address] = prior.get(trade.wallet_address, 0) + 1

    threshold = config.whale.absolute_threshold
    min_size = threshold * config.new_wallet.size_fraction
    span = config.new_wallet.price_window

    events = []
    for trade in window_trades:
        if not trade.wallet_address or trade.size <= 0 or trade.size < min_size:
            continue
        if prior.get(trade.wallet_address, 0) >= config.new_wallet.max_prior_trades:
            continue

        same_outcome = [t for t in trades if t.outcome is trade.outcome and t is not trade]
        before = _price_near(same_outcome, trade.timestamp - span, trade.timestamp - 1, latest=True)
        after = _price_near(same_outcome, trade.timestamp + 1, trade.timestamp + span, latest=False)
        if before is None and after is None:
            continue
        before = trade.price if before is None else before
        after = trade.price if after is None else after
        if before <= 0:
            continue

        relative = abs(after - before) / before * 100
        points = abs(after - before) * 100
        severity = band_severity(max(relative, points), config.thresholds.new_wallet_move)
        if severity is None:
            continue
        if trade.size >= threshold and severity < Severity.HIGH:
            severity = Severity.HIGH

        side = "buy" if trade.outcome is Outcome.YES else "sell"
        message = (
            f"New wallet {side}: {trade.size:,.0f} USDC moved price {points:.1f} points "
            f"({relative:.1f}% change, from {before * 100:.1f}% to {after * 100:.1f}%)"
        )
        logger.info(f"New wallet impact: {market_id} {message}")

        suffix = trade.transaction_hash or str(trade.timestamp)
        events.append(
            AnomalyEvent(
                id=anomaly_id(AnomalyType.NEW_WALLET_IMPACT, market_id, trade.timestamp, config, suffix),
                market_id=market_id,
                type=AnomalyType.NEW_WALLET_IMPACT,
                severity=severity,
                score=min(100.0, relative / 20 * 50 + points / 20 * 50 + trade.size / threshold * 50),
                message=message,
                timestamp=trade.timestamp,
                label="New wallet impact",
                context={
                    "tradeSize": trade.size,
                    "priorTrades": prior.get(trade.wallet_address, 0),
                    "priceBefore": before,
                    "priceAfter": after,
                    "priceChangePercent": relative,
                    "pricePointChange": points,
                    "outcome": trade.outcome.value,
                },
                meta={"wallet": trade.wallet_address, "transactionHash": trade.transaction_hash},
            )
        )

    return events


def detect_whale_trades(
    market_id: str,
    trades: list[Trade],
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Flag individual fills that are large in absolute terms or for this market.

    A trade qualifies at the absolute threshold, or when it exceeds the
    98th percentile of the market's earlier trade sizes (needs at least
    minimums.samples earlier trades). One event per qualifying trade,
    keyed by its transaction hash. Score: min(100, size / threshold * 50).
    """
    trades = _chronological(trades)
    window_trades = _in_window(trades, now, window_ms)
    if not window_trades:
        return []

    whale = config.whale
    window_start = now - window_ms
    history = [t.size for t in trades if t.timestamp < window_start and t.size > 0]

    cutoffs = None
    if len(history) >= config.minimums.samples:
        cutoffs = tuple(percentile(history, p) for p in whale.percentiles)
    absolute = tuple(whale.absolute_threshold * m for m in whale.size_multiples)

    events = []
    for trade in window_trades:
        size = trade.size
        if size <= 0:
            continue

        by_absolute = band_severity(size, absolute)
        by_percentile = None
        if cutoffs is not None and size > cutoffs[0]:
            by_percentile = band_severity(size, cutoffs) or Severity.MEDIUM
        severity = _strongest(by_absolute, by_percentile)
        if severity is None:
            continue

        threshold = whale.absolute_threshold
        if cutoffs is not None and 0 < cutoffs[0] < threshold:
            threshold = cutoffs[0]

        side = "buy" if trade.outcome is Outcome.YES else "sell"
        message = f"Whale {side}: {size:,.0f} USDC on {trade.outcome.value} at {trade.price:.4f}"
        logger.info(f"Whale trade: {market_id} {message}")

        suffix = trade.transaction_hash or str(trade.timestamp)
        events.append(
            AnomalyEvent(
                id=anomaly_id(AnomalyType.WHALE_TRADE, market_id, trade.timestamp, config, suffix),
                market_id=market_id,
                type=AnomalyType.WHALE_TRADE,
                severity=severity,
                score=min(100.0, size / threshold * 50),
                message=message,
                timestamp=trade.timestamp,
                label=f"Whale {side}",
                context={
                    "tradeSize": size,
                    "threshold": threshold,
                    "percentile98": cutoffs[0] if cutoffs else None,
                    "outcome": trade.outcome.value,
                    "price": trade.price,
                },
                meta={"wallet": trade.wallet_address, "transactionHash": trade.transaction_hash},
            )
        )

    return events


def _latest_price(trades: list[Trade], now: int) -> float | None:
    latest = None
    for trade in trades:
        if trade.timestamp <= now and (latest is None or trade.timestamp >= latest.timestamp):
            latest = trade
    return latest.yes_price if latest is not None else None


def detect_cross_market_mispricing(
    market_id: str,
    trades_by_market: dict[str, list[Trade]],
    metadata_by_market: dict[str, MarketMetadata],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a market priced far from its sibling markets in the same event.

    Needs metadata with an event id and at least two priced siblings;
    otherwise a no-op. Score: min(100, |z| * 20).
    """
    metadata = metadata_by_market.get(market_id)
    if metadata is None or not metadata.event_id:
        return []

    price = _latest_price(trades_by_market.get(market_id, []), now)
    if price is None:
        return []

    sibling_prices = []
    for other_id, other in metadata_by_market.items():
        if other_id == market_id or other.event_id != metadata.event_id:
            continue
        sibling = _latest_price(trades_by_market.get(other_id, []), now)
        if sibling is not None:
            sibling_prices.append(sibling)

    if len(sibling_prices) < 2:
        return []

    mu = mean(sibling_prices)
    std = stddev(sibling_prices, mu)
    if std == 0:
        return []

    z = zscore(price, mu, std)
    severity = band_severity(abs(z), config.thresholds.cross_market_zscore)
    if severity is None:
        return []

    deviation = (price - mu) / mu * 100 if mu > 0 else 0.0
    position = "above" if price > mu else "below"
    message = (
        f"Price {price * 100:.1f}% is {abs(deviation):.1f}% {position} "
        f"event average {mu * 100:.1f}% (z={z:.2f})"
    )
    logger.info(f"Cross-market mispricing: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.CROSS_MARKET_MISPRICING, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.CROSS_MARKET_MISPRICING,
            severity=severity,
            score=min(100.0, abs(z) * 20),
            message=message,
            timestamp=now,
            label="Cross-market mispricing",
            context={
                "price": price,
                "groupMean": mu,
                "groupStd": std,
                "zScore": z,
                "deviationPercent": deviation,
                "eventId": metadata.event_id,
                "siblingCount": len(sibling_prices),
            },
        )
    ]


def detect_pre_expiry_activity(
    market_id: str,
    trades: list[Trade],
    metadata: MarketMetadata | None,
    now: int,
    window_ms: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Detect a volume surge in a market about to close.

    Applies only within pre_expiry.horizon of the market's end date. The
    window's volume is compared with the window before it; both must be
    non-zero. Severity is at least high inside pre_expiry.urgent.
    Score: min(100, ratio / 5 * 100).
    """
    if metadata is None or metadata.end_date is None:
        return []

    time_to_expiry = metadata.end_date - now
    if time_to_expiry <= 0 or time_to_expiry > config.pre_expiry.horizon:
        return []

    trades = _chronological(trades)
    recent = _volume(_in_window(trades, now, window_ms))
    previous = _volume([t for t in trades if now - 2 * window_ms <= t.timestamp < now - window_ms])
    if recent <= 0 or previous <= 0:
        return []

    ratio = recent / previous
    severity = band_severity(ratio, config.thresholds.pre_expiry_volume_ratio)
    if severity is None:
        return []
    if time_to_expiry < config.pre_expiry.urgent and severity < Severity.HIGH:
        severity = Severity.HIGH

    minutes_left = time_to_expiry / 60000
    message = f"Volume {ratio:.1f}x the previous window {minutes_left:.0f}m before expiry: {recent:,.0f} USDC"
    logger.info(f"Pre-expiry activity: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.PRE_EXPIRY, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.PRE_EXPIRY,
            severity=severity,
            score=min(100.0, ratio / 5 * 100),
            message=message,
            timestamp=now,
            label="Pre-expiry activity",
            context={
                "volumeRatio": ratio,
                "recentVolume": recent,
                "previousVolume": previous,
                "minutesToExpiry": minutes_left,
                "endDate": metadata.end_date,
            },
        )
    ]


def detect_linked_event_anomaly(
    market_id: str,
    anomalies: list[AnomalyEvent],
    metadata_by_market: dict[str, MarketMetadata],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[AnomalyEvent]:
    """
    Flag a market with a high-severity anomaly whose event siblings show none.

    Runs over the anomalies the other detectors produced this tick; earlier
    linked-event anomalies are ignored. Always medium, score 50.
    """
    metadata = metadata_by_market.get(market_id)
    if metadata is None or not metadata.event_id:
        return []

    related = [
        other_id
        for other_id, other in metadata_by_market.items()
        if other_id != market_id and other.event_id == metadata.event_id
    ]
    if not related:
        return []

    considered = [a for a in anomalies if a.type is not AnomalyType.LINKED_EVENT]
    own = [a for a in considered if a.market_id == market_id]
    if not any(a.severity >= Severity.HIGH for a in own):
        return []

    related_set = set(related)
    related_anomalies = [a for a in considered if a.market_id in related_set]
    if any(a.severity >= Severity.HIGH for a in related_anomalies):
        return []

    message = (
        f"High-severity anomaly but {len(related)} related markets in event "
        f"{metadata.event_id} are not reacting"
    )
    logger.info(f"Linked event: {market_id} {message}")

    return [
        AnomalyEvent(
            id=anomaly_id(AnomalyType.LINKED_EVENT, market_id, now, config),
            market_id=market_id,
            type=AnomalyType.LINKED_EVENT,
            severity=Severity.MEDIUM,
            score=50.0,
            message=message,
            timestamp=now,
            label="Out of sync",
            context={
                "marketAnomalyCount": len(own),
                "relatedAnomalyCount": len(related_anomalies),
                "groupSize": len(related),
            },
            meta={"eventId": metadata.event_id},
        )
    ]
