"""Composite heat scoring for MarketPulse."""

import math

from .config import DEFAULT_DETECTION_CONFIG, DetectionConfig
from .models import AnomalyEvent, MarketHeatScore

BAND_QUIET = "quiet"
BAND_ACTIVE = "active"
BAND_HOT = "hot"
BAND_EXTREME = "extreme"


def clamp_score(score: float) -> float:
    """Clamp a score into [0, 100]; non-finite values count as 0."""
    if not math.isfinite(score):
        return 0.0
    return min(100.0, max(0.0, score))


def get_severity_band(score: float, config: DetectionConfig = DEFAULT_DETECTION_CONFIG) -> str:
    """
    Map a heat score to its band.

    quiet < 20 <= active < 50 <= hot < 80 <= extreme with default bands.
    Every score in [0, 100] falls into exactly one band after clamping.
    """
    score = clamp_score(score)
    bands = config.heat_bands
    if score < bands.quiet:
        return BAND_QUIET
    if score < bands.active:
        return BAND_ACTIVE
    if score < bands.hot:
        return BAND_HOT
    return BAND_EXTREME


def compute_heat_score(
    market_id: str,
    anomalies: list[AnomalyEvent],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> MarketHeatScore:
    """
    Heat = min(100, sum of severity weights of the market's anomalies).

    Weights are non-negative, so adding an anomaly never lowers the score.
    components holds the contribution per anomaly type.
    """
    components: dict[str, float] = {}
    total = 0.0

    for anomaly in anomalies:
        if anomaly.market_id != market_id:
            continue
        weight = config.severity_weight(anomaly.severity)
        components[anomaly.type.value] = components.get(anomaly.type.value, 0.0) + weight
        total += weight

    score = clamp_score(total)
    return MarketHeatScore(
        market_id=market_id,
        score=score,
        band=get_severity_band(score, config),
        components=components,
        last_updated=now,
    )


def compute_heat_scores(
    market_ids: list[str],
    anomalies: list[AnomalyEvent],
    now: int,
    config: DetectionConfig = DEFAULT_DETECTION_CONFIG,
) -> list[MarketHeatScore]:
    """Heat score for every market key (0 when quiet), hottest first."""
    by_market: dict[str, list[AnomalyEvent]] = {market_id: [] for market_id in market_ids}
    for anomaly in anomalies:
        by_market.setdefault(anomaly.market_id, []).append(anomaly)

    scores = [
        compute_heat_score(market_id, market_anomalies, now, config)
        for market_id, market_anomalies in by_market.items()
    ]
    scores.sort(key=lambda h: h.score, reverse=True)
    return scores
