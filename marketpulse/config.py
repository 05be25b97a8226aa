"""Configuration loading and validation for MarketPulse."""

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import AnomalyType, Severity

logger = logging.getLogger("marketpulse.config")

# Valid detector names for configuration
VALID_DETECTORS: set[str] = {t.value for t in AnomalyType}

MINUTE_MS = 60 * 1000


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class WindowConfig:
    """Window sizes in milliseconds."""

    short: int = 5 * MINUTE_MS
    medium: int = 15 * MINUTE_MS
    long: int = 60 * MINUTE_MS
    bucket: int = 5 * MINUTE_MS  # anomaly id bucket
    baseline_multiplier: int = 6  # baseline span = multiplier x window
    retention: int = 24 * 60 * MINUTE_MS  # trade buffer retention


@dataclass
class ThresholdConfig:
    """Severity bands per detector as (medium, high, extreme) cutoffs."""

    volume_zscore: tuple[float, float, float] = (2.0, 3.0, 4.0)
    volume_ratio: tuple[float, float, float] = (3.0, 5.0, 10.0)
    price_change_percent: tuple[float, float, float] = (10.0, 20.0, 30.0)
    volatility_ratio: tuple[float, float, float] = (2.0, 3.0, 4.0)
    flow_imbalance: tuple[float, float, float] = (0.7, 0.9, 0.97)
    depth_zscore: tuple[float, float, float] = (2.0, 3.0, 4.0)
    spread_zscore: tuple[float, float, float] = (2.0, 3.0, 4.0)
    participant_zscore: tuple[float, float, float] = (2.0, 3.0, 4.0)
    participant_ratio: tuple[float, float, float] = (3.0, 5.0, 10.0)
    cross_market_zscore: tuple[float, float, float] = (2.5, 3.5, 4.5)
    breakout_distance_percent: tuple[float, float, float] = (0.0, 5.0, 15.0)
    slippage_zscore: tuple[float, float, float] = (2.0, 3.0, 4.0)
    wallet_concentration: tuple[float, float, float] = (0.7, 0.9, 0.97)
    new_wallet_move: tuple[float, float, float] = (5.0, 10.0, 20.0)  # relative % or points
    pre_expiry_volume_ratio: tuple[float, float, float] = (3.0, 5.0, 10.0)


@dataclass
class MinimumConfig:
    samples: int = 3  # trades / baseline points below which z-score detection is skipped
    volume_notional: float = 100.0  # USDC traded in window before volume spikes count


@dataclass
class FlowImbalanceConfig:
    baseline_percentile: float = 90.0  # current imbalance must reach this baseline percentile


@dataclass
class WhaleConfig:
    absolute_threshold: float = 10000.0  # USDC
    size_multiples: tuple[float, float, float] = (1.0, 1.5, 2.0)
    percentiles: tuple[float, float, float] = (98.0, 99.0, 99.5)


@dataclass
class BreakoutConfig:
    lookback: int = 7 * 24 * 60 * MINUTE_MS
    percentiles: tuple[float, float] = (5.0, 95.0)  # range the price must leave
    min_history: int = 10  # trades before the window


@dataclass
class SlippageConfig:
    test_sizes: tuple[float, ...] = (1000.0, 5000.0)  # USDC order sizes walked through the book


@dataclass
class WalletConcentrationConfig:
    baseline_percentile: float = 95.0  # top-wallet share must reach this baseline percentile
    lookback: int = 24 * 60 * MINUTE_MS


@dataclass
class NewWalletConfig:
    max_prior_trades: int = 3  # fewer earlier trades than this makes a wallet new
    size_fraction: float = 0.5  # of whale.absolute_threshold
    price_window: int = 2 * MINUTE_MS  # compared before and after the trade


@dataclass
class PreExpiryConfig:
    horizon: int = 60 * MINUTE_MS  # only markets closing within this
    urgent: int = 30 * MINUTE_MS  # at least high severity inside this


@dataclass
class HeatBandConfig:
    """Upper bounds (exclusive) of the quiet/active/hot bands; the rest is extreme."""

    quiet: float = 20.0
    active: float = 50.0
    hot: float = 80.0


def _default_severity_weights() -> dict[str, float]:
    return {"low": 5.0, "medium": 15.0, "high": 30.0, "extreme": 50.0}


@dataclass
class DetectionConfig:
    """Tunables for the anomaly detectors and heat scoring."""

    windows: WindowConfig = field(default_factory=WindowConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    minimums: MinimumConfig = field(default_factory=MinimumConfig)
    flow_imbalance: FlowImbalanceConfig = field(default_factory=FlowImbalanceConfig)
    whale: WhaleConfig = field(default_factory=WhaleConfig)
    breakout: BreakoutConfig = field(default_factory=BreakoutConfig)
    slippage: SlippageConfig = field(default_factory=SlippageConfig)
    wallet_concentration: WalletConcentrationConfig = field(default_factory=WalletConcentrationConfig)
    new_wallet: NewWalletConfig = field(default_factory=NewWalletConfig)
    pre_expiry: PreExpiryConfig = field(default_factory=PreExpiryConfig)
    heat_bands: HeatBandConfig = field(default_factory=HeatBandConfig)
    severity_weights: dict[str, float] = field(default_factory=_default_severity_weights)
    detectors: set[str] = field(default_factory=lambda: VALID_DETECTORS.copy())

    def severity_weight(self, severity: Severity) -> float:
        return float(self.severity_weights.get(severity.label, 0.0))


DEFAULT_DETECTION_CONFIG = DetectionConfig()


@dataclass
class Configuration:
    """User-provided settings for the service."""

    detection: DetectionConfig = field(default_factory=DetectionConfig)
    detection_interval: int = 30  # seconds between anomaly passes
    alert_tick_seconds: float = 5.0
    alert_sync_seconds: float = 60.0  # forced store resync; file edits are picked up every tick
    alerts_file: str | None = None
    replay_file: str | None = None
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    notify_min_severity: str = "high"  # anomalies at or above this go to Telegram
    webhook_max_retries: int = 3
    webhook_retry_delay: float = 1.0
    webhook_timeout: float = 10.0


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} patterns with environment variable values."""
    pattern = r"\$\{([^}]+)\}"

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            return match.group(0)  # Keep original if not found
        return env_value

    return re.sub(pattern, replacer, value)


def _process_yaml_values(data: dict) -> dict:
    """Recursively process YAML values to substitute environment variables."""
    result = {}
    for key, value in data.items():
        if isinstance(value, str):
            result[key] = _substitute_env_vars(value)
        elif isinstance(value, dict):
            result[key] = _process_yaml_values(value)
        elif isinstance(value, list):
            result[key] = [
                _substitute_env_vars(item) if isinstance(item, str) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def parse_detectors(value: str | list[str] | None) -> set[str]:
    """Parse detector configuration to a set of enabled detector names.

    Args:
        value: "all", "none", comma-separated string, or list of detector names

    Returns:
        Set of valid detector names to enable

    Special values:
        - None: All detectors enabled
        - "all": All detectors enabled
        - "none": No detectors enabled
    """
    if value is None:
        return VALID_DETECTORS.copy()

    if isinstance(value, str):
        value_lower = value.strip().lower()

        if value_lower == "all":
            return VALID_DETECTORS.copy()

        if value_lower == "none":
            return set()

        names = {s.strip().lower() for s in value.split(",") if s.strip()}
    else:
        names = {str(s).strip().lower() for s in value if s}

    # Accept snake_case spellings of detector names
    names = {name.replace("_", "-") for name in names}

    valid = names & VALID_DETECTORS
    invalid = names - VALID_DETECTORS

    if invalid:
        logger.warning(f"Invalid detector names ignored: {sorted(invalid)}")

    return valid


def _coerce(current: Any, value: Any) -> Any:
    """Coerce a raw YAML/override value to the type of the current field value."""
    if isinstance(current, tuple) and isinstance(value, (list, tuple)):
        return tuple(float(v) for v in value)
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int) and isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    if isinstance(current, float) and isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return value


def _merge_section(section: Any, overrides: dict, path: str) -> Any:
    """Return a copy of a config dataclass with overrides applied recursively."""
    known = {f.name for f in dataclasses.fields(section)}
    changes = {}

    for key, value in overrides.items():
        if key not in known:
            logger.warning(f"Unknown configuration key ignored: {path}{key}")
            continue

        current = getattr(section, key)
        if dataclasses.is_dataclass(current) and isinstance(value, dict):
            changes[key] = _merge_section(current, value, f"{path}{key}.")
        elif key == "detectors":
            changes[key] = parse_detectors(value)
        elif key == "severity_weights" and isinstance(value, dict):
            merged = dict(current)
            merged.update({str(k).lower(): float(v) for k, v in value.items()})
            changes[key] = merged
        else:
            changes[key] = _coerce(current, value)

    return dataclasses.replace(section, **changes)


def merge_config(base: DetectionConfig | None = None, overrides: dict | None = None) -> DetectionConfig:
    """
    Apply nested overrides to a detection config.

    Returns a new DetectionConfig; the base is left untouched so the
    defaults can be shared safely between callers and tests.
    """
    if base is None:
        base = DetectionConfig()
    if not overrides:
        return base
    return _merge_section(base, overrides, "detection.")


def load_config_from_env() -> Configuration:
    """Load configuration entirely from environment variables.

    Environment variables:
        MARKETPULSE_WINDOW_MS: Short detection window in ms (default: 300000)
        MARKETPULSE_DETECTORS: Detectors to enable - "all", "none", or comma-separated list
        MARKETPULSE_DETECTION_INTERVAL: Seconds between anomaly passes (default: 30)
        MARKETPULSE_ALERT_TICK_SECONDS: Seconds between alert evaluations (default: 5)
        MARKETPULSE_ALERTS_FILE: YAML file with alert definitions (optional)
        MARKETPULSE_ALERT_SYNC_SECONDS: Seconds between forced alert store resyncs (default: 60)
        MARKETPULSE_REPLAY_FILE: JSON-lines trade file to replay into the feed (optional)
        MARKETPULSE_NOTIFY_MIN_SEVERITY: Lowest anomaly severity sent to Telegram (default: high)
        TELEGRAM_BOT_TOKEN: Telegram bot API token (optional)
        TELEGRAM_CHAT_ID: Telegram chat ID (optional)
    """
    detection = DetectionConfig()

    try:
        window_ms = int(os.environ.get("MARKETPULSE_WINDOW_MS", str(detection.windows.short)))
    except ValueError:
        window_ms = detection.windows.short
    detection.windows = dataclasses.replace(detection.windows, short=window_ms)

    detection.detectors = parse_detectors(os.environ.get("MARKETPULSE_DETECTORS"))

    try:
        detection_interval = int(os.environ.get("MARKETPULSE_DETECTION_INTERVAL", "30"))
    except ValueError:
        detection_interval = 30

    try:
        alert_tick_seconds = float(os.environ.get("MARKETPULSE_ALERT_TICK_SECONDS", "5"))
    except ValueError:
        alert_tick_seconds = 5.0

    try:
        alert_sync_seconds = float(os.environ.get("MARKETPULSE_ALERT_SYNC_SECONDS", "60"))
    except ValueError:
        alert_sync_seconds = 60.0

    config = Configuration(
        detection=detection,
        detection_interval=detection_interval,
        alert_tick_seconds=alert_tick_seconds,
        alert_sync_seconds=alert_sync_seconds,
        alerts_file=os.environ.get("MARKETPULSE_ALERTS_FILE") or None,
        replay_file=os.environ.get("MARKETPULSE_REPLAY_FILE") or None,
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID", ""),
        notify_min_severity=os.environ.get("MARKETPULSE_NOTIFY_MIN_SEVERITY", "high"),
    )

    validate_config(config)
    return config


def load_config(config_path: str | Path | None = None) -> Configuration:
    """Load configuration from YAML file or environment variables.

    If config_path is provided and exists, load from YAML file.
    Otherwise, fall back to environment variables.

    Note: MARKETPULSE_DETECTORS env var takes precedence over the config file.
    """
    if config_path is None:
        config_path = Path("config.yaml")
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        return load_config_from_env()

    with open(config_path) as f:
        raw_data = yaml.safe_load(f)

    if raw_data is None:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    data = _process_yaml_values(raw_data)

    detection_data = dict(data.get("detection") or {})
    detectors_env = os.environ.get("MARKETPULSE_DETECTORS")
    if detectors_env is not None:
        detection_data["detectors"] = detectors_env

    try:
        detection = merge_config(DetectionConfig(), detection_data)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid detection settings: {e}") from None

    telegram = data.get("telegram", {}) or {}
    webhook = data.get("webhook", {}) or {}

    config = Configuration(
        detection=detection,
        detection_interval=data.get("detection_interval", 30),
        alert_tick_seconds=data.get("alert_tick_seconds", 5.0),
        alert_sync_seconds=data.get("alert_sync_seconds", 60.0),
        alerts_file=data.get("alerts_file"),
        replay_file=data.get("replay_file"),
        telegram_bot_token=telegram.get("bot_token", ""),
        telegram_chat_id=telegram.get("chat_id", ""),
        notify_min_severity=data.get("notify_min_severity", "high"),
        webhook_max_retries=webhook.get("max_retries", 3),
        webhook_retry_delay=webhook.get("retry_delay", 1.0),
        webhook_timeout=webhook.get("timeout", 10.0),
    )

    validate_config(config)
    return config


def _check_bands(name: str, bands: tuple, errors: list[str]) -> None:
    if len(bands) != 3:
        errors.append(f"{name}: must list exactly three cutoffs (medium, high, extreme)")
        return
    if any(not isinstance(b, (int, float)) or b < 0 for b in bands):
        errors.append(f"{name}: cutoffs must be non-negative numbers")
        return
    if not (bands[0] <= bands[1] <= bands[2]):
        errors.append(f"{name}: cutoffs must be non-decreasing")


def validate_detection_config(detection: DetectionConfig) -> list[str]:
    """Return the list of problems with a detection config (empty when valid)."""
    errors = []

    windows = detection.windows
    for name in ("short", "medium", "long", "bucket", "retention"):
        value = getattr(windows, name)
        if not isinstance(value, int) or value <= 0:
            errors.append(f"windows.{name}: must be a positive integer (ms)")
    if not isinstance(windows.baseline_multiplier, int) or windows.baseline_multiplier < 1:
        errors.append("windows.baseline_multiplier: must be an integer >= 1")

    for f in dataclasses.fields(detection.thresholds):
        _check_bands(f"thresholds.{f.name}", getattr(detection.thresholds, f.name), errors)
    _check_bands("whale.size_multiples", detection.whale.size_multiples, errors)
    _check_bands("whale.percentiles", detection.whale.percentiles, errors)

    if not isinstance(detection.minimums.samples, int) or detection.minimums.samples < 1:
        errors.append("minimums.samples: must be an integer >= 1")
    if detection.minimums.volume_notional < 0:
        errors.append("minimums.volume_notional: must be >= 0")
    if detection.whale.absolute_threshold <= 0:
        errors.append("whale.absolute_threshold: must be positive")
    if not 0 <= detection.flow_imbalance.baseline_percentile <= 100:
        errors.append("flow_imbalance.baseline_percentile: must be between 0 and 100")

    percentiles = detection.breakout.percentiles
    if len(percentiles) != 2 or not 0 <= percentiles[0] < percentiles[1] <= 100:
        errors.append("breakout.percentiles: must satisfy 0 <= low < high <= 100")
    if not isinstance(detection.breakout.min_history, int) or detection.breakout.min_history < 2:
        errors.append("breakout.min_history: must be an integer >= 2")
    if not detection.slippage.test_sizes or any(s <= 0 for s in detection.slippage.test_sizes):
        errors.append("slippage.test_sizes: must be a non-empty list of positive sizes")
    if not 0 <= detection.wallet_concentration.baseline_percentile <= 100:
        errors.append("wallet_concentration.baseline_percentile: must be between 0 and 100")
    if detection.new_wallet.size_fraction <= 0:
        errors.append("new_wallet.size_fraction: must be positive")
    if not isinstance(detection.new_wallet.max_prior_trades, int) or detection.new_wallet.max_prior_trades < 1:
        errors.append("new_wallet.max_prior_trades: must be an integer >= 1")
    for name in ("breakout.lookback", "wallet_concentration.lookback", "new_wallet.price_window",
                 "pre_expiry.horizon", "pre_expiry.urgent"):
        section, key = name.split(".")
        value = getattr(getattr(detection, section), key)
        if not isinstance(value, int) or value <= 0:
            errors.append(f"{name}: must be a positive integer (ms)")

    # Heat score monotonicity relies on non-negative, non-decreasing weights
    weights = [detection.severity_weights.get(s.label) for s in Severity]
    if any(w is None for w in weights):
        errors.append("severity_weights: must define low, medium, high and extreme")
    elif any(w < 0 for w in weights):
        errors.append("severity_weights: weights must be non-negative")
    elif weights != sorted(weights):
        errors.append("severity_weights: weights must not decrease with severity")

    bands = detection.heat_bands
    if not (0 < bands.quiet <= bands.active <= bands.hot <= 100):
        errors.append("heat_bands: must satisfy 0 < quiet <= active <= hot <= 100")

    return errors


def validate_config(config: Configuration) -> None:
    """Validate configuration, collecting every problem into one error."""
    errors = validate_detection_config(config.detection)

    if not isinstance(config.detection_interval, int) or config.detection_interval < 1:
        errors.append("detection_interval: must be a positive integer")

    if not isinstance(config.alert_tick_seconds, (int, float)) or config.alert_tick_seconds <= 0:
        errors.append("alert_tick_seconds: must be a positive number")

    if not isinstance(config.alert_sync_seconds, (int, float)) or config.alert_sync_seconds < 0:
        errors.append("alert_sync_seconds: must be a non-negative number")

    # Telegram is optional but needs both halves
    if bool(config.telegram_bot_token) != bool(config.telegram_chat_id):
        errors.append("telegram: bot_token and chat_id must be set together")

    try:
        Severity.parse(config.notify_min_severity)
    except ValueError:
        errors.append("notify_min_severity: must be one of low, medium, high, extreme")

    if not isinstance(config.webhook_max_retries, int) or config.webhook_max_retries < 1:
        errors.append("webhook.max_retries: must be an integer >= 1")
    if config.webhook_timeout <= 0:
        errors.append("webhook.timeout: must be positive")

    if errors:
        raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))
