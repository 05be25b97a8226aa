"""Entry point and scheduler for MarketPulse."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Callable

from .aggregator import AnomalyHistory, compute_market_anomalies, diff_anomalies, filter_anomalies, sort_anomalies
from .alert_engine import AlertEngine, now_ms
from .alerter import ActionDispatcher, send_anomaly_notifications
from .config import Configuration, ConfigurationError, load_config
from .feed import MarketDataFeed, parse_market_metadata, parse_order_book
from .models import AnomalyDetectionResult, AnomalyEvent, Severity
from .store import InMemoryAlertStore, YamlAlertStore

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("marketpulse")

# Graceful shutdown flag
shutdown_requested = False


def handle_shutdown(signum: int, frame) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def make_clock(anchor: int | None = None) -> Callable[[], int]:
    """Wall clock in epoch ms, optionally shifted so it starts at anchor."""
    if anchor is None:
        return now_ms
    started = now_ms()
    return lambda: anchor + (now_ms() - started)


def replay_file(feed: MarketDataFeed, path: str | Path) -> int | None:
    """
    Load a JSON-lines capture into the feed.

    Lines with bids/asks are order books, lines with a question are market
    metadata, everything else is a trade. Returns the latest timestamp seen.
    """
    latest = None
    loaded = 0
    skipped = 0

    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"{path}:{line_number}: invalid JSON ({e})")
                skipped += 1
                continue

            timestamp = None
            if isinstance(raw, dict) and ("bids" in raw or "asks" in raw):
                book = parse_order_book(raw)
                if book is not None:
                    feed.update_order_book(book)
                    timestamp = book.timestamp
            elif isinstance(raw, dict) and "question" in raw:
                metadata = parse_market_metadata(raw)
                if metadata is not None:
                    feed.update_metadata(metadata)
                    loaded += 1
                    continue
            else:
                trade = feed.ingest_raw(raw)
                if trade is not None:
                    timestamp = trade.timestamp

            if timestamp is None:
                skipped += 1
                continue
            loaded += 1
            latest = timestamp if latest is None else max(latest, timestamp)

    logger.info(f"Replayed {loaded} records from {path} ({skipped} skipped)")
    return latest


async def run_detection_cycle(
    feed: MarketDataFeed,
    previous: list[AnomalyEvent],
    history: AnomalyHistory,
    config: Configuration,
    now: int,
) -> AnomalyDetectionResult:
    """Execute one detect → diff → notify cycle."""
    window = feed.detection_window(now)
    logger.debug(f"Starting detection cycle for {len(window.trades_by_market)} markets")

    result = compute_market_anomalies(window, config.detection)
    new, resolved = diff_anomalies(previous, result.anomalies)
    history.record(new)
    history.prune(now - config.detection.windows.retention)

    for anomaly in sort_anomalies(new):
        logger.info(
            f"New {anomaly.severity.label} {anomaly.type.value} on {anomaly.market_id}: {anomaly.message}"
        )
    if resolved:
        logger.debug(f"{len(resolved)} anomalies resolved")

    hot = [h for h in result.heat_scores if h.score > 0]
    if hot:
        summary = ", ".join(f"{h.market_id}={h.score:.0f} ({h.band})" for h in hot[:5])
        logger.info(f"Heat: {summary}")

    to_notify = filter_anomalies(new, min_severity=Severity.parse(config.notify_min_severity))
    if to_notify and config.telegram_bot_token and config.telegram_chat_id:
        questions = {}
        for anomaly in to_notify:
            metadata = feed.get_metadata(anomaly.market_id)
            if metadata is not None and metadata.question:
                questions[anomaly.market_id] = metadata.question
        await send_anomaly_notifications(
            sort_anomalies(to_notify),
            config.telegram_bot_token,
            config.telegram_chat_id,
            questions,
        )

    return result


def build_engine(config: Configuration, feed: MarketDataFeed, clock: Callable[[], int]) -> AlertEngine:
    dispatcher = ActionDispatcher(
        telegram_bot_token=config.telegram_bot_token or None,
        telegram_chat_id=config.telegram_chat_id or None,
        webhook_max_retries=config.webhook_max_retries,
        webhook_retry_delay=config.webhook_retry_delay,
        webhook_timeout=config.webhook_timeout,
    )
    store = YamlAlertStore(config.alerts_file) if config.alerts_file else InMemoryAlertStore()
    return AlertEngine(
        dispatcher=dispatcher,
        snapshot_provider=feed.snapshot,
        clock=clock,
        store=store,
        tick_interval=config.alert_tick_seconds,
        sync_interval=config.alert_sync_seconds,
    )


async def main_async(config_path: str | Path = "config.yaml") -> int:
    """Async main entry point."""
    global shutdown_requested

    # Register signal handlers
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    logger.info("MarketPulse starting...")

    # Load configuration (from file if exists, otherwise from environment variables)
    config_path = Path(config_path)
    try:
        config = load_config(config_path)
        if config_path.exists():
            logger.info(f"Loaded configuration from {config_path}")
        else:
            logger.info("Loaded configuration from environment variables")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Enabled detectors: {', '.join(sorted(config.detection.detectors)) or 'none'}")

    feed = MarketDataFeed(config.detection)
    anchor = None
    if config.replay_file:
        try:
            anchor = replay_file(feed, config.replay_file)
        except OSError as e:
            logger.error(f"Cannot read replay file {config.replay_file}: {e}")
            return 1

    clock = make_clock(anchor)
    engine = build_engine(config, feed, clock)
    await engine.sync_from_store()
    logger.info(f"Watching {len(engine.get_all_alerts())} alerts")

    engine.start()

    history = AnomalyHistory()
    previous: list[AnomalyEvent] = []

    # Main detection loop
    while not shutdown_requested:
        try:
            result = await run_detection_cycle(feed, previous, history, config, clock())
            previous = result.anomalies
        except Exception as e:
            logger.error(f"Error in detection cycle: {e}")

        # Wait for next detection interval
        logger.debug(f"Sleeping for {config.detection_interval} seconds...")
        for _ in range(config.detection_interval):
            if shutdown_requested:
                break
            await asyncio.sleep(1)

    await engine.stop()
    logger.info("MarketPulse shutdown complete")
    return 0


def main() -> None:
    """Main entry point for MarketPulse."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    exit_code = asyncio.run(main_async(config_path))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
