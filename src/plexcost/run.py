"""
CLI runner for plexcost.

Usage:
    python -m plexcost.run [OPTIONS]

    # Run one ingest + savings cycle and exit
    python -m plexcost.run --once

    # Run as daemon, one cycle every HOURS_BETWEEN_RUNS hours
    python -m plexcost.run --daemon

    # Recompute savings.json from data.json without fetching anything
    python -m plexcost.run --recompute
"""

import argparse
import asyncio
import logging
import secrets
import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx

from .config import PlexCostConfig
from .history import HistoryClient
from .pricing import PricingClient
from .savings import SavingsAggregator
from .store import RecordStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# httpx logs full request URLs at INFO, and both credentials travel as query params
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger("plexcost")


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one ingest + aggregate cycle."""

    run_id: str
    fetched: int
    written: int
    skipped: int
    users: int


async def run_once(
    config: PlexCostConfig,
    store: RecordStore,
    history: HistoryClient,
    pricing: PricingClient,
    aggregator: SavingsAggregator | None = None,
) -> CycleResult:
    """
    Fetch recent history, ingest new plays, and rebuild savings.json.

    Raises whatever the cycle failed with; the caller decides whether the
    process survives.
    """
    run_id = secrets.token_hex(8)
    aggregator = aggregator or SavingsAggregator(
        config.savings_json_path, config.base_subscription_price
    )
    logger.info(f"Starting run {run_id}")

    after = (datetime.now(UTC) - timedelta(days=config.history_days)).date()
    events = await history.fetch(after)

    result = await store.ingest(events, pricing.resolve)
    logger.info(
        f"Run {run_id}: records processed. Written: {result.written}, "
        f"Skipped: {result.skipped} ({result.failed} failed pricing)"
    )

    savings = aggregator.compute(store.buckets)
    aggregator.write(savings)
    logger.info(f"Run {run_id} completed: savings for {len(savings)} user(s)")

    return CycleResult(
        run_id=run_id,
        fetched=len(events),
        written=result.written,
        skipped=result.skipped,
        users=len(savings),
    )


def _http_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


async def run_cycles(config: PlexCostConfig, daemon: bool) -> int:
    """
    Build the collaborators once and run one cycle, or loop forever.

    Returns (for a single cycle) 0 on success and 1 on failure.
    """
    store = RecordStore(config.data_json_path)
    store.load()
    aggregator = SavingsAggregator(config.savings_json_path, config.base_subscription_price)

    async with (
        _http_client(config.tautulli.timeout_seconds) as history_http,
        _http_client(config.pricing.timeout_seconds) as pricing_http,
    ):
        history = HistoryClient(
            history_http,
            config.tautulli.base_url,
            config.tautulli.api_key,
            watched_threshold=config.tautulli.watched_threshold,
        )
        pricing = PricingClient(
            pricing_http,
            config.pricing.plex_token,
            base_url=config.pricing.base_url,
            max_attempts=config.pricing.max_attempts,
            backoff_seconds=config.pricing.backoff_seconds,
        )

        if not daemon:
            try:
                await run_once(config, store, history, pricing, aggregator)
            except Exception as e:
                logger.exception(f"Cycle failed: {e}")
                return 1
            return 0

        logger.info("Starting plexcost daemon")
        logger.info(f"Running every {config.hours_between_runs} hour(s)")
        while True:
            try:
                await run_once(config, store, history, pricing, aggregator)
            except Exception as e:
                logger.exception(f"Cycle failed: {e}")

            logger.info(f"Waiting {config.hours_between_runs} hour(s) until next run...")
            await asyncio.sleep(config.hours_between_runs * 3600)


def recompute(config: PlexCostConfig) -> int:
    """Rebuild savings.json from data.json only."""
    aggregator = SavingsAggregator(config.savings_json_path, config.base_subscription_price)
    try:
        savings = aggregator.run(config.data_json_path)
    except Exception as e:
        logger.exception(f"Savings recompute failed: {e}")
        return 1
    logger.info(f"Recomputed savings for {len(savings)} user(s)")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="plexcost: estimate savings from a shared Plex server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # One cycle, then exit
    python -m plexcost.run --once

    # Run as daemon
    python -m plexcost.run --daemon

    # Rebuild savings.json only
    python -m plexcost.run --recompute

    # Use a specific config file
    python -m plexcost.run --config plexcost.yaml --once
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("plexcost.yaml"),
        help="Path to config file (default: plexcost.yaml)",
    )
    parser.add_argument("--data", type=Path, help="Override data.json path")
    parser.add_argument("--savings", type=Path, help="Override savings.json path")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run cycles forever on the configured interval",
    )
    parser.add_argument(
        "--recompute",
        action="store_true",
        help="Recompute savings from stored records without fetching",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    config = PlexCostConfig.from_yaml(args.config).apply_env()
    if args.data:
        config.data_json_path = args.data
    if args.savings:
        config.savings_json_path = args.savings

    if args.verbose or config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info(f"Config loaded from {args.config}")
    logger.debug(f"Config: {config.to_dict()}")

    if args.recompute:
        return recompute(config)

    if not (args.once or args.daemon):
        parser.print_help()
        return 0

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(f"Configuration error: {problem}")
        return 1

    try:
        return asyncio.run(run_cycles(config, daemon=args.daemon))
    except KeyboardInterrupt:
        logger.info("Daemon stopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
