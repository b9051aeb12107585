"""
aviator_sync headless runner.

Starts the engine, logs round transitions and slip events, and shuts down
cleanly on SIGINT/SIGTERM.

Usage:
    python -m aviator_sync --base-url https://game.example --log-level DEBUG
"""

import argparse
import asyncio
import logging
import signal

from .config import ConfigError, load_config
from .core.engine import CrashGameEngine
from .services.event_bus import Events
from .services.logger import cleanup_logging, setup_logging

logger = logging.getLogger("aviator_sync")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aviator-sync", description="Follow a crash game server and log the live view"
    )
    parser.add_argument("--base-url", help="Game server root URL (overrides config)")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (overrides config)",
    )
    parser.add_argument("--status-interval", type=float, default=10.0, help="Seconds between status lines")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.base_url:
        config.API["base_url"] = args.base_url
    if args.log_level:
        config.LOGGING["level"] = args.log_level
    config.validate()

    setup_logging(config.LOGGING)

    logger.info("=" * 60)
    logger.info("aviator-sync starting")
    logger.info("=" * 60)
    logger.info(f"Server: {config.API['base_url']}")
    logger.info(f"Poll interval: {config.POLLING['poll_interval_sec']}s")

    engine = CrashGameEngine(config)

    def on_state(event):
        data = event["data"]
        if data["previous_state"] != data["state"]:
            logger.info(f"Round {data['round_number']}: {data['previous_state']} -> {data['state']}")

    def on_crash(event):
        data = event["data"]
        logger.info(f"Round {data['round_number']} crashed at {data['crash_value']:.2f}x")

    def on_slip(event):
        logger.info(f"{event['name']}: {event['data']}")

    engine.event_bus.subscribe(Events.STATE_CHANGED, on_state, weak=False)
    engine.event_bus.subscribe(Events.ROUND_CRASHED, on_crash, weak=False)
    for slip_event in (Events.SLIP_CONFIRMED, Events.SLIP_CASHED, Events.SLIP_LOST):
        engine.event_bus.subscribe(slip_event, on_slip, weak=False)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await engine.start()
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=args.status_interval)
            except asyncio.TimeoutError:
                logger.info(f"Status: {engine.describe()}")
    finally:
        logger.info("Shutting down...")
        await engine.stop()
        cleanup_logging()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
