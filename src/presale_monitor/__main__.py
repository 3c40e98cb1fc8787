"""CLI entry point for the Presale Monitor.

Runs the presale HTTP API and, when an address is configured, real-time
monitoring of that address until SIGINT/SIGTERM.

Usage:
    python -m presale_monitor [options]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import logging.config
import sys
from typing import NoReturn

from pydantic import ValidationError

from presale_monitor import __version__
from presale_monitor.api.server import ApiServer
from presale_monitor.chain.subscriptions import SubscriptionError
from presale_monitor.config import Settings, clear_settings_cache, get_settings, validate_pubkey
from presale_monitor.monitor.realtime import UpdateStream
from presale_monitor.monitor.registry import MonitorRegistry
from presale_monitor.shutdown import GracefulShutdown

# Application info
APP_NAME = "Presale Monitor"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="presale-monitor",
        description="Monitor a Solana presale address: balances, contributions and metrics.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m presale_monitor                         Serve the API, watch PRESALE_ADDRESS
  python -m presale_monitor --config-check          Validate config and exit
  python -m presale_monitor --address <pubkey>      Watch a specific address
  python -m presale_monitor --no-realtime           Serve the API only
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )
    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )
    parser.add_argument(
        "--address",
        default=None,
        help="Presale address to watch (default: PRESALE_ADDRESS)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Override API port (default: from settings)",
    )
    parser.add_argument(
        "--no-realtime",
        action="store_true",
        help="Do not subscribe to real-time updates",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        # Quieter logging for noisy libraries
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "websockets": {"level": "WARNING"},
            "aiohttp.access": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_banner() -> None:
    """Print the application startup banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   {APP_NAME:^56}   ║
║   {"v" + APP_VERSION:^56}   ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
"""
    print(banner)


def print_config_summary(settings: Settings, address: str | None, api_port: int) -> None:
    """Print a summary of the configuration with secrets redacted."""
    summary = settings.redacted_summary()
    solana = summary["solana"]
    print("Configuration:")
    print(f"  RPC: {solana['rpc_url']}")
    print(f"  Fallback RPC: {solana['fallback_rpc_url']}")
    print(f"  WebSocket: {solana['ws_url']}")
    print(f"  Commitment: {solana['commitment']}")
    print(f"  Presale Address: {address or '(not set)'}")
    print(f"  Stable Mints: {summary['stable_mints']}")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  API Port: {api_port}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            print(f"  {field}: {error['msg']}", file=sys.stderr)
        return None


def run_config_check(settings: Settings, address: str | None, api_port: int) -> int:
    """Print the validated configuration and exit."""
    print("Configuration is valid!")
    print()
    print_config_summary(settings, address, api_port)
    if address is None:
        print("  Note: no presale address set; the HTTP API will serve no presale.")
        print()
    print("All checks passed. Ready to run.")
    return EXIT_SUCCESS


async def _log_updates(stream: UpdateStream) -> None:
    async for update in stream:
        logger.info("Update: %s", update.type.value)


async def run_service(
    settings: Settings,
    address: str | None,
    api_port: int,
    *,
    realtime: bool = True,
) -> int:
    """Run the API server and optional real-time monitoring until shutdown.

    Returns:
        Exit code.
    """
    registry = MonitorRegistry.from_settings(settings)
    server = ApiServer(registry, port=api_port)
    stream = UpdateStream()
    consumer: asyncio.Task[None] | None = None

    try:
        async with GracefulShutdown() as shutdown:
            shutdown.register_cleanup(server.stop)
            shutdown.register_cleanup(registry.dispose_all)
            shutdown.register_cleanup(stream.close)

            if address:
                monitor = await registry.get_or_create(address)

            await server.start()

            if address and realtime:
                consumer = asyncio.create_task(_log_updates(stream))
                await monitor.start_realtime_monitoring(stream.publish)
                logger.info("Watching %s in real time", address)

            logger.info("Presale monitor running. Press Ctrl+C to stop.")
            await shutdown.wait()
            logger.info("Shutdown signal received, stopping...")

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except SubscriptionError as e:
        logger.error("Real-time monitoring failed: %s", e)
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Presale monitor failed: %s", e)
        return EXIT_ERROR
    finally:
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    address = settings.presale.address
    if args.address:
        try:
            address = validate_pubkey(args.address)
        except ValueError as e:
            print(f"Invalid --address: {e}", file=sys.stderr)
            sys.exit(EXIT_CONFIG_ERROR)
    api_port = args.api_port or settings.api_port

    configure_logging(args.log_level or settings.log_level)
    print_banner()

    if args.config_check:
        sys.exit(run_config_check(settings, address, api_port))

    print_config_summary(settings, address, api_port)

    exit_code = asyncio.run(
        run_service(settings, address, api_port, realtime=not args.no_realtime)
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
