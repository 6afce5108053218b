"""
Command-line entry point.

Example usage:
    python3 -m ironheart                       # source from config (BLE by default)
    python3 -m ironheart -c my.yaml -r dummy   # config must exist
    python3 -m ironheart ws --port 5567
    python3 -m ironheart ble --address AA:BB:CC:DD:EE:FF
    python3 -m ironheart scan --once

Exit codes:
    0: Clean shutdown
    1: Invalid configuration, missing required config file, BLE scan failure
"""

import argparse
import asyncio
import os
import signal
import sys

import yaml
from bleak.exc import BleakError

from ironheart import __version__
from ironheart.app import (SOURCE_BLE, SOURCE_DUMMY, SOURCE_WEBSOCKET, App,
                           source_from_settings)
from ironheart.config import DEFAULT_CONFIG_PATH, load_config, validate_port
from ironheart.errors import ConfigError
from ironheart.log import get_logger, set_level, setup_file_logging
from ironheart.scan import Discovery

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ironheart",
        description="Heart rate to OSC bridge - BLE, WebSocket or synthetic source"
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Config file path (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "-r", "--config-required",
        action="store_true",
        help="Fail if the config file doesn't exist instead of using defaults"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("IRONHEART_LOG_LEVEL"),
        help="Logging verbosity (default: from config, INFO)"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subcommands = parser.add_subparsers(dest="command")

    ble = subcommands.add_parser(SOURCE_BLE, help="Connect to a BLE heart rate monitor")
    ble.add_argument("--address", help="Device address (overrides ble.saved_address)")
    ble.add_argument("--name", help="Device name substring (overrides ble.saved_name)")

    ws = subcommands.add_parser(SOURCE_WEBSOCKET, help="Host a WebSocket server for HR sources")
    ws.add_argument("-p", "--port", type=int, help="Port to listen on (default: websocket.port)")

    subcommands.add_parser(SOURCE_DUMMY, help="Send synthetic data for testing avatars/logging")

    scan = subcommands.add_parser("scan", help="List nearby BLE heart rate monitors")
    scan.add_argument("--once", action="store_true", help="Scan once and exit")
    scan.add_argument("--timeout", type=float, help="Seconds per scan (default: ble.scan_timeout_sec)")

    return parser


async def _scan(discovery: Discovery, once: bool) -> None:
    if once:
        monitors = await discovery.scan()
        if not monitors:
            print("No heart rate monitors found")
        for monitor in monitors:
            print(f"{monitor.address}  {monitor.name or '(unnamed)'}  RSSI {monitor.rssi}")
        return

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, shutdown.set)
    except (NotImplementedError, RuntimeError):
        pass
    await discovery.watch(shutdown)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        set_level(args.log_level)

    try:
        settings = load_config(args.config, required=args.config_required)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {args.config}: {e}")
        return 1
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if not args.log_level:
        set_level(settings.logging.level)
    if settings.logging.file:
        setup_file_logging(
            settings.logging.file,
            level=settings.logging.file_level,
            max_bytes=settings.logging.max_bytes,
            backup_count=settings.logging.backup_count,
        )

    if args.command == "scan":
        discovery = Discovery(scan_timeout=args.timeout or settings.ble.scan_timeout_sec)
        try:
            asyncio.run(_scan(discovery, args.once))
        except KeyboardInterrupt:
            pass
        except (BleakError, OSError) as e:
            logger.error(f"BLE scan failed: {e}")
            return 1
        return 0

    source = args.command or source_from_settings(settings)
    port_override = None
    if args.command == SOURCE_WEBSOCKET and args.port is not None:
        try:
            validate_port(args.port, "--port")
        except ConfigError as e:
            logger.error(str(e))
            return 1
        port_override = args.port
    if args.command == SOURCE_BLE:
        if args.address:
            settings.ble.saved_address = args.address
        if args.name:
            settings.ble.saved_name = args.name

    app = App(settings, source, port_override=port_override)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")

    app.statistics().print_stats("IRONHEART STATISTICS")
    return 0


if __name__ == "__main__":
    sys.exit(main())
