# Why does this file exist, and why not put this in `__main__`?
#
# You might be tempted to import things from `__main__` later,
# but that will cause problems: the code will get executed twice:
#
# - When you run `python -m aquafeed_bridge` python will execute
#   `__main__.py` as a script. That means there won't be any
#   `aquafeed_bridge.__main__` in `sys.modules`.
# - When you import `__main__` it will get executed again (as a module) because
#   there's no `aquafeed_bridge.__main__` in `sys.modules`.
"""Module that contains the command line application."""
# ruff: noqa: T201, BLE001

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from typing import Any

from aquafeed_bridge.config.config_manager import ConfigManager
from aquafeed_bridge.exceptions import BridgeError, ConfigurationError
from aquafeed_bridge.ingestion.models import InboundMessage
from aquafeed_bridge.ingestion.pipeline import describe
from aquafeed_bridge.mqtt.service import BridgeService
from aquafeed_bridge.schedule import FeedingFrequency, FeedingSchedule


def setup_logging(config_manager: ConfigManager) -> None:
    """Set up basic logging configuration."""
    log_level = (
        config_manager.get_config("system").get("logging", {}).get("level", "INFO")
    )

    if not hasattr(logging, log_level):
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("aiomqtt").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    logger = logging.getLogger("aquafeed_bridge.setup")
    logger.info("Logging configured at %s level", log_level)


def get_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.

    Returns:
        An argparse parser.
    """
    parser = argparse.ArgumentParser(prog="aquafeed-bridge")
    _ = parser.add_argument(
        "--config-dir",
        type=str,
        default=os.environ.get("AQUAFEED_CONFIG_DIR", "/data"),
        help="Directory for configuration files (default: /data or $AQUAFEED_CONFIG_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Run the bridge until interrupted")
    _ = run_parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not start the HTTP API even if enabled in configuration",
    )

    # status
    _ = subparsers.add_parser("status", help="Connect once and print the session status")

    # publish
    publish_parser = subparsers.add_parser("publish", help="Publish one message")
    _ = publish_parser.add_argument("topic", type=str, help="Topic to publish to")
    _ = publish_parser.add_argument(
        "payload",
        type=str,
        help="Payload (a JSON object is sent as JSON, anything else as text)",
    )
    _ = publish_parser.add_argument("--qos", type=int, choices=[0, 1, 2], default=None)
    _ = publish_parser.add_argument("--retain", action="store_true")

    # monitor
    monitor_parser = subparsers.add_parser(
        "monitor",
        help="Subscribe and print every persisted log entry",
    )
    _ = monitor_parser.add_argument(
        "topics",
        nargs="*",
        help="Topic filters (default: configured subscribe topics)",
    )
    _ = monitor_parser.add_argument("--qos", type=int, choices=[0, 1, 2], default=None)
    _ = monitor_parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: until interrupted)",
    )

    # schedule
    schedule_parser = subparsers.add_parser("schedule", help="Publish feeding schedules")
    schedule_subparsers = schedule_parser.add_subparsers(
        dest="schedule_command",
        required=True,
    )
    sync_parser = schedule_subparsers.add_parser("sync", help="Publish a schedule")
    _ = sync_parser.add_argument("--time", required=True, help="First meal, HH:MM")
    _ = sync_parser.add_argument("--amount", required=True, help="Daily total, e.g. 15g")
    _ = sync_parser.add_argument(
        "--frequency",
        required=True,
        choices=[f.value for f in FeedingFrequency],
    )
    _ = sync_parser.add_argument("--disabled", action="store_true")
    _ = schedule_subparsers.add_parser("clear", help="Disable the schedule")

    # show
    show_parser = subparsers.add_parser("show", help="Show a config section or key")
    _ = show_parser.add_argument("section", type=str, help="Config section")
    _ = show_parser.add_argument("key", nargs="*", help="Key path within the section")

    # set
    set_parser = subparsers.add_parser("set", help="Set a config value")
    _ = set_parser.add_argument("section", type=str, help="Config section")
    _ = set_parser.add_argument("key", nargs="+", help="Key path within the section")
    _ = set_parser.add_argument("value", type=str, help="Value to set (JSON or string)")

    # list
    _ = subparsers.add_parser("list", help="List all config sections")

    return parser


def _parse_cli_payload(raw: str) -> Any:
    with contextlib.suppress(json.JSONDecodeError):
        value = json.loads(raw)
        if isinstance(value, (dict, list)):
            return value
    return raw


async def run_bridge(config_manager: ConfigManager, enable_api: bool) -> int:
    """
    Run the bridge and, when enabled, the HTTP API until SIGINT or SIGTERM.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger = logging.getLogger("aquafeed_bridge.service")
    service = BridgeService(config_manager)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    api_server = None
    api_config = config_manager.get_config("system").get("api", {})
    if enable_api and api_config.get("enabled", True):
        from aquafeed_bridge.api.api import BridgeAPI  # noqa: PLC0415

        api_server = BridgeAPI(config_manager, service, loop)
        api_server.start()

    try:
        grants = await service.start_with_retry(stop_event)
        if grants:
            logger.info(
                "Bridge running with %d subscription(s)",
                sum(1 for g in grants if g.ok),
            )
        await stop_event.wait()
        logger.info("Shutdown requested")
    except Exception:
        logger.exception("Bridge error")
        return 1
    finally:
        if api_server:
            api_server.stop()
        await service.stop()
    return 0


async def bridge_status(config_manager: ConfigManager) -> int:
    """Connect once and print the session status and statistics."""
    service = BridgeService(config_manager)
    try:
        await service.connection.acquire()
    except BridgeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
    finally:
        status = service.status().to_dict()
        stats = service.connection.stats
        await service.stop()
    print(json.dumps({"status": status, "connection": stats}, indent=2))
    return 0 if status["isConnected"] else 1


async def publish_once(
    config_manager: ConfigManager,
    topic: str,
    payload: str,
    qos: int | None,
    retain: bool,
) -> int:
    """Publish one message and exit."""
    service = BridgeService(config_manager)
    try:
        request = await service.publisher.publish_or_raise(
            topic,
            _parse_cli_payload(payload),
            qos,
            retain,
        )
    except BridgeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await service.stop()
    print(f"Published to {request.topic} (QoS {request.qos}, retain={request.retain})")
    return 0


async def monitor(
    config_manager: ConfigManager,
    topics: list[str],
    qos: int | None,
    duration: float | None,
) -> int:
    """Subscribe and print a summary of each persisted entry."""
    service = BridgeService(config_manager)

    async def print_entry(message: InboundMessage) -> None:
        entry = await service.pipeline.handle(message)
        if entry is not None:
            print(json.dumps(describe(entry)), flush=True)

    service.connection.set_message_handler(print_entry)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await service.start(subscribe=False)
        grants = await service.subscribe(topics or None, qos)
        for grant in grants:
            print(json.dumps(grant.to_dict()))
        if not any(g.ok for g in grants):
            print("Error: no subscriptions granted", file=sys.stderr)
            return 1
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=duration)
    except BridgeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await service.stop()
    return 0


async def schedule_command(config_manager: ConfigManager, opts: argparse.Namespace) -> int:
    """Publish or clear the feeding schedule."""
    service = BridgeService(config_manager)
    try:
        if opts.schedule_command == "sync":
            schedule = FeedingSchedule(
                first_meal=opts.time,
                total_amount=opts.amount,
                frequency=FeedingFrequency(opts.frequency),
                enabled=not opts.disabled,
            )
            try:
                detailed = service.schedule.detailed_config_for(schedule)
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            published = await service.schedule.sync(schedule)
            print(f"Detailed config: {detailed or '(disabled)'}")
        else:
            published = await service.schedule.clear()
    finally:
        await service.stop()
    if not published:
        print("Error: schedule publish failed", file=sys.stderr)
        return 1
    print("Schedule published")
    return 0


def main(args: list[str] | None = None) -> int:
    """
    Run the main program.

    This function is executed when you type `aquafeed-bridge` or `python -m aquafeed_bridge`.

    Arguments:
        args: Arguments passed from the command line.

    Returns:
        An exit code.
    """
    parser = get_parser()
    opts = parser.parse_args(args=args)
    try:
        os.makedirs(opts.config_dir, exist_ok=True)
    except OSError as e:
        print(
            f"Error: Could not create config directory '{opts.config_dir}': {e}",
            file=sys.stderr,
        )
        return 1
    try:
        config_manager = ConfigManager(config_dir=opts.config_dir)
        setup_logging(config_manager)
    except Exception as e:
        print(f"Error: Failed to initialize config manager: {e}", file=sys.stderr)
        return 1

    try:
        return _handle_command(opts, config_manager)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        config_manager.cleanup()


def _handle_command(opts: argparse.Namespace, config_manager: ConfigManager) -> int:  # noqa: PLR0911
    """Dispatch one CLI command."""
    if opts.command == "run":
        return asyncio.run(run_bridge(config_manager, not opts.no_api))

    if opts.command == "status":
        return asyncio.run(bridge_status(config_manager))

    if opts.command == "publish":
        return asyncio.run(
            publish_once(config_manager, opts.topic, opts.payload, opts.qos, opts.retain),
        )

    if opts.command == "monitor":
        return asyncio.run(monitor(config_manager, opts.topics, opts.qos, opts.duration))

    if opts.command == "schedule":
        return asyncio.run(schedule_command(config_manager, opts))

    if opts.command == "show":
        try:
            val = config_manager.get_config(opts.section)
            for k in opts.key:
                if not isinstance(val, dict) or k not in val:
                    print(
                        f"Error: Key '{k}' not found in config section '{opts.section}'",
                        file=sys.stderr,
                    )
                    return 1
                val = val[k]
        except KeyError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(json.dumps(val, indent=2) if isinstance(val, (dict, list)) else val)
        return 0

    if opts.command == "set":
        try:
            cfg = config_manager.get_config(opts.section)
            d = cfg
            for k in opts.key[:-1]:
                d = d.setdefault(k, {})
            try:
                value = json.loads(opts.value)
            except json.JSONDecodeError:
                value = opts.value
            d[opts.key[-1]] = value
            config_manager.save_config(opts.section)
            print(f"Set {opts.section} {'.'.join(opts.key)} = {value}")
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if opts.command == "list":
        print("Available config sections:")
        for section in config_manager.configs:
            print(f"- {section}")
        return 0

    parser_error = f"Unknown command: {opts.command}"
    print(f"Error: {parser_error}", file=sys.stderr)
    return 1
