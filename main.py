#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Main Application Entry Point

Command line front end for the Deriv client: stream ticks of a symbol with
live digit statistics, or import the accounts of an OAuth redirect into the
persistent token store.
"""

import os
import sys
import signal
import argparse
import asyncio
import platform
from typing import List, Optional

from config import Config, load_config
from common.logger import setup_logging, get_logger
from common.constants import DEFAULT_CONFIG_PATH, DERIV_OAUTH_URL, LOG_LEVELS, VERSION, SYSTEM_NAME
from common.event_bus import ClientEvent
from common.exceptions import ConfigurationError, DerivDeskError, StorageError
from deriv_gateway.client import DerivClient
from deriv_gateway.oauth import OAuthImport
from deriv_gateway.token_store import create_token_store

logger = get_logger("main")


def setup_argument_parser():
    """
    Set up command-line argument parser.

    Returns:
        Configured argument parser.
    """
    parser = argparse.ArgumentParser(
        prog="derivdesk",
        description=f"{SYSTEM_NAME} v{VERSION}",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file"
    )

    parser.add_argument(
        "-l", "--log-level",
        choices=[level.lower() for level in LOG_LEVELS],
        default=None,
        help="Set the logging level (overrides the configuration)"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file (if not specified, logs to console only)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"{SYSTEM_NAME} v{VERSION}",
        help="Show version information and exit"
    )

    commands = parser.add_subparsers(dest="command")

    watch = commands.add_parser(
        "watch",
        help="Stream ticks of a symbol and log its digit statistics",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    watch.add_argument("symbol", help="Instrument symbol, e.g. R_100")
    watch.add_argument(
        "--token",
        default=os.environ.get("DERIVDESK_TOKEN"),
        help="API token to authorize with (default: $DERIVDESK_TOKEN)"
    )
    watch.add_argument(
        "--account",
        help="Switch to this login id after connecting, using a stored token"
    )
    watch.add_argument(
        "--history",
        type=int,
        default=0,
        help="Preload this many historical ticks"
    )
    watch.add_argument(
        "--window",
        type=int,
        default=None,
        help="Only report statistics over the newest N ticks"
    )
    watch.add_argument(
        "--every",
        type=int,
        default=10,
        help="Log statistics every N ticks"
    )
    watch.add_argument(
        "--duration",
        type=float,
        default=0,
        help="Stop after this many seconds (0 runs until interrupted)"
    )

    accounts = commands.add_parser(
        "accounts",
        help="Import or list accounts in the token store",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    accounts.add_argument(
        "--redirect",
        help=f"Redirect URL returned by {DERIV_OAUTH_URL}, carrying acctN/tokenN/curN parameters"
    )
    accounts.add_argument(
        "--activate",
        help="Login id to mark active after the import"
    )

    return parser


def format_stats(stats) -> str:
    return "  ".join(f"{s.digit}:{s.percentage:>3}%" for s in stats)


async def run_watch(args, config: Config) -> int:
    token_store = create_token_store(config.get("storage.backend"), config.get("storage.path"))
    client = DerivClient(config, token_store=token_store)
    stop = asyncio.Event()
    seen = {"ticks": 0}

    def on_tick(record):
        if record.symbol != args.symbol:
            return
        seen["ticks"] += 1
        if seen["ticks"] % max(1, args.every) == 0:
            stats = client.get_digit_stats(args.symbol, args.window)
            logger.info(f"{args.symbol} {record.value} digit={record.digit} | {format_stats(stats)}")

    def on_session_lost(error):
        logger.error(f"Session lost: {error.message}")
        stop.set()

    client.on(ClientEvent.TICK, on_tick)
    client.on(ClientEvent.SESSION_LOST, on_session_lost)
    client.on(ClientEvent.TOKEN_PERMISSION_ERROR,
              lambda error: logger.error(f"Token permission error: {error.message}"))
    client.on(ClientEvent.SUBSCRIPTION_ERROR,
              lambda error: logger.warning(f"Subscription error on {error.msg_type}: {error.message}"))

    loop = asyncio.get_running_loop()
    # Note: add_signal_handler is not supported on Windows
    if platform.system() != 'Windows':
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

    try:
        result = await client.connect(args.token)
        if not result.connected:
            logger.error(f"Could not connect: {result.error}")
            return 2
        if args.token and not result.authorized:
            logger.error(f"Authorization failed: {result.error}")
            return 3
        if result.account:
            logger.info(f"Authorized as {result.account.loginid} "
                        f"({result.account.balance} {result.account.currency})")

        if args.account:
            switch = await client.set_account(args.account)
            logger.info(f"Active account: {switch.loginid}")

        if client.load_digit_snapshot(args.symbol):
            logger.info(f"Restored cached digits for {args.symbol}")
        if args.history:
            await client.get_ticks_history(args.symbol, args.history, subscribe=True)
        else:
            await client.subscribe_ticks(args.symbol)
        logger.info(f"Watching {args.symbol}, press Ctrl+C to stop")

        if args.duration:
            try:
                await asyncio.wait_for(stop.wait(), args.duration)
            except asyncio.TimeoutError:
                pass
        else:
            await stop.wait()

        logger.info(f"{args.symbol} final | {format_stats(client.get_digit_stats(args.symbol, args.window))}")
        client.save_digit_snapshot(args.symbol)
        return 0
    except DerivDeskError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        await client.disconnect()
        if platform.system() != 'Windows':
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def run_accounts(args, config: Config) -> int:
    if config.get("storage.backend") != "file":
        logger.warning("storage.backend is not 'file'; imported accounts will not persist")
    token_store = create_token_store(config.get("storage.backend"), config.get("storage.path"))

    if args.redirect:
        imported = OAuthImport(token_store).import_redirect(args.redirect, activate=args.activate)
        if not imported:
            logger.error("No accounts found in the redirect URL")
            return 1

    active = token_store.get_active_account()
    for account in token_store.user_accounts():
        marker = "*" if account.normalized_id == active else " "
        kind = "virtual" if account.is_virtual else "real"
        print(f"{marker} {account.loginid:<14} {account.currency or '-':<5} {kind}")
    return 0


async def startup(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments, configure logging and run the selected command.
    """
    parser = setup_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        config.validate()
    except ConfigurationError as e:
        setup_logging(args.log_level or "INFO", log_file=args.log_file)
        logger.error(f"Configuration error: {str(e)}")
        return 1

    log_cfg = config.get("logging", {})
    setup_logging(
        (args.log_level or log_cfg.get("level") or "INFO").upper(),
        log_file=args.log_file or log_cfg.get("file"),
        max_size=log_cfg.get("max_size", 10485760),
        backup_count=log_cfg.get("backup_count", 5),
        json_format=log_cfg.get("json", False),
        console=log_cfg.get("console", True),
    )
    logger.info(f"Starting {SYSTEM_NAME} v{VERSION}")

    if args.dry_run:
        logger.info("Configuration validation successful (dry run)")
        return 0

    try:
        if args.command == "watch":
            return await run_watch(args, config)
        if args.command == "accounts":
            return run_accounts(args, config)
    except StorageError as e:
        logger.error(f"Storage error: {str(e)}")
        return 4

    parser.print_help()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the application.
    """
    try:
        return asyncio.run(startup(argv))
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard interrupt")
        return 130


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
