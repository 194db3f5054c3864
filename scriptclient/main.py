#!/usr/bin/env python3
"""
Command line entry point for the scripted test client.

Usage:
    scriptclient <host> <port> <secured> <filename> [options]

Without the four positional arguments the client falls back to this
machine's address, port 6633, the bundled payload and a secured connection.
"""

import argparse
import logging
import sys

from pydantic import ValidationError

from scriptclient import database, session_logger
from scriptclient.client import SimpleClient
from scriptclient.config import (
    ClientSettings,
    DEFAULT_CONNECT_TIMEOUT,
    EventStoreSettings,
    build_ssl_context,
    default_settings,
    parse_bool,
)

logger = logging.getLogger("scriptclient")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False, log_file: str = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scriptclient",
        description="Send a scripted payload to a server, then forward console lines until 'bye'.",
    )
    parser.add_argument("host", nargs="?", help="Server address")
    parser.add_argument("port", nargs="?", type=int, help="Server port")
    parser.add_argument("secured", nargs="?", help="'true' to connect over TLS")
    parser.add_argument("filename", nargs="?", help="File with the binary payload to send")
    parser.add_argument("--data-limit", type=int, default=None,
                        help="Inbound units to wait for before reporting data received")
    parser.add_argument("--receive-unit", choices=["message", "byte"], default=None,
                        help="How inbound data is counted (default: message)")
    parser.add_argument("--connect-timeout", type=float, default=None,
                        help=f"Seconds to wait for the connection (default: {DEFAULT_CONNECT_TIMEOUT})")
    parser.add_argument("--cafile", help="CA bundle used to verify the server certificate")
    parser.add_argument("--certfile", help="Client certificate for TLS")
    parser.add_argument("--keyfile", help="Private key for --certfile")
    parser.add_argument("--no-record", action="store_true", help="Do not record session events")
    parser.add_argument("--show-events", metavar="SESSION", help="Print the recorded events of a session and exit")
    parser.add_argument("--event-stats", metavar="SESSION", help="Print event counts of a session and exit")
    parser.add_argument("--cleanup-events", metavar="DAYS", type=int,
                        help="Delete recorded events older than DAYS and exit")
    parser.add_argument("--limit", type=int, default=100, help="Maximum events printed by --show-events")
    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def resolve_settings(args) -> ClientSettings:
    options = {
        "data_limit": args.data_limit,
        "receive_unit": args.receive_unit,
        "connect_timeout": args.connect_timeout,
        "cafile": args.cafile,
        "certfile": args.certfile,
        "keyfile": args.keyfile,
        "record_events": False if args.no_record else None,
    }
    positionals = (args.host, args.port, args.secured, args.filename)
    if any(value is None for value in positionals):
        logger.error("Usage: scriptclient <host> <port> <secured> <filename>")
        logger.error("Trying to use default setting.")
        return default_settings(**options)

    return ClientSettings.from_env(
        host=args.host,
        port=args.port,
        secured=parse_bool(args.secured),
        payload_path=args.filename,
        **options,
    )


def init_event_store(store: EventStoreSettings):
    database.init_db(store.database_url)
    session_logger.set_log_dir(store.log_dir)


def run_event_command(args) -> int:
    """Handle --show-events, --event-stats and --cleanup-events."""
    init_event_store(EventStoreSettings.from_env())

    if args.cleanup_events is not None:
        deleted = session_logger.cleanup_old_events(args.cleanup_events)
        print(f"Deleted {deleted} event(s) older than {args.cleanup_events} day(s)")

    if args.show_events:
        events = session_logger.get_session_events(args.show_events, limit=args.limit)
        if not events:
            print(f"No events recorded for {args.show_events}")
        for e in events:
            print(f"{e['timestamp']} [{e['level']}] [{e['category']}] {e['message']}")

    if args.event_stats:
        stats = session_logger.get_event_stats(args.event_stats)
        print(f"Session {args.event_stats}: {stats['total']} event(s)")
        print(f"  first: {stats['oldest']}  last: {stats['newest']}")
        for key, value in sorted(stats["by_level"].items()):
            print(f"  level {key:.<12} {value}")
        for key, value in sorted(stats["by_category"].items()):
            print(f"  category {key:.<9} {value}")
    return 0


def build_client(settings: ClientSettings) -> SimpleClient:
    if settings.record_events:
        init_event_store(settings)

    client = SimpleClient(
        settings.host,
        settings.port,
        settings.payload_path,
        encoding=settings.encoding,
        connect_timeout=settings.connect_timeout,
        ssl_context=build_ssl_context(settings) if settings.secured else None,
        receive_unit=settings.receive_unit,
        record_events=settings.record_events,
    )
    client.set_secured_client(settings.secured)
    client.set_data_limit(settings.data_limit)
    return client


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    if args.show_events or args.event_stats or args.cleanup_events is not None:
        try:
            return run_event_command(args)
        except ValidationError as e:
            logger.error(f"Invalid settings: {e}")
            return 2

    try:
        settings = resolve_settings(args)
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        return 2

    client = build_client(settings)
    logger.info(f"Starting client {client.session_id}")
    client.start()
    try:
        while not client.join(timeout=0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted, disconnecting")
        client.disconnect().result()
        client.join(timeout=5.0)

    if client.failure is not None:
        logger.error(f"Client finished with failure: {client.failure}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
