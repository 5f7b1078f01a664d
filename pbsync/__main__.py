"""CLI entry point for pbsync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import load_config
from .query import (
    QueryCompileError,
    compile_filter,
    compile_sort,
    expression_from_dict,
    order_from_list,
)
from .remote_client import RemoteClient, RemoteError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _read_json_arg(value: str | None) -> Any:
    """Parse a JSON argument; '-' reads it from stdin."""
    if value is None:
        return None
    if value == "-":
        value = sys.stdin.read()
    return json.loads(value)


def _parse_query_args(args: argparse.Namespace) -> tuple[str | None, str | None]:
    where_data = _read_json_arg(getattr(args, "where", None))
    order_data = _read_json_arg(getattr(args, "order_by", None))

    where = expression_from_dict(where_data) if where_data else None
    order = order_from_list(order_data) if order_data else None
    return compile_filter(where), compile_sort(order)


def cmd_filter(args: argparse.Namespace) -> int:
    """Compile a JSON predicate tree into a filter string."""
    try:
        filter_string, _ = _parse_query_args(args)
    except (ValueError, KeyError, QueryCompileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(filter_string if filter_string is not None else "")
    return 0


def cmd_sort(args: argparse.Namespace) -> int:
    """Compile a JSON ordering into a sort string."""
    try:
        _, sort_string = _parse_query_args(args)
    except (ValueError, KeyError, QueryCompileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(sort_string if sort_string is not None else "")
    return 0


async def cmd_fetch(args: argparse.Namespace) -> int:
    """Fetch records from a remote collection."""
    config = load_config(args.config)

    try:
        filter_string, sort_string = _parse_query_args(args)
    except (ValueError, KeyError, QueryCompileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    async with RemoteClient(config.remote) as client:
        try:
            if args.limit:
                page = await client.get_list(
                    args.collection,
                    per_page=args.limit,
                    filter=filter_string,
                    sort=sort_string,
                    expand=args.expand,
                )
                items = page.items
            else:
                items = await client.get_full_list(
                    args.collection,
                    filter=filter_string,
                    sort=sort_string,
                    expand=args.expand,
                )
        except RemoteError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(json.dumps(items, indent=2))
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check connectivity to the remote store."""
    config = load_config(args.config)

    async with RemoteClient(config.remote) as client:
        reachable = await client.check_connection()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "remote": {
            "url": config.remote.url,
            "reachable": reachable,
        },
        "subscriptions": {
            "max_reconnect_attempts": config.subscriptions.max_reconnect_attempts,
            "base_reconnect_delay": config.subscriptions.base_reconnect_delay,
            "wait_timeout": config.subscriptions.wait_timeout,
            "cleanup_delay": config.subscriptions.cleanup_delay,
        },
        "store": {
            "db_path": config.store.db_path,
        },
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        print(f"pbsync Status Check")
        print(f"===================")
        print(f"Remote ({config.remote.url}):")
        print(f"  Status: {'Reachable' if reachable else 'Not reachable'}")
        print()
        print(f"Subscriptions:")
        print(f"  Max reconnect attempts: {config.subscriptions.max_reconnect_attempts}")
        print(f"  Base reconnect delay: {config.subscriptions.base_reconnect_delay}s")
        print(f"  Cleanup delay: {config.subscriptions.cleanup_delay}s")
        print()
        print(f"Local store: {config.store.db_path}")

    return 0 if reachable else 1


def _add_query_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-w", "--where",
        help="Predicate tree as JSON ('-' reads stdin)",
    )
    parser.add_argument(
        "-o", "--order-by",
        help="Ordering as a JSON list, e.g. '[\"-created\", \"title\"]'",
    )


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="pbsync",
        description="Mirror remote collections into a local cache",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Filter command
    filter_parser = subparsers.add_parser("filter", help="Compile a predicate to a filter string")
    _add_query_arguments(filter_parser)
    filter_parser.set_defaults(func=cmd_filter)

    # Sort command
    sort_parser = subparsers.add_parser("sort", help="Compile an ordering to a sort string")
    _add_query_arguments(sort_parser)
    sort_parser.set_defaults(func=cmd_sort)

    # Fetch command
    fetch_parser = subparsers.add_parser("fetch", help="Fetch records from a collection")
    fetch_parser.add_argument("collection", help="Remote collection name")
    _add_query_arguments(fetch_parser)
    fetch_parser.add_argument(
        "-l", "--limit",
        type=int,
        default=None,
        help="Maximum number of records (default: all)",
    )
    fetch_parser.add_argument(
        "-e", "--expand",
        default=None,
        help="Comma-separated relation fields to expand",
    )
    fetch_parser.set_defaults(func=cmd_fetch)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check connectivity status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    else:
        return func(args)


if __name__ == "__main__":
    sys.exit(main())
