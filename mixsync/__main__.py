"""CLI entry point for mixsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path

from .config import load_config
from .sync.change import Change, changes_from_json
from .sync.store import open_store
from .sync.sync_client import SyncClient, SyncStatus


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, tagged with the device that wrote it."""

    def __init__(self, device_id: str | None = None):
        super().__init__()
        self.device_id = device_id

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "device_id": self.device_id,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # default=str keeps unserializable values from dropping the line
        return json.dumps(log_data, default=str)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    device_id: str | None = None,
) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
        device_id: Device id stamped on JSON log lines.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter(device_id))
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)


def _make_client(config, filter_echoes: bool = True) -> SyncClient:
    """Build a sync client from config.

    With filter_echoes the client drops changes this device pushed itself.
    """
    return SyncClient(
        server_url=config.client.server_url,
        device_id=config.node.device_id if filter_echoes else None,
        token=config.auth.push_token,
        batch_size=config.client.batch_size,
        max_retries=config.client.max_retries,
        timeout=config.client.timeout_seconds,
    )


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the sync service."""
    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    import uvicorn

    from .server import create_app

    try:
        store = open_store(config.store.database_path)
    except Exception as e:
        print(f"Error opening change store: {e}", file=sys.stderr)
        return 1

    backend = config.store.database_path or "memory"
    print(f"Starting mixsync on http://{config.server.host}:{config.server.port}")
    print(f"Change store: {backend}")
    print(f"Push auth: {'token' if config.auth.push_token else 'open'}")

    app = create_app(config, store)

    try:
        verbose = getattr(args, "verbose", False)
        uvicorn_config = uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(uvicorn_config)
        await server.serve()
    finally:
        store.close()

    return 0


async def cmd_pull(args: argparse.Namespace) -> int:
    """Pull changes and print them as JSON."""
    config = load_config(args.config)
    client = _make_client(config)

    result = await client.pull(since=args.since or "")
    if result.status != SyncStatus.SUCCESS:
        print(f"Pull failed: {result.error}", file=sys.stderr)
        return 1

    print(json.dumps([c.to_dict() for c in result.changes], indent=2))
    if result.changes:
        print(f"Next cursor: {client.cursor}", file=sys.stderr)
    return 0


async def cmd_push(args: argparse.Namespace) -> int:
    """Push changes read from a JSON file."""
    config = load_config(args.config)

    try:
        if args.file == "-":
            body = sys.stdin.read()
        else:
            body = Path(args.file).read_text()
        changes: list[Change] = changes_from_json(body)
    except (OSError, ValueError) as e:
        print(f"Cannot read changes: {e}", file=sys.stderr)
        return 1

    client = _make_client(config)
    client.queue(changes)
    result = await client.push_pending()

    if result.status != SyncStatus.SUCCESS:
        print(
            f"Push failed after {result.entries_pushed} changes: {result.error}",
            file=sys.stderr,
        )
        return 1

    print(f"Pushed {result.entries_pushed} changes")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check connectivity with the sync server."""
    config = load_config(args.config)
    # Count the whole log, including this device's own changes
    client = _make_client(config, filter_echoes=False)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "device_id": config.node.device_id,
        "server_url": config.client.server_url,
        "connected": await client.check_connection(),
    }

    if status_data["connected"]:
        result = await client.pull(since="")
        if result.status == SyncStatus.SUCCESS:
            status_data["total_changes"] = result.entries_pulled
            status_data["latest_cursor"] = client.cursor or None
        else:
            status_data["error"] = result.error

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        print(f"Device: {status_data['device_id']}")
        print(f"Server: {status_data['server_url']}")
        print(f"  Connected: {'yes' if status_data['connected'] else 'no'}")
        if "total_changes" in status_data:
            print(f"  Changes in log: {status_data['total_changes']}")
            print(f"  Latest cursor: {status_data['latest_cursor'] or '-'}")
        if "error" in status_data:
            print(f"  Error: {status_data['error']}")

    return 0 if status_data["connected"] else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="mixsync",
        description="Change-log synchronization for media-library devices",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
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
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the sync service")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 8080)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Pull command
    pull_parser = subparsers.add_parser("pull", help="Pull changes from the server")
    pull_parser.add_argument(
        "--since",
        type=str,
        default="",
        help="Cursor from a previous pull (default: whole log)",
    )
    pull_parser.set_defaults(func=cmd_pull)

    # Push command
    push_parser = subparsers.add_parser("push", help="Push changes from a JSON file")
    push_parser.add_argument(
        "file",
        help="JSON array of changes, or - for stdin",
    )
    push_parser.set_defaults(func=cmd_push)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server connectivity")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(
        args.verbose,
        args.log_level,
        getattr(args, "json", False),
        device_id=load_config(args.config).node.device_id,
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
