"""``audit-sync`` command line.

Subcommands:
    serve        Run the reconciliation server (FastAPI under uvicorn).
    sync         Run one client sync cycle against the local store,
                 or keep syncing on the configured interval (``--watch``).
    status       Show how many local records are waiting to sync.
    init-config  Create a starter ``.audit_sync/config.yml``.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .client.engine import SyncEngine
from .client.store import LocalStore
from .client.transport import ConnectivityMonitor, HttpTransport
from .config import Config, load_config, validate_config
from .config_loader import ensure_config, load_hierarchical_config
from .config_schema import build_config
from .core.async_utils import init_semaphore
from .core.scheduler import AsyncioScheduler
from .errors import AuditSyncError
from .logger import setup_logging
from .models import SyncStatus
from .reporter import format_cycle_report, format_dirty_counts, report_to_json

logger = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> Config:
    # .env first so ${VAR} interpolation in YAML can use its values
    load_dotenv()
    unified = build_config(load_hierarchical_config())
    return load_config(
        url=getattr(args, "url", None),
        db_path=getattr(args, "db", None),
        server_db_path=getattr(args, "server_db", None),
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        debug=args.debug,
        unified=unified,
    )


def _ensure_parent(path: str) -> None:
    if path != ":memory:":
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_serve(config: Config) -> int:
    import uvicorn

    from .server.app import create_app
    from .server.reconcile import SummaryMapping
    from .server.repository import ServerRepository

    _ensure_parent(config.server_db_path)
    repo = ServerRepository(
        config.server_db_path,
        transaction_timeout=config.transaction_timeout,
        max_batch_size=config.max_batch_size,
    )
    app = create_app(
        repo,
        SummaryMapping(
            category=config.summary_category, fields=config.summary_fields
        ),
    )
    logger.info(
        "Serving on %s:%d (database %s)",
        config.host,
        config.port,
        config.server_db_path,
    )
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    finally:
        repo.close()
    return 0


def _build_engine(config: Config, store: LocalStore) -> SyncEngine:
    transport = HttpTransport(config.server_url or "", config.request_timeout)
    return SyncEngine(
        store,
        transport,
        AsyncioScheduler(),
        connectivity=ConnectivityMonitor(probe=transport.ping),
        interval=config.sync_interval,
        derived_fields=config.summary_fields.values(),
    )


async def _sync(config: Config, pull: list[str], as_json: bool) -> int:
    init_semaphore(config.max_parallel_requests)
    store = LocalStore(config.db_path)
    try:
        engine = _build_engine(config, store)
        result = await engine.sync_once(pull)
    finally:
        store.close()
    if as_json:
        print(json.dumps(report_to_json(result), ensure_ascii=False, indent=2))
    else:
        print(format_cycle_report(result))
    return 1 if result.status == SyncStatus.ERROR else 0


async def _watch(config: Config, pull: list[str]) -> int:
    init_semaphore(config.max_parallel_requests)
    store = LocalStore(config.db_path)
    engine = _build_engine(config, store)
    engine.pull_ids = lambda: pull
    engine.on_status = lambda status: print(
        f"[{status.value}]", file=sys.stderr
    )
    engine.start()
    try:
        await asyncio.Event().wait()
    finally:
        engine.stop()
        store.close()
    return 0


def cmd_sync(config: Config, args: argparse.Namespace) -> int:
    validate_config(config, require_url=True)
    _ensure_parent(config.db_path)
    if args.watch:
        try:
            return asyncio.run(_watch(config, args.pull))
        except KeyboardInterrupt:
            return 0
    return asyncio.run(_sync(config, args.pull, args.json))


def cmd_status(config: Config) -> int:
    async def _count():
        store = LocalStore(config.db_path)
        try:
            return await store.count_dirty()
        finally:
            store.close()

    if config.db_path != ":memory:" and not Path(config.db_path).exists():
        print("No local store yet.")
        return 0
    print(format_dirty_counts(asyncio.run(_count())))
    return 0


def cmd_init_config() -> int:
    path = ensure_config()
    print(f"Config file: {path}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audit-sync",
        description="Offline-first audit synchronisation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the reconciliation server
  audit-sync serve --port 8000

  # Push local changes and refresh one audit
  audit-sync sync --url http://127.0.0.1:8000 --pull 7f3a

  # Keep syncing every AUDIT_SYNC_INTERVAL seconds
  audit-sync sync --watch
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    parser.add_argument(
        "--version",
        action="version",
        version=f"audit-sync version {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the reconciliation server")
    serve.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, help="Bind port (default: 8000)")
    serve.add_argument(
        "--server-db",
        help="Server database file (takes precedence over AUDIT_SYNC_SERVER_DB)",
    )

    sync = sub.add_parser("sync", help="Run a client sync cycle")
    sync.add_argument(
        "--url", help="Server URL (takes precedence over AUDIT_SYNC_URL)"
    )
    sync.add_argument(
        "--db", help="Local store file (takes precedence over AUDIT_SYNC_DB)"
    )
    sync.add_argument(
        "--pull",
        action="append",
        default=[],
        metavar="AUDIT_ID",
        help="Audit id to refresh from the server (repeatable)",
    )
    sync.add_argument("--json", action="store_true", help="JSON output")
    sync.add_argument(
        "--watch", action="store_true", help="Sync periodically until stopped"
    )

    status = sub.add_parser("status", help="Show pending local changes")
    status.add_argument("--db", help="Local store file")

    sub.add_parser("init-config", help="Create a starter config file")
    return parser


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)

    try:
        config = _load(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        mode="server" if args.command == "serve" else "cli",
        debug=config.debug,
        log_file=config.log_file,
    )

    try:
        if args.command == "serve":
            code = cmd_serve(config)
        elif args.command == "sync":
            code = cmd_sync(config, args)
        elif args.command == "status":
            code = cmd_status(config)
        else:
            code = cmd_init_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        code = 2
    except AuditSyncError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    run()
