# cli.py
# Description: Command line entry point for zonesync.
#
# Imports
import argparse
import os
import signal
import sys
import threading
from typing import Any, Dict, List, Optional
#
# 3rd-party Libraries
from loguru import logger
from rich.console import Console
from rich.table import Table
#
# Local Imports
from zonesync import config
from zonesync.DB.Sync_Store_DB import SyncStoreDatabase, DatabaseError, InputError
from zonesync.Logging_Config import configure_logging
from zonesync.Sync.Sync_Client import ClientSyncEngine, SyncCycleResult, MAX_BATCH_SIZE
from zonesync.Sync.conflict_resolver import ConflictPolicy, ConflictResolver
from zonesync.Sync.throttle import SyncThrottle
from zonesync.sync_api.client import SyncAPIClient
from zonesync.sync_api.exceptions import SyncAPIError
from zonesync.sync_api.transport import SyncTransport
#
########################################################################################################################
#
# Functions:

console = Console()


def build_store() -> SyncStoreDatabase:
    return SyncStoreDatabase(config.get_store_db_path(), client_id=config.get_client_id())


def build_transport() -> SyncTransport:
    server = config.load_settings().get("server", {})
    return SyncAPIClient(
        base_url=server.get("base_url", "http://127.0.0.1:8000"),
        token=server.get("api_token") or None,
        timeout=float(server.get("timeout", 45.0)),
        client_id=config.get_client_id(),
    )


def build_resolver() -> ConflictResolver:
    sync = config.load_settings().get("sync", {})
    return ConflictResolver(
        default_policy=ConflictPolicy(sync.get("conflict_policy", "server_wins")),
        policies_by_type={k: ConflictPolicy(v) for k, v in (sync.get("type_policies") or {}).items()},
        prefer_on_field_clash=sync.get("prefer_on_field_clash", "client"),
    )


def build_engine(db: SyncStoreDatabase, transport: SyncTransport) -> ClientSyncEngine:
    sync = config.load_settings().get("sync", {})
    throttle = SyncThrottle(
        min_interval=float(sync.get("min_interval", 0.5)),
        backoff_base=float(sync.get("backoff_base", 1.0)),
        backoff_max=float(sync.get("backoff_max", 300.0)),
        recovery_factor=float(sync.get("recovery_factor", 0.5)),
    )
    return ClientSyncEngine(
        db,
        transport,
        resolver=build_resolver(),
        throttle=throttle,
        batch_size=min(int(sync.get("batch_size", 200)), MAX_BATCH_SIZE),
        fetch_limit=int(sync.get("fetch_limit", 200)),
        atomic=bool(sync.get("atomic_batches", False)),
        max_item_attempts=int(sync.get("max_item_attempts", 5)),
    )


def _print_cycle(cycle: SyncCycleResult):
    if cycle.send is not None:
        console.print(f"[bold]send[/bold]: {cycle.send.confirmed} confirmed, {cycle.send.conflicts} conflicts, "
                      f"{cycle.send.retried} kept for retry, {cycle.send.failed} failed")
    if cycle.fetch_skipped:
        console.print("[yellow]fetch skipped after a transient send error[/yellow]")
    elif cycle.fetch is not None:
        console.print(f"[bold]fetch[/bold]: {len(cycle.fetch.zones_fetched)} zones, "
                      f"{cycle.fetch.records_saved} saved, {cycle.fetch.records_deleted} deleted")
    if cycle.cancelled:
        console.print("[yellow]cancelled[/yellow]")


def _print_status(status: Dict[str, Any]):
    table = Table(title=f"zonesync status ({status['client_id']})")
    table.add_column("Key")
    table.add_column("Value")
    for key in ("pending", "failed", "pending_zone_changes", "failed_zone_changes", "backoff_seconds",
                "consecutive_failures", "halted", "halted_reason", "last_sync_at"):
        table.add_row(key, str(status.get(key)))
    console.print(table)
    zones = Table(title="Zones")
    zones.add_column("Zone")
    zones.add_column("Change token")
    for zone_name, token in sorted(status["zones"].items()):
        zones.add_row(zone_name, token or "-")
    console.print(zones)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zonesync",
        description="Incremental zone sync client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  zonesync sync                  Run one push/pull cycle
  zonesync watch --interval 30   Sync every 30 seconds until interrupted
  zonesync status                Show queue and cursor state
  zonesync requeue-failed        Retry entries parked as failed
  zonesync reset-zone notes      Force a full resync of zone 'notes'
  zonesync create-zone notes     Create zone 'notes' locally and on the server
        """
    )
    parser.add_argument("--config", help="Path to config.toml (overrides ZONESYNC_CONFIG)")
    parser.add_argument("--log-level", help="Console log level (DEBUG, INFO, ...)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.add_parser("sync", help="Run one sync cycle")
    watch_parser = subparsers.add_parser("watch", help="Sync periodically")
    watch_parser.add_argument("--interval", type=float, help="Seconds between cycles")
    watch_parser.add_argument("--max-cycles", type=int, help="Stop after this many cycles")
    subparsers.add_parser("status", help="Show sync status")
    requeue_parser = subparsers.add_parser("requeue-failed", help="Move failed queue entries back to pending")
    requeue_parser.add_argument("--zone", help="Only requeue this zone")
    reset_parser = subparsers.add_parser("reset-zone", help="Discard a zone's change token")
    reset_parser.add_argument("zone")
    create_parser = subparsers.add_parser("create-zone", help="Create a zone")
    create_parser.add_argument("zone")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    if args.config:
        os.environ[config.CONFIG_PATH_ENV_VAR] = args.config
    config.load_settings(force_reload=True)
    configure_logging(log_level=args.log_level)

    try:
        db = build_store()
    except DatabaseError as e:
        console.print(f"[red]Could not open the local store: {e}[/red]")
        return 1

    try:
        if args.command == "create-zone":
            db.create_zone(args.zone)
            console.print(f"Zone '{args.zone}' queued for creation.")
            return 0
        if args.command == "reset-zone":
            if not db.zone_exists(args.zone):
                console.print(f"[red]Unknown zone '{args.zone}'.[/red]")
                return 1
            db.clear_zone_token(args.zone)
            console.print(f"Zone '{args.zone}' will be fully resynced on the next fetch.")
            return 0
        if args.command == "requeue-failed":
            count = db.requeue_failed(args.zone)
            console.print(f"Requeued {count} failed change(s).")
            return 0

        with build_transport() as transport:
            engine = build_engine(db, transport)
            if args.command == "status":
                _print_status(engine.get_status())
                return 0
            if args.command == "sync":
                cycle = engine.run_sync_cycle()
                _print_cycle(cycle)
                return 0 if (cycle.send is None or cycle.send.ok) and (cycle.fetch is None or cycle.fetch.ok) else 2
            if args.command == "watch":
                interval = args.interval if args.interval is not None else float(
                    config.get_cli_setting("sync", "interval_seconds", 60))
                stop_event = threading.Event()

                def _stop(signum, frame):
                    logger.info(f"Signal {signum} received; stopping.")
                    stop_event.set()
                    engine.cancel()

                if threading.current_thread() is threading.main_thread():
                    signal.signal(signal.SIGINT, _stop)
                    signal.signal(signal.SIGTERM, _stop)
                cycles = engine.run_periodically(interval, stop_event=stop_event, max_cycles=args.max_cycles)
                console.print(f"Completed {cycles} cycle(s).")
                return 1 if engine.halted_error is not None else 0
    except SyncAPIError as e:
        console.print(f"[red]Sync halted: {e}[/red]")
        return 1
    except (DatabaseError, InputError) as e:
        console.print(f"[red]Local store error: {e}[/red]")
        return 1
    finally:
        db.close_connection()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())

#
# End of cli.py
########################################################################################################################
