"""
Ledger Sync Pipeline Runner (API → STORE)

Manages API credentials and runs incremental syncs of the partner sales
ledger into the local store.

Usage:
    # Register a key
    ledger-sync add-key --name "Main publisher" --key-stdin < key.txt

    # List / rename / remove keys
    ledger-sync list-keys
    ledger-sync rename-key 3f0c... "Back catalogue"
    ledger-sync remove-key 3f0c...

    # Sync one or all credentials
    ledger-sync sync
    ledger-sync sync --credential 3f0c... --workers 2
    ledger-sync sync --dump-raw

    # Check the API accepts a key
    ledger-sync health-check --credential 3f0c...

    # Export stored facts
    ledger-sync export --output data/exports/sales.csv --start 2024-01-01

Each command opens (and migrates) the store, builds the vault and API
client from Config and runs task recovery once. Sync runs write a JSON
manifest to data/manifests/. Exit code is 1 when any sync run failed.
"""

import argparse
import getpass
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from ledger_sync.ingestion.collectors.financials_collector import PartnerFinancialsCollector
from ledger_sync.pipelines.sync.orchestrator import SyncOrchestrator, SyncReport
from ledger_sync.security.credentials import CredentialManager
from ledger_sync.security.vault import CredentialVault
from ledger_sync.shared.config import Config
from ledger_sync.shared.db.records import FactFilter
from ledger_sync.shared.db.storage import LocalStore
from ledger_sync.shared.errors import LedgerSyncError
from ledger_sync.shared.utils import setup_logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="ledger-sync",
        description="Sync partner sales data into the local ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db-path", type=Path, help="Override the store location")
    parser.add_argument("--vault-dir", type=Path, help="Override the vault directory")

    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-key", help="Register an API key")
    add.add_argument("--name", help="Display name for the key")
    add.add_argument(
        "--key-stdin", action="store_true", help="Read the key from stdin instead of prompting"
    )

    sub.add_parser("list-keys", help="List registered keys")

    rename = sub.add_parser("rename-key", help="Change a key's display name")
    rename.add_argument("credential_id")
    rename.add_argument("name", nargs="?", default=None)

    remove = sub.add_parser("remove-key", help="Remove a key and all of its data")
    remove.add_argument("credential_id")

    clear = sub.add_parser("clear-all", help="Remove every key and all stored data")
    clear.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    sync = sub.add_parser("sync", help="Run an incremental sync")
    sync.add_argument("--credential", help="Sync only this credential id")
    sync.add_argument("--workers", type=int, default=None, help="Parallel credential runs")
    sync.add_argument(
        "--dump-raw",
        action="store_true",
        help="Also write each date's normalised rows to data/raw/partner_financials/",
    )

    health = sub.add_parser("health-check", help="Check the API accepts registered keys")
    health.add_argument("--credential", help="Check only this credential id")

    export = sub.add_parser("export", help="Export stored sales facts to CSV")
    export.add_argument("--output", type=Path, required=True, metavar="PATH")
    export.add_argument("--start", help="Start date (YYYY-MM-DD)", metavar="DATE")
    export.add_argument("--end", help="End date (YYYY-MM-DD)", metavar="DATE")
    export.add_argument("--app-id", type=int)
    export.add_argument("--country")
    export.add_argument("--credential")

    return parser.parse_args(argv)


# -------------------------------------------------------------------
# Manifest
# -------------------------------------------------------------------


def write_manifest(reports: dict[str, SyncReport], manifest_dir: Path | None = None) -> Path:
    manifest_dir = Path(manifest_dir or Config.MANIFEST_DIR)
    manifest_dir.mkdir(parents=True, exist_ok=True)

    run_time_utc = datetime.now(timezone.utc).isoformat()
    manifest = {
        "run_time_utc": run_time_utc,
        "pipeline": "ledger_sync",
        "credentials": len(reports),
        "failed": sorted(cid for cid, report in reports.items() if not report.ok),
        "facts_written": sum(report.facts_written for report in reports.values()),
        "runs": [report.to_dict() for report in reports.values()],
    }

    manifest_path = manifest_dir / f"sync_run_{run_time_utc.replace(':', '-')}.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    return manifest_path


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------


def _read_secret(args: argparse.Namespace) -> str:
    if args.key_stdin:
        return sys.stdin.readline().strip()
    return getpass.getpass("API key: ").strip()


def cmd_add_key(args, manager: CredentialManager, logger) -> int:
    info = manager.register(_read_secret(args), display_name=args.name)
    logger.info("Added credential %s (%s)", info.identity_id, info.label)
    return 0


def cmd_list_keys(args, manager: CredentialManager, logger) -> int:
    pending = manager.store.count_pending()
    credentials = manager.list()
    if not credentials:
        logger.info("No credentials registered")
    for info in credentials:
        logger.info(
            "%s  %-30s  created %s  pending tasks: %d",
            info.identity_id,
            info.label,
            datetime.fromtimestamp(info.created_at / 1000, tz=timezone.utc).date(),
            pending.get(info.identity_id, 0),
        )
    return 0


def cmd_rename_key(args, manager: CredentialManager, logger) -> int:
    try:
        info = manager.rename(args.credential_id, args.name)
    except KeyError:
        logger.error("Unknown credential %s", args.credential_id)
        return 1
    logger.info("Credential %s is now %s", info.identity_id, info.label)
    return 0


def cmd_remove_key(args, manager: CredentialManager, logger) -> int:
    if manager.get(args.credential_id) is None:
        logger.error("Unknown credential %s", args.credential_id)
        return 1
    manager.delete(args.credential_id)
    return 0


def cmd_clear_all(args, manager: CredentialManager, logger) -> int:
    if not args.yes:
        answer = input("Remove all keys and sales data? [y/N] ")
        if answer.strip().lower() != "y":
            logger.info("Aborted")
            return 1
    manager.clear_all()
    return 0


def cmd_sync(args, orchestrator: SyncOrchestrator, logger) -> int:
    if args.credential:
        reports = {args.credential: orchestrator.run(args.credential)}
        orchestrator.store.purge_done()
    else:
        reports = orchestrator.run_all(max_workers=args.workers)

    manifest_path = write_manifest(reports)

    logger.info("=" * 60)
    logger.info("Sync Summary")
    logger.info("=" * 60)
    for credential_id, report in reports.items():
        status = "OK" if report.ok else "FAILED"
        logger.info("  • %s: %s - %s", credential_id, status, report.message)
    logger.info("Manifest: %s", manifest_path)

    return 0 if all(report.ok for report in reports.values()) else 1


def cmd_health_check(args, manager: CredentialManager, client, logger) -> int:
    ids = [args.credential] if args.credential else [c.identity_id for c in manager.list()]
    if not ids:
        logger.error("No credentials registered")
        return 1

    all_healthy = True
    for credential_id in ids:
        secret = manager.vault.get(credential_id)
        healthy = secret is not None and client.health_check(secret)
        logger.info("%s health check: %s", credential_id, "PASSED" if healthy else "FAILED")
        all_healthy = all_healthy and healthy
    return 0 if all_healthy else 1


def cmd_export(args, store: LocalStore, logger) -> int:
    filters = FactFilter(
        start_date=args.start,
        end_date=args.end,
        app_id=args.app_id,
        country_code=args.country,
        credential_id=args.credential,
    )
    path = store.export_to_csv(args.output, filters)
    logger.info("Exported sales facts to %s", path)
    return 0


# -------------------------------------------------------------------
# Entry point
# -------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    log_level = "DEBUG" if args.verbose else Config.LOG_LEVEL
    logger = setup_logger(
        "ledger_sync",
        Config.LOGS_DIR / "pipelines" / "ledger_sync.log",
        level=log_level,
    )

    store = None
    try:
        Config.validate()

        store = LocalStore.open(args.db_path or Config.DB_PATH)
        vault = CredentialVault(args.vault_dir or Config.VAULT_DIR)
        client = PartnerFinancialsCollector()
        orchestrator = SyncOrchestrator(
            store, vault, client, dump_raw=getattr(args, "dump_raw", False)
        )
        orchestrator.recover()
        manager = CredentialManager(store, vault)

        if args.command == "add-key":
            return cmd_add_key(args, manager, logger)
        if args.command == "list-keys":
            return cmd_list_keys(args, manager, logger)
        if args.command == "rename-key":
            return cmd_rename_key(args, manager, logger)
        if args.command == "remove-key":
            return cmd_remove_key(args, manager, logger)
        if args.command == "clear-all":
            return cmd_clear_all(args, manager, logger)
        if args.command == "sync":
            return cmd_sync(args, orchestrator, logger)
        if args.command == "health-check":
            return cmd_health_check(args, manager, client, logger)
        if args.command == "export":
            return cmd_export(args, store, logger)

        logger.error("Unknown command %s", args.command)
        return 1

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130

    except (LedgerSyncError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1

    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
