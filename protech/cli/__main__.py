"""
protech CLI - offline-first sync and migration for ProTech shop data.

Usage:
    protech sync status [--json]
    protech sync push|pull|run [--entity E]... [--json]
    protech sync queue [--clear] [--json]
    protech sync retry-failed [--json]
    protech sync conflicts [--clear] [--limit N] [--json]
    protech migrate start [--skip-customers] [--skip-tickets] [--skip-inventory]
                          [--skip-employees] [--no-skip-existing] [--stop-on-error]
                          [--no-batch] [--no-backup] [--json]
    protech migrate rollback --yes
    protech migrate report [--json]
    protech migrate errors [--clear] [--json]
"""

import argparse
import logging
import sys

from protech.cli.commands import cmd_migrate, cmd_sync
from protech.config import load_settings
from protech.errors import SyncError
from protech.logging_config import setup_protech_logging
from protech.storage.schema import ENTITY_TABLES
from protech.sync import SyncCoordinator

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="protech",
        description="Offline-first sync and data migration for ProTech repair shops",
    )
    parser.add_argument("--shop", "-s", help="Shop ID (overrides PROTECH_SHOP_ID)", default=None)
    parser.add_argument("--log-level", default="INFO",
                        help="Log level for the protech log file (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # sync
    p_sync = subparsers.add_parser("sync", help="Sync local records with the backend")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    sync_status = sync_sub.add_parser("status", help="Show queue, connectivity and record counts")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    for action, help_text in (
        ("push", "Upload pending local changes"),
        ("pull", "Download remote changes since the last sync"),
        ("run", "Drain the queue, then push and pull everything"),
    ):
        p = sync_sub.add_parser(action, help=help_text)
        p.add_argument("--entity", "-e", action="append", choices=sorted(ENTITY_TABLES),
                       help="Limit to an entity type (repeatable)")
        p.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_queue = sync_sub.add_parser("queue", help="List queued operations")
    sync_queue.add_argument("--clear", action="store_true",
                            help="Discard pending operations without applying them")
    sync_queue.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_retry = sync_sub.add_parser("retry-failed", help="Requeue failed operations and retry them")
    sync_retry.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_conflicts = sync_sub.add_parser("conflicts", help="Show remote writes discarded by version")
    sync_conflicts.add_argument("--clear", action="store_true", help="Clear conflict history")
    sync_conflicts.add_argument("--limit", "-l", type=int, default=20,
                                help="Maximum conflicts to show (default: 20)")
    sync_conflicts.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # migrate
    p_migrate = subparsers.add_parser("migrate", help="Bulk-migrate local data to the backend")
    migrate_sub = p_migrate.add_subparsers(dest="migrate_action", required=True)

    migrate_start = migrate_sub.add_parser("start", help="Start or resume a migration")
    migrate_start.add_argument("--skip-customers", action="store_true")
    migrate_start.add_argument("--skip-tickets", action="store_true")
    migrate_start.add_argument("--skip-inventory", action="store_true")
    migrate_start.add_argument("--skip-employees", action="store_true")
    migrate_start.add_argument("--no-skip-existing", action="store_true",
                               help="Re-upload records that are already synced")
    migrate_start.add_argument("--stop-on-error", action="store_true",
                               help="Fail on the first record error")
    migrate_start.add_argument("--no-batch", action="store_true",
                               help="Upload one record per request")
    migrate_start.add_argument("--no-backup", action="store_true",
                               help="Skip the local backup before uploading")
    migrate_start.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    migrate_rollback = migrate_sub.add_parser(
        "rollback", help="Mark every local record pending (remote data is kept)"
    )
    migrate_rollback.add_argument("--yes", "-y", action="store_true", help="Confirm the rollback")
    migrate_rollback.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    migrate_report = migrate_sub.add_parser("report", help="Show the last migration report")
    migrate_report.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    migrate_errors = migrate_sub.add_parser("errors", help="Show or clear migration errors")
    migrate_errors.add_argument("--clear", action="store_true", help="Clear recorded errors")
    migrate_errors.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        overrides = {"shop_id": args.shop} if args.shop else {}
        settings = load_settings(**overrides)
        setup_protech_logging(settings.shop_id or "default", args.log_level)
        coordinator = SyncCoordinator.from_settings(settings)
    except ValueError as e:
        logger.error(f"Failed to initialize protech: {e}")
        sys.exit(1)

    try:
        if args.command == "sync":
            cmd_sync(args, coordinator)
        elif args.command == "migrate":
            cmd_migrate(args, coordinator)
    except SyncError as e:
        print(f"✗ {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    finally:
        coordinator.close()


if __name__ == "__main__":
    main()
