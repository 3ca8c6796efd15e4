"""Migration commands for the protech CLI."""

import json
import logging
from typing import TYPE_CHECKING

from protech.migration import DataMigrationService, MigrationOptions, MigrationPhase

if TYPE_CHECKING:
    from protech.sync import SyncCoordinator

logger = logging.getLogger(__name__)


def _options_from_args(args) -> MigrationOptions:
    return MigrationOptions(
        migrate_customers=not getattr(args, "skip_customers", False),
        migrate_tickets=not getattr(args, "skip_tickets", False),
        migrate_inventory=not getattr(args, "skip_inventory", False),
        migrate_employees=not getattr(args, "skip_employees", False),
        skip_existing=not getattr(args, "no_skip_existing", False),
        continue_on_error=not getattr(args, "stop_on_error", False),
        use_batch_operations=not getattr(args, "no_batch", False),
        create_backup=not getattr(args, "no_backup", False),
    )


def _print_report(report) -> None:
    stats = report.statistics
    if report.phase == MigrationPhase.COMPLETED:
        print("✓ Migration completed")
    elif report.paused:
        label = "cancelled" if report.cancelled else "paused"
        print(f"⏸ Migration {label} during {report.paused_phase.value}")
        print("   Run `protech migrate start` again to resume.")
    else:
        print(f"✗ Migration {report.phase.value}")

    print(f"   Migrated: {stats.migrated}")
    print(f"   Skipped (already synced): {stats.skipped}")
    if stats.tombstones:
        print(f"   Deleted records sent: {stats.tombstones}")
    print(f"   Failed: {stats.failed}")
    print(f"   Success rate: {stats.success_rate:.0%}")
    if stats.elapsed_seconds is not None:
        print(f"   Elapsed: {stats.elapsed_seconds:.1f}s")
    if report.backup_path:
        print(f"   Backup: {report.backup_path}")

    for entity_type, entity in stats.entities.items():
        print(
            f"   {entity_type:<10} {entity.migrated}/{entity.eligible} migrated"
            + (f", {entity.failed} failed" if entity.failed else "")
        )
    if report.errors:
        print(f"   {len(report.errors)} errors (see `protech migrate errors`)")


def cmd_migrate(args, coordinator: "SyncCoordinator"):
    """Handle migrate subcommands."""
    service = DataMigrationService.from_coordinator(coordinator)
    as_json = getattr(args, "json", False)

    if args.migrate_action == "start":
        report = service.start_migration(_options_from_args(args))
        if as_json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            _print_report(report)

    elif args.migrate_action == "rollback":
        if not getattr(args, "yes", False):
            print("⚠ Rollback marks every local record as pending so it is uploaded again.")
            print("   Remote data is not deleted. Re-run with --yes to confirm.")
            return
        count = service.rollback_migration()
        if as_json:
            print(json.dumps({"reset": count}))
        else:
            print(f"✓ Rolled back: {count} records marked pending")

    elif args.migrate_action == "report":
        report = service.last_report()
        if report is None:
            if as_json:
                print(json.dumps(None))
            else:
                print("No migration has been run yet")
            return
        if as_json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            _print_report(report)

    elif args.migrate_action == "errors":
        if getattr(args, "clear", False):
            cleared = service.clear_errors()
            if as_json:
                print(json.dumps({"cleared": cleared}))
            else:
                print(f"✓ Cleared {cleared} migration errors")
            return

        report = service.last_report()
        errors = report.errors if report else []
        if as_json:
            print(json.dumps([e.to_dict() for e in errors], indent=2))
            return
        if not errors:
            print("✓ No migration errors")
            return
        print(f"Migration errors ({len(errors)}):")
        for error in errors:
            target = f" {error.entity_type}/{error.entity_id}" if error.entity_id else ""
            print(f"   [{error.phase.value}] [{error.kind}]{target}: {error.message}")
