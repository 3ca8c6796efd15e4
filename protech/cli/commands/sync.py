"""Sync commands for the protech CLI."""

import json
import logging
from typing import TYPE_CHECKING

from protech.errors import classify_sync_error
from protech.types import SyncResult, format_datetime

if TYPE_CHECKING:
    from protech.sync import SyncCoordinator

logger = logging.getLogger(__name__)


def _print_result(title: str, result: SyncResult, as_json: bool) -> None:
    if as_json:
        print(
            json.dumps(
                {
                    "success": result.success,
                    "pushed": result.pushed,
                    "pulled": result.pulled,
                    "queued": result.queued,
                    "failed": result.failed,
                    "conflicts": result.conflict_count,
                    "errors": result.errors,
                },
                indent=2,
            )
        )
        return

    icon = "✓" if result.success else "✗"
    print(f"{icon} {title}")
    print(f"   Pushed: {result.pushed}")
    print(f"   Pulled: {result.pulled}")
    if result.queued:
        print(f"   Queued for retry: {result.queued}")
    if result.failed:
        print(f"   Failed: {result.failed}")
    if result.conflicts:
        print(f"   Conflicts (local kept): {result.conflict_count}")
    for error in result.errors[:10]:
        print(f"   ✗ [{classify_sync_error(error)}] {error}")
    if len(result.errors) > 10:
        print(f"   ... and {len(result.errors) - 10} more")


def _print_status(status: dict) -> None:
    queue = status["queue"]
    print("Sync Status")
    print("=" * 50)
    print()
    print(f"🏪 Shop: {status['shop_id']} (role: {status['role'] or 'unknown'})")
    conn_icon = "🟢" if queue["online"] else "🔴"
    print(f"{conn_icon} Backend: {'reachable' if queue['online'] else 'unreachable'}")
    print(f"   Last sync: {status['last_sync'] or 'never'}")
    print()

    pending = queue["pending"]
    pending_icon = "🟢" if pending == 0 else "🟡" if pending < 10 else "🟠"
    print(f"{pending_icon} Queued operations: {pending}")
    for entity_type, count in sorted(queue["by_entity"].items()):
        print(f"   {entity_type}: {count}")
    if queue["failed"]:
        print(f"🔴 Failed operations: {queue['failed']}")
        print("   Use `protech sync retry-failed` to retry them.")
    print()

    print("Records:")
    for entity_type, counts in status["entities"].items():
        line = f"   {entity_type:<12} {counts['total']:>6} total, {counts['pending']:>4} pending"
        if counts["failed"]:
            line += f", {counts['failed']} failed"
        if counts["realtime"]:
            line += " (live)"
        print(line)


def cmd_sync(args, coordinator: "SyncCoordinator"):
    """Handle sync subcommands."""
    entities = getattr(args, "entity", None) or None
    as_json = getattr(args, "json", False)

    if args.sync_action == "status":
        status = coordinator.status()
        if as_json:
            print(json.dumps(status, indent=2, default=str))
        else:
            _print_status(status)

    elif args.sync_action == "push":
        result = coordinator.push(entities)
        _print_result("Push complete", result, as_json)

    elif args.sync_action == "pull":
        result = coordinator.pull(entities)
        _print_result("Pull complete", result, as_json)

    elif args.sync_action == "run":
        result = coordinator.perform_full_sync(entities)
        _print_result("Sync complete" if result.success else "Sync finished with errors", result, as_json)

    elif args.sync_action == "queue":
        queue = coordinator.queue
        if getattr(args, "clear", False):
            removed = queue.clear_queue()
            if as_json:
                print(json.dumps({"cleared": removed}))
            else:
                print(f"✓ Cleared {removed} queued operations")
            return

        pending = queue.pending_operations()
        failed = queue.failed_operations()
        if as_json:
            print(
                json.dumps(
                    {
                        "pending": [_op_dict(op) for op in pending],
                        "failed": [_op_dict(op) for op in failed],
                    },
                    indent=2,
                )
            )
            return
        if not pending and not failed:
            print("✓ Queue is empty")
            return
        print(f"Pending ({len(pending)}):")
        for op in pending:
            retry = f" retry {op.retry_count}" if op.retry_count else ""
            print(f"   #{op.id} {op.operation.value:<8} {op.entity_type}/{op.entity_id}{retry}")
        if failed:
            print(f"Failed ({len(failed)}):")
            for op in failed:
                print(f"   #{op.id} {op.operation.value:<8} {op.entity_type}/{op.entity_id}")
                print(f"      {op.last_error}")

    elif args.sync_action == "retry-failed":
        requeued = coordinator.queue.requeue_failed()
        if not as_json:
            print(f"✓ Requeued {requeued} failed operations")
        if requeued:
            result = coordinator.process_queue()
            _print_result("Queue processed", result, as_json)
        elif as_json:
            print(json.dumps({"requeued": 0}))

    elif args.sync_action == "conflicts":
        store = coordinator.store
        if getattr(args, "clear", False):
            removed = store.clear_sync_conflicts()
            if as_json:
                print(json.dumps({"cleared": removed}))
            else:
                print(f"✓ Cleared {removed} conflict records")
            return

        conflicts = store.get_sync_conflicts(limit=getattr(args, "limit", 20) or 20)
        if as_json:
            print(
                json.dumps(
                    [
                        {
                            "entity_type": c.entity_type,
                            "record_id": c.record_id,
                            "local_version": c.local_version,
                            "remote_version": c.remote_version,
                            "resolution": c.resolution,
                            "resolved_at": format_datetime(c.resolved_at),
                            "local_summary": c.local_summary,
                            "remote_summary": c.remote_summary,
                        }
                        for c in conflicts
                    ],
                    indent=2,
                )
            )
            return
        if not conflicts:
            print("✓ No sync conflicts recorded")
            return
        print(f"Sync conflicts ({len(conflicts)}):")
        for c in conflicts:
            print(
                f"   {format_datetime(c.resolved_at)} {c.entity_type}/{c.record_id}: "
                f"kept local v{c.local_version}, discarded remote v{c.remote_version}"
            )
            if c.remote_summary:
                print(f"      discarded: {c.remote_summary}")


def _op_dict(op) -> dict:
    return {
        "id": op.id,
        "operation": op.operation.value,
        "entity_type": op.entity_type,
        "entity_id": op.entity_id,
        "status": op.status.value,
        "retry_count": op.retry_count,
        "last_error": op.last_error,
        "enqueued_at": format_datetime(op.enqueued_at),
        "next_attempt_at": format_datetime(op.next_attempt_at),
    }
