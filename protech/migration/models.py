"""Migration options, phases, statistics and the persisted report."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from protech.types import format_datetime, parse_datetime


class MigrationPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    VALIDATING = "validating"
    MIGRATING_EMPLOYEES = "migrating_employees"
    MIGRATING_CUSTOMERS = "migrating_customers"
    MIGRATING_INVENTORY = "migrating_inventory"
    MIGRATING_TICKETS = "migrating_tickets"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


# Entity phases in the order they run
ENTITY_PHASES = [
    ("employee", MigrationPhase.MIGRATING_EMPLOYEES),
    ("customer", MigrationPhase.MIGRATING_CUSTOMERS),
    ("inventory", MigrationPhase.MIGRATING_INVENTORY),
    ("ticket", MigrationPhase.MIGRATING_TICKETS),
]

ENTITY_LABELS = {
    "employee": "employees",
    "customer": "customers",
    "inventory": "inventory items",
    "ticket": "tickets",
}


@dataclass
class MigrationOptions:
    migrate_customers: bool = True
    migrate_tickets: bool = True
    migrate_inventory: bool = True
    migrate_employees: bool = True
    skip_existing: bool = True  # skip records already synced
    continue_on_error: bool = True
    use_batch_operations: bool = True
    create_backup: bool = True

    def includes(self, entity_type: str) -> bool:
        return {
            "employee": self.migrate_employees,
            "customer": self.migrate_customers,
            "inventory": self.migrate_inventory,
            "ticket": self.migrate_tickets,
        }.get(entity_type, False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationOptions":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: bool(v) for k, v in data.items() if k in known})


@dataclass
class EntityStatistics:
    total: int = 0  # records considered, including skipped ones
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    tombstones: int = 0  # deleted records among the eligible ones

    @property
    def eligible(self) -> int:
        return self.total - self.skipped

    @property
    def success_rate(self) -> float:
        if self.eligible <= 0:
            return 1.0
        return self.migrated / self.eligible


@dataclass
class MigrationStatistics:
    """Per-entity counters for one migration run."""

    entities: Dict[str, EntityStatistics] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def for_entity(self, entity_type: str) -> EntityStatistics:
        return self.entities.setdefault(entity_type, EntityStatistics())

    @property
    def total(self) -> int:
        return sum(s.total for s in self.entities.values())

    @property
    def migrated(self) -> int:
        return sum(s.migrated for s in self.entities.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.entities.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.entities.values())

    @property
    def tombstones(self) -> int:
        return sum(s.tombstones for s in self.entities.values())

    @property
    def eligible(self) -> int:
        return self.total - self.skipped

    @property
    def success_rate(self) -> float:
        if self.eligible <= 0:
            return 1.0
        return self.migrated / self.eligible

    @property
    def elapsed_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(self.started_at.tzinfo)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": {k: asdict(v) for k, v in self.entities.items()},
            "started_at": format_datetime(self.started_at),
            "finished_at": format_datetime(self.finished_at),
            "total": self.total,
            "migrated": self.migrated,
            "failed": self.failed,
            "skipped": self.skipped,
            "tombstones": self.tombstones,
            "success_rate": round(self.success_rate, 4),
            "elapsed_seconds": self.elapsed_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationStatistics":
        return cls(
            entities={
                k: EntityStatistics(**v) for k, v in (data.get("entities") or {}).items()
            },
            started_at=parse_datetime(data.get("started_at")),
            finished_at=parse_datetime(data.get("finished_at")),
        )


@dataclass
class MigrationError:
    timestamp: datetime
    phase: MigrationPhase
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    kind: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_datetime(self.timestamp),
            "phase": self.phase.value,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationError":
        return cls(
            timestamp=parse_datetime(data["timestamp"]),
            phase=MigrationPhase(data["phase"]),
            message=data["message"],
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
            kind=data.get("kind", "unknown"),
        )


@dataclass
class MigrationReport:
    """What a migration run did. Stored as JSON in the local store's metadata."""

    phase: MigrationPhase
    statistics: MigrationStatistics
    errors: List[MigrationError] = field(default_factory=list)
    options: MigrationOptions = field(default_factory=MigrationOptions)
    paused_phase: Optional[MigrationPhase] = None
    cancelled: bool = False
    backup_path: Optional[str] = None

    @property
    def paused(self) -> bool:
        return self.paused_phase is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "statistics": self.statistics.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
            "options": asdict(self.options),
            "paused_phase": self.paused_phase.value if self.paused_phase else None,
            "cancelled": self.cancelled,
            "backup_path": self.backup_path,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "MigrationReport":
        data = json.loads(raw)
        paused = data.get("paused_phase")
        return cls(
            phase=MigrationPhase(data["phase"]),
            statistics=MigrationStatistics.from_dict(data.get("statistics") or {}),
            errors=[MigrationError.from_dict(e) for e in data.get("errors") or []],
            options=MigrationOptions.from_dict(data.get("options") or {}),
            paused_phase=MigrationPhase(paused) if paused else None,
            cancelled=bool(data.get("cancelled")),
            backup_path=data.get("backup_path"),
        )
