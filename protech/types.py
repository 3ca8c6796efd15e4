"""
Shared record types for protech.

All syncable entity dataclasses live here, along with the queue, result and
conflict types that the store, the syncers and the migration service pass
between each other.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass through a datetime).

    Naive values are assumed to be UTC. Returns None for empty input and
    raises ValueError for malformed strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid datetime value: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO string in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # fixed precision keeps stored timestamps sortable as text
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# === Enums ===


class CloudSyncStatus(str, Enum):
    """Per-record sync state, local only."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class OperationType(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


class SyncOutcome(str, Enum):
    """What happened to a record handed to a syncer."""

    SYNCED = "synced"
    QUEUED = "queued"


class MergeOutcome(str, Enum):
    """Result of merging one remote record into the local store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DISCARDED = "discarded"  # remote version was older than local


class EmployeeRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TECHNICIAN = "technician"
    RECEPTIONIST = "receptionist"


# === Entity Records ===


@dataclass
class SyncRecord:
    """Fields shared by every syncable entity.

    ``sync_version`` starts at 1 and never decreases. ``deleted_at`` marks a
    tombstone: the record is hidden from default fetches but still synced.
    """

    id: str = ""
    shop_id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    sync_version: int = 1
    cloud_sync_status: CloudSyncStatus = CloudSyncStatus.PENDING

    entity_type = "record"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_synced(self) -> bool:
        return self.cloud_sync_status == CloudSyncStatus.SYNCED

    def summary(self) -> str:
        """Short human-readable description used in logs and conflict records."""
        return f"{self.entity_type}:{self.id}"


@dataclass
class Customer(SyncRecord):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    square_customer_id: Optional[str] = None

    entity_type = "customer"

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email or self.phone or "Unknown customer"

    def summary(self) -> str:
        return self.display_name


@dataclass
class Ticket(SyncRecord):
    customer_id: Optional[str] = None
    ticket_number: Optional[int] = None
    device_type: Optional[str] = None
    device_model: Optional[str] = None
    device_serial_number: Optional[str] = None
    issue_description: Optional[str] = None
    notes: Optional[str] = None
    status: str = "pending"
    priority: str = "normal"
    estimated_cost: Optional[float] = None
    actual_cost: Optional[float] = None
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None

    entity_type = "ticket"

    def summary(self) -> str:
        label = f"#{self.ticket_number}" if self.ticket_number is not None else self.id[:8]
        device = self.device_model or self.device_type or "device"
        return f"Ticket {label} ({device}, {self.status})"


@dataclass
class InventoryItem(SyncRecord):
    sku: Optional[str] = None
    part_number: Optional[str] = None
    name: str = ""
    category: Optional[str] = None
    cost: float = 0.0
    price: float = 0.0
    quantity: int = 0
    min_quantity: int = 0
    is_active: bool = True

    entity_type = "inventory"

    @property
    def is_low_stock(self) -> bool:
        return self.is_active and self.quantity <= self.min_quantity

    def summary(self) -> str:
        return f"{self.name or self.sku or self.id} (qty {self.quantity})"


@dataclass
class Employee(SyncRecord):
    employee_number: Optional[str] = None
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    role: str = EmployeeRole.TECHNICIAN.value
    is_active: bool = True
    hourly_rate: Optional[float] = None
    hire_date: Optional[datetime] = None

    entity_type = "employee"

    def summary(self) -> str:
        return f"{self.first_name} {self.last_name} ({self.role})".strip()


@dataclass
class Appointment(SyncRecord):
    customer_id: Optional[str] = None
    ticket_id: Optional[str] = None
    appointment_type: str = "dropoff"
    scheduled_date: Optional[datetime] = None
    duration: int = 30  # minutes
    status: str = "scheduled"
    notes: Optional[str] = None
    reminder_sent: bool = False
    confirmation_sent: bool = False
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    entity_type = "appointment"

    def summary(self) -> str:
        when = format_datetime(self.scheduled_date) or "unscheduled"
        return f"{self.appointment_type} @ {when}"


@dataclass
class TimeClockEntry(SyncRecord):
    employee_id: Optional[str] = None
    clock_in_time: Optional[datetime] = None
    clock_out_time: Optional[datetime] = None
    break_seconds: int = 0
    notes: Optional[str] = None

    entity_type = "time_clock"

    @property
    def is_active(self) -> bool:
        return self.clock_in_time is not None and self.clock_out_time is None

    def summary(self) -> str:
        return f"Shift {self.id[:8]} for employee {self.employee_id}"


PAYMENT_METHODS = ("cash", "card", "check", "transfer", "other")


@dataclass
class Payment(SyncRecord):
    customer_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_number: Optional[str] = None
    amount: float = 0.0
    payment_method: str = "cash"
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    receipt_generated: bool = False
    notes: Optional[str] = None

    entity_type = "payment"

    def summary(self) -> str:
        label = self.payment_number or self.id[:8]
        return f"Payment {label} ({self.amount:.2f} {self.payment_method})"


@dataclass
class LoyaltyMember(SyncRecord):
    """A customer's enrolment in the shop's loyalty program."""

    customer_id: Optional[str] = None
    program_id: Optional[str] = None
    current_tier_id: Optional[str] = None
    total_points: int = 0
    available_points: int = 0
    lifetime_points: int = 0
    visit_count: int = 0
    total_spent: float = 0.0
    is_active: bool = True
    enrolled_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    entity_type = "loyalty_member"

    def summary(self) -> str:
        return f"Member {self.id[:8]} ({self.available_points} points)"


RECORD_TYPES = {
    "customer": Customer,
    "ticket": Ticket,
    "inventory": InventoryItem,
    "employee": Employee,
    "appointment": Appointment,
    "time_clock": TimeClockEntry,
    "payment": Payment,
    "loyalty_member": LoyaltyMember,
}


# === Sync Bookkeeping ===


@dataclass
class SyncOperation:
    """A queued intent to push or pull one record (or one entity type)."""

    id: int
    operation: OperationType
    entity_type: str
    entity_id: str  # "*" for entity-wide downloads
    status: OperationStatus = OperationStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    enqueued_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    revision: int = 1
    payload: Optional[Dict[str, Any]] = None


@dataclass
class SyncConflict:
    """A remote write that lost to a newer local version.

    Conflicts are resolved silently by version; this record exists so an
    operator can see what was discarded.
    """

    id: str
    entity_type: str
    record_id: str
    local_version: int
    remote_version: int
    resolution: str  # "local_wins"
    resolved_at: datetime
    local_summary: Optional[str] = None
    remote_summary: Optional[str] = None
    diff_hash: Optional[str] = None


@dataclass
class SyncResult:
    """Result of a sync pass."""

    pushed: int = 0  # Records written to the remote
    pulled: int = 0  # Remote records applied locally
    queued: int = 0  # Operations deferred to the offline queue
    failed: int = 0  # Operations marked failed
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.pushed += other.pushed
        self.pulled += other.pulled
        self.queued += other.queued
        self.failed += other.failed
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        return self


@dataclass
class BatchUploadResult:
    """Outcome of a chunked upload."""

    uploaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # record id -> error
    queued: List[str] = field(default_factory=list)
    chunks: int = 0
    aborted: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.aborted
