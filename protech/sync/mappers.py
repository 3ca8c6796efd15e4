"""Explicit field mappings between local records and remote rows.

Each entity type has a hand-written ``to_remote`` / ``from_remote`` pair and a
``validate`` function. ``cloud_sync_status`` is local bookkeeping and never
leaves the device.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from protech.errors import ValidationError
from protech.types import (
    PAYMENT_METHODS,
    Appointment,
    CloudSyncStatus,
    Customer,
    Employee,
    EmployeeRole,
    InventoryItem,
    LoyaltyMember,
    Payment,
    SyncRecord,
    Ticket,
    TimeClockEntry,
    format_datetime,
    parse_datetime,
)

RemoteRow = Dict[str, Any]


def _sync_fields_to_remote(record: SyncRecord) -> RemoteRow:
    return {
        "id": record.id,
        "shop_id": record.shop_id,
        "created_at": format_datetime(record.created_at),
        "updated_at": format_datetime(record.updated_at),
        "deleted_at": format_datetime(record.deleted_at),
        "sync_version": record.sync_version,
    }


def _sync_fields_from_remote(row: RemoteRow) -> Dict[str, Any]:
    if not row.get("id"):
        raise ValidationError("Remote row has no id")
    try:
        return {
            "id": str(row["id"]),
            "shop_id": str(row.get("shop_id") or ""),
            "created_at": parse_datetime(row.get("created_at")),
            "updated_at": parse_datetime(row.get("updated_at")),
            "deleted_at": parse_datetime(row.get("deleted_at")),
            "sync_version": int(row.get("sync_version") or 1),
            "cloud_sync_status": CloudSyncStatus.SYNCED,
        }
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed remote row {row.get('id')}: {e}") from e


def _ts(row: RemoteRow, key: str):
    try:
        return parse_datetime(row.get(key))
    except ValueError as e:
        raise ValidationError(f"Malformed {key} on remote row {row.get('id')}: {e}") from e


def _validate_common(record: SyncRecord, problems: List[str]) -> None:
    if not record.id:
        problems.append("id is required")
    if not record.shop_id:
        problems.append("shop_id is required")
    if record.sync_version is None or record.sync_version < 1:
        problems.append("sync_version must be >= 1")


def _raise_if(problems: List[str], record: SyncRecord) -> None:
    if problems:
        raise ValidationError(
            "; ".join(problems), entity_type=record.entity_type, record_id=record.id or None
        )


# === Customer ===


def customer_to_remote(c: Customer) -> RemoteRow:
    row = _sync_fields_to_remote(c)
    row.update(
        {
            "first_name": c.first_name,
            "last_name": c.last_name,
            "email": c.email,
            "phone": c.phone,
            "address": c.address,
            "notes": c.notes,
            "square_customer_id": c.square_customer_id,
        }
    )
    return row


def customer_from_remote(row: RemoteRow) -> Customer:
    return Customer(
        **_sync_fields_from_remote(row),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        email=row.get("email"),
        phone=row.get("phone"),
        address=row.get("address"),
        notes=row.get("notes"),
        square_customer_id=row.get("square_customer_id"),
    )


def validate_customer(c: Customer) -> None:
    problems: List[str] = []
    _validate_common(c, problems)
    if not any((c.first_name, c.last_name, c.email, c.phone)):
        problems.append("customer needs a name, email or phone")
    if c.email and "@" not in c.email:
        problems.append(f"invalid email: {c.email}")
    _raise_if(problems, c)


# === Ticket ===


def ticket_to_remote(t: Ticket) -> RemoteRow:
    row = _sync_fields_to_remote(t)
    row.update(
        {
            "customer_id": t.customer_id,
            "ticket_number": t.ticket_number,
            "device_type": t.device_type,
            "device_model": t.device_model,
            "device_serial_number": t.device_serial_number,
            "issue_description": t.issue_description,
            "notes": t.notes,
            "status": t.status,
            "priority": t.priority,
            "estimated_cost": t.estimated_cost,
            "actual_cost": t.actual_cost,
            "checked_in_at": format_datetime(t.checked_in_at),
            "started_at": format_datetime(t.started_at),
            "completed_at": format_datetime(t.completed_at),
            "picked_up_at": format_datetime(t.picked_up_at),
        }
    )
    return row


def ticket_from_remote(row: RemoteRow) -> Ticket:
    return Ticket(
        **_sync_fields_from_remote(row),
        customer_id=row.get("customer_id"),
        ticket_number=row.get("ticket_number"),
        device_type=row.get("device_type"),
        device_model=row.get("device_model"),
        device_serial_number=row.get("device_serial_number"),
        issue_description=row.get("issue_description"),
        notes=row.get("notes"),
        status=row.get("status") or "pending",
        priority=row.get("priority") or "normal",
        estimated_cost=row.get("estimated_cost"),
        actual_cost=row.get("actual_cost"),
        checked_in_at=_ts(row, "checked_in_at"),
        started_at=_ts(row, "started_at"),
        completed_at=_ts(row, "completed_at"),
        picked_up_at=_ts(row, "picked_up_at"),
    )


def validate_ticket(t: Ticket) -> None:
    problems: List[str] = []
    _validate_common(t, problems)
    if not t.customer_id:
        problems.append("ticket requires a customer_id")
    if not t.status:
        problems.append("ticket status is required")
    for name in ("estimated_cost", "actual_cost"):
        value = getattr(t, name)
        if value is not None and value < 0:
            problems.append(f"{name} cannot be negative")
    _raise_if(problems, t)


# === Inventory ===


def inventory_to_remote(i: InventoryItem) -> RemoteRow:
    row = _sync_fields_to_remote(i)
    row.update(
        {
            "sku": i.sku,
            "part_number": i.part_number,
            "name": i.name,
            "category": i.category,
            "cost": i.cost,
            "price": i.price,
            "quantity": i.quantity,
            "min_quantity": i.min_quantity,
            "is_active": i.is_active,
        }
    )
    return row


def inventory_from_remote(row: RemoteRow) -> InventoryItem:
    return InventoryItem(
        **_sync_fields_from_remote(row),
        sku=row.get("sku"),
        part_number=row.get("part_number"),
        name=row.get("name") or "",
        category=row.get("category"),
        cost=float(row.get("cost") or 0),
        price=float(row.get("price") or 0),
        quantity=int(row.get("quantity") or 0),
        min_quantity=int(row.get("min_quantity") or 0),
        is_active=bool(row.get("is_active", True)),
    )


def validate_inventory(i: InventoryItem) -> None:
    problems: List[str] = []
    _validate_common(i, problems)
    if not i.name:
        problems.append("inventory item name is required")
    if i.quantity < 0:
        problems.append("quantity cannot be negative")
    if i.min_quantity < 0:
        problems.append("min_quantity cannot be negative")
    if i.cost < 0 or i.price < 0:
        problems.append("cost and price cannot be negative")
    _raise_if(problems, i)


# === Employee ===


def employee_to_remote(e: Employee) -> RemoteRow:
    row = _sync_fields_to_remote(e)
    row.update(
        {
            "employee_number": e.employee_number,
            "email": e.email,
            "first_name": e.first_name,
            "last_name": e.last_name,
            "phone": e.phone,
            "role": e.role,
            "is_active": e.is_active,
            "hourly_rate": e.hourly_rate,
            "hire_date": format_datetime(e.hire_date),
        }
    )
    return row


def employee_from_remote(row: RemoteRow) -> Employee:
    return Employee(
        **_sync_fields_from_remote(row),
        employee_number=row.get("employee_number"),
        email=row.get("email") or "",
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        phone=row.get("phone"),
        role=row.get("role") or EmployeeRole.TECHNICIAN.value,
        is_active=bool(row.get("is_active", True)),
        hourly_rate=row.get("hourly_rate"),
        hire_date=_ts(row, "hire_date"),
    )


_ROLES = {role.value for role in EmployeeRole}


def validate_employee(e: Employee) -> None:
    problems: List[str] = []
    _validate_common(e, problems)
    if not e.email or "@" not in e.email:
        problems.append("employee requires a valid email")
    if not e.first_name or not e.last_name:
        problems.append("employee requires first and last name")
    if e.role not in _ROLES:
        problems.append(f"unknown role: {e.role}")
    if e.hourly_rate is not None and e.hourly_rate < 0:
        problems.append("hourly_rate cannot be negative")
    _raise_if(problems, e)


# === Appointment ===


def appointment_to_remote(a: Appointment) -> RemoteRow:
    row = _sync_fields_to_remote(a)
    row.update(
        {
            "customer_id": a.customer_id,
            "ticket_id": a.ticket_id,
            "appointment_type": a.appointment_type,
            "scheduled_date": format_datetime(a.scheduled_date),
            "duration": a.duration,
            "status": a.status,
            "notes": a.notes,
            "reminder_sent": a.reminder_sent,
            "confirmation_sent": a.confirmation_sent,
            "completed_at": format_datetime(a.completed_at),
            "cancelled_at": format_datetime(a.cancelled_at),
            "cancellation_reason": a.cancellation_reason,
        }
    )
    return row


def appointment_from_remote(row: RemoteRow) -> Appointment:
    return Appointment(
        **_sync_fields_from_remote(row),
        customer_id=row.get("customer_id"),
        ticket_id=row.get("ticket_id"),
        appointment_type=row.get("appointment_type") or "dropoff",
        scheduled_date=_ts(row, "scheduled_date"),
        duration=int(row.get("duration") or 30),
        status=row.get("status") or "scheduled",
        notes=row.get("notes"),
        reminder_sent=bool(row.get("reminder_sent", False)),
        confirmation_sent=bool(row.get("confirmation_sent", False)),
        completed_at=_ts(row, "completed_at"),
        cancelled_at=_ts(row, "cancelled_at"),
        cancellation_reason=row.get("cancellation_reason"),
    )


def validate_appointment(a: Appointment) -> None:
    problems: List[str] = []
    _validate_common(a, problems)
    if not a.customer_id:
        problems.append("appointment requires a customer_id")
    if a.scheduled_date is None:
        problems.append("appointment requires a scheduled_date")
    if a.duration <= 0:
        problems.append("duration must be positive")
    _raise_if(problems, a)


# === Time clock ===


def time_clock_to_remote(t: TimeClockEntry) -> RemoteRow:
    row = _sync_fields_to_remote(t)
    row.update(
        {
            "employee_id": t.employee_id,
            "clock_in_time": format_datetime(t.clock_in_time),
            "clock_out_time": format_datetime(t.clock_out_time),
            "break_duration": t.break_seconds,
            "notes": t.notes,
        }
    )
    return row


def time_clock_from_remote(row: RemoteRow) -> TimeClockEntry:
    return TimeClockEntry(
        **_sync_fields_from_remote(row),
        employee_id=row.get("employee_id"),
        clock_in_time=_ts(row, "clock_in_time"),
        clock_out_time=_ts(row, "clock_out_time"),
        break_seconds=int(row.get("break_duration") or 0),
        notes=row.get("notes"),
    )


def validate_time_clock(t: TimeClockEntry) -> None:
    problems: List[str] = []
    _validate_common(t, problems)
    if not t.employee_id:
        problems.append("time clock entry requires an employee_id")
    if t.clock_in_time is None:
        problems.append("clock_in_time is required")
    elif t.clock_out_time is not None and t.clock_out_time < t.clock_in_time:
        problems.append("clock_out_time is before clock_in_time")
    if t.break_seconds < 0:
        problems.append("break duration cannot be negative")
    _raise_if(problems, t)


# === Payment ===


def payment_to_remote(p: Payment) -> RemoteRow:
    row = _sync_fields_to_remote(p)
    row.update(
        {
            "customer_id": p.customer_id,
            "invoice_id": p.invoice_id,
            "payment_number": p.payment_number,
            "amount": p.amount,
            "payment_method": p.payment_method,
            "payment_date": format_datetime(p.payment_date),
            "reference_number": p.reference_number,
            "receipt_generated": p.receipt_generated,
            "notes": p.notes,
        }
    )
    return row


def payment_from_remote(row: RemoteRow) -> Payment:
    try:
        amount = float(row.get("amount") or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed amount on remote row {row.get('id')}: {e}") from e
    return Payment(
        **_sync_fields_from_remote(row),
        customer_id=row.get("customer_id"),
        invoice_id=row.get("invoice_id"),
        payment_number=row.get("payment_number"),
        amount=amount,
        payment_method=row.get("payment_method") or "other",
        payment_date=_ts(row, "payment_date"),
        reference_number=row.get("reference_number"),
        receipt_generated=bool(row.get("receipt_generated", False)),
        notes=row.get("notes"),
    )


def validate_payment(p: Payment) -> None:
    problems: List[str] = []
    _validate_common(p, problems)
    if not p.customer_id:
        problems.append("payment requires a customer_id")
    if p.amount is None or p.amount <= 0:
        problems.append("payment amount must be positive")
    if p.payment_method not in PAYMENT_METHODS:
        problems.append(f"unknown payment method: {p.payment_method}")
    if p.payment_date is None:
        problems.append("payment_date is required")
    _raise_if(problems, p)


# === Loyalty member ===


def loyalty_member_to_remote(m: LoyaltyMember) -> RemoteRow:
    row = _sync_fields_to_remote(m)
    row.update(
        {
            "customer_id": m.customer_id,
            "program_id": m.program_id,
            "current_tier_id": m.current_tier_id,
            "total_points": m.total_points,
            "available_points": m.available_points,
            "lifetime_points": m.lifetime_points,
            "visit_count": m.visit_count,
            "total_spent": m.total_spent,
            "is_active": m.is_active,
            "enrolled_at": format_datetime(m.enrolled_at),
            "last_activity_at": format_datetime(m.last_activity_at),
        }
    )
    return row


def loyalty_member_from_remote(row: RemoteRow) -> LoyaltyMember:
    return LoyaltyMember(
        **_sync_fields_from_remote(row),
        customer_id=row.get("customer_id"),
        program_id=row.get("program_id"),
        current_tier_id=row.get("current_tier_id"),
        total_points=int(row.get("total_points") or 0),
        available_points=int(row.get("available_points") or 0),
        lifetime_points=int(row.get("lifetime_points") or 0),
        visit_count=int(row.get("visit_count") or 0),
        total_spent=float(row.get("total_spent") or 0),
        is_active=bool(row.get("is_active", True)),
        enrolled_at=_ts(row, "enrolled_at"),
        last_activity_at=_ts(row, "last_activity_at"),
    )


def validate_loyalty_member(m: LoyaltyMember) -> None:
    problems: List[str] = []
    _validate_common(m, problems)
    if not m.customer_id:
        problems.append("loyalty member requires a customer_id")
    if not m.program_id:
        problems.append("loyalty member requires a program_id")
    for name in ("total_points", "available_points", "lifetime_points", "visit_count"):
        if getattr(m, name) < 0:
            problems.append(f"{name} cannot be negative")
    if m.available_points > m.lifetime_points:
        problems.append("available_points exceeds lifetime_points")
    if m.total_spent < 0:
        problems.append("total_spent cannot be negative")
    _raise_if(problems, m)


@dataclass(frozen=True)
class EntityMapping:
    entity_type: str
    remote_table: str
    to_remote: Callable[[Any], RemoteRow]
    from_remote: Callable[[RemoteRow], SyncRecord]
    validate: Callable[[Any], None]


MAPPINGS: Dict[str, EntityMapping] = {
    "customer": EntityMapping(
        "customer", "customers", customer_to_remote, customer_from_remote, validate_customer
    ),
    "ticket": EntityMapping(
        "ticket", "tickets", ticket_to_remote, ticket_from_remote, validate_ticket
    ),
    "inventory": EntityMapping(
        "inventory",
        "inventory_items",
        inventory_to_remote,
        inventory_from_remote,
        validate_inventory,
    ),
    "employee": EntityMapping(
        "employee", "employees", employee_to_remote, employee_from_remote, validate_employee
    ),
    "appointment": EntityMapping(
        "appointment",
        "appointments",
        appointment_to_remote,
        appointment_from_remote,
        validate_appointment,
    ),
    "time_clock": EntityMapping(
        "time_clock",
        "time_clock_entries",
        time_clock_to_remote,
        time_clock_from_remote,
        validate_time_clock,
    ),
    "payment": EntityMapping(
        "payment", "payments", payment_to_remote, payment_from_remote, validate_payment
    ),
    "loyalty_member": EntityMapping(
        "loyalty_member",
        "loyalty_members",
        loyalty_member_to_remote,
        loyalty_member_from_remote,
        validate_loyalty_member,
    ),
}


def mapping_for(entity_type: str) -> EntityMapping:
    try:
        return MAPPINGS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None
