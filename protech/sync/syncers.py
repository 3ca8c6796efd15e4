"""Per-entity syncers.

Each class pins the generic syncer to one entity type and adds what is
specific to it: the parent it depends on, who may write it, and a few
domain helpers (stock adjustment, date-range downloads, loyalty points).
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from protech.auth import PRIVILEGED_ROLES
from protech.errors import ValidationError
from protech.types import (
    Appointment,
    InventoryItem,
    LoyaltyMember,
    MergeOutcome,
    Payment,
    SyncOutcome,
    SyncRecord,
    SyncResult,
    utc_now,
)

from .syncer import EntitySyncer

logger = logging.getLogger(__name__)


class CustomerSyncer(EntitySyncer):
    entity_type = "customer"


class TicketSyncer(EntitySyncer):
    """Tickets reference a customer, which is uploaded first if unsynced."""

    entity_type = "ticket"
    parent_field = "customer_id"


class AppointmentSyncer(EntitySyncer):
    entity_type = "appointment"
    parent_field = "customer_id"

    def download_for_date_range(self, start: datetime, end: datetime) -> SyncResult:
        """Pull appointments scheduled within [start, end], ignoring the watermark."""
        if end < start:
            raise ValueError("end must not be before start")
        session = self.session.require_session()
        with self._exclusive("date-range download"):
            rows = self.remote.select(
                self.remote_table,
                {"shop_id": session.shop_id},
                since=start,
                until=end,
                since_column="scheduled_date",
                order_by="scheduled_date",
            )
            result = self._merge_rows(rows)
        logger.info(f"Downloaded {len(rows)} appointments between {start} and {end}")
        return result

    def appointments_between(self, start: datetime, end: datetime) -> List[Appointment]:
        """Local appointments scheduled within [start, end], earliest first."""
        return [
            a
            for a in self.store.fetch(self.entity_type, order_by="scheduled_date")
            if a.scheduled_date and start <= a.scheduled_date <= end
        ]


class EmployeeSyncer(EntitySyncer):
    """Only admins and managers may write employee records."""

    entity_type = "employee"
    required_roles = PRIVILEGED_ROLES


class TimeClockSyncer(EntitySyncer):
    entity_type = "time_clock"
    parent_field = "employee_id"


class PaymentSyncer(EntitySyncer):
    """Payments reference a customer, which is uploaded first if unsynced."""

    entity_type = "payment"
    parent_field = "customer_id"

    def payments_for_customer(self, customer_id: str) -> List[Payment]:
        """Local payments for one customer, newest first."""
        return self.store.fetch(
            self.entity_type, {"customer_id": customer_id}, order_by="-payment_date"
        )

    def total_for_customer(self, customer_id: str) -> float:
        return round(sum(p.amount for p in self.payments_for_customer(customer_id)), 2)


class LoyaltyMemberSyncer(EntitySyncer):
    entity_type = "loyalty_member"
    parent_field = "customer_id"

    def member_for_customer(self, customer_id: str) -> Optional[LoyaltyMember]:
        members = self.store.fetch(self.entity_type, {"customer_id": customer_id})
        return members[0] if members else None

    def adjust_points(self, member_id: str, points: int, reason: str = None) -> LoyaltyMember:
        """Add (or, with a negative value, remove) points and upload the member.

        Positive adjustments also count toward total and lifetime points.

        Raises:
            ValidationError: unknown or deleted member, or not enough
                available points for a deduction.
        """
        member = self.store.get(self.entity_type, member_id, include_deleted=False)
        if member is None:
            raise ValidationError(
                f"Loyalty member {member_id} not found",
                entity_type=self.entity_type,
                record_id=member_id,
            )
        if member.available_points + points < 0:
            raise ValidationError(
                f"Not enough points: have {member.available_points}, adjustment {points}",
                entity_type=self.entity_type,
                record_id=member_id,
            )
        self.check_access(member)

        member.available_points += points
        if points > 0:
            member.total_points += points
            member.lifetime_points += points
        member.last_activity_at = utc_now()
        self.store.save(member)
        logger.info(
            f"Loyalty points for member {member_id} adjusted by {points:+d}"
            + (f" ({reason})" if reason else "")
        )
        self.upload(member)
        return member


LowStockListener = Callable[[InventoryItem], None]


class InventorySyncer(EntitySyncer):
    """Inventory with stock adjustments and low-stock notifications.

    Listeners fire when an item is at or below its minimum after a local
    adjustment or an applied remote change.
    """

    entity_type = "inventory"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._low_stock_listeners: List[LowStockListener] = []

    def add_low_stock_listener(self, listener: LowStockListener) -> None:
        self._low_stock_listeners.append(listener)

    def remove_low_stock_listener(self, listener: LowStockListener) -> None:
        if listener in self._low_stock_listeners:
            self._low_stock_listeners.remove(listener)

    def _notify_low_stock(self, item: InventoryItem) -> None:
        logger.info(f"Low stock: {item.name} ({item.quantity} <= {item.min_quantity})")
        for listener in list(self._low_stock_listeners):
            try:
                listener(item)
            except Exception:
                logger.exception(f"Low-stock listener failed for inventory/{item.id}")

    def adjust_stock(self, item_id: str, delta: int, reason: str = None) -> InventoryItem:
        """Change an item's quantity by ``delta`` and upload the result.

        Raises:
            ValidationError: unknown or deleted item, or the adjustment would
                take the quantity below zero.
        """
        item = self.store.get(self.entity_type, item_id, include_deleted=False)
        if item is None:
            raise ValidationError(
                f"Inventory item {item_id} not found", entity_type=self.entity_type, record_id=item_id
            )
        new_quantity = item.quantity + delta
        if new_quantity < 0:
            raise ValidationError(
                f"Insufficient stock for {item.name}: have {item.quantity}, adjustment {delta}",
                entity_type=self.entity_type,
                record_id=item_id,
            )
        self.check_access(item)

        item.quantity = new_quantity
        self.store.save(item)
        logger.info(
            f"Stock for {item.name} adjusted by {delta:+d} to {new_quantity}"
            + (f" ({reason})" if reason else "")
        )
        outcome = self.upload(item)
        if outcome == SyncOutcome.QUEUED:
            logger.debug(f"Stock change for inventory/{item_id} queued")
        if item.is_low_stock:
            self._notify_low_stock(item)
        return item

    def low_stock_items(self) -> List[InventoryItem]:
        """Active items at or below their minimum quantity."""
        items = self.store.fetch(self.entity_type, {"is_active": True}, order_by="name")
        return [item for item in items if item.is_low_stock]

    def _after_merge(self, record: SyncRecord, outcome: MergeOutcome) -> None:
        if outcome in (MergeOutcome.CREATED, MergeOutcome.UPDATED):
            if not record.is_deleted and record.is_low_stock:
                self._notify_low_stock(record)


SYNCER_CLASSES = {
    cls.entity_type: cls
    for cls in (
        CustomerSyncer,
        TicketSyncer,
        InventorySyncer,
        EmployeeSyncer,
        AppointmentSyncer,
        TimeClockSyncer,
        PaymentSyncer,
        LoyaltyMemberSyncer,
    )
}

# Parent entity type for syncers whose records reference another entity
PARENTS = {
    "ticket": "customer",
    "appointment": "customer",
    "time_clock": "employee",
    "payment": "customer",
    "loyalty_member": "customer",
}
