"""Tests for local <-> remote field mappings and validation."""

from datetime import datetime, timezone

import pytest

from conftest import SHOP_ID
from protech.errors import ValidationError
from protech.sync.mappers import MAPPINGS, mapping_for
from protech.types import (
    Appointment,
    CloudSyncStatus,
    Customer,
    Employee,
    InventoryItem,
    LoyaltyMember,
    Payment,
    Ticket,
    TimeClockEntry,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestMappingRegistry:
    def test_every_entity_has_a_mapping(self):
        assert set(MAPPINGS) == {
            "customer",
            "ticket",
            "inventory",
            "employee",
            "appointment",
            "time_clock",
            "payment",
            "loyalty_member",
        }

    def test_remote_table_names(self):
        assert mapping_for("inventory").remote_table == "inventory_items"
        assert mapping_for("time_clock").remote_table == "time_clock_entries"
        assert mapping_for("loyalty_member").remote_table == "loyalty_members"

    def test_unknown_entity(self):
        with pytest.raises(ValueError, match="Unknown entity type"):
            mapping_for("invoice")


class TestToRemote:
    def test_sync_status_never_leaves_device(self):
        row = mapping_for("customer").to_remote(
            Customer(id="c1", shop_id=SHOP_ID, first_name="Ada", updated_at=NOW)
        )
        assert "cloud_sync_status" not in row
        assert row["updated_at"] == "2026-01-15T12:00:00.000000+00:00"
        assert row["deleted_at"] is None
        assert row["sync_version"] == 1

    def test_time_clock_break_column_renamed(self):
        row = mapping_for("time_clock").to_remote(
            TimeClockEntry(id="t1", shop_id=SHOP_ID, employee_id="e1", clock_in_time=NOW, break_seconds=900)
        )
        assert row["break_duration"] == 900
        assert "break_seconds" not in row


class TestFromRemote:
    def test_customer_row(self, customer_row):
        customer = mapping_for("customer").from_remote(customer_row("c1", 4, last_name="Byron"))
        assert isinstance(customer, Customer)
        assert customer.last_name == "Byron"
        assert customer.sync_version == 4
        assert customer.cloud_sync_status == CloudSyncStatus.SYNCED
        assert customer.updated_at == NOW

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError, match="no id"):
            mapping_for("customer").from_remote({"shop_id": SHOP_ID})

    def test_malformed_timestamp_rejected(self, customer_row):
        with pytest.raises(ValidationError, match="Malformed"):
            mapping_for("customer").from_remote(customer_row("c1", 1, updated_at="yesterday"))

    def test_inventory_defaults(self):
        item = mapping_for("inventory").from_remote(
            {"id": "i1", "shop_id": SHOP_ID, "name": "Screen", "quantity": "3"}
        )
        assert isinstance(item, InventoryItem)
        assert item.quantity == 3
        assert item.is_active is True
        assert item.sync_version == 1

    def test_appointment_timestamps(self):
        appointment = mapping_for("appointment").from_remote(
            {
                "id": "a1",
                "shop_id": SHOP_ID,
                "customer_id": "c1",
                "scheduled_date": "2026-01-20T09:30:00Z",
            }
        )
        assert isinstance(appointment, Appointment)
        assert appointment.scheduled_date == datetime(2026, 1, 20, 9, 30, tzinfo=timezone.utc)
        assert appointment.duration == 30

    def test_payment_amount_from_numeric_string(self):
        payment = mapping_for("payment").from_remote(
            {
                "id": "p1",
                "shop_id": SHOP_ID,
                "customer_id": "c1",
                "amount": "49.90",
                "payment_method": "card",
                "payment_date": "2026-01-15T12:00:00Z",
                "receipt_generated": True,
            }
        )
        assert isinstance(payment, Payment)
        assert payment.amount == pytest.approx(49.90)
        assert payment.payment_date == NOW
        assert payment.receipt_generated is True

    def test_payment_malformed_amount_rejected(self):
        with pytest.raises(ValidationError, match="Malformed amount"):
            mapping_for("payment").from_remote({"id": "p1", "shop_id": SHOP_ID, "amount": "lots"})

    def test_loyalty_member_defaults(self):
        member = mapping_for("loyalty_member").from_remote(
            {"id": "m1", "shop_id": SHOP_ID, "customer_id": "c1", "program_id": "prog-1"}
        )
        assert isinstance(member, LoyaltyMember)
        assert (member.available_points, member.lifetime_points) == (0, 0)
        assert member.is_active is True
        assert member.deleted_at is None

    def test_ticket_row_keeps_customer(self):
        ticket = mapping_for("ticket").from_remote(
            {"id": "t1", "shop_id": SHOP_ID, "customer_id": "c1", "status": None}
        )
        assert isinstance(ticket, Ticket)
        assert ticket.customer_id == "c1"
        assert ticket.status == "pending"


class TestValidation:
    def _valid(self, entity_type, record):
        mapping_for(entity_type).validate(record)

    def _invalid(self, entity_type, record, match):
        with pytest.raises(ValidationError, match=match):
            mapping_for(entity_type).validate(record)

    def test_customer(self):
        self._valid("customer", Customer(id="c1", shop_id=SHOP_ID, phone="555"))
        self._invalid("customer", Customer(id="c1", shop_id=SHOP_ID), "name, email or phone")
        self._invalid(
            "customer", Customer(id="c1", shop_id=SHOP_ID, email="not-an-email"), "invalid email"
        )

    def test_common_fields(self):
        self._invalid("customer", Customer(first_name="Ada"), "id is required")

    def test_ticket_requires_customer(self):
        self._invalid("ticket", Ticket(id="t1", shop_id=SHOP_ID), "customer_id")
        self._invalid(
            "ticket",
            Ticket(id="t1", shop_id=SHOP_ID, customer_id="c1", estimated_cost=-1),
            "cannot be negative",
        )

    def test_inventory(self):
        self._valid("inventory", InventoryItem(id="i1", shop_id=SHOP_ID, name="Screen"))
        self._invalid("inventory", InventoryItem(id="i1", shop_id=SHOP_ID), "name is required")
        self._invalid(
            "inventory", InventoryItem(id="i1", shop_id=SHOP_ID, name="x", quantity=-2), "negative"
        )

    def test_employee(self):
        self._valid(
            "employee",
            Employee(id="e1", shop_id=SHOP_ID, email="g@example.com", first_name="G", last_name="H"),
        )
        self._invalid(
            "employee",
            Employee(
                id="e1", shop_id=SHOP_ID, email="g@example.com", first_name="G", last_name="H", role="owner"
            ),
            "unknown role",
        )

    def test_appointment(self):
        self._invalid(
            "appointment", Appointment(id="a1", shop_id=SHOP_ID, customer_id="c1"), "scheduled_date"
        )

    def test_time_clock_order(self):
        self._invalid(
            "time_clock",
            TimeClockEntry(
                id="t1",
                shop_id=SHOP_ID,
                employee_id="e1",
                clock_in_time=NOW,
                clock_out_time=datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
            ),
            "before clock_in_time",
        )

    def test_payment(self):
        valid = Payment(
            id="p1", shop_id=SHOP_ID, customer_id="c1", amount=20.0, payment_date=NOW
        )
        self._valid("payment", valid)
        self._invalid(
            "payment",
            Payment(id="p1", shop_id=SHOP_ID, amount=20.0, payment_date=NOW),
            "customer_id",
        )
        self._invalid(
            "payment",
            Payment(id="p1", shop_id=SHOP_ID, customer_id="c1", amount=0, payment_date=NOW),
            "must be positive",
        )
        self._invalid(
            "payment",
            Payment(
                id="p1",
                shop_id=SHOP_ID,
                customer_id="c1",
                amount=5.0,
                payment_method="bitcoin",
                payment_date=NOW,
            ),
            "unknown payment method",
        )

    def test_loyalty_member(self):
        self._valid(
            "loyalty_member",
            LoyaltyMember(
                id="m1",
                shop_id=SHOP_ID,
                customer_id="c1",
                program_id="prog-1",
                available_points=40,
                lifetime_points=100,
            ),
        )
        self._invalid(
            "loyalty_member",
            LoyaltyMember(id="m1", shop_id=SHOP_ID, customer_id="c1"),
            "program_id",
        )
        self._invalid(
            "loyalty_member",
            LoyaltyMember(
                id="m1",
                shop_id=SHOP_ID,
                customer_id="c1",
                program_id="prog-1",
                available_points=-5,
            ),
            "cannot be negative",
        )
