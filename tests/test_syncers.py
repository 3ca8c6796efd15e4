"""Tests for the per-entity syncers: parents, roles and domain helpers."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import SHOP_ID
from protech.auth import Session, SessionProvider
from protech.errors import PermissionDeniedError, ValidationError
from protech.sync import SyncCoordinator
from protech.sync.syncers import PARENTS, SYNCER_CLASSES
from protech.types import (
    Appointment,
    CloudSyncStatus,
    LoyaltyMember,
    OperationType,
    Payment,
    SyncOutcome,
    TimeClockEntry,
)


def _session(role):
    return SessionProvider(Session(shop_id=SHOP_ID, role=role, user_id="u-" + role))


@pytest.fixture
def technician(store, remote, settings, clock):
    coordinator = SyncCoordinator(store, remote, _session("technician"), settings, now_fn=clock.now)
    yield coordinator
    coordinator.close()


class TestRegistry:
    def test_one_syncer_class_per_entity(self):
        assert set(SYNCER_CLASSES) == {
            "customer",
            "ticket",
            "inventory",
            "employee",
            "appointment",
            "time_clock",
            "payment",
            "loyalty_member",
        }
        for entity_type, cls in SYNCER_CLASSES.items():
            assert cls.entity_type == entity_type

    def test_parent_fields_match_parents(self):
        for child, parent in PARENTS.items():
            assert SYNCER_CLASSES[child].parent_field is not None
            assert parent in SYNCER_CLASSES

    def test_coordinator_wires_parents(self, coordinator):
        assert coordinator.tickets.parent is coordinator.customers
        assert coordinator.appointments.parent is coordinator.customers
        assert coordinator.time_clock.parent is coordinator.employees
        assert coordinator.payments.parent is coordinator.customers
        assert coordinator.loyalty_members.parent is coordinator.customers
        assert coordinator.customers.parent is None


class TestTicketParentUpload:
    def test_unsynced_customer_uploaded_first(
        self, coordinator, store, remote, make_customer, make_ticket
    ):
        customer = make_customer()
        ticket = make_ticket(customer.id)

        assert coordinator.tickets.upload(ticket) == SyncOutcome.SYNCED

        assert [c[1] for c in remote.calls_for("upsert")] == ["customers", "tickets"]
        assert store.get("customer", customer.id).cloud_sync_status == CloudSyncStatus.SYNCED
        assert store.get("ticket", ticket.id).cloud_sync_status == CloudSyncStatus.SYNCED

    def test_synced_customer_not_reuploaded(self, coordinator, remote, make_customer, make_ticket):
        customer = make_customer()
        coordinator.customers.upload(customer)
        ticket = make_ticket(customer.id)
        coordinator.tickets.upload(ticket)
        assert [c[1] for c in remote.calls_for("upsert")] == ["customers", "tickets"]

    def test_customer_missing_locally(self, coordinator, remote, make_ticket):
        ticket = make_ticket("customer-elsewhere")
        assert coordinator.tickets.upload(ticket) == SyncOutcome.SYNCED
        assert [c[1] for c in remote.calls_for("upsert")] == ["tickets"]

    def test_ticket_requires_customer_id(self, coordinator, store, remote, make_ticket):
        ticket = make_ticket(None)
        with pytest.raises(ValidationError):
            coordinator.tickets.upload(ticket)
        assert remote.calls == []

    def test_offline_ticket_and_customer_sync_after_drain(
        self, coordinator, store, remote, make_customer, make_ticket
    ):
        customer = make_customer()
        ticket = make_ticket(customer.id)
        remote.offline = True
        assert coordinator.tickets.upload(ticket) == SyncOutcome.QUEUED

        remote.offline = False
        coordinator.process_queue()

        assert store.get("customer", customer.id).cloud_sync_status == CloudSyncStatus.SYNCED
        assert store.get("ticket", ticket.id).cloud_sync_status == CloudSyncStatus.SYNCED
        assert remote.row("tickets", ticket.id)["customer_id"] == customer.id


class TestEmployeeRoleGate:
    def test_technician_cannot_upload_employee(self, technician, store, remote, make_employee):
        employee = make_employee()
        with pytest.raises(PermissionDeniedError, match="technician"):
            technician.employees.upload(employee)
        assert remote.calls == []
        assert store.get("employee", employee.id).cloud_sync_status == CloudSyncStatus.FAILED

    @pytest.mark.parametrize("role", ["admin", "manager"])
    def test_privileged_roles_can_upload(self, store, remote, settings, clock, make_employee, role):
        coordinator = SyncCoordinator(store, remote, _session(role), settings, now_fn=clock.now)
        employee = make_employee()
        assert coordinator.employees.upload(employee) == SyncOutcome.SYNCED

    def test_technician_sync_only_downloads_employees(self, technician, store, remote, make_employee):
        employee = make_employee()
        remote.seed(
            "employees",
            {
                "id": "e-remote",
                "shop_id": SHOP_ID,
                "email": "boss@example.com",
                "first_name": "Boss",
                "last_name": "Person",
                "role": "manager",
                "sync_version": 1,
                "updated_at": "2026-01-15T12:00:00.000000+00:00",
            },
        )
        result = technician.employees.sync()
        assert result.pushed == 0
        assert result.failed == 0
        assert result.pulled == 1
        assert store.get("employee", employee.id).cloud_sync_status == CloudSyncStatus.PENDING
        assert remote.calls_for("upsert") == []

    def test_technician_can_clock_in(self, technician, store, remote, make_employee):
        employee = make_employee()
        store.mark_synced("employee", employee.id, employee.sync_version)
        entry = TimeClockEntry(
            employee_id=employee.id,
            clock_in_time=datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
        )
        store.save(entry)
        assert technician.time_clock.upload(entry) == SyncOutcome.SYNCED
        assert remote.row("time_clock_entries", entry.id)["employee_id"] == employee.id


def _appointment_row(record_id, scheduled):
    return {
        "id": record_id,
        "shop_id": SHOP_ID,
        "customer_id": "c1",
        "scheduled_date": scheduled,
        "sync_version": 1,
        "updated_at": "2026-01-15T12:00:00.000000+00:00",
    }


class TestAppointments:
    def test_download_for_date_range(self, coordinator, store, remote):
        remote.seed("appointments", _appointment_row("early", "2026-01-19T09:00:00+00:00"))
        remote.seed("appointments", _appointment_row("mid", "2026-01-20T10:00:00+00:00"))
        remote.seed("appointments", _appointment_row("late", "2026-01-21T11:00:00+00:00"))
        remote.seed("appointments", _appointment_row("after", "2026-02-01T09:00:00+00:00"))

        result = coordinator.appointments.download_for_date_range(
            datetime(2026, 1, 20, tzinfo=timezone.utc),
            datetime(2026, 1, 31, tzinfo=timezone.utc),
        )

        assert result.pulled == 2
        assert {a.id for a in store.fetch("appointment")} == {"mid", "late"}
        assert coordinator.appointments.get_watermark() is None

    def test_date_range_must_be_ordered(self, coordinator, remote):
        with pytest.raises(ValueError):
            coordinator.appointments.download_for_date_range(
                datetime(2026, 2, 1, tzinfo=timezone.utc),
                datetime(2026, 1, 1, tzinfo=timezone.utc),
            )
        assert remote.calls == []

    def test_appointments_between(self, coordinator, store):
        for day in (18, 20, 22):
            store.save(
                Appointment(
                    id=f"a{day}",
                    customer_id="c1",
                    scheduled_date=datetime(2026, 1, day, 9, 0, tzinfo=timezone.utc),
                )
            )
        found = coordinator.appointments.appointments_between(
            datetime(2026, 1, 19, tzinfo=timezone.utc),
            datetime(2026, 1, 23, tzinfo=timezone.utc),
        )
        assert [a.id for a in found] == ["a20", "a22"]


class TestInventory:
    def test_adjust_stock_uploads(self, coordinator, store, remote, make_item):
        item = make_item(quantity=10)
        updated = coordinator.inventory.adjust_stock(item.id, -3, reason="repair")
        assert updated.quantity == 7
        assert store.get("inventory", item.id).quantity == 7
        assert store.get("inventory", item.id).cloud_sync_status == CloudSyncStatus.SYNCED
        assert remote.row("inventory_items", item.id)["quantity"] == 7

    def test_adjust_below_zero_rejected(self, coordinator, store, remote, make_item):
        item = make_item(quantity=2)
        with pytest.raises(ValidationError, match="Insufficient stock"):
            coordinator.inventory.adjust_stock(item.id, -3)
        assert store.get("inventory", item.id).quantity == 2
        assert remote.calls == []

    def test_adjust_unknown_item(self, coordinator):
        with pytest.raises(ValidationError, match="not found"):
            coordinator.inventory.adjust_stock("nope", 1)

    def test_low_stock_listener_fires(self, coordinator, make_item):
        item = make_item(quantity=3, min_quantity=2)
        listener = MagicMock()
        coordinator.inventory.add_low_stock_listener(listener)

        coordinator.inventory.adjust_stock(item.id, -1)

        listener.assert_called_once()
        assert listener.call_args[0][0].quantity == 2

    def test_listener_not_fired_above_minimum(self, coordinator, make_item):
        item = make_item(quantity=10, min_quantity=2)
        listener = MagicMock()
        coordinator.inventory.add_low_stock_listener(listener)
        coordinator.inventory.adjust_stock(item.id, -1)
        listener.assert_not_called()

    def test_failing_listener_does_not_break_adjustment(self, coordinator, store, make_item):
        item = make_item(quantity=1, min_quantity=1)
        coordinator.inventory.add_low_stock_listener(MagicMock(side_effect=RuntimeError("ui gone")))
        second = MagicMock()
        coordinator.inventory.add_low_stock_listener(second)

        coordinator.inventory.adjust_stock(item.id, -1)

        second.assert_called_once()
        assert store.get("inventory", item.id).quantity == 0

    def test_remove_listener(self, coordinator, make_item):
        item = make_item(quantity=1, min_quantity=1)
        listener = MagicMock()
        coordinator.inventory.add_low_stock_listener(listener)
        coordinator.inventory.remove_low_stock_listener(listener)
        coordinator.inventory.remove_low_stock_listener(listener)
        coordinator.inventory.adjust_stock(item.id, -1)
        listener.assert_not_called()

    def test_offline_adjustment_queued_and_notified(self, coordinator, remote, make_item):
        item = make_item(quantity=2, min_quantity=2)
        listener = MagicMock()
        coordinator.inventory.add_low_stock_listener(listener)
        remote.offline = True

        coordinator.inventory.adjust_stock(item.id, -1)

        listener.assert_called_once()
        (op,) = coordinator.queue.pending_operations()
        assert (op.operation, op.entity_id) == (OperationType.UPLOAD, item.id)

    def test_remote_low_stock_change_notifies(self, coordinator, remote):
        listener = MagicMock()
        coordinator.inventory.add_low_stock_listener(listener)
        remote.seed(
            "inventory_items",
            {
                "id": "i-remote",
                "shop_id": SHOP_ID,
                "name": "Battery",
                "quantity": 0,
                "min_quantity": 1,
                "sync_version": 1,
                "updated_at": "2026-01-15T12:00:00.000000+00:00",
            },
        )
        coordinator.inventory.download()
        listener.assert_called_once()

    def test_low_stock_items(self, coordinator, make_item):
        make_item(name="Plenty", quantity=10, min_quantity=2)
        make_item(name="Low", quantity=1, min_quantity=2)
        make_item(name="Inactive", quantity=0, min_quantity=2, is_active=False)
        assert [i.name for i in coordinator.inventory.low_stock_items()] == ["Low"]


def _payment(customer_id, day, amount=25.0, **fields):
    return Payment(
        customer_id=customer_id,
        amount=amount,
        payment_date=datetime(2026, 1, day, 10, 0, tzinfo=timezone.utc),
        **fields,
    )


class TestPayments:
    def test_unsynced_customer_uploaded_first(self, coordinator, store, remote, make_customer):
        customer = make_customer()
        payment = _payment(customer.id, 15, payment_method="card")
        store.save(payment)

        assert coordinator.payments.upload(payment) == SyncOutcome.SYNCED

        assert [c[1] for c in remote.calls_for("upsert")] == ["customers", "payments"]
        row = remote.row("payments", payment.id)
        assert row["amount"] == 25.0
        assert row["payment_method"] == "card"
        assert store.get("customer", customer.id).cloud_sync_status == CloudSyncStatus.SYNCED

    def test_invalid_payment_never_sent(self, coordinator, store, remote, make_customer):
        payment = _payment(make_customer().id, 15, amount=-10.0)
        store.save(payment)
        with pytest.raises(ValidationError, match="must be positive"):
            coordinator.payments.upload(payment)
        assert remote.calls == []
        assert store.get("payment", payment.id).cloud_sync_status == CloudSyncStatus.FAILED

    def test_payments_for_customer(self, coordinator, store, make_customer):
        ada = make_customer()
        bob = make_customer(first_name="Bob")
        for day, amount in ((10, 20.0), (12, 30.5)):
            store.save(_payment(ada.id, day, amount=amount))
        store.save(_payment(bob.id, 11, amount=99.0))

        payments = coordinator.payments.payments_for_customer(ada.id)

        assert [p.amount for p in payments] == [30.5, 20.0]
        assert coordinator.payments.total_for_customer(ada.id) == 50.5
        assert coordinator.payments.total_for_customer("nobody") == 0


@pytest.fixture
def member(store, make_customer):
    member = LoyaltyMember(
        customer_id=make_customer().id,
        program_id="prog-1",
        total_points=100,
        available_points=40,
        lifetime_points=100,
    )
    store.save(member)
    return member


class TestLoyaltyMembers:
    def test_member_for_customer(self, coordinator, member):
        found = coordinator.loyalty_members.member_for_customer(member.customer_id)
        assert found.id == member.id
        assert coordinator.loyalty_members.member_for_customer("nobody") is None

    def test_award_points(self, coordinator, store, remote, member):
        updated = coordinator.loyalty_members.adjust_points(member.id, 25, reason="purchase")

        assert updated.available_points == 65
        assert updated.total_points == updated.lifetime_points == 125
        assert updated.last_activity_at is not None
        assert remote.row("loyalty_members", member.id)["available_points"] == 65
        assert remote.row("customers", member.customer_id) is not None
        assert store.get("loyalty_member", member.id).cloud_sync_status == CloudSyncStatus.SYNCED

    def test_redeem_only_touches_available_points(self, coordinator, member):
        updated = coordinator.loyalty_members.adjust_points(member.id, -40)
        assert (updated.available_points, updated.lifetime_points) == (0, 100)

    def test_cannot_redeem_more_than_available(self, coordinator, store, remote, member):
        with pytest.raises(ValidationError, match="Not enough points"):
            coordinator.loyalty_members.adjust_points(member.id, -41)
        assert remote.calls == []
        assert store.get("loyalty_member", member.id).available_points == 40

    def test_unknown_member(self, coordinator):
        with pytest.raises(ValidationError, match="not found"):
            coordinator.loyalty_members.adjust_points("ghost", 10)

    def test_offline_adjustment_queued(self, coordinator, store, remote, member):
        remote.offline = True
        coordinator.loyalty_members.adjust_points(member.id, 5)
        (op,) = coordinator.queue.pending_operations()
        assert (op.operation, op.entity_type, op.entity_id) == (
            OperationType.UPLOAD,
            "loyalty_member",
            member.id,
        )
        assert store.get("loyalty_member", member.id).available_points == 45
