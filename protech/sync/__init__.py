"""Offline-first sync: entity syncers, offline queue and coordinator."""

from protech.sync.coordinator import SYNC_ORDER, SyncCoordinator
from protech.sync.queue import OfflineQueue
from protech.sync.syncer import EntitySyncer
from protech.sync.syncers import (
    AppointmentSyncer,
    CustomerSyncer,
    EmployeeSyncer,
    InventorySyncer,
    LoyaltyMemberSyncer,
    PaymentSyncer,
    TicketSyncer,
    TimeClockSyncer,
)

__all__ = [
    "AppointmentSyncer",
    "CustomerSyncer",
    "EmployeeSyncer",
    "EntitySyncer",
    "InventorySyncer",
    "LoyaltyMemberSyncer",
    "OfflineQueue",
    "PaymentSyncer",
    "SYNC_ORDER",
    "SyncCoordinator",
    "TicketSyncer",
    "TimeClockSyncer",
]
