"""
energy_services -- imperative shell of the settlement system.

Composes the pure allocation engine with the ledger store, lease locks and
notification sink. Everything here is constructed explicitly and injected;
there are no module-level service singletons.

Usage:
    from energy_services import (
        InMemoryLedgerStore, InProcessLeaseLock, InProcessNotificationSink,
        SettlementCoordinator,
    )

    coordinator = SettlementCoordinator(
        store=InMemoryLedgerStore(),
        lock=InProcessLeaseLock(timeout_seconds=config.lock_timeout_seconds),
        notifier=InProcessNotificationSink(buffer_size=config.event_buffer_size),
        config=config,
    )
"""

from energy_services.lease_lock import InProcessLeaseLock, Lease, LeaseLock
from energy_services.ledger_store import InMemoryLedgerStore, LedgerStore
from energy_services.notification_sink import (
    BufferedEvent,
    InProcessNotificationSink,
    NotificationPublisher,
    NotificationSink,
)
from energy_services.settlement_coordinator import (
    BatchResult,
    SettlementCoordinator,
    SettlementResult,
)
from energy_services.settlement_query import MonthSettlement, SettlementQueryService
from energy_services.sql_ledger_store import SqlLedgerStore
from energy_services.transaction import TransactionRecord

__all__ = [
    "BatchResult",
    "BufferedEvent",
    "InMemoryLedgerStore",
    "InProcessLeaseLock",
    "InProcessNotificationSink",
    "Lease",
    "LeaseLock",
    "LedgerStore",
    "MonthSettlement",
    "NotificationPublisher",
    "NotificationSink",
    "SettlementCoordinator",
    "SettlementQueryService",
    "SettlementResult",
    "SqlLedgerStore",
    "TransactionRecord",
]
