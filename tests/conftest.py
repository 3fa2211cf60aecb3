"""
Pytest fixtures for the energy settlement test suite.

Provides:
- Structured logging setup and log capture
- Deterministic clock
- In-memory ledger store, lease lock and recording notification sink
- A coordinator factory wired from those collaborators
- Record builders for production / consumption inputs
"""

import json
import logging
from io import StringIO

import pytest

from energy_config import SettlementConfig
from energy_kernel.domain.clock import DeterministicClock
from energy_kernel.domain.records import ConsumptionRecord, ProductionRecord
from energy_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from energy_services.lease_lock import InProcessLeaseLock
from energy_services.ledger_store import InMemoryLedgerStore
from energy_services.notification_sink import InProcessNotificationSink, NotificationPublisher
from energy_services.settlement_coordinator import SettlementCoordinator

TEST_MONTH = "042025"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture energy_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.create_allocation(...)
            logs = captured_logs()
            assert any(r["message"] == "settlement_entry_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("energy_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Clock / config
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def settlement_config():
    return SettlementConfig(write_timeout_seconds=5.0, notification_backoff_seconds=0.0)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def lease_lock(deterministic_clock, settlement_config):
    return InProcessLeaseLock(
        clock=deterministic_clock,
        timeout_seconds=settlement_config.lock_timeout_seconds,
    )


@pytest.fixture
def sink(deterministic_clock):
    return InProcessNotificationSink(buffer_size=100, clock=deterministic_clock)


@pytest.fixture
def sleeps():
    """Backoff delays requested by the notification publisher."""
    return []


@pytest.fixture
def make_coordinator(store, lease_lock, sink, deterministic_clock, settlement_config, sleeps):
    """
    Factory for coordinators sharing the test collaborators.

    Any collaborator can be overridden, e.g. a failing store wrapper.
    """

    def _make(**overrides):
        config = overrides.pop("config", settlement_config)
        notifier = overrides.pop("notifier", sink)
        publisher = NotificationPublisher(
            notifier,
            critical_events=config.critical_events,
            max_retries=config.notification_max_retries,
            backoff_seconds=config.notification_backoff_seconds,
            sleep=sleeps.append,
        )
        return SettlementCoordinator(
            store=overrides.pop("store", store),
            lock=overrides.pop("lock", lease_lock),
            notifier=publisher,
            clock=overrides.pop("clock", deterministic_clock),
            config=config,
            **overrides,
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


# =============================================================================
# Record builders
# =============================================================================


@pytest.fixture
def solar():
    def _make(site_id, month=TEST_MONTH, **units):
        return ProductionRecord(site_id, "solar", month, units)

    return _make


@pytest.fixture
def wind():
    def _make(site_id, month=TEST_MONTH, banking=False, **units):
        return ProductionRecord(site_id, "wind", month, units, banking_eligible=banking)

    return _make


@pytest.fixture
def demand():
    def _make(site_id, month=TEST_MONTH, percentage=None, **units):
        return ConsumptionRecord(site_id, month, units, allocation_percentage=percentage)

    return _make
