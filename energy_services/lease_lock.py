"""
Lease locks -- time-bounded exclusive claims on production sites.

Responsibility:
    Fail fast when two mutating calls target the same production site.
    A lease is not a mutex: it self-expires after ``timeout_seconds`` so a
    crashed caller can never deadlock the site.

Architecture position:
    Services -- imperative shell. The coordinator depends on the
    ``LeaseLock`` interface only, so a store-backed distributed lease can
    replace ``InProcessLeaseLock`` without touching its call sites.

Invariants enforced:
    - At most one unexpired lease per resource.
    - A lease older than the timeout is abandoned and may be taken over.
    - Only the holder can release its lease.

Failure modes:
    - LockError from ``acquire`` when an unexpired lease is held by
      another holder. Callers retry; acquire never blocks.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from energy_kernel.domain.clock import Clock, SystemClock
from energy_kernel.exceptions import LockError
from energy_kernel.logging_config import get_logger

logger = get_logger("services.lease_lock")


@dataclass(frozen=True)
class Lease:
    resource_id: str
    holder: str
    acquired_at: datetime


class LeaseLock(ABC):
    """Lease-with-timeout contract used by the settlement coordinator."""

    @abstractmethod
    def acquire(self, resource_id: str, holder: str) -> Lease:
        """Take the lease or raise LockError."""

    @abstractmethod
    def release(self, resource_id: str, holder: str) -> bool:
        """Release the lease if ``holder`` owns it. Returns whether it did."""

    @abstractmethod
    def is_locked(self, resource_id: str) -> bool:
        """True if an unexpired lease exists."""

    def acquire_all(self, resource_ids: Iterable[str], holder: str) -> list[str]:
        """
        Acquire several leases in sorted order, all or nothing.

        On failure every lease taken by this call is released before the
        LockError propagates.
        """
        acquired: list[str] = []
        try:
            for resource_id in sorted(set(resource_ids)):
                self.acquire(resource_id, holder)
                acquired.append(resource_id)
        except LockError:
            self.release_all(acquired, holder)
            raise
        return acquired

    def release_all(self, resource_ids: Iterable[str], holder: str) -> None:
        for resource_id in resource_ids:
            self.release(resource_id, holder)


class InProcessLeaseLock(LeaseLock):
    """
    Process-local lease table.

    Contract:
        Constructed explicitly and passed to the coordinator; there is no
        module-level lock table.
    Non-goals:
        - No cross-process coordination. The store's conditional writes
          remain the correctness guard.
    """

    def __init__(self, clock: Clock | None = None, timeout_seconds: float = 30.0):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._clock = clock or SystemClock()
        self._timeout = timedelta(seconds=timeout_seconds)
        self._leases: dict[str, Lease] = {}
        self._mutex = threading.Lock()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout.total_seconds()

    def acquire(self, resource_id: str, holder: str) -> Lease:
        now = self._clock.now()
        with self._mutex:
            current = self._leases.get(resource_id)
            if current is not None and current.holder != holder:
                if now - current.acquired_at < self._timeout:
                    logger.info("lease_contended", extra={
                        "resource_id": resource_id,
                        "holder": current.holder,
                    })
                    raise LockError(resource_id, holder=current.holder)
                logger.warning("lease_expired_taken_over", extra={
                    "resource_id": resource_id,
                    "previous_holder": current.holder,
                    "held_seconds": self._clock.seconds_since(current.acquired_at),
                })
            lease = Lease(resource_id=resource_id, holder=holder, acquired_at=now)
            self._leases[resource_id] = lease
        logger.debug("lease_acquired", extra={"resource_id": resource_id, "holder": holder})
        return lease

    def release(self, resource_id: str, holder: str) -> bool:
        with self._mutex:
            current = self._leases.get(resource_id)
            if current is None or current.holder != holder:
                return False
            del self._leases[resource_id]
        logger.debug("lease_released", extra={"resource_id": resource_id, "holder": holder})
        return True

    def is_locked(self, resource_id: str) -> bool:
        now = self._clock.now()
        with self._mutex:
            current = self._leases.get(resource_id)
            return current is not None and now - current.acquired_at < self._timeout

    def holder_of(self, resource_id: str) -> str | None:
        with self._mutex:
            current = self._leases.get(resource_id)
            return current.holder if current else None
