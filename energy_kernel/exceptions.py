"""
Typed Exception Hierarchy for the Energy Allocation Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Settlement callers must react differently to different failures: a
validation problem is the caller's fault and must not be retried, a lease
held by another caller should be retried shortly, a version conflict means
"re-read and try again", and a store failure has already been rolled back.

Every exception therefore:
  1. Has its own class (catch by type, not message)
  2. Carries a ``code`` class attribute (machine-readable, API-safe)
  3. Stores its context as attributes (not just a message string)

Example:
    try:
        coordinator.update_allocation(entry_id, patch, expected_version=3)
    except VersionConflictError as e:
        entry = store.get(e.entity_key)        # re-read
    except LockError as e:
        retry_later(e.resource_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EnergyLedgerError (base)
    |
    +-- ValidationError
    |
    +-- LockError
    |
    +-- ConcurrencyError
    |   +-- VersionConflictError
    |       +-- EntryAlreadyExistsError
    |
    +-- NotFoundError
    |
    +-- StoreError
        +-- ConditionFailedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                  | When Raised
----------------------|-----------------------------------------------------
VALIDATION_ERROR      | Malformed candidate / record, never reaches the store
RESOURCE_LOCKED       | Production site lease held by another transaction
VERSION_CONFLICT      | Supplied version does not match the stored version
ENTRY_ALREADY_EXISTS  | Create of an allocation/lapse that already exists
ENTRY_NOT_FOUND       | Referenced entry absent
STORE_ERROR           | Underlying store failure (triggers rollback)
CONDITION_FAILED      | Store-level conditional write rejected

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ValidationError -> report field_errors to the caller, no retry.
2. LockError -> retry after a short delay; the lease expires on its own.
3. VersionConflictError -> re-read the entry and resubmit.
4. StoreError -> the coordinator has already rolled back every write of
   the failed transaction; the caller may retry the whole operation.
"""

from __future__ import annotations

from typing import Any


class EnergyLedgerError(Exception):
    """
    Base exception for all energy ledger errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ENERGY_LEDGER_ERROR"


# Validation


class ValidationError(EnergyLedgerError):
    """
    Input failed boundary validation.

    ``field_errors`` is a list of ``{"field": ..., "message": ...}`` dicts,
    one per problem, so callers can report everything at once.
    """

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: list[dict[str, Any]] | None = None):
        self.field_errors = list(field_errors or [])
        super().__init__(message)

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        """Build an error carrying a single field problem."""
        return cls(f"{field}: {message}", [{"field": field, "message": message}])


# Locking


class LockError(EnergyLedgerError):
    """Resource is held under an unexpired lease by another transaction."""

    code: str = "RESOURCE_LOCKED"

    def __init__(self, resource_id: str, holder: str | None = None):
        self.resource_id = resource_id
        self.holder = holder
        super().__init__(
            f"Resource {resource_id} is locked by another transaction"
        )


# Concurrency


class ConcurrencyError(EnergyLedgerError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class VersionConflictError(ConcurrencyError):
    """Optimistic concurrency mismatch: the entry changed since it was read."""

    code: str = "VERSION_CONFLICT"

    def __init__(
        self,
        entity_key: str,
        expected_version: int | None,
        actual_version: int | None,
    ):
        self.entity_key = entity_key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {entity_key}: "
            f"expected {expected_version}, found {actual_version}"
        )


class EntryAlreadyExistsError(VersionConflictError):
    """Create was attempted for an entry that already exists."""

    code: str = "ENTRY_ALREADY_EXISTS"

    def __init__(self, entity_key: str, actual_version: int | None = None):
        super().__init__(entity_key, None, actual_version)
        self.args = (f"Entry already exists: {entity_key}",)


# Lookup


class NotFoundError(EnergyLedgerError):
    """Referenced entry does not exist."""

    code: str = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Entry not found: {entry_id}")


# Store


class StoreError(EnergyLedgerError):
    """
    Underlying ledger store failure, transient or permanent.

    Raised by store adapters (wrapping driver errors) and by the
    coordinator when a write times out.
    """

    code: str = "STORE_ERROR"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        entity_key: str | None = None,
    ):
        self.operation = operation
        self.entity_key = entity_key
        super().__init__(message)


class ConditionFailedError(StoreError):
    """A conditional write (if_absent / if_version) was rejected by the store."""

    code: str = "CONDITION_FAILED"

    def __init__(
        self,
        entity_key: str,
        operation: str = "put",
        actual_version: int | None = None,
    ):
        self.actual_version = actual_version
        super().__init__(
            f"Conditional {operation} failed for {entity_key}",
            operation=operation,
            entity_key=entity_key,
        )
