"""ORM models for the SQL ledger store adapter."""

from energy_kernel.models.ledger_item import LedgerItem

__all__ = ["LedgerItem"]
