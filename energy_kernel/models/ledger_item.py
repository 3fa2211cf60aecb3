"""
LedgerItem -- one key-value row of the SQL ledger store.

Each row holds a complete entry item as a JSON document under its composite
key ``(partition, sort_key)``. ``version`` and ``transaction_id`` are
lifted into columns so conditional writes and rollback sweeps can filter
on them without parsing the payload.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from energy_kernel.db.base import Base


class LedgerItem(Base):
    """A stored entry item."""

    __tablename__ = "ledger_items"

    __table_args__ = (
        UniqueConstraint("partition", "sort_key", name="uq_ledger_items_key"),
        Index("idx_ledger_items_transaction", "transaction_id"),
    )

    partition: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_key: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LedgerItem {self.partition}/{self.sort_key} v{self.version}>"
