"""
Module: energy_kernel.db.base
Responsibility: Declarative base shared by the ledger ORM models.
Architecture position: Kernel > DB. Imported by models/ only; knows nothing
    about domain entries.

Invariants enforced:
    - Row ids are uuid4 strings generated client-side, so an insert never
      depends on dialect-specific autoincrement behaviour.
    - Timestamps are timezone-aware; versions are BigInteger.
    - Constraint names follow one naming convention on every dialect.
"""

from datetime import datetime
from typing import Any, ClassVar
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "pk": "pk_%(table_name)s",
}


def new_row_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Declarative base: string uuid primary key plus the ledger type map."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict[Any, Any]] = {
        datetime: DateTime(timezone=True),
        int: BigInteger,
        dict[str, Any]: JSON,
    }

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_row_id)
