"""
Transaction identifier generation.

Every mutating settlement call tags its writes with one transaction
identifier so the whole set can be rolled back together.

Format: ``tr-{12 hex chars of uuid4}-{unix millis}``
"""

import time
from uuid import uuid4

PREFIX = "tr"


def generate_transaction_id() -> str:
    """
    Generate a new transaction identifier.

    Example:
        >>> generate_transaction_id()
        'tr-3f2a9c1d0b7e-1743508800000'
    """
    return f"{PREFIX}-{uuid4().hex[:12]}-{int(time.time() * 1000)}"


def parse_transaction_id(value: str) -> tuple[str, int]:
    """
    Split a transaction identifier into (random part, millis).

    Raises:
        ValueError: If the identifier format is invalid.
    """
    parts = value.split("-")
    if len(parts) != 3 or parts[0] != PREFIX:
        raise ValueError(f"Invalid transaction id format: {value}")
    try:
        return parts[1], int(parts[2])
    except ValueError as exc:
        raise ValueError(f"Invalid transaction id format: {value}") from exc
