"""
SettlementConfig schema.

Runtime tunables of the settlement workflow. The YAML file is the
human-authored source; the loader parses it into this frozen dataclass,
which is what services receive at construction time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

DEFAULT_CRITICAL_EVENTS: frozenset[str] = frozenset(
    f"{kind}.{action}"
    for kind in ("allocation", "banking", "lapse")
    for action in ("created", "updated", "deleted")
)


@dataclass(frozen=True)
class SettlementConfig:
    """Settlement coordinator, lease lock and notification settings."""

    # Lease lock hold ceiling; older leases count as abandoned.
    lock_timeout_seconds: float = 30.0
    # Upper bound on a single store write before it counts as a failure.
    write_timeout_seconds: float = 10.0
    batch_max_workers: int = 8
    notification_max_retries: int = 3
    notification_backoff_seconds: float = 0.1
    event_buffer_size: int = 100
    critical_events: frozenset[str] = field(default_factory=lambda: DEFAULT_CRITICAL_EVENTS)

    def __post_init__(self) -> None:
        object.__setattr__(self, "critical_events", frozenset(self.critical_events))
        errors: list[str] = []
        if self.lock_timeout_seconds <= 0:
            errors.append("lock_timeout_seconds must be positive")
        if self.write_timeout_seconds <= 0:
            errors.append("write_timeout_seconds must be positive")
        if self.batch_max_workers < 1:
            errors.append("batch_max_workers must be at least 1")
        if self.notification_max_retries < 0:
            errors.append("notification_max_retries must not be negative")
        if self.notification_backoff_seconds < 0:
            errors.append("notification_backoff_seconds must not be negative")
        if self.event_buffer_size < 1:
            errors.append("event_buffer_size must be at least 1")
        if errors:
            raise ValueError("Invalid settlement configuration: " + "; ".join(errors))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["critical_events"] = sorted(self.critical_events)
        return data

    def is_critical(self, event_type: str) -> bool:
        return event_type in self.critical_events
