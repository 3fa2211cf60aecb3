"""
Configuration Loader (``energy_config.loader``).

Responsibility
--------------
Loads the settlement YAML file and parses it into the frozen
``SettlementConfig`` dataclass.

Architecture position
---------------------
**Config layer**. Consumed by ``energy_config.load_settlement_config``.
Has no dependency on the kernel, engines or services.

Invariants enforced
-------------------
* Unknown keys are rejected with ``ValueError``; a typo never silently
  falls back to a default.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing YAML file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
* Wrong value types or out-of-range values -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from energy_config.schema import SettlementConfig

_INT_FIELDS = ("batch_max_workers", "notification_max_retries", "event_buffer_size")
_FLOAT_FIELDS = (
    "lock_timeout_seconds",
    "write_timeout_seconds",
    "notification_backoff_seconds",
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict (empty if blank)."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def parse_settlement_config(data: dict[str, Any]) -> SettlementConfig:
    """
    Parse a SettlementConfig from a dict.

    Accepts either the bare settings or a document with a top-level
    ``settlement:`` section.
    """
    section = data.get("settlement", data)
    if not isinstance(section, dict):
        raise ValueError("settlement section must be a mapping")

    known = {f.name for f in fields(SettlementConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown settlement settings: {', '.join(unknown)}")

    kwargs: dict[str, Any] = {}
    for name in _INT_FIELDS:
        if name in section:
            value = section[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            kwargs[name] = value
    for name in _FLOAT_FIELDS:
        if name in section:
            value = section[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
            kwargs[name] = float(value)
    if "critical_events" in section:
        events = section["critical_events"]
        if not isinstance(events, list) or not all(isinstance(e, str) for e in events):
            raise ValueError("critical_events must be a list of event type strings")
        kwargs["critical_events"] = frozenset(events)

    return SettlementConfig(**kwargs)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
