"""
energy_engines.tracer -- ENERGY_ENGINE_TRACE records for engine calls.

Responsibility:
    ``@traced_engine`` wraps a pure engine entry point and logs one
    structured record per call: engine name and version, a fingerprint of
    the selected inputs, the outcome and the elapsed time. Two runs over the
    same month inputs produce the same fingerprint, which makes reruns
    auditable from the logs alone.

Architecture position:
    Engines -- support for the pure calculation layer. Reads arguments and
    emits a log record; performs no other I/O and mutates nothing.

Invariants enforced:
    - Fingerprints are canonical JSON hashed with SHA-256: mapping keys are
      sorted, sequences keep their order, dataclasses reduce to their fields.
    - A failed call is traced with ``outcome="failed"`` and the exception
      propagates unchanged.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import inspect
import json
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

_logger = logging.getLogger("energy_kernel.engines.tracer")

FINGERPRINT_LENGTH = 16


def _plain(value: Any) -> Any:
    """Reduce a value to JSON-serializable primitives."""
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            "__type__": type(value).__name__,
            **{f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)},
        }
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """SHA-256 prefix over the named arguments; absent arguments hash as null."""
    document = {name: _plain(arguments.get(name)) for name in fingerprint_fields}
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Trace every call of the decorated engine function.

    Args:
        engine_name: Identifier used in the trace, e.g. "allocation_calculator".
        engine_version: Bumped whenever the engine's rules change.
        fingerprint_fields: Parameter names whose values feed the fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.perf_counter()
            outcome = "failed"
            try:
                result = func(*args, **kwargs)
                outcome = "completed"
                return result
            finally:
                _logger.info("ENERGY_ENGINE_TRACE", extra={
                    "trace_type": "ENERGY_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fingerprint,
                    "outcome": outcome,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                })

        return wrapper

    return decorator
