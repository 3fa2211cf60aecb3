"""
energy_config -- single public entrypoint for settlement configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``load_settlement_config()``. Services receive the resulting
    ``SettlementConfig`` at construction and never read files or
    environment variables themselves.

Architecture position:
    Configuration. Sits above ``energy_kernel`` and ``energy_engines`` and
    below ``energy_services``. The kernel and the engines MUST NEVER import
    from ``energy_config``.

Failure modes:
    - ``FileNotFoundError`` -- an explicit or environment-supplied path
      does not exist.
    - ``ValueError`` -- unknown keys, wrong types or out-of-range values.

Audit relevance:
    Every successful load emits an ``ENERGY_CONFIG_TRACE`` log entry with
    the source and checksum of the active configuration.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from energy_config.loader import compute_checksum, load_yaml_file, parse_settlement_config
from energy_config.schema import DEFAULT_CRITICAL_EVENTS, SettlementConfig

_logger = logging.getLogger("energy_kernel.config")

CONFIG_PATH_ENV = "ENERGY_SETTLEMENT_CONFIG"


def load_settlement_config(path: str | Path | None = None) -> SettlementConfig:
    """
    Load the active settlement configuration.

    Resolution order: explicit ``path``, then ``$ENERGY_SETTLEMENT_CONFIG``,
    then built-in defaults.
    """
    source = path or os.environ.get(CONFIG_PATH_ENV)
    if source:
        config = parse_settlement_config(load_yaml_file(Path(source)))
    else:
        config = SettlementConfig()

    _logger.info(
        "ENERGY_CONFIG_TRACE",
        extra={
            "trace_type": "ENERGY_CONFIG_TRACE",
            "config_source": str(source) if source else "defaults",
            "checksum": config_checksum(config),
        },
    )
    return config


def config_checksum(config: SettlementConfig) -> str:
    """Deterministic identity of a configuration."""
    return compute_checksum(config.to_dict())


__all__ = [
    "CONFIG_PATH_ENV",
    "DEFAULT_CRITICAL_EVENTS",
    "SettlementConfig",
    "config_checksum",
    "load_settlement_config",
]
