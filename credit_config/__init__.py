"""
credit_config -- single public entrypoint for ledger configuration.

Responsibility:
    Provides the only way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven settings and reference data.  Sits above
    ``credit_kernel`` and below ``credit_services``.  The kernel never
    imports ``credit_config``; ``credit_config.bridges`` translates a
    loaded set into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the resolved configuration file is missing.
    - ``ValueError`` / ``KeyError`` -- schema or value validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``credit_config_loaded`` log entry with the config id, version and
    checksum, tying ledger activity to the configuration that governed it.
"""

from __future__ import annotations

import os
from pathlib import Path

from credit_config.loader import compute_checksum, load_config
from credit_config.schema import (
    CreditLedgerConfig,
    CreditTypeDef,
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
)
from credit_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_ENV_VAR = "CREDIT_LEDGER_CONFIG"

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Argument, then ``$CREDIT_LEDGER_CONFIG``, then the packaged default set."""
    if path is not None:
        return Path(path)
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return _DEFAULT_CONFIG_FILE


def get_active_config(path: Path | str | None = None) -> CreditLedgerConfig:
    """The only public configuration entrypoint.

    Guarantees:
        - The returned config has passed schema and value validation.
        - A ``credit_config_loaded`` log entry is emitted on every call.

    Non-goals:
        Does not cache; callers hold the returned config for as long as
        they need it.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
        KeyError: If a required key is missing.
    """
    config_path = resolve_config_path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Credit ledger configuration not found: {config_path}")

    config = load_config(config_path)

    _logger.info(
        "credit_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(config_path),
            "credit_type_count": len(config.credit_types),
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "CreditLedgerConfig",
    "CreditTypeDef",
    "DatabaseSettings",
    "LedgerSettings",
    "LoggingSettings",
    "compute_checksum",
    "get_active_config",
    "resolve_config_path",
]
