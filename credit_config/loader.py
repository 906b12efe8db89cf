"""
Configuration Loader (``credit_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the frozen dataclasses
of ``credit_config.schema``.  Runtime callers use
``credit_config.get_active_config()``; this module is its parsing back end
and test tooling.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Credit type ids are unique within a set.
* ``compute_checksum`` is deterministic for identical parsed input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid values (dates, policies, bounds)  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from pathlib import Path
from typing import Any

import yaml

from credit_config.schema import (
    CreditLedgerConfig,
    CreditTypeDef,
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
)

_POLICIES = frozenset({
    "never_expire",
    "fixed_days",
    "fixed_date",
    "end_of_month",
    "end_of_quarter",
    "end_of_year",
    "fifo",
})

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_ledger_settings(data: dict[str, Any]) -> LedgerSettings:
    defaults = LedgerSettings()
    return LedgerSettings(
        lock_timeout_seconds=float(data.get("lock_timeout_seconds", defaults.lock_timeout_seconds)),
        version_retry_limit=int(data.get("version_retry_limit", defaults.version_retry_limit)),
        strict_replay=bool(data.get("strict_replay", defaults.strict_replay)),
        expiring_soon_days=int(data.get("expiring_soon_days", defaults.expiring_soon_days)),
        batch_size=int(data.get("batch_size", defaults.batch_size)),
    )


def parse_database_settings(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=data.get("url", defaults.url),
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=int(data.get("pool_size", defaults.pool_size)),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
    )


def parse_logging_settings(data: dict[str, Any]) -> LoggingSettings:
    level = str(data.get("level", LoggingSettings().level)).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {sorted(_LOG_LEVELS)}")
    return LoggingSettings(level=level)


def parse_credit_type(data: dict[str, Any]) -> CreditTypeDef:
    """
    Parse a ``CreditTypeDef`` from a dict.

    Raises:
        KeyError: if ``id``, ``code`` or ``name`` is missing.
        ValueError: on an unknown policy, a negative validity period, or a
            FIXED_DATE type without ``fixed_expiry_date``.
    """
    policy = str(data.get("expiration_policy", "never_expire")).lower()
    if policy not in _POLICIES:
        raise ValueError(
            f"Credit type {data.get('id')!r}: unknown expiration_policy {policy!r}"
        )

    validity = data.get("validity_period")
    if validity is not None:
        validity = int(validity)
        if validity < 0:
            raise ValueError(
                f"Credit type {data.get('id')!r}: validity_period must be >= 0, got {validity}"
            )

    fixed = parse_date(data["fixed_expiry_date"]) if data.get("fixed_expiry_date") else None
    if policy == "fixed_date" and fixed is None:
        raise ValueError(
            f"Credit type {data.get('id')!r}: fixed_date policy needs fixed_expiry_date"
        )

    attributes = data.get("attributes") or {}
    return CreditTypeDef(
        id=str(data["id"]),
        code=str(data["code"]),
        name=str(data["name"]),
        expiration_policy=policy,
        validity_period=validity,
        fixed_expiry_date=fixed,
        is_valid=bool(data.get("is_valid", True)),
        unit_name=str(data.get("unit_name", "points")),
        description=data.get("description"),
        attributes=tuple(sorted(attributes.items())),
    )


def parse_config(data: dict[str, Any]) -> CreditLedgerConfig:
    """Parse a whole configuration set and stamp it with its checksum."""
    credit_types = tuple(parse_credit_type(d) for d in data.get("credit_types", []))

    seen: set[str] = set()
    for definition in credit_types:
        if definition.id in seen:
            raise ValueError(f"Duplicate credit type id {definition.id!r}")
        seen.add(definition.id)

    return CreditLedgerConfig(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        ledger=parse_ledger_settings(data.get("ledger") or {}),
        database=parse_database_settings(data.get("database") or {}),
        logging=parse_logging_settings(data.get("logging") or {}),
        credit_types=credit_types,
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> CreditLedgerConfig:
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
