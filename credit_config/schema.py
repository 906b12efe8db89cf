"""
Credit ledger configuration schema.

The human-authored source artifact: YAML configuration sets are parsed
into these frozen types by the loader and handed to the kernel through
the bridges.  Nothing in here executes ledger logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    """Tunables of the ledger engine and its background callers."""

    lock_timeout_seconds: float = 5.0
    version_retry_limit: int = 3
    strict_replay: bool = False
    expiring_soon_days: int = 30
    batch_size: int = 500

    def __post_init__(self) -> None:
        if self.lock_timeout_seconds < 0:
            raise ValueError(
                f"lock_timeout_seconds must be >= 0, got {self.lock_timeout_seconds}"
            )
        if self.version_retry_limit < 1:
            raise ValueError(
                f"version_retry_limit must be >= 1, got {self.version_retry_limit}"
            )
        if self.expiring_soon_days < 0:
            raise ValueError(
                f"expiring_soon_days must be >= 0, got {self.expiring_soon_days}"
            )
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///credit_ledger.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreditTypeDef:
    """One credit type of the catalog, as authored in YAML."""

    id: str
    code: str
    name: str
    expiration_policy: str = "never_expire"
    validity_period: int | None = None
    fixed_expiry_date: date | None = None
    is_valid: bool = True
    unit_name: str = "points"
    description: str | None = None
    attributes: tuple[tuple[str, Any], ...] = ()


# ---------------------------------------------------------------------------
# Configuration set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreditLedgerConfig:
    """
    A complete, parsed configuration set.

    ``checksum`` is the SHA-256 of the canonical parsed source and
    identifies the configuration in logs and audit entries.
    """

    config_id: str
    version: int
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    credit_types: tuple[CreditTypeDef, ...] = ()
    checksum: str = ""

    def credit_type(self, credit_type_id: str) -> CreditTypeDef | None:
        for definition in self.credit_types:
            if definition.id == credit_type_id:
                return definition
        return None
