"""
Config -> Kernel Bridges.

Functions that convert a CreditLedgerConfig into kernel inputs.  They
live in credit_config (the producer) because the kernel must never
import credit_config.

Usage:
    from credit_config import get_active_config
    from credit_config.bridges import build_credit_type_catalog, build_engine_options

    config = get_active_config()
    engine = LedgerEngine(
        session_factory,
        build_credit_type_catalog(config),
        options=build_engine_options(config),
    )
"""

from __future__ import annotations

from credit_config.schema import CreditLedgerConfig, CreditTypeDef
from credit_kernel.domain.credit_type import (
    CreditType,
    ExpirationPolicy,
    InMemoryCreditTypeCatalog,
)
from credit_kernel.logging_config import configure_logging
from credit_kernel.services.ledger_engine import LedgerEngineOptions


def build_credit_type(definition: CreditTypeDef) -> CreditType:
    return CreditType(
        id=definition.id,
        code=definition.code,
        name=definition.name,
        expiration_policy=ExpirationPolicy(definition.expiration_policy),
        validity_period=definition.validity_period,
        fixed_expiry_date=definition.fixed_expiry_date,
        is_valid=definition.is_valid,
        unit_name=definition.unit_name,
        description=definition.description or "",
        attributes=dict(definition.attributes),
    )


def build_credit_type_catalog(config: CreditLedgerConfig) -> InMemoryCreditTypeCatalog:
    """Catalog holding every credit type of the configuration set."""
    return InMemoryCreditTypeCatalog(build_credit_type(d) for d in config.credit_types)


def build_engine_options(config: CreditLedgerConfig) -> LedgerEngineOptions:
    ledger = config.ledger
    return LedgerEngineOptions(
        lock_timeout_seconds=ledger.lock_timeout_seconds,
        version_retry_limit=ledger.version_retry_limit,
        strict_replay=ledger.strict_replay,
    )


def build_engine_kwargs(config: CreditLedgerConfig) -> dict:
    """Keyword arguments for ``credit_kernel.db.engine.init_engine_from_url``."""
    database = config.database
    return {
        "database_url": database.url,
        "echo": database.echo,
        "pool_size": database.pool_size,
        "max_overflow": database.max_overflow,
    }


def configure_logging_from_config(config: CreditLedgerConfig, **kwargs) -> None:
    """``configure_logging`` at the configured level; kwargs pass through."""
    configure_logging(level=config.logging.level, **kwargs)
