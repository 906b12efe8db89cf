"""
Display labels for the closed ledger variants.

Kept out of the engine: presentation layers look labels up here.  Every
table is exhaustive over its enum (checked at import time).
"""

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from credit_kernel.domain.credit_type import ExpirationPolicy
from credit_kernel.domain.dtos import TransactionStatus, TransactionType


def _exhaustive(enum_cls: type[Enum], labels: dict) -> Mapping:
    missing = set(enum_cls) - set(labels)
    if missing:
        raise RuntimeError(
            f"Missing labels for {enum_cls.__name__}: "
            f"{sorted(m.value for m in missing)}"
        )
    return MappingProxyType(labels)


TRANSACTION_TYPE_LABELS = _exhaustive(TransactionType, {
    TransactionType.INCOME: "Income",
    TransactionType.EXPENSE: "Expense",
    TransactionType.FROZEN: "Frozen",
    TransactionType.UNFROZEN: "Unfrozen",
    TransactionType.EXPIRED: "Expired",
})

TRANSACTION_STATUS_LABELS = _exhaustive(TransactionStatus, {
    TransactionStatus.PENDING: "Pending",
    TransactionStatus.COMPLETED: "Completed",
    TransactionStatus.FAILED: "Failed",
    TransactionStatus.CANCELLED: "Cancelled",
})

EXPIRATION_POLICY_LABELS = _exhaustive(ExpirationPolicy, {
    ExpirationPolicy.NEVER_EXPIRE: "Never expires",
    ExpirationPolicy.FIXED_DAYS: "Fixed number of days",
    ExpirationPolicy.FIXED_DATE: "Fixed date",
    ExpirationPolicy.END_OF_MONTH: "End of month",
    ExpirationPolicy.END_OF_QUARTER: "End of quarter",
    ExpirationPolicy.END_OF_YEAR: "End of year",
    ExpirationPolicy.FIFO: "First in, first out",
})


def label_for(value: Enum) -> str:
    """Label of any ledger enum member."""
    for table in (TRANSACTION_TYPE_LABELS, TRANSACTION_STATUS_LABELS, EXPIRATION_POLICY_LABELS):
        if value in table:
            return table[value]
    raise KeyError(f"No label for {value!r}")
