"""Pure domain layer: value types, expiry policy and the lot fold. Zero I/O."""

from credit_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from credit_kernel.domain.credit_type import (
    CreditType,
    CreditTypeCatalog,
    ExpirationPolicy,
    InMemoryCreditTypeCatalog,
)
from credit_kernel.domain.dtos import (
    VALID_STATUS_TRANSITIONS,
    AccountRecord,
    AccountRef,
    BatchResult,
    ExecutionResult,
    LedgerOperation,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from credit_kernel.domain.expiry import compute_expiry_time
from credit_kernel.domain.lots import LotBook

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CreditType",
    "CreditTypeCatalog",
    "ExpirationPolicy",
    "InMemoryCreditTypeCatalog",
    "VALID_STATUS_TRANSITIONS",
    "AccountRecord",
    "AccountRef",
    "BatchResult",
    "ExecutionResult",
    "LedgerOperation",
    "TransactionRecord",
    "TransactionStatus",
    "TransactionType",
    "compute_expiry_time",
    "LotBook",
]
