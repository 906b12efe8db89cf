"""Services for the credit kernel (write side)."""

from credit_kernel.services.account_lock import AccountLockRegistry, LockHandle
from credit_kernel.services.account_store import AccountStore
from credit_kernel.services.audit_trail import (
    AuditEntry,
    AuditSink,
    AuditTrail,
    LoggingAuditSink,
    MemoryAuditSink,
    SqlAuditSink,
)
from credit_kernel.services.ledger_engine import LedgerEngine, LedgerEngineOptions
from credit_kernel.services.transaction_log import TransactionLog

__all__ = [
    "AccountLockRegistry",
    "AccountStore",
    "AuditEntry",
    "AuditSink",
    "AuditTrail",
    "LedgerEngine",
    "LedgerEngineOptions",
    "LockHandle",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "SqlAuditSink",
    "TransactionLog",
]
