"""ORM models - accounts, the transaction log and audit records."""

from credit_kernel.models.account import CreditAccount
from credit_kernel.models.audit import AuditAction, AuditOutcome, AuditRecord
from credit_kernel.models.transaction import CreditTransaction

__all__ = [
    "CreditAccount",
    "CreditTransaction",
    "AuditRecord",
    "AuditAction",
    "AuditOutcome",
]
