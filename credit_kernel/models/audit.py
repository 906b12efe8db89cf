"""
Module: credit_kernel.models.audit
Responsibility: ORM persistence for the SQL audit sink.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).

Audit relevance:
    One row per state-changing ledger call (success, replay or failure),
    per detected inconsistency and per administrative action.  Written
    outside the ledger transaction so an audit failure never rolls back a
    ledger write.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from credit_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Ledger operations
    LEDGER_EXECUTE = "ledger_execute"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"

    # Account lifecycle
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    BALANCE_CORRECTED = "balance_corrected"

    # Background processes
    EXPIRATION_REVIEW = "expiration_review"

    # Violations
    INCONSISTENCY_DETECTED = "inconsistency_detected"
    INTEGRITY_FAILURE = "integrity_failure"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    REPLAYED = "replayed"
    FAILURE = "failure"
    DETECTED = "detected"


class AuditRecord(Base):
    """Append-only audit row."""

    __tablename__ = "credit_audit_records"

    __table_args__ = (
        Index("idx_credit_audit_account", "user_id", "credit_type_id"),
        Index("idx_credit_audit_action", "action", "occurred_at"),
    )

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)

    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credit_type_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    business_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    business_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    error_kind: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
