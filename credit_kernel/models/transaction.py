"""
Module: credit_kernel.models.transaction
Responsibility: ORM persistence for the append-only credit transaction log.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/dtos.py only.

Invariants enforced:
    - Idempotency: ``idempotency_key`` (business_code and business_id
      joined by dtos.compose_key, so no two pairs share a key) is UNIQUE.
      At most one non-cancelled row exists per business event; cancelling
      a pending row clears its key.  The constraint, not a pre-check,
      closes the check-then-insert race.
    - Log order: ``seq`` is allocated from CreditAccount.last_seq under the
      account lock and is unique per account (uq_credit_tx_account_seq).
    - Apply order: ``applied_version`` is the account version produced by
      applying the row's effect; NULL until applied, unique per account.
    - Immutability: once status is terminal no column may change
      (db/immutability.py).  Rows are never deleted.
    - ``checksum`` covers the columns fixed at creation time
      (utils/hashing.py).
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from credit_kernel.db.base import Base, UTCDateTime, UUIDString
from credit_kernel.domain.dtos import TransactionStatus, TransactionType


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class CreditTransaction(Base):
    """
    One immutable ledger record.

    Frozen/Unfrozen rows leave before/after balance equal and carry the
    frozen-amount movement in before_frozen/after_frozen.
    """

    __tablename__ = "credit_transactions"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_credit_tx_idempotency"),
        UniqueConstraint("account_id", "seq", name="uq_credit_tx_account_seq"),
        UniqueConstraint("account_id", "applied_version", name="uq_credit_tx_applied_version"),
        Index("idx_credit_tx_business", "business_code", "business_id"),
        Index("idx_credit_tx_account_type", "account_id", "transaction_type"),
        Index("idx_credit_tx_created", "created_at"),
        Index("idx_credit_tx_source", "source_transaction_id"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_accounts.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credit_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(nullable=False)

    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(
            TransactionType,
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(nullable=False)
    before_balance: Mapped[int] = mapped_column(nullable=False)
    after_balance: Mapped[int] = mapped_column(nullable=False)
    before_frozen: Mapped[int] = mapped_column(nullable=False)
    after_frozen: Mapped[int] = mapped_column(nullable=False)

    business_code: Mapped[str] = mapped_column(String(64), nullable=False)
    business_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    applied_version: Mapped[int | None] = mapped_column(nullable=True)
    source_transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    remark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    batch_no: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Client that requested the operation
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    device: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Lot expiry, set on income only
    expiry_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    extra_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    complete_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction {self.id} {self.transaction_type} {self.amount} "
            f"{self.business_code}:{self.business_id} {self.status}>"
        )
