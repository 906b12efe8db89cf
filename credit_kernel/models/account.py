"""
Module: credit_kernel.models.account
Responsibility: ORM persistence for per-user, per-credit-type credit accounts.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced (checked by the writers, see credit_kernel.invariants):
    - balance == total_income - total_expense after every commit.
    - 0 <= frozen_amount <= balance.
    - version strictly increases with every write; last_seq counts appended
      transactions and is the source of their per-account ``seq``.
    - Exactly one row per (user_id, credit_type_id) (uq_credit_account_owner).
    - Rows are never deleted, only deactivated (db/immutability.py).
"""

from sqlalchemy import Boolean, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credit_kernel.db.base import TimestampedBase
from credit_kernel.domain.dtos import AccountRef


class CreditAccount(TimestampedBase):
    """
    Credit account for one (user, credit type) pair.

    Created lazily on first operation (get-or-create).  Mutated only through
    AccountStore.update_with_version, which conditions every write on the
    version the writer read.
    """

    __tablename__ = "credit_accounts"

    __table_args__ = (
        UniqueConstraint("user_id", "credit_type_id", name="uq_credit_account_owner"),
        Index("idx_credit_account_type", "credit_type_id", "is_active"),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credit_type_id: Mapped[str] = mapped_column(String(64), nullable=False)

    balance: Mapped[int] = mapped_column(default=0, nullable=False)
    frozen_amount: Mapped[int] = mapped_column(default=0, nullable=False)
    total_income: Mapped[int] = mapped_column(default=0, nullable=False)
    total_expense: Mapped[int] = mapped_column(default=0, nullable=False)

    version: Mapped[int] = mapped_column(default=0, nullable=False)
    last_seq: Mapped[int] = mapped_column(default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def available_balance(self) -> int:
        return self.balance - self.frozen_amount

    @property
    def ref(self) -> AccountRef:
        return AccountRef(self.user_id, self.credit_type_id)

    def __repr__(self) -> str:
        return (
            f"<CreditAccount {self.user_id}/{self.credit_type_id} "
            f"balance={self.balance} frozen={self.frozen_amount} v{self.version}>"
        )
