"""
Module: credit_kernel.selectors.account_selector
Responsibility: Read-only account queries: lookups by owner or credit type,
    batch reads, point-in-time snapshots and expiring-credit listings.
Architecture position: Kernel > Selectors.

Audit relevance:
    ``snapshot`` recomputes balances from the transaction log as of a given
    instant, beside the stored figures, for audit inspection.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select, tuple_

from credit_kernel.domain.clock import as_utc
from credit_kernel.domain.dtos import (
    AccountRecord,
    AccountRef,
    TransactionRecord,
    TransactionStatus,
)
from credit_kernel.domain.effects import fold_state
from credit_kernel.domain.lots import ExpirableLot, LotBook
from credit_kernel.exceptions import AccountNotFoundError, InvalidParameterError
from credit_kernel.models.account import CreditAccount
from credit_kernel.models.transaction import CreditTransaction
from credit_kernel.selectors.base import BaseSelector, Page, check_paging

ExpiryFn = Callable[[datetime], datetime | None]


@dataclass(frozen=True)
class LotView:
    transaction_id: UUID
    created_at: datetime
    amount: int
    remaining: int
    held: int
    expiry_time: datetime | None
    expired: bool


@dataclass(frozen=True)
class AccountSnapshot:
    """Stored account figures beside the log-derived ones as of ``as_of``."""

    account: AccountRecord
    as_of: datetime
    balance: int
    frozen_amount: int
    total_income: int
    total_expense: int
    transaction_count: int
    lots: tuple[LotView, ...]

    @property
    def available_balance(self) -> int:
        return self.balance - self.frozen_amount


class AccountSelector(BaseSelector):
    """Read-only account queries."""

    def get(self, ref: AccountRef) -> AccountRecord | None:
        account = self.session.execute(
            select(CreditAccount).where(
                CreditAccount.user_id == ref.user_id,
                CreditAccount.credit_type_id == ref.credit_type_id,
            )
        ).scalar_one_or_none()
        return AccountRecord.from_model(account) if account else None

    def get_by_id(self, account_id: UUID) -> AccountRecord | None:
        account = self.session.get(CreditAccount, account_id)
        return AccountRecord.from_model(account) if account else None

    def list_by_user(self, user_id: str) -> list[AccountRecord]:
        rows = self.session.execute(
            select(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .order_by(CreditAccount.credit_type_id)
        ).scalars()
        return [AccountRecord.from_model(a) for a in rows]

    def list_by_credit_type(
        self,
        credit_type_id: str,
        only_active: bool = True,
        page: int = 1,
        page_size: int = 50,
    ) -> Page[AccountRecord]:
        check_paging(page, page_size)
        conditions = [CreditAccount.credit_type_id == credit_type_id]
        if only_active:
            conditions.append(CreditAccount.is_active.is_(True))

        total = self.session.execute(
            select(func.count()).select_from(CreditAccount).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(CreditAccount)
            .where(*conditions)
            .order_by(CreditAccount.user_id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        return Page(
            items=tuple(AccountRecord.from_model(a) for a in rows),
            page=page,
            page_size=page_size,
            total=total,
        )

    def refs_by_credit_type(
        self,
        credit_type_id: str,
        after_user_id: str | None = None,
        limit: int = 500,
        only_active: bool = False,
    ) -> list[AccountRef]:
        """Keyset page of account refs, ordered by user id."""
        stmt = select(CreditAccount.user_id).where(
            CreditAccount.credit_type_id == credit_type_id
        )
        if only_active:
            stmt = stmt.where(CreditAccount.is_active.is_(True))
        if after_user_id is not None:
            stmt = stmt.where(CreditAccount.user_id > after_user_id)
        stmt = stmt.order_by(CreditAccount.user_id).limit(limit)
        return [AccountRef(user_id, credit_type_id) for user_id in self.session.execute(stmt).scalars()]

    def refs_page(self, after: AccountRef | None = None, limit: int = 500) -> list[AccountRef]:
        """Keyset page over every account, ordered by (credit type, user)."""
        stmt = select(CreditAccount.user_id, CreditAccount.credit_type_id)
        if after is not None:
            stmt = stmt.where(
                tuple_(CreditAccount.credit_type_id, CreditAccount.user_id)
                > tuple_(after.credit_type_id, after.user_id)
            )
        stmt = stmt.order_by(CreditAccount.credit_type_id, CreditAccount.user_id).limit(limit)
        return [AccountRef(user_id, type_id) for user_id, type_id in self.session.execute(stmt)]

    def batch_get(self, refs: Iterable[AccountRef]) -> dict[AccountRef, AccountRecord]:
        """Accounts for ``refs``; missing ones are simply absent."""
        wanted = list(dict.fromkeys(refs))
        if not wanted:
            return {}
        rows = self.session.execute(
            select(CreditAccount).where(
                or_(*(
                    (CreditAccount.user_id == ref.user_id)
                    & (CreditAccount.credit_type_id == ref.credit_type_id)
                    for ref in wanted
                ))
            )
        ).scalars()
        found = {AccountRef(a.user_id, a.credit_type_id): AccountRecord.from_model(a) for a in rows}
        return {ref: found[ref] for ref in wanted if ref in found}

    def _applied(self, account_id: UUID, as_of: datetime | None = None) -> list[TransactionRecord]:
        stmt = select(CreditTransaction).where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.status == TransactionStatus.COMPLETED,
        )
        if as_of is not None:
            stmt = stmt.where(CreditTransaction.complete_time <= as_of)
        stmt = stmt.order_by(CreditTransaction.applied_version)
        return [TransactionRecord.from_model(t) for t in self.session.execute(stmt).scalars()]

    def lot_book(self, ref: AccountRef, expiry_for: ExpiryFn | None = None) -> LotBook:
        account = self.get(ref)
        if account is None:
            raise AccountNotFoundError(ref.key)
        return LotBook.replay(self._applied(account.id), expiry_for)

    def snapshot(
        self,
        ref: AccountRef,
        as_of: datetime,
        expiry_for: ExpiryFn | None = None,
    ) -> AccountSnapshot:
        account = self.get(ref)
        if account is None:
            raise AccountNotFoundError(ref.key)
        as_of = as_utc(as_of)
        transactions = self._applied(account.id, as_of)
        state, count = fold_state(transactions)
        book = LotBook.replay(transactions, expiry_for)
        return AccountSnapshot(
            account=account,
            as_of=as_of,
            balance=state.balance,
            frozen_amount=state.frozen_amount,
            total_income=state.total_income,
            total_expense=state.total_expense,
            transaction_count=count,
            lots=tuple(
                LotView(
                    transaction_id=lot.transaction_id,
                    created_at=lot.created_at,
                    amount=lot.amount,
                    remaining=lot.remaining,
                    held=lot.held,
                    expiry_time=lot.expiry_time,
                    expired=lot.expired,
                )
                for lot in book.lots.values()
            ),
        )

    def expiring_credits(
        self,
        ref: AccountRef,
        days_threshold: int,
        now: datetime,
        expiry_for: ExpiryFn | None = None,
    ) -> list[ExpirableLot]:
        """Lots that expire within ``days_threshold`` days after ``now``."""
        if days_threshold < 0:
            raise InvalidParameterError("days_threshold", days_threshold, "must be >= 0")
        now = as_utc(now)
        book = self.lot_book(ref, expiry_for)
        return book.expiring_between(now, now + timedelta(days=days_threshold))
