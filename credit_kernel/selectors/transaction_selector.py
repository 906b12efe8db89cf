"""
Module: credit_kernel.selectors.transaction_selector
Responsibility: Read-only transaction queries: paged history with filters,
    lookups by business key, batch or source transaction, time-range scans
    and per-type statistics.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping
from uuid import UUID

from sqlalchemy import func, select

from credit_kernel.domain.clock import as_utc
from credit_kernel.domain.dtos import (
    AccountRef,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from credit_kernel.exceptions import InvalidParameterError, TransactionNotFoundError
from credit_kernel.models.transaction import CreditTransaction
from credit_kernel.selectors.base import MAX_PAGE_SIZE, BaseSelector, Page, check_paging


@dataclass(frozen=True)
class TypeStatistics:
    count: int
    amount: int


@dataclass(frozen=True)
class TransactionStatistics:
    """Completed transaction counts and amounts per type."""

    account: AccountRef
    start: datetime | None
    end: datetime | None
    by_type: Mapping[TransactionType, TypeStatistics]

    @property
    def total_count(self) -> int:
        return sum(s.count for s in self.by_type.values())

    @property
    def net_amount(self) -> int:
        return sum(s.amount * t.balance_sign for t, s in self.by_type.items())


class TransactionSelector(BaseSelector):
    """Read-only transaction queries."""

    def get(self, transaction_id: UUID) -> TransactionRecord:
        tx = self.session.get(CreditTransaction, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(str(transaction_id))
        return TransactionRecord.from_model(tx)

    def _account_filter(self, ref: AccountRef):
        return [
            CreditTransaction.user_id == ref.user_id,
            CreditTransaction.credit_type_id == ref.credit_type_id,
        ]

    def history(
        self,
        ref: AccountRef,
        page: int = 1,
        page_size: int = 20,
        transaction_type: TransactionType | None = None,
        status: TransactionStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Page[TransactionRecord]:
        """Newest first.  ``start`` inclusive, ``end`` exclusive."""
        check_paging(page, page_size)
        start, end = as_utc(start), as_utc(end)
        conditions = self._account_filter(ref)
        if transaction_type is not None:
            conditions.append(CreditTransaction.transaction_type == transaction_type)
        if status is not None:
            conditions.append(CreditTransaction.status == status)
        if start is not None:
            conditions.append(CreditTransaction.created_at >= start)
        if end is not None:
            conditions.append(CreditTransaction.created_at < end)

        total = self.session.execute(
            select(func.count()).select_from(CreditTransaction).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.seq.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        return Page(
            items=tuple(TransactionRecord.from_model(t) for t in rows),
            page=page,
            page_size=page_size,
            total=total,
        )

    def by_user(self, user_id: str, limit: int = 100) -> list[TransactionRecord]:
        """Latest transactions of a user across all credit types."""
        self._check_limit(limit)
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.seq.desc())
            .limit(limit)
        ).scalars()
        return [TransactionRecord.from_model(t) for t in rows]

    def by_business(self, business_code: str, business_id: str) -> list[TransactionRecord]:
        """Every row of a business event, cancelled attempts included."""
        rows = self.session.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.business_code == business_code,
                CreditTransaction.business_id == business_id,
            )
            .order_by(CreditTransaction.created_at)
        ).scalars()
        return [TransactionRecord.from_model(t) for t in rows]

    def by_batch(self, batch_no: str) -> list[TransactionRecord]:
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.batch_no == batch_no)
            .order_by(CreditTransaction.created_at, CreditTransaction.user_id)
        ).scalars()
        return [TransactionRecord.from_model(t) for t in rows]

    def related(self, transaction_id: UUID) -> list[TransactionRecord]:
        """
        Rows recorded against ``transaction_id`` as their source.

        Raises:
            TransactionNotFoundError: ``transaction_id`` does not exist.
        """
        if self.session.get(CreditTransaction, transaction_id) is None:
            raise TransactionNotFoundError(str(transaction_id))
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.source_transaction_id == transaction_id)
            .order_by(CreditTransaction.created_at, CreditTransaction.seq)
        ).scalars()
        return [TransactionRecord.from_model(t) for t in rows]

    def by_time_range(
        self,
        start: datetime,
        end: datetime,
        credit_type_id: str | None = None,
        transaction_type: TransactionType | None = None,
        limit: int = 100,
    ) -> list[TransactionRecord]:
        """Oldest first.  ``start`` inclusive, ``end`` exclusive."""
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise InvalidParameterError("end", end, "must be after start")
        self._check_limit(limit)
        stmt = select(CreditTransaction).where(
            CreditTransaction.created_at >= start,
            CreditTransaction.created_at < end,
        )
        if credit_type_id is not None:
            stmt = stmt.where(CreditTransaction.credit_type_id == credit_type_id)
        if transaction_type is not None:
            stmt = stmt.where(CreditTransaction.transaction_type == transaction_type)
        stmt = stmt.order_by(CreditTransaction.created_at).limit(limit)
        return [TransactionRecord.from_model(t) for t in self.session.execute(stmt).scalars()]

    def statistics(
        self,
        ref: AccountRef,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> TransactionStatistics:
        start, end = as_utc(start), as_utc(end)
        conditions = self._account_filter(ref)
        conditions.append(CreditTransaction.status == TransactionStatus.COMPLETED)
        if start is not None:
            conditions.append(CreditTransaction.created_at >= start)
        if end is not None:
            conditions.append(CreditTransaction.created_at < end)

        rows = self.session.execute(
            select(
                CreditTransaction.transaction_type,
                func.count(),
                func.coalesce(func.sum(CreditTransaction.amount), 0),
            )
            .where(*conditions)
            .group_by(CreditTransaction.transaction_type)
        ).all()
        by_type = {t: TypeStatistics(0, 0) for t in TransactionType}
        for tx_type, count, amount in rows:
            by_type[TransactionType(tx_type)] = TypeStatistics(int(count), int(amount))
        return TransactionStatistics(
            account=ref,
            start=start,
            end=end,
            by_type=MappingProxyType(by_type),
        )

    @staticmethod
    def _check_limit(limit: int) -> None:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidParameterError("limit", limit, f"must be within 1..{MAX_PAGE_SIZE}")
