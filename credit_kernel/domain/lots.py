"""
Lots -- pure fold of an account's log into income lots.

Responsibility:
    Replays completed transactions in apply order and tracks, per income
    lot, how much is still unconsumed (``remaining``) and how much of that
    is under a freeze hold (``held``).  The ExpirationEngine expires the
    free part of a lot; the LedgerEngine uses the fold to validate Expired
    operations.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Consumption rules:
    - Income opens a lot.
    - Expense with a source lot debits that lot first.  The rest debits lots
      oldest-first, preferring lots still valid at the expense time, then
      any lot with a free remainder.
    - Frozen places holds on free remainders in the same order.
    - Unfrozen releases holds oldest-first.
    - Expired debits its referenced lot (or, without a reference, lots
      already past expiry, oldest-first) and marks it expired.  A lot
      expires once; credits held at that moment are released later but
      never expire.
    Amounts no lot can absorb are booked on ``unattributed``, which never
    expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID

from credit_kernel.domain.clock import as_utc
from credit_kernel.domain.dtos import TransactionRecord, TransactionStatus, TransactionType
from credit_kernel.domain.expiry import is_expired


@dataclass
class Lot:
    transaction_id: UUID
    created_at: datetime
    amount: int
    expiry_time: datetime | None
    remaining: int
    held: int = 0
    expired: bool = False

    @property
    def free(self) -> int:
        return self.remaining - self.held

    def is_valid_at(self, moment: datetime) -> bool:
        return not self.expired and not is_expired(self.expiry_time, moment)


@dataclass(frozen=True)
class ExpirableLot:
    transaction_id: UUID
    created_at: datetime
    expiry_time: datetime
    amount: int


class LotBook:
    """Mutable result of the fold; build it with ``LotBook.replay``."""

    def __init__(self) -> None:
        self.lots: dict[UUID, Lot] = {}
        self.unattributed = 0
        self.unattributed_held = 0

    @classmethod
    def replay(
        cls,
        transactions: Iterable[TransactionRecord],
        expiry_for: Callable[[datetime], datetime | None] | None = None,
    ) -> LotBook:
        """
        Fold ``transactions`` (apply order) into a LotBook.

        ``expiry_for`` supplies an expiry for income rows stored without
        one, from the credit type's current policy.
        """
        book = cls()
        for tx in transactions:
            if tx.status is not TransactionStatus.COMPLETED:
                continue
            book.apply(tx, expiry_for)
        return book

    def apply(
        self,
        tx: TransactionRecord,
        expiry_for: Callable[[datetime], datetime | None] | None = None,
    ) -> None:
        kind = tx.transaction_type
        if kind is TransactionType.INCOME:
            expiry = tx.expiry_time
            if expiry is None and expiry_for is not None:
                expiry = expiry_for(tx.created_at)
            self.lots[tx.id] = Lot(
                transaction_id=tx.id,
                created_at=tx.created_at,
                amount=tx.amount,
                expiry_time=expiry,
                remaining=tx.amount,
            )
        elif kind is TransactionType.EXPENSE:
            left = tx.amount
            source = self.lots.get(tx.source_transaction_id) if tx.source_transaction_id else None
            if source is not None:
                left -= self._take(source, left)
            left = self._consume(left, tx.created_at)
            self.unattributed -= left
        elif kind is TransactionType.FROZEN:
            left = tx.amount
            for lot in self._consumption_order(tx.created_at):
                if left == 0:
                    break
                hold = min(lot.free, left)
                lot.held += hold
                left -= hold
            self.unattributed_held += left
        elif kind is TransactionType.UNFROZEN:
            left = tx.amount
            for lot in self._ordered():
                if left == 0:
                    break
                release = min(lot.held, left)
                lot.held -= release
                left -= release
            self.unattributed_held -= min(self.unattributed_held, left)
        elif kind is TransactionType.EXPIRED:
            left = tx.amount
            lot = self.lots.get(tx.source_transaction_id) if tx.source_transaction_id else None
            if lot is not None:
                left -= self._take(lot, left)
                lot.expired = True
            else:
                for candidate in self._ordered():
                    if left == 0:
                        break
                    if candidate.expired or not is_expired(candidate.expiry_time, tx.created_at):
                        continue
                    left -= self._take(candidate, left)
                    if candidate.free == 0:
                        candidate.expired = True
            self.unattributed -= left

    # -- queries -----------------------------------------------------------

    def open_lots(self) -> list[Lot]:
        return [lot for lot in self._ordered() if lot.remaining > 0]

    def free_total(self) -> int:
        return sum(lot.free for lot in self.lots.values()) + self.unattributed - self.unattributed_held

    def expirable(self, reference_time: datetime) -> list[ExpirableLot]:
        """Lots past expiry at ``reference_time`` with a free remainder."""
        return [
            ExpirableLot(lot.transaction_id, lot.created_at, lot.expiry_time, lot.free)
            for lot in self._ordered()
            if not lot.expired and lot.free > 0 and is_expired(lot.expiry_time, reference_time)
        ]

    def expiring_between(self, start: datetime, end: datetime) -> list[ExpirableLot]:
        """Unexpired lots with an expiry in ``(start, end]`` and credits left."""
        start, end = as_utc(start), as_utc(end)
        return [
            ExpirableLot(lot.transaction_id, lot.created_at, lot.expiry_time, lot.remaining)
            for lot in self._ordered()
            if not lot.expired
            and lot.remaining > 0
            and lot.expiry_time is not None
            and start < lot.expiry_time <= end
        ]

    # -- internals ---------------------------------------------------------

    def _ordered(self) -> list[Lot]:
        # dict preserves apply order, which is creation order for lots
        return list(self.lots.values())

    def _consumption_order(self, moment: datetime) -> list[Lot]:
        ordered = self._ordered()
        valid = [lot for lot in ordered if lot.is_valid_at(moment)]
        rest = [lot for lot in ordered if not lot.is_valid_at(moment)]
        return valid + rest

    def _consume(self, amount: int, moment: datetime) -> int:
        for lot in self._consumption_order(moment):
            if amount == 0:
                break
            amount -= self._take(lot, amount)
        return amount

    @staticmethod
    def _take(lot: Lot, amount: int) -> int:
        taken = min(lot.free, amount)
        if taken > 0:
            lot.remaining -= taken
        return max(taken, 0)
