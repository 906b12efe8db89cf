"""
Tests for the lot fold (credit_kernel.domain.lots).

Lots are replayed from completed transactions; consumption is oldest
first, preferring lots still valid at the time of the debit.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from credit_kernel.domain.dtos import TransactionRecord, TransactionStatus, TransactionType
from credit_kernel.domain.lots import LotBook

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
ACCOUNT_ID = uuid4()


class _Log:
    """Builds TransactionRecords in apply order."""

    def __init__(self):
        self.records: list[TransactionRecord] = []

    def add(self, kind, amount, at, *, expiry=None, source=None,
            status=TransactionStatus.COMPLETED) -> TransactionRecord:
        seq = len(self.records) + 1
        record = TransactionRecord(
            id=uuid4(),
            account_id=ACCOUNT_ID,
            user_id="u1",
            credit_type_id="T",
            seq=seq,
            transaction_type=kind,
            status=status,
            amount=amount,
            before_balance=0,
            after_balance=0,
            before_frozen=0,
            after_frozen=0,
            business_code="TEST",
            business_id=str(seq),
            applied_version=seq,
            source_transaction_id=source,
            remark=None,
            operator_id=None,
            batch_no=None,
            expiry_time=expiry,
            extra_data={},
            checksum="",
            created_at=at,
            complete_time=at,
        )
        self.records.append(record)
        return record

    def book(self, expiry_for=None) -> LotBook:
        return LotBook.replay(self.records, expiry_for)


class TestLotConsumption:

    def test_expense_takes_oldest_lot_first(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0)
        b = log.add(TransactionType.INCOME, 100, T0 + timedelta(days=1))
        log.add(TransactionType.EXPENSE, 130, T0 + timedelta(days=2))

        book = log.book()
        assert book.lots[a.id].remaining == 0
        assert book.lots[b.id].remaining == 70

    def test_expense_prefers_still_valid_lots(self):
        log = _Log()
        old = log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=1))
        fresh = log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=30))
        log.add(TransactionType.EXPENSE, 60, T0 + timedelta(days=5))

        book = log.book()
        assert book.lots[old.id].remaining == 100
        assert book.lots[fresh.id].remaining == 40

    def test_expense_with_source_lot_debits_that_lot(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0)
        b = log.add(TransactionType.INCOME, 100, T0)
        log.add(TransactionType.EXPENSE, 30, T0, source=b.id)

        book = log.book()
        assert book.lots[a.id].remaining == 100
        assert book.lots[b.id].remaining == 70

    def test_freeze_holds_and_unfreeze_releases(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0)
        b = log.add(TransactionType.INCOME, 100, T0)
        log.add(TransactionType.FROZEN, 150, T0)

        book = log.book()
        assert (book.lots[a.id].held, book.lots[b.id].held) == (100, 50)
        assert book.free_total() == 50

        log.add(TransactionType.UNFROZEN, 120, T0)
        book = log.book()
        assert (book.lots[a.id].held, book.lots[b.id].held) == (0, 30)

    def test_pending_rows_are_ignored(self):
        log = _Log()
        log.add(TransactionType.INCOME, 100, T0, status=TransactionStatus.PENDING)
        assert log.book().lots == {}

    def test_overdraw_goes_to_unattributed(self):
        log = _Log()
        log.add(TransactionType.INCOME, 50, T0)
        log.add(TransactionType.EXPENSE, 80, T0)
        book = log.book()
        assert book.unattributed == -30
        assert book.free_total() == -30


class TestLotExpiry:

    def test_expirable_excludes_held_and_unexpired(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=10))
        log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=40))
        log.add(TransactionType.FROZEN, 30, T0 + timedelta(days=1))

        lots = log.book().expirable(T0 + timedelta(days=10))
        assert [(lot.transaction_id, lot.amount) for lot in lots] == [(a.id, 70)]

    def test_expired_marks_lot_once(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=10))
        log.add(TransactionType.EXPIRED, 100, T0 + timedelta(days=11), source=a.id)

        book = log.book()
        assert book.lots[a.id].expired
        assert book.lots[a.id].remaining == 0
        assert book.expirable(T0 + timedelta(days=100)) == []

    def test_held_credits_never_expire_after_release(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=10))
        log.add(TransactionType.FROZEN, 40, T0)
        log.add(TransactionType.EXPIRED, 60, T0 + timedelta(days=11), source=a.id)
        log.add(TransactionType.UNFROZEN, 40, T0 + timedelta(days=12))

        book = log.book()
        assert book.lots[a.id].remaining == 40
        assert book.expirable(T0 + timedelta(days=100)) == []

    def test_expiry_for_fills_missing_expiry(self):
        log = _Log()
        a = log.add(TransactionType.INCOME, 100, T0)
        book = log.book(expiry_for=lambda created: created + timedelta(days=5))
        assert book.lots[a.id].expiry_time == T0 + timedelta(days=5)

    def test_expiring_between_window(self):
        log = _Log()
        log.add(TransactionType.INCOME, 100, T0, expiry=T0 + timedelta(days=5))
        b = log.add(TransactionType.INCOME, 50, T0, expiry=T0 + timedelta(days=20))

        soon = log.book().expiring_between(T0 + timedelta(days=5), T0 + timedelta(days=30))
        assert [(lot.transaction_id, lot.amount) for lot in soon] == [(b.id, 50)]
