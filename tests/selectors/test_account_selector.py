"""Read-only account queries."""

from datetime import timedelta

import pytest

from credit_kernel.domain.dtos import AccountRef
from credit_kernel.exceptions import AccountNotFoundError, InvalidParameterError
from credit_kernel.selectors.account_selector import AccountSelector
from tests.conftest import DAYS30, FIFO30, NEVER


@pytest.fixture
def select_accounts(session_factory):
    """Run ``fn(selector)`` in a short-lived session."""

    def _run(fn):
        with session_factory() as session:
            return fn(AccountSelector(session))

    return _run


class TestLookups:

    def test_get_and_get_by_id(self, ledger, account, fund, select_accounts):
        fund(account, 10)
        record = select_accounts(lambda s: s.get(account))
        assert record.balance == 10
        assert select_accounts(lambda s: s.get_by_id(record.id)) == record

    def test_missing_account_is_none(self, account, select_accounts):
        assert select_accounts(lambda s: s.get(account)) is None

    def test_list_by_user_spans_types(self, ledger, make_ref, fund, select_accounts):
        user = "user-multi"
        fund(make_ref(NEVER, user), 10)
        fund(make_ref(DAYS30, user), 20)
        records = select_accounts(lambda s: s.list_by_user(user))
        assert [(r.credit_type_id, r.balance) for r in records] == [(DAYS30, 20), (NEVER, 10)]

    def test_batch_get_skips_missing(self, make_ref, fund, select_accounts):
        present, missing = make_ref(), make_ref()
        fund(present, 5)
        found = select_accounts(lambda s: s.batch_get([present, missing, present]))
        assert list(found) == [present]
        assert select_accounts(lambda s: s.batch_get([])) == {}


class TestPaging:

    def test_list_by_credit_type_pages(self, ledger, fund, select_accounts):
        refs = [AccountRef(f"user-{i:02d}", FIFO30) for i in range(5)]
        for ref in refs:
            fund(ref, 1)
        ledger.set_account_status(refs[0], False, "closed")

        page = select_accounts(lambda s: s.list_by_credit_type(FIFO30, page=1, page_size=2))
        assert page.total == 4
        assert [r.user_id for r in page.items] == ["user-01", "user-02"]
        assert page.has_next

        everyone = select_accounts(
            lambda s: s.list_by_credit_type(FIFO30, only_active=False, page_size=10)
        )
        assert everyone.total == 5
        assert not everyone.has_next

    @pytest.mark.parametrize("page, page_size", [(0, 10), (1, 0), (1, 501)])
    def test_bad_paging(self, select_accounts, page, page_size):
        with pytest.raises(InvalidParameterError):
            select_accounts(lambda s: s.list_by_credit_type(NEVER, page=page, page_size=page_size))

    def test_keyset_pages(self, fund, select_accounts):
        refs = [AccountRef(f"k-{i}", FIFO30) for i in range(3)] + [AccountRef("k-0", NEVER)]
        for ref in refs:
            fund(ref, 1)

        first = select_accounts(lambda s: s.refs_by_credit_type(FIFO30, limit=2))
        rest = select_accounts(lambda s: s.refs_by_credit_type(FIFO30, after_user_id=first[-1].user_id))
        assert [r.user_id for r in first + rest] == ["k-0", "k-1", "k-2"]

        walked, after = [], None
        while True:
            page = select_accounts(lambda s: s.refs_page(after, limit=3))
            if not page:
                break
            walked.extend(page)
            after = page[-1]
        assert walked == sorted(refs, key=lambda r: (r.credit_type_id, r.user_id))


class TestLots:

    def test_expiring_credits(self, ledger, make_ref, fund, clock, select_accounts):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        clock.advance(days=10)
        fund(ref, 50)

        soon = select_accounts(lambda s: s.expiring_credits(ref, 25, clock.now()))
        assert [lot.amount for lot in soon] == [100]
        later = select_accounts(lambda s: s.expiring_credits(ref, 40, clock.now()))
        assert [lot.amount for lot in later] == [100, 50]

    def test_expiring_credits_rejects_negative_window(self, make_ref, fund, clock, select_accounts):
        ref = make_ref(DAYS30)
        fund(ref, 1)
        with pytest.raises(InvalidParameterError):
            select_accounts(lambda s: s.expiring_credits(ref, -1, clock.now()))

    def test_lot_book_of_unknown_account(self, account, select_accounts):
        with pytest.raises(AccountNotFoundError):
            select_accounts(lambda s: s.lot_book(account))

    def test_snapshot_lots_track_consumption(self, ledger, make_ref, fund, clock, select_accounts):
        ref = make_ref(FIFO30)
        first = fund(ref, 100)
        clock.advance(days=1)
        fund(ref, 100)
        ledger.deduct_credits(ref, 150, "ORDER_PAY", "p-1")

        snap = select_accounts(lambda s: s.snapshot(ref, clock.now()))
        assert [lot.remaining for lot in snap.lots] == [0, 50]
        assert snap.lots[0].transaction_id == first.transaction_id
        assert snap.lots[0].expiry_time == first.transaction.created_at + timedelta(days=30)
