"""
ExpirationEngine: lot selection, execution through the ledger, and
re-run safety.
"""

from datetime import timedelta

import pytest

from credit_kernel.domain.dtos import AccountRef, TransactionType
from credit_kernel.exceptions import AccountNotFoundError, CreditTypeNotFoundError
from credit_kernel.models.audit import AuditAction
from credit_services.expiration_service import (
    EXPIRY_BUSINESS_CODE,
    EXPIRY_OPERATOR,
    ExpirationEngine,
)
from tests.conftest import DAYS30, FIFO30, MONTHLY, NEVER


@pytest.fixture
def expiration(ledger, session_factory, clock):
    return ExpirationEngine(ledger, session_factory, clock=clock, batch_size=2)


class TestProcessAccount:

    def test_expires_lot_once(self, expiration, ledger, make_ref, fund, clock):
        ref = make_ref(DAYS30)
        lot = fund(ref, 100)
        clock.advance(days=31)

        outcome = expiration.process_account(ref)

        assert outcome.ok
        assert outcome.expired_amount == 100
        tx = outcome.transactions[0]
        assert tx.transaction_type is TransactionType.EXPIRED
        assert tx.source_transaction_id == lot.transaction_id
        assert (tx.business_code, tx.business_id) == (EXPIRY_BUSINESS_CODE, str(lot.transaction_id))
        assert tx.operator_id == EXPIRY_OPERATOR
        assert ledger.get_account(ref).balance == 0

        again = expiration.process_account(ref)
        assert again.expired_amount == 0
        assert again.eligible == ()
        assert ledger.get_account(ref).total_expense == 100

    def test_nothing_before_expiry(self, expiration, make_ref, fund, clock):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        clock.advance(days=29)
        assert expiration.process_account(ref).expired_amount == 0

    def test_never_expiring_type(self, expiration, make_ref, fund, clock):
        ref = make_ref(NEVER)
        fund(ref, 100)
        clock.advance(days=3650)
        assert expiration.eligible_lots(ref) == []

    def test_only_unconsumed_remainder_expires(self, expiration, ledger, make_ref, fund, clock):
        ref = make_ref(FIFO30)
        fund(ref, 100)
        clock.advance(days=10)
        fund(ref, 100)
        clock.advance(days=1)
        ledger.deduct_credits(ref, 50, "ORDER_PAY", "p-1")
        clock.advance(days=20)

        outcome = expiration.process_account(ref)

        assert outcome.expired_amount == 50
        assert ledger.get_account(ref).balance == 100

    def test_frozen_credits_survive(self, expiration, ledger, make_ref, fund, clock):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        ledger.freeze_credits(ref, 40, "ORDER_HOLD", "h-1")
        clock.advance(days=31)

        assert expiration.process_account(ref).expired_amount == 60
        record = ledger.get_account(ref)
        assert (record.balance, record.frozen_amount) == (40, 40)

        ledger.unfreeze_credits(ref, 40, "ORDER_RELEASE", "r-1")
        clock.advance(days=1)
        assert expiration.process_account(ref).eligible == ()

    def test_end_of_month_policy(self, expiration, make_ref, fund, clock):
        ref = make_ref(MONTHLY)
        fund(ref, 70)
        clock.advance(days=16)  # 2026-01-31 12:00
        assert expiration.process_account(ref).expired_amount == 0
        clock.advance(days=1)
        assert expiration.process_account(ref).expired_amount == 70

    def test_disabled_account_is_reviewed_only(self, expiration, ledger, make_ref, fund, clock, audit_sink):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        ledger.set_account_status(ref, False, "suspended")
        clock.advance(days=31)

        outcome = expiration.process_account(ref)

        assert outcome.review_only
        assert outcome.eligible_amount == 100
        assert outcome.expired_amount == 0
        assert ledger.get_account(ref).balance == 100
        review = audit_sink.by_action(AuditAction.EXPIRATION_REVIEW)[-1]
        assert review.payload["eligible"][0]["amount"] == 100

    def test_unknown_account(self, expiration, make_ref):
        with pytest.raises(AccountNotFoundError):
            expiration.process_account(make_ref(DAYS30))

    def test_logs_expired_amount(self, expiration, make_ref, fund, clock, captured_logs):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        clock.advance(days=31)
        expiration.process_account(ref)

        record = [r for r in captured_logs() if r["message"] == "credits_expired"][0]
        assert record["amount"] == 100
        assert record["account_ref"] == ref.key


class TestRuns:

    def test_process_credit_type_walks_every_page(self, expiration, ledger, fund, clock, captured_logs):
        refs = [AccountRef(f"exp-{i}", DAYS30) for i in range(5)]
        for ref in refs:
            fund(ref, 10)
        fund(AccountRef("exp-0", NEVER), 10)
        clock.advance(days=31)

        summary = expiration.process_credit_type(DAYS30)

        assert summary.accounts_scanned == 5
        assert summary.total_expired == 50
        assert summary.failed == ()
        assert ledger.get_account(AccountRef("exp-0", NEVER)).balance == 10
        done = [r for r in captured_logs() if r["message"] == "expiration_run_completed"][0]
        assert done["total_expired"] == 50

    def test_process_accounts_isolates_failures(self, expiration, make_ref, fund, clock):
        good, missing = make_ref(DAYS30), make_ref(DAYS30)
        fund(good, 10)
        clock.advance(days=31)

        outcomes = expiration.process_accounts([missing, good])

        assert isinstance(outcomes[0].error, AccountNotFoundError)
        assert not outcomes[0].ok
        assert outcomes[1].expired_amount == 10

    def test_naive_reference_time_is_read_as_utc(self, expiration, ledger, make_ref, fund, clock):
        ref = make_ref(DAYS30)
        fund(ref, 100)
        naive = (clock.now() + timedelta(days=31)).replace(tzinfo=None)

        assert [lot.amount for lot in expiration.eligible_lots(ref, naive)] == [100]
        outcome = expiration.process_account(ref, naive)

        assert outcome.ok
        assert outcome.expired_amount == 100
        assert ledger.get_account(ref).balance == 0

    def test_naive_reference_time_does_not_stop_a_run(self, expiration, make_ref, fund, clock):
        refs = [make_ref(DAYS30) for _ in range(3)]
        for ref in refs:
            fund(ref, 10)
        naive = (clock.now() + timedelta(days=31)).replace(tzinfo=None)

        summary = expiration.process_credit_type(DAYS30, naive)

        assert summary.failed == ()
        assert summary.total_expired == 30

    def test_unknown_credit_type(self, expiration):
        with pytest.raises(CreditTypeNotFoundError):
            expiration.process_credit_type("NO_SUCH_TYPE")

    def test_batch_size_must_be_positive(self, ledger, session_factory):
        with pytest.raises(ValueError):
            ExpirationEngine(ledger, session_factory, batch_size=0)
