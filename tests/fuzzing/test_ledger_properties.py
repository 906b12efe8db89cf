"""
Property-based tests over random operation sequences.

Whatever mix of income, expense, freeze and unfreeze is attempted:

- balance == total_income - total_expense
- 0 <= frozen_amount <= balance
- the stored figures fold back from the completed log
- lots account for every credit still held by the account
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from credit_kernel.domain.dtos import (
    AccountRef,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from credit_kernel.domain.effects import AccountState, apply_effect, fold_state
from credit_kernel.domain.lots import LotBook
from credit_kernel.exceptions import InsufficientBalanceError, InsufficientFrozenError
from credit_kernel.invariants import check_account_state
from credit_services.reconciliation_service import BalanceReconciler
from tests.conftest import NEVER

REF = "fuzz:POINTS"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)

op_types = st.sampled_from([
    TransactionType.INCOME,
    TransactionType.EXPENSE,
    TransactionType.FROZEN,
    TransactionType.UNFROZEN,
])
operations = st.lists(
    st.tuples(op_types, st.integers(min_value=1, max_value=500)),
    min_size=1,
    max_size=20,
)


def _accepted(ops):
    """Run ops through apply_effect; return (final state, accepted ops)."""
    state = AccountState(0, 0, 0, 0)
    accepted = []
    for kind, amount in ops:
        try:
            state = apply_effect(state, kind, amount, REF)
        except (InsufficientBalanceError, InsufficientFrozenError):
            continue
        accepted.append((kind, amount))
    return state, accepted


def _record(seq, kind, amount):
    at = T0 + timedelta(minutes=seq)
    return TransactionRecord(
        id=uuid4(),
        account_id=uuid4(),
        user_id="fuzz",
        credit_type_id=NEVER,
        seq=seq,
        transaction_type=kind,
        status=TransactionStatus.COMPLETED,
        amount=amount,
        before_balance=0,
        after_balance=0,
        before_frozen=0,
        after_frozen=0,
        business_code="FUZZ",
        business_id=str(seq),
        applied_version=seq,
        source_transaction_id=None,
        remark=None,
        operator_id=None,
        batch_no=None,
        expiry_time=None,
        extra_data={},
        checksum="",
        created_at=at,
        complete_time=at,
    )


class TestPureArithmetic:

    @given(ops=operations)
    def test_state_invariants_hold(self, ops):
        state, _ = _accepted(ops)
        check_account_state(
            REF, state.balance, state.frozen_amount, state.total_income, state.total_expense
        )
        assert state.available >= 0

    @given(ops=operations)
    def test_fold_reproduces_applied_state(self, ops):
        state, accepted = _accepted(ops)
        records = [_record(i + 1, kind, amount) for i, (kind, amount) in enumerate(accepted)]
        folded, count = fold_state(records)
        assert folded == state
        assert count == len(accepted)

    @given(ops=operations)
    def test_lots_cover_the_balance(self, ops):
        state, accepted = _accepted(ops)
        records = [_record(i + 1, kind, amount) for i, (kind, amount) in enumerate(accepted)]
        book = LotBook.replay(records)
        assert sum(lot.remaining for lot in book.lots.values()) == state.balance
        assert book.free_total() == state.available
        assert book.unattributed == 0
        assert all(0 <= lot.held <= lot.remaining for lot in book.lots.values())


class TestEngineSequences:

    @settings(
        max_examples=20,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(ops=operations)
    def test_random_sequence_stays_consistent(self, ledger, session_factory, clock, ops):
        ref = AccountRef(f"fuzz-{uuid4().hex[:12]}", NEVER)
        calls = {
            TransactionType.INCOME: ledger.add_credits,
            TransactionType.EXPENSE: ledger.deduct_credits,
            TransactionType.FROZEN: ledger.freeze_credits,
            TransactionType.UNFROZEN: ledger.unfreeze_credits,
        }
        expected, accepted = _accepted(ops)
        applied = 0
        for kind, amount in ops:
            try:
                calls[kind](ref, amount, "FUZZ", uuid4().hex)
            except (InsufficientBalanceError, InsufficientFrozenError):
                continue
            applied += 1

        assert applied == len(accepted)
        if not applied:
            return
        record = ledger.get_account(ref)
        assert AccountState.of(record) == expected
        assert 0 <= record.frozen_amount <= record.balance

        report = BalanceReconciler(session_factory, clock=clock).verify(ref)
        assert report.consistent
        assert report.transaction_count == applied
