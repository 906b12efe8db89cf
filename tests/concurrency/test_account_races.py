"""
Concurrent callers against one account.

Threads are released together by a Barrier so their critical sections
really overlap.  Whatever the interleaving:

- an account is never overdrawn (no double spend),
- one business event takes effect at most once,
- the stored figures always fold back from the log.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from credit_kernel.exceptions import InsufficientBalanceError, OperationLockedError
from credit_kernel.services.account_lock import AccountLockRegistry
from credit_kernel.services.ledger_engine import LedgerEngine, LedgerEngineOptions
from credit_services.reconciliation_service import BalanceReconciler

THREADS = 8


def _run_together(fn, n=THREADS):
    """Run ``fn(i)`` on ``n`` threads released at once; return results or raised errors."""
    barrier = Barrier(n)

    def _worker(i):
        barrier.wait()
        try:
            return fn(i)
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        return list(pool.map(_worker, range(n)))


class TestDoubleSpend:

    def test_exactly_affordable_debits_succeed(self, ledger, account, fund, session_factory, clock):
        fund(account, 500)

        outcomes = _run_together(
            lambda i: ledger.deduct_credits(account, 100, "ORDER_PAY", f"p-{i}")
        )

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, Exception)]
        assert len(succeeded) == 5
        assert len(rejected) == 3
        assert all(isinstance(e, InsufficientBalanceError) for e in rejected)

        record = ledger.get_account(account)
        assert record.balance == 0
        assert record.total_expense == 500
        assert BalanceReconciler(session_factory, clock=clock).verify(account).consistent

    def test_freezes_never_exceed_available(self, ledger, account, fund):
        fund(account, 300)

        outcomes = _run_together(
            lambda i: ledger.freeze_credits(account, 70, "ORDER_HOLD", f"h-{i}")
        )

        held = sum(1 for o in outcomes if not isinstance(o, Exception))
        assert held == 4
        record = ledger.get_account(account)
        assert record.frozen_amount == 280
        assert record.available_balance == 20

    def test_separate_engines_on_one_database(self, session_factory, catalog, audit, clock, account, fund):
        """Two engines with their own lock tables still serialise on the account row."""
        fund(account, 500)
        engines = [
            LedgerEngine(session_factory, catalog, audit=audit, locks=AccountLockRegistry(), clock=clock)
            for _ in range(2)
        ]

        outcomes = _run_together(
            lambda i: engines[i % 2].deduct_credits(account, 100, "ORDER_PAY", f"p-{i}")
        )

        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 5
        assert engines[0].get_account(account).balance == 0


class TestIdempotencyUnderContention:

    def test_same_business_event_applied_once(self, ledger, account):
        outcomes = _run_together(
            lambda i: ledger.add_credits(account, 100, "ORDER_REWARD", "o-1")
        )

        assert not any(isinstance(o, Exception) for o in outcomes)
        assert sum(1 for o in outcomes if not o.replayed) == 1
        assert len({o.transaction_id for o in outcomes}) == 1
        assert ledger.get_account(account).total_income == 100

    def test_first_use_creates_one_account(self, ledger, account):
        outcomes = _run_together(
            lambda i: ledger.add_credits(account, 1, "SIGN_IN", f"s-{i}")
        )

        assert not any(isinstance(o, Exception) for o in outcomes)
        assert len({o.account.id for o in outcomes}) == 1
        record = ledger.get_account(account)
        assert record.balance == THREADS
        assert record.version == THREADS


class TestLockTimeouts:

    @pytest.mark.slow_locks
    def test_waiters_give_up_while_lock_is_held(self, session_factory, catalog, audit, locks, clock, account):
        impatient = LedgerEngine(
            session_factory,
            catalog,
            audit=audit,
            locks=locks,
            clock=clock,
            options=LedgerEngineOptions(lock_timeout_seconds=0.2),
        )
        handle = impatient.acquire_lock(account)
        try:
            outcomes = _run_together(
                lambda i: impatient.add_credits(account, 1, "SIGN_IN", f"s-{i}"), n=4
            )
        finally:
            impatient.release_lock(handle)

        assert all(isinstance(o, OperationLockedError) for o in outcomes)
        assert not locks.is_locked(account.lock_key)
        assert impatient.add_credits(account, 1, "SIGN_IN", "s-after").account.balance == 1
