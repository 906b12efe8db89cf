"""
BalanceReconciler: detection is read-only and audited; correction is
explicit and brings the stored row back to the log-derived figures.
"""

import pytest
from sqlalchemy import update

from credit_kernel.domain.dtos import AccountRef
from credit_kernel.exceptions import AccountNotFoundError, InvalidParameterError
from credit_kernel.models.account import CreditAccount
from credit_kernel.models.audit import AuditAction, AuditOutcome
from credit_services.reconciliation_service import BalanceReconciler
from tests.conftest import DAYS30, NEVER


@pytest.fixture
def reconciler(session_factory, audit, clock):
    return BalanceReconciler(session_factory, audit=audit, clock=clock, batch_size=2)


@pytest.fixture
def plant_drift(session_factory):
    """Overwrite stored figures directly, as a buggy writer would."""

    def _plant(ref: AccountRef, **values):
        table = CreditAccount.__table__
        with session_factory() as session:
            session.execute(
                update(table)
                .where(table.c.user_id == ref.user_id, table.c.credit_type_id == ref.credit_type_id)
                .values(**values)
            )
            session.commit()

    return _plant


class TestVerify:

    def test_consistent_account(self, reconciler, ledger, account, fund, audit_sink):
        fund(account, 100)
        ledger.freeze_credits(account, 30, "ORDER_HOLD", "h-1")
        ledger.deduct_credits(account, 20, "ORDER_PAY", "p-1")

        report = reconciler.verify(account)

        assert report.consistent
        assert report.drift == 0
        assert report.computed_balance == 80
        assert report.computed_frozen == 30
        assert report.transaction_count == 3
        assert audit_sink.by_action(AuditAction.INCONSISTENCY_DETECTED) == []

    def test_drift_is_reported_and_audited(self, reconciler, account, fund, plant_drift,
                                           audit_sink, captured_logs):
        fund(account, 100)
        plant_drift(account, balance=150, total_income=150)

        report = reconciler.verify(account)

        assert not report.consistent
        assert (report.stored_balance, report.computed_balance, report.drift) == (150, 100, 50)
        entry = audit_sink.by_action(AuditAction.INCONSISTENCY_DETECTED)[-1]
        assert entry.outcome is AuditOutcome.DETECTED
        assert entry.payload["drift"] == 50
        drift_log = [r for r in captured_logs() if r["message"] == "balance_drift_detected"][0]
        assert drift_log["account_ref"] == account.key

    def test_verify_never_writes(self, reconciler, ledger, account, fund, plant_drift):
        fund(account, 100)
        plant_drift(account, balance=150, total_income=150)
        reconciler.verify(account)
        assert ledger.get_account(account).balance == 150

    def test_frozen_drift(self, reconciler, account, fund, plant_drift):
        fund(account, 100)
        plant_drift(account, frozen_amount=10)
        report = reconciler.verify(account)
        assert report.drift == 0
        assert report.frozen_drift == 10
        assert not report.consistent

    def test_unknown_account(self, reconciler, account):
        with pytest.raises(AccountNotFoundError):
            reconciler.verify(account)


class TestCorrect:

    def test_correct_restores_log_figures(self, reconciler, ledger, account, fund, plant_drift, audit_sink):
        fund(account, 100)
        plant_drift(account, balance=150, total_income=150)

        correction = reconciler.correct(account, "drift ticket 42", operator_id="ops-1")

        assert correction.corrected
        assert correction.before.drift == 50
        record = ledger.get_account(account)
        assert (record.balance, record.total_income) == (100, 100)
        assert record.version == 2
        assert reconciler.verify(account).consistent

        entry = audit_sink.by_action(AuditAction.BALANCE_CORRECTED)[-1]
        assert entry.outcome is AuditOutcome.SUCCESS
        assert entry.payload["source"] == "reconciler"
        assert entry.payload["stored_balance"] == 150

    def test_consistent_account_is_left_alone(self, reconciler, ledger, account, fund):
        fund(account, 100)
        correction = reconciler.correct(account, "routine check")
        assert not correction.corrected
        assert ledger.get_account(account).version == 1

    def test_reason_required(self, reconciler, account):
        with pytest.raises(InvalidParameterError):
            reconciler.correct(account, "  ")

    def test_ledger_keeps_working_after_correction(self, reconciler, ledger, account, fund, plant_drift):
        fund(account, 100)
        plant_drift(account, balance=10, total_income=10)
        reconciler.correct(account, "drift ticket 43")
        assert ledger.deduct_credits(account, 100, "ORDER_PAY", "p-1").account.balance == 0


class TestConsistencyReport:

    def test_sweep_finds_every_drifted_account(self, reconciler, fund, plant_drift, captured_logs):
        refs = [AccountRef(f"rec-{i}", NEVER) for i in range(5)] + [AccountRef("rec-0", DAYS30)]
        for ref in refs:
            fund(ref, 10)
        plant_drift(refs[1], balance=15, total_income=15)
        plant_drift(refs[5], balance=7, total_expense=3)

        report = reconciler.consistency_report()

        assert report.checked == 6
        assert {r.account for r in report.inconsistent} == {refs[1], refs[5]}
        assert report.total_drift == 5 - 3
        assert not report.consistent
        done = [r for r in captured_logs() if r["message"] == "consistency_report_completed"][0]
        assert done["level"] == "WARNING"

    def test_sweep_of_one_credit_type(self, reconciler, fund, plant_drift):
        refs = [AccountRef(f"rec-{i}", NEVER) for i in range(3)] + [AccountRef("rec-0", DAYS30)]
        for ref in refs:
            fund(ref, 10)
        plant_drift(refs[3], balance=7, total_expense=3)

        report = reconciler.consistency_report(NEVER)
        assert report.checked == 3
        assert report.consistent

    def test_verify_many_collects_errors(self, reconciler, make_ref, fund):
        present, missing = make_ref(), make_ref()
        fund(present, 1)
        report = reconciler.verify_many([present, missing])
        assert report.checked == 2
        assert report.errors[0][0] == missing
        assert isinstance(report.errors[0][1], AccountNotFoundError)
