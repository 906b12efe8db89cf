"""
credit_services.reconciliation_service -- Balance drift detection and correction.

Responsibility:
    Recomputes an account's balance, frozen amount and totals by folding
    its completed transactions, compares them with the stored account row
    and reports drift.  Correction is a separate, explicit administrative
    call that writes the recomputed figures through
    ``AccountStore.update_with_version``.

Architecture position:
    Services -- recurring background caller composed over the kernel.
    Detection is read-only; correction uses optimistic concurrency and
    never takes the per-account lock, so it does not block live traffic.

Invariants enforced:
    - Detect before correct: ``verify`` never writes.  Every drift it sees
      is logged and audited as INCONSISTENCY_DETECTED.
    - ``correct`` requires an operator-supplied reason, retries only on
      VersionConflict (fresh read and fresh fold each attempt) and refuses
      a log that folds to an invalid state.

Failure modes:
    - AccountNotFoundError from verify/correct for an unknown account.
    - VersionConflictError from correct once the retry limit is spent.
    - LedgerSystemError from correct when the log itself is inconsistent
      (e.g. folds to frozen > balance); a human has to look.

Audit relevance:
    INCONSISTENCY_DETECTED and BALANCE_CORRECTED entries carry both the
    stored and the recomputed figures.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from credit_kernel.domain.clock import Clock, SystemClock
from credit_kernel.domain.dtos import AccountRecord, AccountRef, TransactionRecord
from credit_kernel.domain.effects import AccountState, fold_state
from credit_kernel.exceptions import (
    CreditKernelError,
    InvalidParameterError,
    LedgerSystemError,
    VersionConflictError,
)
from credit_kernel.invariants import check_account_state
from credit_kernel.logging_config import LogContext, get_logger
from credit_kernel.models.account import CreditAccount
from credit_kernel.models.audit import AuditAction, AuditOutcome
from credit_kernel.selectors.account_selector import AccountSelector
from credit_kernel.services.account_store import AccountStore
from credit_kernel.services.audit_trail import AuditTrail
from credit_kernel.services.transaction_log import TransactionLog

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class ReconciliationReport:
    """Stored versus log-derived figures of one account."""

    account: AccountRef
    checked_at: datetime
    stored: AccountState
    computed: AccountState
    version: int
    transaction_count: int

    @property
    def stored_balance(self) -> int:
        return self.stored.balance

    @property
    def computed_balance(self) -> int:
        return self.computed.balance

    @property
    def drift(self) -> int:
        """Stored minus recomputed balance."""
        return self.stored.balance - self.computed.balance

    @property
    def stored_frozen(self) -> int:
        return self.stored.frozen_amount

    @property
    def computed_frozen(self) -> int:
        return self.computed.frozen_amount

    @property
    def frozen_drift(self) -> int:
        return self.stored.frozen_amount - self.computed.frozen_amount

    @property
    def consistent(self) -> bool:
        return self.stored == self.computed

    def as_payload(self) -> dict[str, int]:
        return {
            "stored_balance": self.stored.balance,
            "computed_balance": self.computed.balance,
            "drift": self.drift,
            "stored_frozen": self.stored.frozen_amount,
            "computed_frozen": self.computed.frozen_amount,
            "frozen_drift": self.frozen_drift,
            "stored_total_income": self.stored.total_income,
            "computed_total_income": self.computed.total_income,
            "stored_total_expense": self.stored.total_expense,
            "computed_total_expense": self.computed.total_expense,
            "version": self.version,
            "transaction_count": self.transaction_count,
        }


@dataclass(frozen=True)
class ConsistencyReport:
    """Aggregate of a reconciliation sweep."""

    checked: int
    inconsistent: tuple[ReconciliationReport, ...]
    errors: tuple[tuple[AccountRef, CreditKernelError], ...] = ()

    @property
    def consistent(self) -> bool:
        return not self.inconsistent and not self.errors

    @property
    def total_drift(self) -> int:
        return sum(r.drift for r in self.inconsistent)


@dataclass(frozen=True)
class BalanceCorrection:
    before: ReconciliationReport
    account: AccountRecord
    corrected: bool


class BalanceReconciler:
    """
    Detects and, on request, corrects drift between accounts and the log.

    Contract:
        ``verify`` is read-only.  ``correct`` is the only writer and is
        always an explicit administrative call.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        audit: AuditTrail | None = None,
        clock: Clock | None = None,
        version_retry_limit: int = 3,
        batch_size: int = 500,
    ):
        if version_retry_limit < 1:
            raise ValueError(f"version_retry_limit must be >= 1, got {version_retry_limit}")
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._audit = audit or AuditTrail(clock=self._clock)
        self._version_retry_limit = version_retry_limit
        self._batch_size = batch_size

    # -- detection ---------------------------------------------------------

    def verify(self, account: AccountRef) -> ReconciliationReport:
        with self._session_factory() as session:
            row = AccountStore(session, clock=self._clock).get(account)
            report = self._reconcile(session, account, row)

        if not report.consistent:
            with LogContext.bind(account_ref=account.key):
                logger.warning("balance_drift_detected", extra=report.as_payload())
            self._audit.event(
                AuditAction.INCONSISTENCY_DETECTED,
                AuditOutcome.DETECTED,
                account,
                payload=report.as_payload(),
            )
        return report

    def verify_many(self, accounts: Iterable[AccountRef]) -> ConsistencyReport:
        checked = 0
        inconsistent: list[ReconciliationReport] = []
        errors: list[tuple[AccountRef, CreditKernelError]] = []
        for account in accounts:
            checked += 1
            try:
                report = self.verify(account)
            except CreditKernelError as exc:
                errors.append((account, exc))
                continue
            if not report.consistent:
                inconsistent.append(report)
        return ConsistencyReport(checked, tuple(inconsistent), tuple(errors))

    def consistency_report(self, credit_type_id: str | None = None) -> ConsistencyReport:
        """Verify every account (of one credit type, if given) in keyset pages."""
        started = time.monotonic()
        checked = 0
        inconsistent: list[ReconciliationReport] = []
        errors: list[tuple[AccountRef, CreditKernelError]] = []

        for page in self._pages(credit_type_id):
            partial = self.verify_many(page)
            checked += partial.checked
            inconsistent.extend(partial.inconsistent)
            errors.extend(partial.errors)

        result = ConsistencyReport(checked, tuple(inconsistent), tuple(errors))
        log = logger.info if result.consistent else logger.warning
        log(
            "consistency_report_completed",
            extra={
                "credit_type_id": credit_type_id,
                "checked": checked,
                "inconsistent": len(inconsistent),
                "errors": len(errors),
                "total_drift": result.total_drift,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return result

    # -- correction --------------------------------------------------------

    def correct(
        self,
        account: AccountRef,
        reason: str,
        operator_id: str | None = None,
    ) -> BalanceCorrection:
        """
        Overwrite the stored figures with the log-derived ones.

        A no-op (``corrected=False``) when the account is already
        consistent.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidParameterError("reason", reason, "a correction needs a reason")

        with LogContext.bind(account_ref=account.key, operator_id=operator_id):
            for attempt in range(1, self._version_retry_limit + 1):
                session = self._session_factory()
                try:
                    result = self._correct_once(session, account)
                    session.commit()
                except VersionConflictError as exc:
                    session.rollback()
                    if attempt >= self._version_retry_limit:
                        self._audit_correction(account, operator_id, reason, error=exc)
                        raise
                    logger.warning(
                        "version_conflict_retry",
                        extra={
                            "attempt": attempt,
                            "max_attempts": self._version_retry_limit,
                            "expected_version": exc.expected_version,
                            "actual_version": exc.actual_version,
                        },
                    )
                    continue
                except CreditKernelError as exc:
                    session.rollback()
                    self._audit_correction(account, operator_id, reason, error=exc)
                    raise
                except BaseException:
                    session.rollback()
                    raise
                finally:
                    session.close()

                if result.corrected:
                    logger.warning(
                        "balance_corrected",
                        extra={**result.before.as_payload(), "reason": reason},
                    )
                    self._audit_correction(
                        account, operator_id, reason, payload=result.before.as_payload()
                    )
                return result

        raise LedgerSystemError("correction retry loop exited without a result")

    def _correct_once(self, session: Session, account: AccountRef) -> BalanceCorrection:
        store = AccountStore(session, clock=self._clock)
        row = store.get(account)
        report = self._reconcile(session, account, row)
        if report.consistent:
            return BalanceCorrection(report, AccountRecord.from_model(row), corrected=False)

        check_account_state(account.key, **report.computed.as_changes())
        store.update_with_version(row, report.computed.as_changes(), report.version)
        return BalanceCorrection(report, AccountRecord.from_model(row), corrected=True)

    # -- internals ---------------------------------------------------------

    def _reconcile(
        self, session: Session, account: AccountRef, row: CreditAccount
    ) -> ReconciliationReport:
        transactions = [
            TransactionRecord.from_model(t) for t in TransactionLog(session).list_applied(row.id)
        ]
        computed, count = fold_state(transactions)
        return ReconciliationReport(
            account=account,
            checked_at=self._clock.now(),
            stored=AccountState.of(row),
            computed=computed,
            version=row.version,
            transaction_count=count,
        )

    def _pages(self, credit_type_id: str | None):
        # one session per page: on SQLite an open session holds the write lock
        after: AccountRef | None = None
        while True:
            with self._session_factory() as session:
                selector = AccountSelector(session)
                if credit_type_id is not None:
                    refs = selector.refs_by_credit_type(
                        credit_type_id,
                        after_user_id=after.user_id if after else None,
                        limit=self._batch_size,
                    )
                else:
                    refs = selector.refs_page(after, limit=self._batch_size)
            if not refs:
                return
            yield refs
            after = refs[-1]

    def _audit_correction(
        self,
        account: AccountRef,
        operator_id: str | None,
        reason: str,
        error: CreditKernelError | None = None,
        payload: dict | None = None,
    ) -> None:
        self._audit.event(
            AuditAction.BALANCE_CORRECTED,
            AuditOutcome.FAILURE if error else AuditOutcome.SUCCESS,
            account,
            operator_id=operator_id,
            error=error,
            payload={**(payload or {}), "reason": reason, "source": "reconciler"},
        )
