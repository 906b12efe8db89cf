"""
LedgerEngine -- atomic, idempotent execution of credit ledger operations.

Responsibility:
    Orchestrates AccountStore, TransactionLog and AuditTrail to apply
    income / expense / freeze / unfreeze / expire operations.  For one
    operation it:

        1. acquires the per-account lock (bounded wait, OperationLocked),
        2. consults the transaction log for an idempotent replay,
        3. validates the account and credit type,
        4. computes the new balance (pure, credit_kernel.domain.effects),
        5. appends the transaction and writes the account with a version
           check, in one database transaction,
        6. releases the lock on every exit path,
        7. appends one audit entry, success or failure.

Architecture position:
    Kernel > Services -- the only component that opens write transactions
    on the ledger.  Owns commit and rollback; AccountStore and
    TransactionLog only flush.

Invariants enforced:
    - balance == total_income - total_expense, 0 <= frozen <= balance
      (checked before every commit).
    - At-most-once effect per (business_code, business_id): lock plus the
      unique idempotency key.
    - Version races are retried from a fresh read up to
      ``version_retry_limit`` times; business errors are never retried.

Failure modes:
    Every CreditKernelError subclass, raised to the caller of single
    operations and collected per item in batches.  Storage faults surface
    as DatabaseError with the SQLAlchemy error chained.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_kernel.db.immutability import register_immutability_listeners
from credit_kernel.domain.clock import Clock, SystemClock, as_utc
from credit_kernel.domain.credit_type import CreditType, CreditTypeCatalog
from credit_kernel.domain.dtos import (
    AccountRecord,
    AccountRef,
    BatchResult,
    ExecutionResult,
    LedgerOperation,
    StatusBatchResult,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    check_amount,
    compose_key,
)
from credit_kernel.domain.effects import AccountState, apply_effect
from credit_kernel.domain.expiry import compute_expiry_time
from credit_kernel.domain.lots import LotBook
from credit_kernel.exceptions import (
    AccountDisabledError,
    AccountNotFoundError,
    BusinessCodeConflictError,
    CreditKernelError,
    CreditsExpiredError,
    CreditTypeDisabledError,
    DatabaseError,
    InvalidParameterError,
    LedgerSystemError,
    TransactionExistsError,
    TransactionNotFoundError,
    TransactionStatusError,
    VersionConflictError,
)
from credit_kernel.invariants import check_account_state
from credit_kernel.logging_config import LogContext, get_logger
from credit_kernel.models.account import CreditAccount
from credit_kernel.models.audit import AuditAction, AuditOutcome
from credit_kernel.models.transaction import CreditTransaction
from credit_kernel.selectors.account_selector import AccountSelector, AccountSnapshot
from credit_kernel.selectors.transaction_selector import TransactionSelector
from credit_kernel.services.account_lock import AccountLockRegistry, LockHandle
from credit_kernel.services.account_store import AccountStore
from credit_kernel.services.audit_trail import AuditTrail
from credit_kernel.services.transaction_log import TransactionLog

logger = get_logger("services.ledger_engine")

T = TypeVar("T")

# Operations a disabled credit type still accepts: releasing holds and
# expiring lots keep the log correct without issuing new credit.
_ALLOWED_ON_DISABLED_TYPE = frozenset({TransactionType.UNFROZEN, TransactionType.EXPIRED})


@dataclass(frozen=True)
class LedgerEngineOptions:
    """
    Tunables of the engine.

    ``strict_replay``: when True, reusing an idempotency key for a different
    account, type or amount raises BusinessCodeConflictError instead of
    replaying the original transaction.
    """

    lock_timeout_seconds: float = 5.0
    version_retry_limit: int = 3
    strict_replay: bool = False

    def __post_init__(self) -> None:
        if self.lock_timeout_seconds < 0:
            raise ValueError("lock_timeout_seconds must be >= 0")
        if self.version_retry_limit < 1:
            raise ValueError("version_retry_limit must be >= 1")


class LedgerEngine:
    """
    The credit ledger.

    Contract:
        ``execute`` / ``submit`` apply one operation atomically and
        idempotently and return an ExecutionResult; ``execute_batch`` runs
        independent operations and reports partial failure as a value.

    Non-goals:
        No cross-account transactions.  A batch is a sequence of
        independent per-account critical sections.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        catalog: CreditTypeCatalog,
        *,
        audit: AuditTrail | None = None,
        locks: AccountLockRegistry | None = None,
        clock: Clock | None = None,
        options: LedgerEngineOptions | None = None,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._audit = audit or AuditTrail(clock=self._clock)
        self._locks = locks or AccountLockRegistry()
        self._options = options or LedgerEngineOptions()
        register_immutability_listeners()

    @property
    def options(self) -> LedgerEngineOptions:
        return self._options

    @property
    def catalog(self) -> CreditTypeCatalog:
        return self._catalog

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    # =========================================================================
    # Single operations
    # =========================================================================

    def execute(
        self,
        account: AccountRef,
        op_type: TransactionType,
        amount: int,
        business_code: str,
        business_id: str | None = None,
        remark: str | None = None,
        extra_data: Mapping[str, Any] | None = None,
        *,
        operator_id: str | None = None,
        batch_no: str | None = None,
        source_transaction_id: UUID | None = None,
        pending: bool = False,
        lock: LockHandle | None = None,
        ip_address: str | None = None,
        source: str | None = None,
        device: str | None = None,
    ) -> ExecutionResult:
        """
        Apply one operation to ``account``.

        Returns the stored transaction.  If ``(business_code,
        business_id)`` already has a non-cancelled transaction, that
        transaction is returned unchanged with ``replayed=True``.

        ``lock`` runs the operation inside a critical section the caller
        already holds (see ``acquire_lock``).  ``ip_address``, ``source``
        and ``device`` describe the requesting client and are stored on
        the row.
        """
        try:
            op = LedgerOperation(
                account=account,
                op_type=op_type,
                amount=amount,
                business_code=business_code,
                business_id=business_id,
                remark=remark,
                extra_data=extra_data or {},
                operator_id=operator_id,
                batch_no=batch_no,
                source_transaction_id=source_transaction_id,
                pending=pending,
                ip_address=ip_address,
                source=source,
                device=device,
            )
        except CreditKernelError as exc:
            logger.warning(
                "ledger_request_rejected",
                extra={"error_kind": exc.kind.name, "error": str(exc)},
            )
            self._audit.rejected_request(
                {
                    "account": account,
                    "op_type": getattr(op_type, "value", op_type),
                    "amount": amount,
                    "business_code": business_code,
                    "business_id": business_id,
                    "operator_id": operator_id,
                },
                exc,
            )
            raise
        return self.submit(op, lock=lock)

    def submit(self, op: LedgerOperation, lock: LockHandle | None = None) -> ExecutionResult:
        """Apply a prepared LedgerOperation.  See ``execute``."""
        started = time.monotonic()
        with LogContext.bind(
            account_ref=op.account.key,
            business_code=op.business_code,
            business_id=op.business_id,
            operator_id=op.operator_id,
            batch_no=op.batch_no,
        ):
            logger.info(
                "ledger_execute_started",
                extra={"transaction_type": op.op_type.value, "amount": op.amount},
            )
            try:
                result = self._locked(
                    op.account, lock, lambda session: self._apply(session, op)
                )
            except CreditKernelError as exc:
                self._log_failure(op, exc, started)
                self._audit.execution(op, error=exc)
                raise
            except SQLAlchemyError as exc:
                error = DatabaseError("execute", str(getattr(exc, "orig", None) or exc))
                self._log_failure(op, error, started)
                self._audit.execution(op, error=error)
                raise error from exc

            logger.info(
                "ledger_execute_completed",
                extra={
                    "transaction_id": str(result.transaction_id),
                    "transaction_type": op.op_type.value,
                    "amount": op.amount,
                    "replayed": result.replayed,
                    "balance": result.account.balance if result.account else None,
                    "frozen_amount": result.account.frozen_amount if result.account else None,
                    "duration_ms": _elapsed_ms(started),
                },
            )
            self._audit.execution(
                op,
                transaction_id=result.transaction_id,
                replayed=result.replayed,
                payload={
                    "before_balance": result.transaction.before_balance,
                    "after_balance": result.transaction.after_balance,
                    "before_frozen": result.transaction.before_frozen,
                    "after_frozen": result.transaction.after_frozen,
                    "status": result.transaction.status.value,
                },
            )
            return result

    def add_credits(self, account: AccountRef, amount: int, business_code: str,
                    business_id: str | None = None, remark: str | None = None,
                    extra_data: Mapping[str, Any] | None = None, **kwargs: Any) -> ExecutionResult:
        return self.execute(account, TransactionType.INCOME, amount, business_code,
                            business_id, remark, extra_data, **kwargs)

    def deduct_credits(self, account: AccountRef, amount: int, business_code: str,
                       business_id: str | None = None, remark: str | None = None,
                       extra_data: Mapping[str, Any] | None = None, **kwargs: Any) -> ExecutionResult:
        return self.execute(account, TransactionType.EXPENSE, amount, business_code,
                            business_id, remark, extra_data, **kwargs)

    def freeze_credits(self, account: AccountRef, amount: int, business_code: str,
                       business_id: str | None = None, remark: str | None = None,
                       extra_data: Mapping[str, Any] | None = None, **kwargs: Any) -> ExecutionResult:
        return self.execute(account, TransactionType.FROZEN, amount, business_code,
                            business_id, remark, extra_data, **kwargs)

    def unfreeze_credits(self, account: AccountRef, amount: int, business_code: str,
                         business_id: str | None = None, remark: str | None = None,
                         extra_data: Mapping[str, Any] | None = None, **kwargs: Any) -> ExecutionResult:
        return self.execute(account, TransactionType.UNFROZEN, amount, business_code,
                            business_id, remark, extra_data, **kwargs)

    def expire_credits(self, account: AccountRef, amount: int, business_code: str,
                       business_id: str | None = None, remark: str | None = None,
                       extra_data: Mapping[str, Any] | None = None, **kwargs: Any) -> ExecutionResult:
        return self.execute(account, TransactionType.EXPIRED, amount, business_code,
                            business_id, remark, extra_data, **kwargs)

    # =========================================================================
    # Batches
    # =========================================================================

    def execute_batch(self, ops: Iterable[LedgerOperation]) -> BatchResult:
        """
        Execute each operation independently.

        A failing item never rolls back or aborts its siblings; failures
        are returned as ``(operation, error)`` pairs.
        """
        succeeded: list[ExecutionResult] = []
        failed: list[tuple[LedgerOperation, CreditKernelError]] = []
        started = time.monotonic()

        for op in ops:
            try:
                succeeded.append(self.submit(op))
            except CreditKernelError as exc:
                failed.append((op, exc))
            except Exception as exc:
                logger.exception(
                    "batch_item_crashed",
                    extra={"account_ref": op.account.key, "business_code": op.business_code},
                )
                failed.append((op, LedgerSystemError(f"{type(exc).__name__}: {exc}")))

        result = BatchResult(tuple(succeeded), tuple(failed))
        log = logger.warning if failed else logger.info
        log(
            "ledger_batch_completed",
            extra={
                "succeeded": len(succeeded),
                "failed": len(failed),
                "failed_kinds": sorted({err.kind.name for _, err in failed}),
                "duration_ms": _elapsed_ms(started),
            },
        )
        return result

    def _fan_out(
        self,
        op_type: TransactionType,
        accounts: Sequence[AccountRef],
        amount: int,
        business_code: str,
        business_id: str | None,
        remark: str | None,
        extra_data: Mapping[str, Any] | None,
        operator_id: str | None,
        batch_no: str | None,
    ) -> BatchResult:
        batch_no = batch_no or uuid4().hex
        ops = [
            LedgerOperation(
                account=ref,
                op_type=op_type,
                amount=amount,
                business_code=business_code,
                business_id=(
                    compose_key(business_id, ref.user_id, ref.credit_type_id)
                    if business_id
                    else None
                ),
                remark=remark,
                extra_data=extra_data or {},
                operator_id=operator_id,
                batch_no=batch_no,
            )
            for ref in dict.fromkeys(accounts)
        ]
        return self.execute_batch(ops)

    def batch_add_credits(
        self,
        accounts: Sequence[AccountRef],
        amount: int,
        business_code: str,
        business_id: str | None = None,
        remark: str | None = None,
        extra_data: Mapping[str, Any] | None = None,
        operator_id: str | None = None,
        batch_no: str | None = None,
    ) -> BatchResult:
        """
        Credit ``amount`` to each account.

        One business event fans out to one transaction per account; each
        item is keyed by ``business_id``, user id and credit type id
        (``compose_key``), so distinct accounts never share a key.
        """
        return self._fan_out(TransactionType.INCOME, accounts, amount, business_code,
                             business_id, remark, extra_data, operator_id, batch_no)

    def batch_deduct_credits(
        self,
        accounts: Sequence[AccountRef],
        amount: int,
        business_code: str,
        business_id: str | None = None,
        remark: str | None = None,
        extra_data: Mapping[str, Any] | None = None,
        operator_id: str | None = None,
        batch_no: str | None = None,
    ) -> BatchResult:
        """Debit ``amount`` from each account.  See ``batch_add_credits``."""
        return self._fan_out(TransactionType.EXPENSE, accounts, amount, business_code,
                             business_id, remark, extra_data, operator_id, batch_no)

    # =========================================================================
    # Pending income
    # =========================================================================

    def complete_transaction(
        self,
        transaction_id: UUID,
        operator_id: str | None = None,
        reason: str | None = None,
    ) -> ExecutionResult:
        """Apply a PENDING income and mark it COMPLETED."""
        ref = self._transaction_ref(transaction_id)

        def work(session: Session) -> ExecutionResult:
            log = TransactionLog(session)
            store = self._store(session)
            tx = log.get(transaction_id)
            status = TransactionStatus(tx.status)
            if status is not TransactionStatus.PENDING:
                raise TransactionStatusError(
                    str(tx.id), status.value, TransactionStatus.COMPLETED.value
                )
            account = store.get_for_update(ref)
            if account is None:
                raise AccountNotFoundError(ref.key)
            if not account.is_active:
                raise AccountDisabledError(ref.key)

            before = AccountState.of(account)
            after = apply_effect(before, TransactionType(tx.transaction_type), tx.amount, ref.key)
            check_account_state(ref.key, **after.as_changes())
            expected = account.version
            log.update_status(
                tx.id,
                TransactionStatus.COMPLETED,
                self._clock.now(),
                before_balance=before.balance,
                after_balance=after.balance,
                before_frozen=before.frozen_amount,
                after_frozen=after.frozen_amount,
                applied_version=expected + 1,
            )
            store.update_with_version(account, after.as_changes(), expected)
            return ExecutionResult(
                TransactionRecord.from_model(tx), AccountRecord.from_model(account)
            )

        return self._status_change(
            ref, transaction_id, TransactionStatus.COMPLETED, operator_id, reason, work
        )

    def cancel_transaction(
        self,
        transaction_id: UUID,
        reason: str | None = None,
        operator_id: str | None = None,
    ) -> TransactionRecord:
        """PENDING -> CANCELLED.  Frees the idempotency key."""
        return self._settle(transaction_id, TransactionStatus.CANCELLED, reason, operator_id)

    def fail_transaction(
        self,
        transaction_id: UUID,
        reason: str | None = None,
        operator_id: str | None = None,
    ) -> TransactionRecord:
        """PENDING -> FAILED.  The idempotency key stays taken."""
        return self._settle(transaction_id, TransactionStatus.FAILED, reason, operator_id)

    def _settle(
        self,
        transaction_id: UUID,
        status: TransactionStatus,
        reason: str | None,
        operator_id: str | None,
    ) -> TransactionRecord:
        ref = self._transaction_ref(transaction_id)

        def work(session: Session) -> ExecutionResult:
            tx = TransactionLog(session).update_status(transaction_id, status, self._clock.now())
            return ExecutionResult(TransactionRecord.from_model(tx), None)

        return self._status_change(
            ref, transaction_id, status, operator_id, reason, work
        ).transaction

    def batch_update_transaction_status(
        self,
        transaction_ids: Iterable[UUID],
        status: TransactionStatus,
        reason: str | None = None,
        operator_id: str | None = None,
    ) -> StatusBatchResult:
        """
        Move each pending transaction to ``status``.

        Items settle independently, as in ``execute_batch``; a transaction
        that is missing or no longer pending is reported in ``failed``.
        """
        settle = {
            TransactionStatus.COMPLETED: lambda tx_id: self.complete_transaction(
                tx_id, operator_id=operator_id, reason=reason
            ).transaction,
            TransactionStatus.CANCELLED: lambda tx_id: self.cancel_transaction(
                tx_id, reason, operator_id
            ),
            TransactionStatus.FAILED: lambda tx_id: self.fail_transaction(
                tx_id, reason, operator_id
            ),
        }.get(status)
        if settle is None:
            raise InvalidParameterError("status", status, "must be a terminal status")

        succeeded: list[TransactionRecord] = []
        failed: list[tuple[UUID, CreditKernelError]] = []
        started = time.monotonic()
        for tx_id in dict.fromkeys(transaction_ids):
            try:
                succeeded.append(settle(tx_id))
            except CreditKernelError as exc:
                failed.append((tx_id, exc))

        log = logger.warning if failed else logger.info
        log(
            "transaction_status_batch_completed",
            extra={
                "target_status": status.value,
                "succeeded": len(succeeded),
                "failed": len(failed),
                "failed_kinds": sorted({err.kind.name for _, err in failed}),
                "duration_ms": _elapsed_ms(started),
            },
        )
        return StatusBatchResult(status, tuple(succeeded), tuple(failed))

    def _status_change(
        self,
        ref: AccountRef,
        transaction_id: UUID,
        status: TransactionStatus,
        operator_id: str | None,
        reason: str | None,
        work: Callable[[Session], ExecutionResult],
    ) -> ExecutionResult:
        with LogContext.bind(account_ref=ref.key, operator_id=operator_id):
            try:
                result = self._locked(ref, None, work)
            except CreditKernelError as exc:
                self._audit.event(
                    AuditAction.TRANSACTION_STATUS_CHANGED,
                    AuditOutcome.FAILURE,
                    ref,
                    transaction_id=transaction_id,
                    operator_id=operator_id,
                    error=exc,
                    payload={"target_status": status.value, "reason": reason},
                )
                raise
            self._audit.event(
                AuditAction.TRANSACTION_STATUS_CHANGED,
                AuditOutcome.SUCCESS,
                ref,
                transaction_id=transaction_id,
                operator_id=operator_id,
                payload={"target_status": status.value, "reason": reason},
            )
            return result

    # =========================================================================
    # Administrative operations
    # =========================================================================

    def correct_balance(
        self,
        account: AccountRef,
        calculated_balance: int,
        reason: str,
        operator_id: str | None = None,
        expected_version: int | None = None,
    ) -> AccountRecord:
        """
        Set the stored balance to ``calculated_balance``.

        Optimistic and single-attempt: the write is conditioned on
        ``expected_version`` (or the version just read) and a
        VersionConflictError goes back to the caller, who must decide
        again with fresh data.  Totals absorb the delta so the balance
        equation still holds.  Does not take the account lock.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidParameterError("reason", reason, "a correction needs a reason")
        if isinstance(calculated_balance, bool) or not isinstance(calculated_balance, int):
            raise InvalidParameterError("calculated_balance", calculated_balance, "must be an integer")
        if calculated_balance < 0:
            raise InvalidParameterError("calculated_balance", calculated_balance, "must be >= 0")

        before: dict[str, int] = {}

        def work(session: Session) -> AccountRecord:
            store = self._store(session)
            row = store.get(account)
            version = row.version if expected_version is None else expected_version
            if row.frozen_amount > calculated_balance:
                raise InvalidParameterError(
                    "calculated_balance",
                    calculated_balance,
                    f"below frozen amount {row.frozen_amount}",
                )
            delta = calculated_balance - (row.total_income - row.total_expense)
            changes = {
                "balance": calculated_balance,
                "total_income": row.total_income + max(delta, 0),
                "total_expense": row.total_expense + max(-delta, 0),
            }
            check_account_state(account.key, frozen_amount=row.frozen_amount, **changes)
            before.update(balance=row.balance, version=version)
            store.update_with_version(row, changes, version)
            return AccountRecord.from_model(row)

        with LogContext.bind(account_ref=account.key, operator_id=operator_id):
            try:
                record = self._in_transaction(work, attempts=1)
            except CreditKernelError as exc:
                self._audit.event(
                    AuditAction.BALANCE_CORRECTED,
                    AuditOutcome.FAILURE,
                    account,
                    operator_id=operator_id,
                    error=exc,
                    payload={"calculated_balance": calculated_balance, "reason": reason},
                )
                raise
            logger.warning(
                "balance_corrected",
                extra={
                    "before_balance": before["balance"],
                    "after_balance": record.balance,
                    "reason": reason,
                    "version": record.version,
                },
            )
            self._audit.event(
                AuditAction.BALANCE_CORRECTED,
                AuditOutcome.SUCCESS,
                account,
                operator_id=operator_id,
                payload={
                    "before_balance": before["balance"],
                    "after_balance": record.balance,
                    "expected_version": before["version"],
                    "reason": reason,
                },
            )
            return record

    def set_account_status(
        self,
        account: AccountRef,
        is_active: bool,
        reason: str,
        operator_id: str | None = None,
    ) -> AccountRecord:
        """Deactivate or reactivate an account.  Accounts are never deleted."""
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidParameterError("reason", reason, "a status change needs a reason")

        def work(session: Session) -> AccountRecord:
            store = self._store(session)
            row = store.get_for_update(account)
            if row is None:
                raise AccountNotFoundError(account.key)
            if row.is_active != is_active:
                store.update_with_version(row, {"is_active": is_active}, row.version)
            return AccountRecord.from_model(row)

        with LogContext.bind(account_ref=account.key, operator_id=operator_id):
            record = self._locked(account, None, work)
            logger.info(
                "account_status_changed",
                extra={"is_active": is_active, "reason": reason},
            )
            self._audit.event(
                AuditAction.ACCOUNT_STATUS_CHANGED,
                AuditOutcome.SUCCESS,
                account,
                operator_id=operator_id,
                payload={"is_active": is_active, "reason": reason},
            )
            return record

    # =========================================================================
    # Pessimistic locks across requests
    # =========================================================================

    def acquire_lock(self, account: AccountRef, timeout: float | None = None) -> LockHandle:
        """
        Hold ``account``'s lock beyond a single call.

        Pass the handle as ``lock=`` to ``execute``.  Other callers wait
        (bounded) until ``release_lock``.
        """
        return self._locks.acquire(
            account.lock_key,
            self._options.lock_timeout_seconds if timeout is None else timeout,
            label=account.key,
        )

    def release_lock(self, handle: LockHandle) -> None:
        self._locks.release(handle)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_account(self, account: AccountRef) -> AccountRecord:
        with self._session_factory() as session:
            record = AccountSelector(session).get(account)
        if record is None:
            raise AccountNotFoundError(account.key)
        return record

    def get_or_create_account(self, account: AccountRef) -> AccountRecord:
        return self._in_transaction(
            lambda session: AccountRecord.from_model(self._store(session).get_or_create(account))
        )

    def batch_create_accounts(self, accounts: Iterable[AccountRef]) -> list[AccountRecord]:
        return self._in_transaction(
            lambda session: [
                AccountRecord.from_model(a) for a in self._store(session).batch_create(accounts)
            ]
        )

    def has_enough_credits(self, account: AccountRef, amount: int) -> bool:
        """True if the account is active and its available balance covers ``amount``."""
        check_amount(amount)
        with self._session_factory() as session:
            record = AccountSelector(session).get(account)
        return record is not None and record.is_active and record.available_balance >= amount

    def get_transaction(self, transaction_id: UUID) -> TransactionRecord:
        with self._session_factory() as session:
            return TransactionRecord.from_model(TransactionLog(session).get(transaction_id))

    def get_related_transactions(self, transaction_id: UUID) -> list[TransactionRecord]:
        """Transactions whose source is ``transaction_id``, oldest first."""
        with self._session_factory() as session:
            return TransactionSelector(session).related(transaction_id)

    def find_transaction_by_business(
        self, business_code: str, business_id: str
    ) -> TransactionRecord | None:
        with self._session_factory() as session:
            tx = TransactionLog(session).find_by_business(business_code, business_id)
            return TransactionRecord.from_model(tx) if tx else None

    def get_account_snapshot(
        self, account: AccountRef, as_of: datetime | None = None
    ) -> AccountSnapshot:
        credit_type = self._catalog.get(account.credit_type_id)
        with self._session_factory() as session:
            return AccountSelector(session).snapshot(
                account,
                as_utc(as_of) or self._clock.now(),
                expiry_for=_expiry_fn(credit_type),
            )

    # =========================================================================
    # Internals
    # =========================================================================

    def _store(self, session: Session) -> AccountStore:
        return AccountStore(
            session,
            self._locks,
            self._clock,
            row_lock_timeout=self._options.lock_timeout_seconds,
        )

    def _locked(
        self,
        account: AccountRef,
        lock: LockHandle | None,
        work: Callable[[Session], T],
    ) -> T:
        handle = None
        if lock is not None:
            if not self._locks.holds(lock, account.lock_key):
                raise InvalidParameterError(
                    "lock", lock.key, f"handle does not hold the lock of {account.key}"
                )
        else:
            handle = self._locks.acquire(
                account.lock_key, self._options.lock_timeout_seconds, label=account.key
            )
        try:
            return self._in_transaction(work)
        finally:
            if handle is not None:
                self._locks.release(handle)

    def _in_transaction(self, work: Callable[[Session], T], attempts: int | None = None) -> T:
        """Run ``work`` in a fresh session and commit; retry version races only."""
        limit = attempts or self._options.version_retry_limit
        for attempt in range(1, limit + 1):
            session = self._session_factory()
            try:
                result = work(session)
                session.commit()
                return result
            except VersionConflictError as exc:
                session.rollback()
                if attempt >= limit:
                    raise
                logger.warning(
                    "version_conflict_retry",
                    extra={
                        "attempt": attempt,
                        "max_attempts": limit,
                        "expected_version": exc.expected_version,
                        "actual_version": exc.actual_version,
                    },
                )
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()
        raise LedgerSystemError("retry loop exited without a result")

    def _apply(self, session: Session, op: LedgerOperation) -> ExecutionResult:
        store = self._store(session)
        log = TransactionLog(session)

        if op.idempotency_key is not None:
            existing = log.find_by_business(op.business_code, op.business_id)
            if existing is not None:
                return self._replay(session, op, existing)

        credit_type = self._catalog.get(op.account.credit_type_id)
        if not credit_type.is_valid and op.op_type not in _ALLOWED_ON_DISABLED_TYPE:
            raise CreditTypeDisabledError(credit_type.id)

        account = store.get_or_create(op.account, for_update=True)
        if not account.is_active:
            raise AccountDisabledError(op.account.key)

        now = self._clock.now()
        if op.source_transaction_id is not None:
            self._check_source_lot(log, account, op)
        if op.op_type is TransactionType.EXPIRED:
            self._check_expirable(log, account, credit_type, op, now)

        before = AccountState.of(account)
        after = before if op.pending else apply_effect(before, op.op_type, op.amount, op.account.key)
        check_account_state(op.account.key, **after.as_changes())

        seq = account.last_seq + 1
        expected = account.version
        try:
            tx = log.append(
                op,
                account,
                seq=seq,
                status=TransactionStatus.PENDING if op.pending else TransactionStatus.COMPLETED,
                before_balance=before.balance,
                after_balance=after.balance,
                before_frozen=before.frozen_amount,
                after_frozen=after.frozen_amount,
                created_at=now,
                applied_version=None if op.pending else expected + 1,
                expiry_time=(
                    compute_expiry_time(credit_type, now)
                    if op.op_type is TransactionType.INCOME
                    else None
                ),
            )
        except TransactionExistsError:
            existing = log.find_by_business(op.business_code, op.business_id)
            if existing is None:
                raise
            return self._replay(session, op, existing)

        store.update_with_version(account, {**after.as_changes(), "last_seq": seq}, expected)
        return ExecutionResult(
            TransactionRecord.from_model(tx), AccountRecord.from_model(account)
        )

    def _replay(
        self, session: Session, op: LedgerOperation, existing: CreditTransaction
    ) -> ExecutionResult:
        mismatched = []
        if (existing.user_id, existing.credit_type_id) != (
            op.account.user_id, op.account.credit_type_id
        ):
            mismatched.append("account")
        if TransactionType(existing.transaction_type) is not op.op_type:
            mismatched.append("transaction_type")
        if existing.amount != op.amount:
            mismatched.append("amount")

        if mismatched:
            if self._options.strict_replay:
                raise BusinessCodeConflictError(
                    op.business_code, op.business_id, str(existing.id), mismatched
                )
            logger.warning(
                "idempotent_replay_mismatch",
                extra={
                    "existing_transaction_id": str(existing.id),
                    "mismatched_fields": mismatched,
                },
            )
        else:
            logger.info(
                "idempotent_replay",
                extra={"existing_transaction_id": str(existing.id)},
            )

        account = session.get(CreditAccount, existing.account_id)
        return ExecutionResult(
            TransactionRecord.from_model(existing),
            AccountRecord.from_model(account) if account else None,
            replayed=True,
        )

    def _check_source_lot(
        self, log: TransactionLog, account: CreditAccount, op: LedgerOperation
    ) -> None:
        lot = log.find(op.source_transaction_id)
        if (
            lot is None
            or lot.account_id != account.id
            or TransactionType(lot.transaction_type) is not TransactionType.INCOME
            or TransactionStatus(lot.status) is not TransactionStatus.COMPLETED
        ):
            raise TransactionNotFoundError(str(op.source_transaction_id))

    def _check_expirable(
        self,
        log: TransactionLog,
        account: CreditAccount,
        credit_type: CreditType,
        op: LedgerOperation,
        now: datetime,
    ) -> None:
        book = LotBook.replay(
            (TransactionRecord.from_model(t) for t in log.list_applied(account.id)),
            _expiry_fn(credit_type),
        )
        if op.source_transaction_id is not None:
            lot = book.lots.get(op.source_transaction_id)
            free = 0 if lot is None or lot.expired else lot.free
            if free < op.amount:
                raise CreditsExpiredError(
                    op.account.key, op.amount, free, str(op.source_transaction_id)
                )
            return
        expirable = sum(lot.amount for lot in book.expirable(now))
        if expirable < op.amount:
            raise CreditsExpiredError(op.account.key, op.amount, expirable)

    def _transaction_ref(self, transaction_id: UUID) -> AccountRef:
        with self._session_factory() as session:
            tx = TransactionLog(session).get(transaction_id)
            return AccountRef(tx.user_id, tx.credit_type_id)

    def _log_failure(self, op: LedgerOperation, exc: CreditKernelError, started: float) -> None:
        logger.warning(
            "ledger_execute_failed",
            extra={
                "transaction_type": op.op_type.value,
                "amount": op.amount,
                "error_kind": exc.kind.name,
                "error_code": exc.code,
                "error_context": exc.context,
                "duration_ms": _elapsed_ms(started),
            },
        )


def _expiry_fn(credit_type: CreditType) -> Callable[[datetime], datetime | None]:
    return lambda created_at: compute_expiry_time(credit_type, created_at)


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
