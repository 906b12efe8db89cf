"""
credit_services.expiration_service -- Lot expiry scanning and execution.

Responsibility:
    Replays an account's log into lots, selects the lots whose expiry
    time has passed with a free (unconsumed, unheld) remainder, and
    expires each one through ``LedgerEngine.execute`` as an Expired
    operation keyed by the lot's transaction id.

Architecture position:
    Services -- recurring background caller composed over the kernel.
    Reads through AccountSelector; every write funnels through the
    locked LedgerEngine path, so invariants are never bypassed.

Invariants enforced:
    - Idempotent by construction: the business key of an expiry is
      ``("CREDITS_EXPIRED", lot transaction id)``; a re-run finds the
      prior Expired transaction and replays it.
    - Disabled accounts are reviewed (eligible lots computed and audited)
      but nothing is expired.

Failure modes:
    - process_account raises AccountNotFoundError / CreditTypeNotFoundError.
    - Per-lot errors (e.g. a lot consumed since the scan) are collected
      on the outcome, never raised.
    - process_accounts / process_credit_type never abort on one account.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credit_kernel.domain.clock import Clock, SystemClock, as_utc
from credit_kernel.domain.credit_type import CreditTypeCatalog
from credit_kernel.domain.dtos import AccountRef, TransactionRecord, TransactionType
from credit_kernel.domain.expiry import compute_expiry_time
from credit_kernel.domain.lots import ExpirableLot
from credit_kernel.exceptions import AccountNotFoundError, CreditKernelError, DatabaseError
from credit_kernel.logging_config import LogContext, get_logger
from credit_kernel.models.audit import AuditAction, AuditOutcome
from credit_kernel.selectors.account_selector import AccountSelector
from credit_kernel.services.ledger_engine import LedgerEngine

logger = get_logger("services.expiration")

EXPIRY_BUSINESS_CODE = "CREDITS_EXPIRED"
EXPIRY_OPERATOR = "system:expiration"


@dataclass(frozen=True)
class ExpirationOutcome:
    """What one account's expiration run did."""

    account: AccountRef
    reference_time: datetime
    expired_amount: int = 0
    transactions: tuple[TransactionRecord, ...] = ()
    eligible: tuple[ExpirableLot, ...] = ()
    review_only: bool = False
    lot_failures: tuple[tuple[UUID, CreditKernelError], ...] = ()
    error: CreditKernelError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.lot_failures

    @property
    def eligible_amount(self) -> int:
        return sum(lot.amount for lot in self.eligible)


@dataclass(frozen=True)
class ExpirationRunSummary:
    credit_type_id: str
    reference_time: datetime
    outcomes: tuple[ExpirationOutcome, ...]

    @property
    def accounts_scanned(self) -> int:
        return len(self.outcomes)

    @property
    def total_expired(self) -> int:
        return sum(o.expired_amount for o in self.outcomes)

    @property
    def failed(self) -> tuple[ExpirationOutcome, ...]:
        return tuple(o for o in self.outcomes if not o.ok)


class ExpirationEngine:
    """
    Expires eligible credit lots.

    Contract:
        For each lot with ``expiry_time <= reference_time`` and a free
        remainder > 0, execute one Expired operation of that remainder
        sourced from the lot.  Returns what was expired.

    Non-goals:
        Scheduling.  Callers decide when to run it and with which
        reference time.
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        session_factory: Callable[[], Session],
        catalog: CreditTypeCatalog | None = None,
        clock: Clock | None = None,
        batch_size: int = 500,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._ledger = ledger
        self._session_factory = session_factory
        self._catalog = catalog or ledger.catalog
        self._clock = clock or SystemClock()
        self._batch_size = batch_size

    def eligible_lots(
        self, account: AccountRef, reference_time: datetime | None = None
    ) -> list[ExpirableLot]:
        """Lots that would be expired at ``reference_time``, without expiring them."""
        return self._scan(account, as_utc(reference_time) or self._clock.now())[1]

    def process_account(
        self, account: AccountRef, reference_time: datetime | None = None
    ) -> ExpirationOutcome:
        reference_time = as_utc(reference_time) or self._clock.now()
        started = time.monotonic()

        with LogContext.bind(account_ref=account.key, operator_id=EXPIRY_OPERATOR):
            is_active, eligible = self._scan(account, reference_time)

            if not is_active:
                logger.info(
                    "expiration_review_only",
                    extra={
                        "eligible_lots": len(eligible),
                        "eligible_amount": sum(lot.amount for lot in eligible),
                    },
                )
                self._ledger.audit.event(
                    AuditAction.EXPIRATION_REVIEW,
                    AuditOutcome.SUCCESS,
                    account,
                    operator_id=EXPIRY_OPERATOR,
                    payload={
                        "reference_time": reference_time,
                        "eligible": [
                            {"lot_id": lot.transaction_id, "amount": lot.amount}
                            for lot in eligible
                        ],
                    },
                )
                return ExpirationOutcome(
                    account, reference_time, eligible=tuple(eligible), review_only=True
                )

            transactions: list[TransactionRecord] = []
            failures: list[tuple[UUID, CreditKernelError]] = []
            expired = 0
            for lot in eligible:
                try:
                    result = self._ledger.execute(
                        account,
                        TransactionType.EXPIRED,
                        lot.amount,
                        EXPIRY_BUSINESS_CODE,
                        str(lot.transaction_id),
                        remark="credits expired",
                        extra_data={
                            "expiry_time": lot.expiry_time.isoformat(),
                            "reference_time": reference_time.isoformat(),
                        },
                        operator_id=EXPIRY_OPERATOR,
                        source_transaction_id=lot.transaction_id,
                    )
                except CreditKernelError as exc:
                    logger.warning(
                        "lot_expiration_failed",
                        extra={"lot_id": str(lot.transaction_id), "error_kind": exc.kind.name},
                    )
                    failures.append((lot.transaction_id, exc))
                    continue
                if not result.replayed:
                    expired += result.transaction.amount
                    transactions.append(result.transaction)

            if expired:
                logger.info(
                    "credits_expired",
                    extra={
                        "amount": expired,
                        "lots": len(transactions),
                        "duration_ms": round((time.monotonic() - started) * 1000, 2),
                    },
                )
            return ExpirationOutcome(
                account,
                reference_time,
                expired_amount=expired,
                transactions=tuple(transactions),
                eligible=tuple(eligible),
                lot_failures=tuple(failures),
            )

    def process_accounts(
        self, accounts: Iterable[AccountRef], reference_time: datetime | None = None
    ) -> list[ExpirationOutcome]:
        """Run ``process_account`` for each account; one failure never stops the rest."""
        reference_time = as_utc(reference_time) or self._clock.now()
        outcomes = []
        for account in accounts:
            try:
                outcomes.append(self.process_account(account, reference_time))
            except CreditKernelError as exc:
                logger.warning(
                    "account_expiration_failed",
                    extra={"account_ref": account.key, "error_kind": exc.kind.name},
                )
                outcomes.append(ExpirationOutcome(account, reference_time, error=exc))
            except SQLAlchemyError as exc:
                logger.exception(
                    "account_expiration_failed",
                    extra={"account_ref": account.key, "error_kind": "DATABASE"},
                )
                outcomes.append(ExpirationOutcome(
                    account, reference_time, error=DatabaseError("expire", str(exc))
                ))
        return outcomes

    def process_credit_type(
        self, credit_type_id: str, reference_time: datetime | None = None
    ) -> ExpirationRunSummary:
        """Scan every account of a credit type in keyset pages of ``batch_size``."""
        reference_time = as_utc(reference_time) or self._clock.now()
        self._catalog.get(credit_type_id)
        started = time.monotonic()

        outcomes: list[ExpirationOutcome] = []
        after: str | None = None
        while True:
            with self._session_factory() as session:
                refs = AccountSelector(session).refs_by_credit_type(
                    credit_type_id, after_user_id=after, limit=self._batch_size
                )
            if not refs:
                break
            outcomes.extend(self.process_accounts(refs, reference_time))
            after = refs[-1].user_id

        summary = ExpirationRunSummary(credit_type_id, reference_time, tuple(outcomes))
        logger.info(
            "expiration_run_completed",
            extra={
                "credit_type_id": credit_type_id,
                "accounts_scanned": summary.accounts_scanned,
                "total_expired": summary.total_expired,
                "failed_accounts": len(summary.failed),
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return summary

    def _scan(
        self, account: AccountRef, reference_time: datetime
    ) -> tuple[bool, list[ExpirableLot]]:
        credit_type = self._catalog.get(account.credit_type_id)
        with self._session_factory() as session:
            selector = AccountSelector(session)
            record = selector.get(account)
            if record is None:
                raise AccountNotFoundError(account.key)
            book = selector.lot_book(
                account, lambda created_at: compute_expiry_time(credit_type, created_at)
            )
        return record.is_active, book.expirable(reference_time)
