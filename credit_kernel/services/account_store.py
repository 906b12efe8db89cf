"""
AccountStore -- versioned account records and their concurrency primitives.

Responsibility:
    The single authoritative store of CreditAccount rows keyed by
    (user_id, credit_type_id).  Every write goes through
    ``update_with_version``, a conditional UPDATE on the version the writer
    read; a lost race surfaces as VersionConflictError.  Pessimistic
    per-account locking is provided through the shared AccountLockRegistry
    and, on PostgreSQL, a row lock.

Architecture position:
    Kernel > Services -- flush-only, the caller owns the transaction.

Failure modes:
    - AccountNotFoundError from ``get``.
    - VersionConflictError from ``update_with_version``.
    - OperationLockedError from ``acquire_lock`` / ``get_for_update``.
    - InvalidParameterError for unknown mutation fields.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from credit_kernel.domain.clock import Clock, SystemClock
from credit_kernel.domain.dtos import AccountRef
from credit_kernel.exceptions import (
    AccountNotFoundError,
    InvalidParameterError,
    OperationLockedError,
    VersionConflictError,
)
from credit_kernel.logging_config import get_logger
from credit_kernel.models.account import CreditAccount
from credit_kernel.services.account_lock import AccountLockRegistry, LockHandle
from credit_kernel.services.base import BaseService

logger = get_logger("services.account_store")

MUTABLE_FIELDS = frozenset({
    "balance",
    "frozen_amount",
    "total_income",
    "total_expense",
    "last_seq",
    "is_active",
    "level",
    "remark",
})


class AccountStore(BaseService):
    """
    Account persistence with optimistic and pessimistic concurrency control.

    Contract:
        - get / find / get_or_create read the current row.
        - update_with_version writes only if the stored version still
          equals ``expected_version`` and bumps it by one.
        - acquire_lock / release bracket a pessimistic critical section.
    """

    def __init__(
        self,
        session: Session,
        locks: AccountLockRegistry | None = None,
        clock: Clock | None = None,
        row_lock_timeout: float | None = None,
    ):
        super().__init__(session)
        self._locks = locks or AccountLockRegistry()
        self._clock = clock or SystemClock()
        self._row_lock_timeout = row_lock_timeout

    # -- reads -------------------------------------------------------------

    def _select(self, ref: AccountRef):
        return select(CreditAccount).where(
            CreditAccount.user_id == ref.user_id,
            CreditAccount.credit_type_id == ref.credit_type_id,
        )

    def find(self, ref: AccountRef) -> CreditAccount | None:
        return self.session.execute(self._select(ref)).scalar_one_or_none()

    def get(self, ref: AccountRef) -> CreditAccount:
        account = self.find(ref)
        if account is None:
            raise AccountNotFoundError(ref.key)
        return account

    def get_for_update(self, ref: AccountRef) -> CreditAccount | None:
        """
        Read the row under a row lock (PostgreSQL; no-op on SQLite).

        The lock wait is bounded by ``row_lock_timeout`` so that a stuck
        holder in another process surfaces as OperationLockedError.
        """
        if self._row_lock_timeout is not None and self._is_postgres():
            millis = int(self._row_lock_timeout * 1000)
            self.session.execute(text(f"SET LOCAL lock_timeout = {millis}"))
        try:
            return self.session.execute(
                self._select(ref).with_for_update().execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except OperationalError as exc:
            if "lock" in str(exc.orig).lower() and self._is_postgres():
                raise OperationLockedError(ref.key, self._row_lock_timeout or 0) from exc
            raise

    def get_or_create(self, ref: AccountRef, for_update: bool = False) -> CreditAccount:
        """
        Return the account, creating it on first use.

        A concurrent creator may win the unique constraint; the insert runs
        in a savepoint so the loser re-reads the winner's row.
        """
        read = self.get_for_update if for_update else self.find
        account = read(ref)
        if account is not None:
            return account

        now = self._clock.now()
        account = CreditAccount(
            user_id=ref.user_id,
            credit_type_id=ref.credit_type_id,
            balance=0,
            frozen_amount=0,
            total_income=0,
            total_expense=0,
            version=0,
            last_seq=0,
            is_active=True,
            level=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(account)
                self.session.flush()
        except IntegrityError:
            logger.info("account_create_race", extra={"account_ref": ref.key})
            account = read(ref)
            if account is None:
                raise
            return account

        logger.info(
            "account_created",
            extra={"account_ref": ref.key, "account_id": str(account.id)},
        )
        return account

    def batch_create(self, refs: Iterable[AccountRef]) -> list[CreditAccount]:
        """get_or_create for many refs, in input order, duplicates collapsed."""
        seen: dict[AccountRef, CreditAccount] = {}
        for ref in refs:
            if ref not in seen:
                seen[ref] = self.get_or_create(ref)
        return list(seen.values())

    # -- writes ------------------------------------------------------------

    def update_with_version(
        self,
        account: CreditAccount,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> CreditAccount:
        """
        Conditionally write ``changes`` and bump the version.

        Preconditions: ``changes`` only names fields in MUTABLE_FIELDS.
        Postconditions: the row holds ``changes`` and version
            ``expected_version + 1``; ``account`` is refreshed.

        Raises:
            VersionConflictError: the stored version is no longer
                ``expected_version``.  Nothing was written.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise InvalidParameterError(
                "changes", sorted(unknown), "not mutable through update_with_version"
            )

        stmt = (
            update(CreditAccount.__table__)
            .where(
                CreditAccount.__table__.c.id == account.id,
                CreditAccount.__table__.c.version == expected_version,
            )
            .values(
                **changes,
                version=expected_version + 1,
                updated_at=self._clock.now(),
            )
        )
        result = self.session.execute(stmt)

        if result.rowcount != 1:
            actual = self.session.execute(
                select(CreditAccount.version).where(CreditAccount.id == account.id)
            ).scalar_one_or_none()
            logger.warning(
                "account_version_conflict",
                extra={
                    "account_ref": f"{account.user_id}:{account.credit_type_id}",
                    "expected_version": expected_version,
                    "actual_version": actual,
                },
            )
            raise VersionConflictError(
                f"{account.user_id}:{account.credit_type_id}", expected_version, actual
            )

        self.session.refresh(account)
        return account

    # -- pessimistic locking -----------------------------------------------

    def acquire_lock(self, ref: AccountRef, timeout: float) -> LockHandle:
        """Block up to ``timeout`` seconds for the per-account lock."""
        return self._locks.acquire(ref.lock_key, timeout, label=ref.key)

    def release(self, handle: LockHandle) -> None:
        self._locks.release(handle)

    def _is_postgres(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"
