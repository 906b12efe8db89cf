"""
TransactionLog -- append-only store of ledger transactions.

Responsibility:
    Appends transaction rows, owns the idempotency lookup by
    (business_code, business_id), serves ordered restartable reads per
    account and applies the only permitted mutation: a PENDING row moving
    to a terminal status.

Architecture position:
    Kernel > Services -- flush-only, the caller owns the transaction.

Invariants enforced:
    - Idempotency is enforced by the uq_credit_tx_idempotency constraint at
      insert time.  The insert runs in a savepoint; a collision surfaces as
      TransactionExistsError and leaves the caller's transaction usable.
    - Status transitions follow VALID_STATUS_TRANSITIONS.
    - Every row carries a checksum over its creation-time columns.

Failure modes:
    - TransactionExistsError on an idempotency collision.
    - TransactionNotFoundError for an unknown id.
    - TransactionStatusError for an illegal status transition.
"""

from collections.abc import Iterator, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from credit_kernel.domain.dtos import (
    VALID_STATUS_TRANSITIONS,
    LedgerOperation,
    TransactionStatus,
    TransactionType,
    compose_key,
    thaw,
)
from credit_kernel.exceptions import (
    TransactionExistsError,
    TransactionNotFoundError,
    TransactionStatusError,
)
from credit_kernel.logging_config import get_logger
from credit_kernel.models.account import CreditAccount
from credit_kernel.models.transaction import CreditTransaction
from credit_kernel.services.base import BaseService
from credit_kernel.utils.hashing import hash_transaction

logger = get_logger("services.transaction_log")


def _client_of(source) -> dict:
    return {
        name: getattr(source, name)
        for name in ("ip_address", "source", "device")
        if getattr(source, name) is not None
    }


class TransactionLog(BaseService):
    """Append-only transaction log over CreditTransaction rows."""

    def append(
        self,
        op: LedgerOperation,
        account: CreditAccount,
        *,
        seq: int,
        status: TransactionStatus,
        before_balance: int,
        after_balance: int,
        before_frozen: int,
        after_frozen: int,
        created_at: datetime,
        applied_version: int | None = None,
        expiry_time: datetime | None = None,
    ) -> CreditTransaction:
        """
        Insert one transaction row.

        Raises:
            TransactionExistsError: a non-cancelled row already holds the
                operation's idempotency key.
        """
        tx_id = uuid4()
        extra_data = thaw(op.extra_data)
        tx = CreditTransaction(
            id=tx_id,
            account_id=account.id,
            user_id=account.user_id,
            credit_type_id=account.credit_type_id,
            seq=seq,
            transaction_type=op.op_type,
            status=status,
            amount=op.amount,
            before_balance=before_balance,
            after_balance=after_balance,
            before_frozen=before_frozen,
            after_frozen=after_frozen,
            business_code=op.business_code,
            business_id=op.business_id,
            idempotency_key=op.idempotency_key,
            applied_version=applied_version,
            source_transaction_id=op.source_transaction_id,
            remark=op.remark,
            operator_id=op.operator_id,
            batch_no=op.batch_no,
            ip_address=op.ip_address,
            source=op.source,
            device=op.device,
            expiry_time=expiry_time,
            extra_data=extra_data,
            created_at=created_at,
            complete_time=created_at if status.is_terminal else None,
            checksum=hash_transaction(
                tx_id,
                account.id,
                op.op_type,
                op.amount,
                op.business_code,
                op.business_id,
                seq,
                created_at,
                op.source_transaction_id,
                expiry_time,
                extra_data,
                client=_client_of(op),
            ),
        )
        try:
            with self.session.begin_nested():
                self.session.add(tx)
                self.session.flush()
        except IntegrityError as exc:
            if op.idempotency_key is None:
                raise
            logger.info(
                "transaction_exists",
                extra={"idempotency_key": op.idempotency_key},
            )
            raise TransactionExistsError(op.business_code, op.business_id) from exc

        logger.debug(
            "transaction_appended",
            extra={
                "transaction_id": str(tx.id),
                "transaction_type": op.op_type.value,
                "amount": op.amount,
                "seq": seq,
                "status": status.value,
            },
        )
        return tx

    # -- lookups -----------------------------------------------------------

    def find(self, transaction_id: UUID) -> CreditTransaction | None:
        return self.session.get(CreditTransaction, transaction_id)

    def get(self, transaction_id: UUID) -> CreditTransaction:
        tx = self.find(transaction_id)
        if tx is None:
            raise TransactionNotFoundError(str(transaction_id))
        return tx

    def find_by_business(self, business_code: str, business_id: str) -> CreditTransaction | None:
        """The non-cancelled transaction for this business event, if any."""
        key = compose_key(business_code, business_id)
        return self.session.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == key)
        ).scalar_one_or_none()

    def get_by_business(self, business_code: str, business_id: str) -> CreditTransaction:
        tx = self.find_by_business(business_code, business_id)
        if tx is None:
            raise TransactionNotFoundError(f"{business_code}:{business_id}")
        return tx

    def list_by_business(self, business_code: str, business_id: str) -> list[CreditTransaction]:
        """All rows for a business event, cancelled ones included, oldest first."""
        return list(self.session.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.business_code == business_code,
                CreditTransaction.business_id == business_id,
            )
            .order_by(CreditTransaction.created_at, CreditTransaction.seq)
        ).scalars())

    def list_by_account(
        self,
        account_id: UUID,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        """
        Transactions of one account in log order (``seq``).

        Restartable: pass the last ``seq`` seen as ``after_seq`` to resume.
        """
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.seq > after_seq,
            )
            .order_by(CreditTransaction.seq)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def iter_by_account(self, account_id: UUID, chunk_size: int = 500) -> Iterator[CreditTransaction]:
        """Stream an account's log in chunks, resuming after each chunk's last seq."""
        after = 0
        while True:
            chunk = self.list_by_account(account_id, after_seq=after, limit=chunk_size)
            if not chunk:
                return
            yield from chunk
            after = chunk[-1].seq

    def list_applied(self, account_id: UUID) -> list[CreditTransaction]:
        """Completed transactions of one account in apply order."""
        return list(self.session.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.status == TransactionStatus.COMPLETED,
            )
            .order_by(CreditTransaction.applied_version)
        ).scalars())

    def list_income_lots(self, account_id: UUID) -> list[CreditTransaction]:
        """Completed income rows of one account, oldest lot first."""
        return list(self.session.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.transaction_type == TransactionType.INCOME,
                CreditTransaction.status == TransactionStatus.COMPLETED,
            )
            .order_by(CreditTransaction.applied_version)
        ).scalars())

    # -- status ------------------------------------------------------------

    def update_status(
        self,
        transaction_id: UUID,
        new_status: TransactionStatus,
        completed_at: datetime,
        **fields: Any,
    ) -> CreditTransaction:
        """
        Move a transaction to ``new_status``.

        Only PENDING -> COMPLETED/FAILED/CANCELLED is legal.  Cancelling
        clears the idempotency key so the business event may be retried.
        ``fields`` fills the columns settled together with the status
        (balances, applied_version) and is only accepted with COMPLETED.
        """
        tx = self.get(transaction_id)
        current = TransactionStatus(tx.status)
        if new_status not in VALID_STATUS_TRANSITIONS[current]:
            raise TransactionStatusError(str(tx.id), current.value, new_status.value)
        if fields and new_status is not TransactionStatus.COMPLETED:
            raise TransactionStatusError(str(tx.id), current.value, new_status.value)

        tx.status = new_status
        tx.complete_time = completed_at
        if new_status is TransactionStatus.CANCELLED:
            tx.idempotency_key = None
        for name, value in fields.items():
            setattr(tx, name, value)
        self.session.flush()

        logger.info(
            "transaction_status_changed",
            extra={
                "transaction_id": str(tx.id),
                "from_status": current.value,
                "to_status": new_status.value,
            },
        )
        return tx

    # -- integrity ---------------------------------------------------------

    def verify_integrity(self, transaction_id: UUID) -> bool:
        """Recompute the checksum of one row and compare."""
        tx = self.get(transaction_id)
        expected = hash_transaction(
            tx.id,
            tx.account_id,
            TransactionType(tx.transaction_type),
            tx.amount,
            tx.business_code,
            tx.business_id,
            tx.seq,
            tx.created_at,
            tx.source_transaction_id,
            tx.expiry_time,
            tx.extra_data or {},
            client=_client_of(tx),
        )
        ok = expected == tx.checksum
        if not ok:
            logger.error(
                "transaction_checksum_mismatch",
                extra={"transaction_id": str(tx.id)},
            )
        return ok

    def batch_verify_integrity(self, transaction_ids: Sequence[UUID]) -> dict[UUID, bool]:
        return {tx_id: self.verify_integrity(tx_id) for tx_id in transaction_ids}
