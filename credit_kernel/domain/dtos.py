"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable data structures flowing in and out of the ledger engine:
    AccountRef (identity), LedgerOperation (input), TransactionRecord and
    AccountRecord (persistence boundary), ExecutionResult and BatchResult
    (outputs).  Also owns the closed TransactionType / TransactionStatus
    variants and the status transition table.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked only from
    the service and selector layers.

Invariants enforced:
    - LedgerOperation.amount is a strictly positive int (bool rejected).
    - AccountRef components are non-empty strings of at most 64 chars.
    - extra_data is deep-frozen so callers cannot mutate it after submission.
    - Only PENDING may transition, and only to a terminal status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping
from uuid import UUID

from credit_kernel.exceptions import (
    BatchPartialFailureError,
    CreditKernelError,
    InvalidParameterError,
)

if TYPE_CHECKING:
    from credit_kernel.models.account import CreditAccount
    from credit_kernel.models.transaction import CreditTransaction

_MAX_ID_LENGTH = 64
_MAX_BUSINESS_ID_LENGTH = 128
_MAX_IP_LENGTH = 45
_MAX_SOURCE_LENGTH = 32


def compose_key(*parts: str) -> str:
    """
    Join identifier parts into one string key.

    Every part but the last carries its length, so distinct tuples of the
    same arity never produce the same key even when parts contain ``:``.
    """
    *head, last = parts
    return "".join(f"{len(part)}:{part}:" for part in head) + last


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of the deep-freeze, for JSON persistence."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class TransactionType(str, Enum):
    """Closed set of ledger operation kinds."""

    INCOME = "income"
    EXPENSE = "expense"
    FROZEN = "frozen"
    UNFROZEN = "unfrozen"
    EXPIRED = "expired"

    @property
    def balance_sign(self) -> int:
        """+1 / -1 / 0: effect on ``balance`` of one unit of this type."""
        return _BALANCE_SIGN[self]


_BALANCE_SIGN = {
    TransactionType.INCOME: 1,
    TransactionType.EXPENSE: -1,
    TransactionType.EXPIRED: -1,
    TransactionType.FROZEN: 0,
    TransactionType.UNFROZEN: 0,
}


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


VALID_STATUS_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


def _check_identifier(name: str, value: Any, max_length: int = _MAX_ID_LENGTH) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameterError(name, value, "must be a non-empty string")
    if len(value) > max_length:
        raise InvalidParameterError(name, value, f"longer than {max_length} characters")


def check_amount(amount: Any, name: str = "amount") -> int:
    """Return ``amount`` if it is a strictly positive int, else raise."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidParameterError(name, amount, "must be an integer")
    if amount <= 0:
        raise InvalidParameterError(name, amount, "must be strictly positive")
    return amount


@dataclass(frozen=True, order=True)
class AccountRef:
    """Opaque account identity: (user id, credit type id)."""

    user_id: str
    credit_type_id: str

    def __post_init__(self) -> None:
        _check_identifier("user_id", self.user_id)
        _check_identifier("credit_type_id", self.credit_type_id)

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.credit_type_id}"

    @property
    def lock_key(self) -> str:
        """Collision-free key for the per-account lock registry."""
        return compose_key(self.user_id, self.credit_type_id)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class LedgerOperation:
    """
    One requested ledger mutation.

    ``business_code`` names the kind of business event (``ORDER_PAY``);
    ``business_id`` identifies one occurrence.  Together they form the
    idempotency key.  Without a business_id the operation is not
    deduplicated.
    """

    account: AccountRef
    op_type: TransactionType
    amount: int
    business_code: str
    business_id: str | None = None
    remark: str | None = None
    extra_data: Mapping[str, Any] = field(default_factory=dict)
    operator_id: str | None = None
    batch_no: str | None = None
    source_transaction_id: UUID | None = None
    pending: bool = False
    ip_address: str | None = None
    source: str | None = None
    device: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.account, AccountRef):
            raise InvalidParameterError("account", self.account, "must be an AccountRef")
        if not isinstance(self.op_type, TransactionType):
            try:
                object.__setattr__(self, "op_type", TransactionType(self.op_type))
            except ValueError:
                raise InvalidParameterError(
                    "op_type", self.op_type, "unknown transaction type"
                ) from None
        check_amount(self.amount)
        _check_identifier("business_code", self.business_code)
        if self.business_id is not None:
            _check_identifier("business_id", self.business_id, _MAX_BUSINESS_ID_LENGTH)
        if self.pending and self.op_type is not TransactionType.INCOME:
            raise InvalidParameterError(
                "pending", self.pending, "only income may be recorded as pending"
            )
        if self.source_transaction_id is not None and not isinstance(self.source_transaction_id, UUID):
            try:
                object.__setattr__(self, "source_transaction_id", UUID(str(self.source_transaction_id)))
            except ValueError:
                raise InvalidParameterError(
                    "source_transaction_id", self.source_transaction_id, "not a UUID"
                ) from None
        if self.source_transaction_id is not None and self.op_type not in (
            TransactionType.EXPENSE,
            TransactionType.EXPIRED,
        ):
            raise InvalidParameterError(
                "source_transaction_id",
                self.source_transaction_id,
                "only expense and expired operations draw from a lot",
            )
        for name, limit in (
            ("ip_address", _MAX_IP_LENGTH),
            ("source", _MAX_SOURCE_LENGTH),
            ("device", _MAX_ID_LENGTH),
        ):
            if getattr(self, name) is not None:
                _check_identifier(name, getattr(self, name), limit)
        object.__setattr__(self, "extra_data", _freeze(dict(self.extra_data or {})))

    @property
    def idempotency_key(self) -> str | None:
        if self.business_id is None:
            return None
        return compose_key(self.business_code, self.business_id)


@dataclass(frozen=True)
class AccountRecord:
    """Snapshot of an account row."""

    id: UUID
    user_id: str
    credit_type_id: str
    balance: int
    frozen_amount: int
    total_income: int
    total_expense: int
    version: int
    is_active: bool
    level: int
    remark: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def ref(self) -> AccountRef:
        return AccountRef(self.user_id, self.credit_type_id)

    @property
    def available_balance(self) -> int:
        return self.balance - self.frozen_amount

    @classmethod
    def from_model(cls, model: CreditAccount) -> AccountRecord:
        return cls(
            id=model.id,
            user_id=model.user_id,
            credit_type_id=model.credit_type_id,
            balance=model.balance,
            frozen_amount=model.frozen_amount,
            total_income=model.total_income,
            total_expense=model.total_expense,
            version=model.version,
            is_active=model.is_active,
            level=model.level,
            remark=model.remark,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass(frozen=True)
class TransactionRecord:
    """Snapshot of a transaction row."""

    id: UUID
    account_id: UUID
    user_id: str
    credit_type_id: str
    seq: int
    transaction_type: TransactionType
    status: TransactionStatus
    amount: int
    before_balance: int
    after_balance: int
    before_frozen: int
    after_frozen: int
    business_code: str
    business_id: str | None
    applied_version: int | None
    source_transaction_id: UUID | None
    remark: str | None
    operator_id: str | None
    batch_no: str | None
    expiry_time: datetime | None
    extra_data: Mapping[str, Any]
    checksum: str
    created_at: datetime
    complete_time: datetime | None
    ip_address: str | None = None
    source: str | None = None
    device: str | None = None

    @property
    def ref(self) -> AccountRef:
        return AccountRef(self.user_id, self.credit_type_id)

    @classmethod
    def from_model(cls, model: CreditTransaction) -> TransactionRecord:
        return cls(
            id=model.id,
            account_id=model.account_id,
            user_id=model.user_id,
            credit_type_id=model.credit_type_id,
            seq=model.seq,
            transaction_type=TransactionType(model.transaction_type),
            status=TransactionStatus(model.status),
            amount=model.amount,
            before_balance=model.before_balance,
            after_balance=model.after_balance,
            before_frozen=model.before_frozen,
            after_frozen=model.after_frozen,
            business_code=model.business_code,
            business_id=model.business_id,
            applied_version=model.applied_version,
            source_transaction_id=model.source_transaction_id,
            remark=model.remark,
            operator_id=model.operator_id,
            batch_no=model.batch_no,
            expiry_time=model.expiry_time,
            extra_data=_freeze(dict(model.extra_data or {})),
            checksum=model.checksum,
            created_at=model.created_at,
            complete_time=model.complete_time,
            ip_address=model.ip_address,
            source=model.source,
            device=model.device,
        )


@dataclass(frozen=True)
class ExecutionResult:
    """
    Result of one LedgerEngine.execute call.

    ``replayed`` is True when the idempotency key matched an existing
    transaction and nothing was applied.
    """

    transaction: TransactionRecord
    account: AccountRecord | None
    replayed: bool = False

    @property
    def transaction_id(self) -> UUID:
        return self.transaction.id


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of a batch: independent per-item successes and failures.

    Failures never roll back successes.  ``raise_for_failures`` turns a
    partial failure into BatchPartialFailureError for callers that want it.
    """

    succeeded: tuple[ExecutionResult, ...]
    failed: tuple[tuple[LedgerOperation, CreditKernelError], ...]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def succeeded_transactions(self) -> list[TransactionRecord]:
        return [r.transaction for r in self.succeeded]

    def raise_for_failures(self) -> None:
        if self.failed:
            raise BatchPartialFailureError(list(self.failed), len(self.succeeded))


@dataclass(frozen=True)
class StatusBatchResult:
    """
    Outcome of moving many pending transactions to one status.

    Each transaction settles on its own; ``failed`` pairs the id with the
    error that stopped it.
    """

    target_status: TransactionStatus
    succeeded: tuple[TransactionRecord, ...]
    failed: tuple[tuple[UUID, CreditKernelError], ...]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            raise BatchPartialFailureError(list(self.failed), len(self.succeeded))
