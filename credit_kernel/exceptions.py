"""
Typed Exception Hierarchy for the Credit Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger must be able to react to a failure without parsing
message strings. Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A closed ERROR KIND and a stable string CODE (machine-readable, API-safe)
  3. A numeric ERROR_CODE kept stable for external consumers
  4. Structured CONTEXT data (``required``/``available`` and friends)

Example:
    try:
        engine.deduct_credits(ref, 500, "ORDER_PAY", "o-1")
    except InsufficientBalanceError as e:
        render(code=e.code, required=e.required, available=e.available)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CreditKernelError (base, kind=GENERAL)
    |
    +-- InvalidParameterError
    |
    +-- AccountError
    |   +-- AccountNotFoundError
    |   +-- AccountDisabledError
    |
    +-- BalanceError
    |   +-- InsufficientBalanceError
    |   +-- InsufficientFrozenError
    |   +-- CreditsExpiredError
    |
    +-- CreditTypeError
    |   +-- CreditTypeNotFoundError
    |   +-- CreditTypeDisabledError
    |
    +-- TransactionError
    |   +-- TransactionExistsError
    |   +-- TransactionNotFoundError
    |   +-- TransactionStatusError
    |   +-- BusinessCodeConflictError
    |
    +-- ConcurrencyError
    |   +-- VersionConflictError
    |   +-- OperationLockedError
    |
    +-- BatchPartialFailureError
    |
    +-- ImmutabilityViolationError
    |
    +-- InfrastructureError
        +-- DatabaseError
        +-- LedgerSystemError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Kind                    | Numeric | Code                    | When Raised
------------------------|---------|-------------------------|-----------------------------
GENERAL                 | 10000   | CREDIT_ERROR            | Unclassified kernel error
ACCOUNT_NOT_FOUND       | 10001   | ACCOUNT_NOT_FOUND       | No account for (user, type)
ACCOUNT_DISABLED        | 10002   | ACCOUNT_DISABLED        | Account is deactivated
INSUFFICIENT_BALANCE    | 10003   | INSUFFICIENT_BALANCE    | available < required
CREDIT_TYPE_NOT_FOUND   | 10004   | CREDIT_TYPE_NOT_FOUND   | Unknown credit type
CREDIT_TYPE_DISABLED    | 10005   | CREDIT_TYPE_DISABLED    | Credit type is not valid
TRANSACTION_NOT_FOUND   | 10009   | TRANSACTION_NOT_FOUND   | Unknown transaction id
TRANSACTION_STATUS      | 10010   | TRANSACTION_STATUS      | Illegal status transition
INSUFFICIENT_FROZEN     | 10017   | INSUFFICIENT_FROZEN     | frozen < required
INVALID_PARAMETER       | 10018   | INVALID_PARAMETER       | Bad amount / identifier
DATABASE                | 10019   | DATABASE_ERROR          | Storage fault
SYSTEM                  | 10020   | SYSTEM_ERROR            | Unexpected internal fault
BUSINESS_CODE_CONFLICT  | 10021   | BUSINESS_CODE_CONFLICT  | Key reused for another op
TRANSACTION_EXISTS      | 10022   | TRANSACTION_EXISTS      | Idempotency key collision
BATCH_PARTIAL_FAILURE   | 10023   | BATCH_PARTIAL_FAILURE   | Some batch items failed
OPERATION_LOCKED        | 10024   | OPERATION_LOCKED        | Account lock timeout
VERSION_CONFLICT        | 10025   | VERSION_CONFLICT        | Optimistic update race
CREDITS_EXPIRED         | 10026   | CREDITS_EXPIRED         | No expirable credits
IMMUTABILITY_VIOLATION  | 10020   | IMMUTABILITY_VIOLATION  | Tampering with the log

===============================================================================
DESIGN DECISIONS
===============================================================================

1. ``kind`` and ``code`` are CLASS attributes, so ``VersionConflictError.code``
   works without an instance and batch results can be grouped by kind.

2. Structured fields are plain instance attributes. ``context`` collects them
   into a mapping; the JSON log formatter emits them as ``exc_<field>``.

3. Retrying is a policy of the caller, keyed off the kind. Only
   VERSION_CONFLICT is ever retried inside the kernel.

===============================================================================
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of error kinds. Value is the stable string code."""

    GENERAL = "CREDIT_ERROR"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    CREDIT_TYPE_NOT_FOUND = "CREDIT_TYPE_NOT_FOUND"
    CREDIT_TYPE_DISABLED = "CREDIT_TYPE_DISABLED"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TRANSACTION_STATUS = "TRANSACTION_STATUS"
    INSUFFICIENT_FROZEN = "INSUFFICIENT_FROZEN"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    DATABASE = "DATABASE_ERROR"
    SYSTEM = "SYSTEM_ERROR"
    BUSINESS_CODE_CONFLICT = "BUSINESS_CODE_CONFLICT"
    TRANSACTION_EXISTS = "TRANSACTION_EXISTS"
    BATCH_PARTIAL_FAILURE = "BATCH_PARTIAL_FAILURE"
    OPERATION_LOCKED = "OPERATION_LOCKED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    CREDITS_EXPIRED = "CREDITS_EXPIRED"
    IMMUTABILITY_VIOLATION = "IMMUTABILITY_VIOLATION"

    @property
    def numeric_code(self) -> int:
        return NUMERIC_CODES[self]


NUMERIC_CODES: dict[ErrorKind, int] = {
    ErrorKind.GENERAL: 10000,
    ErrorKind.ACCOUNT_NOT_FOUND: 10001,
    ErrorKind.ACCOUNT_DISABLED: 10002,
    ErrorKind.INSUFFICIENT_BALANCE: 10003,
    ErrorKind.CREDIT_TYPE_NOT_FOUND: 10004,
    ErrorKind.CREDIT_TYPE_DISABLED: 10005,
    ErrorKind.TRANSACTION_NOT_FOUND: 10009,
    ErrorKind.TRANSACTION_STATUS: 10010,
    ErrorKind.INSUFFICIENT_FROZEN: 10017,
    ErrorKind.INVALID_PARAMETER: 10018,
    ErrorKind.DATABASE: 10019,
    ErrorKind.SYSTEM: 10020,
    ErrorKind.BUSINESS_CODE_CONFLICT: 10021,
    ErrorKind.TRANSACTION_EXISTS: 10022,
    ErrorKind.BATCH_PARTIAL_FAILURE: 10023,
    ErrorKind.OPERATION_LOCKED: 10024,
    ErrorKind.VERSION_CONFLICT: 10025,
    ErrorKind.CREDITS_EXPIRED: 10026,
    ErrorKind.IMMUTABILITY_VIOLATION: 10020,
}


class CreditKernelError(Exception):
    """
    Base exception for all credit kernel errors.

    Every subclass sets ``kind``; ``code`` mirrors ``kind.value``.
    """

    kind: ErrorKind = ErrorKind.GENERAL
    code: str = ErrorKind.GENERAL.value

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.code = cls.kind.value

    @property
    def error_code(self) -> int:
        return self.kind.numeric_code

    @property
    def context(self) -> dict[str, Any]:
        """Structured fields of this error, for rendering without parsing."""
        return {
            k: v for k, v in vars(self).items()
            if not k.startswith("_")
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.name,
            "code": self.code,
            "error_code": self.error_code,
            "message": str(self),
            "context": self.context,
        }


class InvalidParameterError(CreditKernelError):
    """A parameter failed validation (amount, identifier, page size...)."""

    kind = ErrorKind.INVALID_PARAMETER

    def __init__(self, parameter: str, value: Any, reason: str):
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid parameter {parameter}={value!r}: {reason}")


# Account-related exceptions


class AccountError(CreditKernelError):
    """Base exception for account-related errors."""


class AccountNotFoundError(AccountError):
    """No account exists for the given reference."""

    kind = ErrorKind.ACCOUNT_NOT_FOUND

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account not found: {account_ref}")


class AccountDisabledError(AccountError):
    """The account is deactivated and rejects ledger operations."""

    kind = ErrorKind.ACCOUNT_DISABLED

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account is disabled: {account_ref}")


# Balance-related exceptions


class BalanceError(CreditKernelError):
    """Base exception for balance-related errors."""


class InsufficientBalanceError(BalanceError):
    """Available balance does not cover the requested amount."""

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, account_ref: str, required: int, available: int):
        self.account_ref = account_ref
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance on {account_ref}: "
            f"required {required}, available {available}"
        )


class InsufficientFrozenError(BalanceError):
    """Frozen amount does not cover the requested unfreeze."""

    kind = ErrorKind.INSUFFICIENT_FROZEN

    def __init__(self, account_ref: str, required: int, frozen: int):
        self.account_ref = account_ref
        self.required = required
        self.frozen = frozen
        super().__init__(
            f"Insufficient frozen amount on {account_ref}: "
            f"required {required}, frozen {frozen}"
        )


class CreditsExpiredError(BalanceError):
    """No eligible expired credits cover the requested expiry."""

    kind = ErrorKind.CREDITS_EXPIRED

    def __init__(
        self,
        account_ref: str,
        required: int,
        expirable: int,
        lot_id: str | None = None,
    ):
        self.account_ref = account_ref
        self.required = required
        self.expirable = expirable
        self.lot_id = lot_id
        where = f" in lot {lot_id}" if lot_id else ""
        super().__init__(
            f"Cannot expire {required} on {account_ref}{where}: "
            f"only {expirable} eligible"
        )


# Credit type exceptions


class CreditTypeError(CreditKernelError):
    """Base exception for credit type catalog errors."""


class CreditTypeNotFoundError(CreditTypeError):
    """The catalog has no credit type with this id."""

    kind = ErrorKind.CREDIT_TYPE_NOT_FOUND

    def __init__(self, credit_type_id: str):
        self.credit_type_id = credit_type_id
        super().__init__(f"Credit type not found: {credit_type_id}")


class CreditTypeDisabledError(CreditTypeError):
    """The credit type is marked invalid in the catalog."""

    kind = ErrorKind.CREDIT_TYPE_DISABLED

    def __init__(self, credit_type_id: str):
        self.credit_type_id = credit_type_id
        super().__init__(f"Credit type is disabled: {credit_type_id}")


# Transaction-related exceptions


class TransactionError(CreditKernelError):
    """Base exception for transaction log errors."""


class TransactionExistsError(TransactionError):
    """A non-cancelled transaction already holds this idempotency key."""

    kind = ErrorKind.TRANSACTION_EXISTS

    def __init__(self, business_code: str, business_id: str):
        self.business_code = business_code
        self.business_id = business_id
        super().__init__(
            f"Transaction already exists for {business_code}:{business_id}"
        )


class TransactionNotFoundError(TransactionError):
    """No transaction exists with this id (or business key)."""

    kind = ErrorKind.TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class TransactionStatusError(TransactionError):
    """Illegal status transition (only Pending may move, and only once)."""

    kind = ErrorKind.TRANSACTION_STATUS

    def __init__(self, transaction_id: str, current_status: str, target_status: str):
        self.transaction_id = transaction_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Transaction {transaction_id} cannot move from "
            f"{current_status} to {target_status}"
        )


class BusinessCodeConflictError(TransactionError):
    """
    An idempotency key was reused for a different operation.

    Raised only when strict replay checking is enabled.
    """

    kind = ErrorKind.BUSINESS_CODE_CONFLICT

    def __init__(
        self,
        business_code: str,
        business_id: str,
        existing_transaction_id: str,
        mismatched_fields: list[str],
    ):
        self.business_code = business_code
        self.business_id = business_id
        self.existing_transaction_id = existing_transaction_id
        self.mismatched_fields = mismatched_fields
        super().__init__(
            f"Business key {business_code}:{business_id} already used by "
            f"transaction {existing_transaction_id} with different "
            f"{', '.join(mismatched_fields)}"
        )


# Concurrency-related exceptions


class ConcurrencyError(CreditKernelError):
    """Base exception for concurrency control errors."""


class VersionConflictError(ConcurrencyError):
    """Optimistic update lost a race: the account version moved."""

    kind = ErrorKind.VERSION_CONFLICT

    def __init__(self, account_ref: str, expected_version: int, actual_version: int | None):
        self.account_ref = account_ref
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {account_ref}: expected {expected_version}, "
            f"found {actual_version}"
        )


class OperationLockedError(ConcurrencyError):
    """The per-account lock could not be acquired within the timeout."""

    kind = ErrorKind.OPERATION_LOCKED

    def __init__(self, account_ref: str, timeout_seconds: float):
        self.account_ref = account_ref
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Account {account_ref} is locked by another operation "
            f"(waited {timeout_seconds}s)"
        )


# Aggregate exceptions


class BatchPartialFailureError(CreditKernelError):
    """
    Some items of a batch failed.

    ``failed_items`` is a list of ``(item, error)`` pairs, the item being
    the operation or transaction id that failed; successful siblings are
    not rolled back.
    """

    kind = ErrorKind.BATCH_PARTIAL_FAILURE

    def __init__(self, failed_items: list, succeeded_count: int):
        self.failed_items = failed_items
        self.succeeded_count = succeeded_count
        super().__init__(
            f"Batch partially failed: {len(failed_items)} failed, "
            f"{succeeded_count} succeeded"
        )

    @property
    def context(self) -> dict[str, Any]:
        return {
            "succeeded_count": self.succeeded_count,
            "failed": [
                {"item": repr(item), "kind": err.kind.name, "message": str(err)}
                for item, err in self.failed_items
            ],
        }


# Immutability exceptions


class ImmutabilityViolationError(CreditKernelError):
    """
    Attempted to modify or delete an immutable record.

    Terminal transactions and audit records are append-only. No ledger
    row is ever deleted.
    """

    kind = ErrorKind.IMMUTABILITY_VIOLATION

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Infrastructure exceptions


class InfrastructureError(CreditKernelError):
    """Base exception for storage and runtime faults."""


class DatabaseError(InfrastructureError):
    """A storage operation failed; the original error is chained."""

    kind = ErrorKind.DATABASE

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Database error during {operation}: {detail}")


class LedgerSystemError(InfrastructureError):
    """Unexpected internal fault."""

    kind = ErrorKind.SYSTEM

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"System error: {detail}")
