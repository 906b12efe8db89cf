"""
AuditTrail -- write-only record of state-changing calls and inconsistencies.

Responsibility:
    Builds an AuditEntry for every ledger execution (success, replay or
    failure), status change, account status change, balance correction,
    expiration review and detected inconsistency, and hands it to the
    configured sinks.

Architecture position:
    Kernel > Services.  Called by the LedgerEngine after the account lock
    is released and the ledger transaction has ended.

Failure modes:
    None propagate.  A sink failure is logged with its traceback
    (``audit_sink_failed``) and the originating operation still succeeds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from credit_kernel.db.engine import session_scope
from credit_kernel.domain.clock import Clock, SystemClock
from credit_kernel.domain.dtos import AccountRef, LedgerOperation, thaw
from credit_kernel.exceptions import CreditKernelError
from credit_kernel.logging_config import get_logger
from credit_kernel.models.audit import AuditAction, AuditOutcome, AuditRecord

logger = get_logger("services.audit_trail")


@dataclass(frozen=True)
class AuditEntry:
    occurred_at: datetime
    action: AuditAction
    outcome: AuditOutcome
    account: AccountRef | None = None
    transaction_id: UUID | None = None
    business_code: str | None = None
    business_id: str | None = None
    operator_id: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "occurred_at": self.occurred_at.isoformat(),
            "action": self.action.value,
            "outcome": self.outcome.value,
            "account_ref": self.account.key if self.account else None,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "business_code": self.business_code,
            "business_id": self.business_id,
            "operator_id": self.operator_id,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "payload": thaw(self.payload),
        }


class AuditSink(ABC):
    """Destination for audit entries.  Implementations may raise freely."""

    @abstractmethod
    def write(self, entry: AuditEntry) -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Emits each entry as an ``audit_entry`` structured log line."""

    def __init__(self) -> None:
        self._logger = get_logger("audit")

    def write(self, entry: AuditEntry) -> None:
        self._logger.info("audit_entry", extra={"audit": entry.as_dict()})


class SqlAuditSink(AuditSink):
    """Persists entries to credit_audit_records in a session of its own."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def write(self, entry: AuditEntry) -> None:
        with session_scope(self._session_factory) as session:
            session.add(AuditRecord(
                occurred_at=entry.occurred_at,
                action=entry.action.value,
                outcome=entry.outcome.value,
                user_id=entry.account.user_id if entry.account else None,
                credit_type_id=entry.account.credit_type_id if entry.account else None,
                transaction_id=entry.transaction_id,
                business_code=entry.business_code,
                business_id=entry.business_id,
                operator_id=entry.operator_id,
                error_kind=entry.error_kind,
                error_message=(entry.error_message or "")[:1000] or None,
                payload=thaw(entry.payload),
            ))


class MemoryAuditSink(AuditSink):
    """Keeps entries in a list, for tests and embedded inspection."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.entries: list[AuditEntry] = []

    def write(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def by_action(self, action: AuditAction) -> list[AuditEntry]:
        with self._lock:
            return [e for e in self.entries if e.action is action]


class AuditTrail:
    """Fan-out of audit entries to sinks; never raises."""

    def __init__(self, sinks: Iterable[AuditSink] = (), clock: Clock | None = None):
        self._sinks = list(sinks) or [LoggingAuditSink()]
        self._clock = clock or SystemClock()

    def record(self, entry: AuditEntry) -> None:
        for sink in self._sinks:
            try:
                sink.write(entry)
            except Exception:
                logger.exception(
                    "audit_sink_failed",
                    extra={
                        "sink": type(sink).__name__,
                        "audit_action": entry.action.value,
                    },
                )

    def _entry(self, action: AuditAction, outcome: AuditOutcome, **kwargs: Any) -> AuditEntry:
        return AuditEntry(occurred_at=self._clock.now(), action=action, outcome=outcome, **kwargs)

    # -- builders ------------------------------------------------------------

    def execution(
        self,
        op: LedgerOperation,
        *,
        transaction_id: UUID | None = None,
        replayed: bool = False,
        error: CreditKernelError | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        if error is not None:
            outcome = AuditOutcome.FAILURE
        elif replayed:
            outcome = AuditOutcome.REPLAYED
        else:
            outcome = AuditOutcome.SUCCESS
        body = {
            "transaction_type": op.op_type.value,
            "amount": op.amount,
            "batch_no": op.batch_no,
            **dict(payload or {}),
        }
        if error is not None:
            body["error_context"] = _jsonable(error.context)
        self.record(self._entry(
            AuditAction.LEDGER_EXECUTE,
            outcome,
            account=op.account,
            transaction_id=transaction_id,
            business_code=op.business_code,
            business_id=op.business_id,
            operator_id=op.operator_id,
            error_kind=error.kind.name if error else None,
            error_message=str(error) if error else None,
            payload=body,
        ))

    def rejected_request(self, params: Mapping[str, Any], error: CreditKernelError) -> None:
        """A request that failed validation before it became an operation."""
        account = params.get("account")
        self.record(self._entry(
            AuditAction.LEDGER_EXECUTE,
            AuditOutcome.FAILURE,
            account=account if isinstance(account, AccountRef) else None,
            business_code=_str_or_none(params.get("business_code")),
            business_id=_str_or_none(params.get("business_id")),
            operator_id=_str_or_none(params.get("operator_id")),
            error_kind=error.kind.name,
            error_message=str(error),
            payload={k: _jsonable(v) for k, v in params.items() if k != "account"},
        ))

    def event(
        self,
        action: AuditAction,
        outcome: AuditOutcome,
        account: AccountRef | None,
        *,
        transaction_id: UUID | None = None,
        operator_id: str | None = None,
        error: CreditKernelError | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        """Generic entry for status changes, corrections, reviews, drift."""
        self.record(self._entry(
            action,
            outcome,
            account=account,
            transaction_id=transaction_id,
            operator_id=operator_id,
            error_kind=error.kind.name if error else None,
            error_message=str(error) if error else None,
            payload=_jsonable(dict(payload or {})),
        ))


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
