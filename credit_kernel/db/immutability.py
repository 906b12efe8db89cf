"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The transaction log is the source of truth the reconciler folds balances
from.  If a settled row could be edited, drift would become undetectable.
These listeners intercept modifications made through SQLAlchemy before any
SQL reaches the database:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable                 | Allowed
--------------------|--------------------------------|---------------------------
CreditTransaction   | Once status is terminal        | PENDING -> terminal update
AuditRecord         | ALWAYS (from creation)         | nothing
CreditAccount       | Never updated here, never      | updates (version-guarded
                    | deleted                        | by AccountStore)

===============================================================================
DESIGN DECISIONS
===============================================================================

1. "WAS TERMINAL", NOT "IS TERMINAL"
   The completion workflow itself sets a terminal status.  The transition
   PENDING -> COMPLETED/FAILED/CANCELLED is allowed in the same flush as the
   columns it fills (balances, applied_version, complete_time).  Any change
   after that is blocked.  Detected via attribute history.

2. INLINE IMPORTS
   Models import from db; db imports models lazily to avoid cycles.

===============================================================================
USAGE
===============================================================================

    from credit_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()   # idempotent; LedgerEngine calls it

To disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from credit_kernel.exceptions import ImmutabilityViolationError
from credit_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            **extra,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type, entity_id=entity_id, reason=reason
    )


def _status_value(value) -> str:
    return getattr(value, "value", value)


def _check_transaction_immutability(mapper, connection, target):
    """
    Prevent updates to terminal CreditTransaction rows.

    Logic:
        1. status changing FROM terminal -> anything: block
        2. status unchanged AND terminal: block (another field is changing)
        3. status changing FROM pending: allow (this IS the settlement)
    """
    from credit_kernel.models.transaction import CreditTransaction

    if not isinstance(target, CreditTransaction):
        return

    pending = "pending"
    status_history = get_history(target, "status")

    if status_history.deleted:
        was_terminal = _status_value(status_history.deleted[0]) != pending
    elif not status_history.added:
        was_terminal = _status_value(target.status) != pending
    else:
        was_terminal = False

    if not was_terminal:
        return

    for attr in inspect(target).attrs:
        if attr.history.has_changes():
            raise _blocked(
                "CreditTransaction",
                str(target.id),
                "UPDATE",
                f"Cannot modify field '{attr.key}' on a settled transaction",
                field=attr.key,
            )


def _check_transaction_delete(mapper, connection, target):
    """Transactions are never deleted, whatever their status."""
    raise _blocked(
        "CreditTransaction",
        str(target.id),
        "DELETE",
        "Ledger transactions cannot be deleted",
    )


def _check_audit_record_immutability(mapper, connection, target):
    raise _blocked(
        "AuditRecord",
        str(target.id),
        "UPDATE",
        "Audit records are append-only",
    )


def _check_audit_record_delete(mapper, connection, target):
    raise _blocked(
        "AuditRecord",
        str(target.id),
        "DELETE",
        "Audit records cannot be deleted",
    )


def _check_account_delete(mapper, connection, target):
    """Accounts are deactivated, never deleted."""
    raise _blocked(
        "CreditAccount",
        str(target.id),
        "DELETE",
        "Credit accounts cannot be deleted; deactivate instead",
    )


def _listeners():
    from credit_kernel.models.account import CreditAccount
    from credit_kernel.models.audit import AuditRecord
    from credit_kernel.models.transaction import CreditTransaction

    return [
        (CreditTransaction, "before_update", _check_transaction_immutability),
        (CreditTransaction, "before_delete", _check_transaction_delete),
        (AuditRecord, "before_update", _check_audit_record_immutability),
        (AuditRecord, "before_delete", _check_audit_record_delete),
        (CreditAccount, "before_delete", _check_account_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call repeatedly; already-registered listeners are skipped.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must violate immutability on
    purpose (e.g. to plant drift for the reconciler).
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
