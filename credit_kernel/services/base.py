"""
BaseService -- abstract base for session-bound kernel services.

Responsibility:
    Common constructor and session-handling contract for AccountStore and
    TransactionLog.  Services use ``session.flush()`` -- never
    ``session.commit()``.  The LedgerEngine (or the test harness) owns
    commit and rollback, so an account write and its transaction append
    land in one database transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for session-bound kernel services.

    Guarantees:
        The service never calls ``session.commit()`` or
        ``session.rollback()``; savepoints (``begin_nested``) are used
        where a constraint race must be absorbed without losing the
        caller's transaction.
    """

    def __init__(self, session: Session):
        self.session = session
