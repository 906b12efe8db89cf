"""
AccountLockRegistry -- pessimistic per-account locks with bounded waits.

Responsibility:
    Serialises critical sections per account key within the process.  A
    lock is represented by a LockHandle token, not by thread ownership, so
    a handle acquired in one request may be released from another (freeze
    now, unfreeze later).

Failure modes:
    - OperationLockedError when the lock is not acquired within the timeout.
    - LedgerSystemError when releasing a handle that does not own the lock.

Notes:
    On PostgreSQL the AccountStore additionally takes a row lock
    (SELECT ... FOR UPDATE) so that separate processes serialise too.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID, uuid4

from credit_kernel.exceptions import LedgerSystemError, OperationLockedError
from credit_kernel.logging_config import get_logger

logger = get_logger("services.account_lock")


@dataclass(frozen=True)
class LockHandle:
    key: str
    token: UUID = field(default_factory=uuid4)
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class _Entry:
    __slots__ = ("lock", "refs", "owner")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0
        self.owner: UUID | None = None


class AccountLockRegistry:
    """
    Process-wide table of per-account locks.

    Entries are reference counted and dropped once no holder or waiter
    remains, so the table does not grow with the number of accounts seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def acquire(self, key: str, timeout: float, label: str | None = None) -> LockHandle:
        """
        Block up to ``timeout`` seconds for ``key``.

        ``label`` names the account in the timeout error and log, where
        ``key`` itself is an encoded form.
        """
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.refs += 1

        started = time.monotonic()
        acquired = entry.lock.acquire(timeout=max(timeout, 0))
        if not acquired:
            with self._guard:
                self._drop_ref(key, entry)
            logger.warning(
                "account_lock_timeout",
                extra={"lock_key": key, "account_ref": label, "timeout_seconds": timeout},
            )
            raise OperationLockedError(label or key, timeout)

        handle = LockHandle(key)
        entry.owner = handle.token
        waited_ms = round((time.monotonic() - started) * 1000, 2)
        if waited_ms > 100:
            logger.info(
                "account_lock_contended",
                extra={"lock_key": key, "waited_ms": waited_ms},
            )
        return handle

    def release(self, handle: LockHandle) -> None:
        with self._guard:
            entry = self._entries.get(handle.key)
            if entry is None or entry.owner != handle.token:
                raise LedgerSystemError(
                    f"Lock for {handle.key} is not held by handle {handle.token}"
                )
            entry.owner = None
            self._drop_ref(handle.key, entry)
            entry.lock.release()

    def holds(self, handle: LockHandle, key: str) -> bool:
        """True if ``handle`` currently owns the lock for ``key``."""
        with self._guard:
            entry = self._entries.get(key)
            return (
                handle.key == key
                and entry is not None
                and entry.owner == handle.token
            )

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.owner is not None

    def _drop_ref(self, key: str, entry: _Entry) -> None:
        entry.refs -= 1
        if entry.refs == 0 and self._entries.get(key) is entry:
            del self._entries[key]
