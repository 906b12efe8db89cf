"""
Ledger Invariants Contract.

These invariants are structural law.  They are hardcoded in the ledger
engine, the transaction log constraints and the immutability listeners.
No configuration may switch them off.
"""

from enum import Enum, unique

from credit_kernel.exceptions import LedgerSystemError


@unique
class LedgerInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    BALANCE_EQUATION = "balance_equation"
    """balance == total_income - total_expense after every commit.
    Checked by check_account_state before the engine commits."""

    AVAILABLE_NON_NEGATIVE = "available_non_negative"
    """0 <= frozen_amount <= balance, i.e. available balance never
    negative.  Checked by check_account_state."""

    IDEMPOTENCY = "idempotency"
    """At most one non-cancelled transaction per (business_code,
    business_id).  Enforced by a unique constraint on the log."""

    IMMUTABILITY = "immutability"
    """Settled transactions and audit records are append-only; no ledger
    row is deleted.  Enforced by credit_kernel.db.immutability."""

    SERIALIZED_ACCOUNT_WRITES = "serialized_account_writes"
    """One critical section per account at a time.  Enforced by the
    account lock registry plus version-conditioned updates."""

    DETECT_BEFORE_CORRECT = "detect_before_correct"
    """Drift is reported, never auto-corrected.  Corrections are explicit,
    reasoned and audited."""


ALL_LEDGER_INVARIANTS: frozenset[LedgerInvariant] = frozenset(LedgerInvariant)

# The kernel package may not import from these packages.
# Enforced by tests/architecture/test_credit_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "credit_services",
    "credit_config",
)


def check_account_state(
    account_ref: str,
    balance: int,
    frozen_amount: int,
    total_income: int,
    total_expense: int,
) -> None:
    """
    Raise LedgerSystemError if a computed account state breaks the
    balance equation or the frozen bounds.  A failure here is a bug.
    """
    if balance != total_income - total_expense:
        raise LedgerSystemError(
            f"{LedgerInvariant.BALANCE_EQUATION.value} violated on {account_ref}: "
            f"balance={balance} income={total_income} expense={total_expense}"
        )
    if frozen_amount < 0 or frozen_amount > balance:
        raise LedgerSystemError(
            f"{LedgerInvariant.AVAILABLE_NON_NEGATIVE.value} violated on {account_ref}: "
            f"balance={balance} frozen={frozen_amount}"
        )
