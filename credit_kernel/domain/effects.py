"""
Effects -- pure balance arithmetic for one ledger operation.

Given an account state and an operation, returns the next state or raises
the business error that forbids it.  No I/O; the engine persists the
result.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from credit_kernel.domain.dtos import TransactionType
from credit_kernel.exceptions import InsufficientBalanceError, InsufficientFrozenError


@dataclass(frozen=True)
class AccountState:
    balance: int
    frozen_amount: int
    total_income: int
    total_expense: int

    @property
    def available(self) -> int:
        return self.balance - self.frozen_amount

    @classmethod
    def of(cls, account) -> AccountState:
        return cls(
            balance=account.balance,
            frozen_amount=account.frozen_amount,
            total_income=account.total_income,
            total_expense=account.total_expense,
        )

    def as_changes(self) -> dict[str, int]:
        return {
            "balance": self.balance,
            "frozen_amount": self.frozen_amount,
            "total_income": self.total_income,
            "total_expense": self.total_expense,
        }


def apply_effect(
    state: AccountState,
    op_type: TransactionType,
    amount: int,
    account_ref: str,
) -> AccountState:
    """
    Next state after applying ``op_type`` of ``amount``.

    Raises:
        InsufficientBalanceError: Expense/Frozen/Expired beyond available.
        InsufficientFrozenError: Unfrozen beyond frozen amount.
    """
    if op_type is TransactionType.INCOME:
        return replace(
            state,
            balance=state.balance + amount,
            total_income=state.total_income + amount,
        )

    if op_type in (TransactionType.EXPENSE, TransactionType.EXPIRED):
        if state.available < amount:
            raise InsufficientBalanceError(account_ref, amount, state.available)
        return replace(
            state,
            balance=state.balance - amount,
            total_expense=state.total_expense + amount,
        )

    if op_type is TransactionType.FROZEN:
        if state.available < amount:
            raise InsufficientBalanceError(account_ref, amount, state.available)
        return replace(state, frozen_amount=state.frozen_amount + amount)

    if op_type is TransactionType.UNFROZEN:
        if state.frozen_amount < amount:
            raise InsufficientFrozenError(account_ref, amount, state.frozen_amount)
        return replace(state, frozen_amount=state.frozen_amount - amount)

    raise ValueError(f"Unhandled transaction type: {op_type}")


def fold_state(transactions) -> tuple[AccountState, int]:
    """
    Recompute an account state from completed transactions.

    Income:+, Expense/Expired:-, Frozen/Unfrozen move only the frozen
    amount.  No bounds are checked; a drifted log folds to whatever it
    says.  Returns the state and the number of transactions folded.
    """
    frozen = income = expense = 0
    count = 0
    for tx in transactions:
        count += 1
        kind = tx.transaction_type
        if kind is TransactionType.INCOME:
            income += tx.amount
        elif kind in (TransactionType.EXPENSE, TransactionType.EXPIRED):
            expense += tx.amount
        elif kind is TransactionType.FROZEN:
            frozen += tx.amount
        elif kind is TransactionType.UNFROZEN:
            frozen -= tx.amount
    balance = income - expense
    return AccountState(balance, frozen, income, expense), count
