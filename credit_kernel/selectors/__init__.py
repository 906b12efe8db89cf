"""Read-only query selectors returning DTOs."""

from credit_kernel.selectors.account_selector import AccountSelector, AccountSnapshot, LotView
from credit_kernel.selectors.base import Page
from credit_kernel.selectors.transaction_selector import (
    TransactionSelector,
    TransactionStatistics,
    TypeStatistics,
)

__all__ = [
    "AccountSelector",
    "AccountSnapshot",
    "LotView",
    "Page",
    "TransactionSelector",
    "TransactionStatistics",
    "TypeStatistics",
]
