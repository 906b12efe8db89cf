"""Utility modules for the credit kernel."""

from credit_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    hash_transaction,
)

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "hash_transaction",
]
