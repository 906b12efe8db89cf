"""
Credit Kernel

A multi-type credit/points ledger with:
- Idempotent, atomic per-account operations
- Serialized account writes (lock plus version check)
- Append-only transaction log and audit trail
- FIFO lot tracking and expiration
"""

__version__ = "0.1.0"
