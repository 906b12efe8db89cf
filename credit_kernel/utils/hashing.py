"""
Deterministic hashing utilities.

All hashing in the credit kernel must be deterministic and reproducible.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not natively supported."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys sorted, no whitespace, consistent handling of datetime/UUID/Enum.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_transaction(
    transaction_id: UUID,
    account_id: UUID,
    transaction_type: Any,
    amount: int,
    business_code: str,
    business_id: str | None,
    seq: int,
    created_at: datetime,
    source_transaction_id: UUID | None,
    expiry_time: datetime | None,
    extra_data: dict,
    client: dict | None = None,
) -> str:
    """
    Checksum of the columns of a transaction that are fixed at creation.

    Status, balances and completion fields may legitimately change while
    the row is pending, so they are not covered.
    """
    return hash_payload({
        "id": transaction_id,
        "account_id": account_id,
        "type": transaction_type,
        "amount": amount,
        "business_code": business_code,
        "business_id": business_id,
        "seq": seq,
        "created_at": created_at,
        "source_transaction_id": source_transaction_id,
        "expiry_time": expiry_time,
        "extra_data": extra_data,
        "client": client or {},
    })
