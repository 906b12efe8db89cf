"""
CreditType -- read-only reference data for credit kinds.

Responsibility:
    Describes a credit kind (points, coins, vouchers...) and the expiration
    policy of the lots it produces.  The ledger consults a CreditTypeCatalog
    and never mutates it.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Catalog implementations that hit a
    database or service live outside the kernel and implement
    CreditTypeCatalog.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from credit_kernel.exceptions import CreditTypeDisabledError, CreditTypeNotFoundError


class ExpirationPolicy(str, Enum):
    NEVER_EXPIRE = "never_expire"
    FIXED_DAYS = "fixed_days"
    FIXED_DATE = "fixed_date"
    END_OF_MONTH = "end_of_month"
    END_OF_QUARTER = "end_of_quarter"
    END_OF_YEAR = "end_of_year"
    FIFO = "fifo"


@dataclass(frozen=True)
class CreditType:
    """
    One credit kind.

    ``validity_period`` is in days and may be None.  ``fixed_expiry_date``
    is used only by FIXED_DATE: credits expire at the end of that day (UTC).
    """

    id: str
    code: str
    name: str
    expiration_policy: ExpirationPolicy = ExpirationPolicy.NEVER_EXPIRE
    validity_period: int | None = None
    fixed_expiry_date: date | None = None
    is_valid: bool = True
    unit_name: str = "points"
    description: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.expiration_policy, ExpirationPolicy):
            object.__setattr__(
                self, "expiration_policy", ExpirationPolicy(self.expiration_policy)
            )
        if self.validity_period is not None and self.validity_period < 0:
            raise ValueError(
                f"validity_period must be >= 0 for credit type {self.id}, "
                f"got {self.validity_period}"
            )
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def expires(self) -> bool:
        return self.expiration_policy is not ExpirationPolicy.NEVER_EXPIRE


class CreditTypeCatalog(ABC):
    """Lookup of credit types by id."""

    @abstractmethod
    def find(self, credit_type_id: str) -> CreditType | None:
        ...

    @abstractmethod
    def all(self) -> list[CreditType]:
        ...

    def get(self, credit_type_id: str) -> CreditType:
        """Return the credit type or raise CreditTypeNotFoundError."""
        credit_type = self.find(credit_type_id)
        if credit_type is None:
            raise CreditTypeNotFoundError(credit_type_id)
        return credit_type

    def get_valid(self, credit_type_id: str) -> CreditType:
        """Return the credit type, raising if it is unknown or disabled."""
        credit_type = self.get(credit_type_id)
        if not credit_type.is_valid:
            raise CreditTypeDisabledError(credit_type_id)
        return credit_type


class InMemoryCreditTypeCatalog(CreditTypeCatalog):
    """Dict-backed catalog, built from configuration or in tests."""

    def __init__(self, credit_types: Iterable[CreditType] = ()):
        self._types: dict[str, CreditType] = {}
        for credit_type in credit_types:
            self.register(credit_type)

    def register(self, credit_type: CreditType) -> None:
        if credit_type.id in self._types:
            raise ValueError(f"Duplicate credit type id: {credit_type.id}")
        self._types[credit_type.id] = credit_type

    def find(self, credit_type_id: str) -> CreditType | None:
        return self._types.get(credit_type_id)

    def all(self) -> list[CreditType]:
        return list(self._types.values())
