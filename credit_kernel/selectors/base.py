"""
Module: credit_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors and the
    shared Page result type.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - DTO return convention: frozen dataclasses, never ORM instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC
from dataclasses import dataclass
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from credit_kernel.exceptions import InvalidParameterError

T = TypeVar("T")

MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class Page(Generic[T]):
    items: tuple[T, ...]
    page: int
    page_size: int
    total: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


def check_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise InvalidParameterError("page", page, "must be >= 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise InvalidParameterError("page_size", page_size, f"must be within 1..{MAX_PAGE_SIZE}")


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs.  They MUST NOT mutate any data.
    """

    def __init__(self, session: Session):
        self.session = session
