"""
Module: workflow_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.  Selectors
    are the query side of the kernel: structured read access to approval and
    trigger data without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/ (for DTO types).  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: Selectors accept a Session from the caller but MUST NOT
      call session.add(), session.delete(), session.commit(), or session.flush().
    - DTO return convention: Selectors return frozen dataclasses, never raw
      ORM model instances.
    - Session ownership: the caller owns the session and its transaction scope.

Failure modes:
    - NotFoundError subclasses when a selector is asked for one specific row
      that does not exist; list queries return empty results instead.
"""

from abc import ABC
from enum import Enum
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from workflow_kernel.db.base import Base
from workflow_kernel.exceptions import ValidationError

ModelType = TypeVar("ModelType", bound=Base)
E = TypeVar("E", bound=Enum)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only queries,
        and return DTOs.  They MUST NOT mutate any data.
    """

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _page_bounds(page: int, page_size: int) -> tuple[int, int]:
        """Clamp paging input to (page >= 1, 1 <= page_size <= MAX_PAGE_SIZE)."""
        page = max(1, int(page))
        page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
        return page, page_size

    @staticmethod
    def _filter_value(enum_cls: type[E], value: E | str, field: str) -> str:
        """Column value for an enum filter; ValidationError for unknown input."""
        try:
            return enum_cls(value).value
        except ValueError:
            allowed = ", ".join(e.value for e in enum_cls)
            raise ValidationError(
                f"{field} must be one of: {allowed} (got {value!r})", field=field,
            ) from None
