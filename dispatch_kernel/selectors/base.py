"""
Module: dispatch_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.  Selectors
    are the read side of the kernel: dashboards, CLI reports and replay checks
    go through them instead of touching services.
Architecture position: Kernel > Selectors.  May import from db/, domain/ and
    models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors never call session.add(), delete(), flush()
      or commit().
    - DTO return convention: selectors return frozen dataclasses, never live
      ORM instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from dispatch_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Abstract base class for all selectors."""

    def __init__(self, session: Session):
        self.session = session
