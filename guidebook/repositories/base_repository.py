# guidebook/repositories/base_repository.py
"""
Generic data access shared by the booking engine repositories.

Repositories flush but never commit; the owning service's ``transaction()``
decides when work becomes durable.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """Lookup and insert helpers bound to one model and one session."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as exc:
            self.logger.error("Lookup of %s %s failed: %s", self.model.__name__, id, exc)
            raise RepositoryException(f"Failed to load {self.model.__name__} {id}") from exc

    def find_one_by(self, **filters: Any) -> Optional[T]:
        try:
            stmt = select(self.model).filter_by(**filters).limit(1)
            return self.db.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            self.logger.error("Query on %s %s failed: %s", self.model.__name__, filters, exc)
            raise RepositoryException(f"Failed to query {self.model.__name__}") from exc

    def create(self, **kwargs: Any) -> T:
        """Add and flush a new row inside the caller's transaction."""
        entity = self.model(**kwargs)
        try:
            self.db.add(entity)
            self.db.flush()
        except IntegrityError as exc:
            self.logger.error("Constraint violated creating %s: %s", self.model.__name__, exc)
            raise RepositoryException(f"Integrity constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.logger.error("Insert of %s failed: %s", self.model.__name__, exc)
            raise RepositoryException(f"Failed to create {self.model.__name__}") from exc
        return entity
