# backend/passkey_gate/crud/base.py
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate.db.base_class import Base
from passkey_gate.exceptions import RepositoryError

ModelType = TypeVar("ModelType", bound=Base)

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def repository_errors(db: AsyncSession, action: str) -> AsyncIterator[None]:
    """
    Translate SQLAlchemy failures into RepositoryError.

    The session is rolled back so the caller can keep using it; the original
    exception is chained as the cause.
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Database error while trying to %s: %s", action, e)
        await db.rollback()
        raise RepositoryError(reason=f"{action}: {e.__class__.__name__}") from e


class CRUDBase(Generic[ModelType]):
    def __init__(self, model: type[ModelType]):
        """
        CRUD object with the default read operations.

        **Parameters**

        * `model`: A SQLAlchemy model class
        """
        self.model = model

    async def get(self, db: AsyncSession, id: Any) -> ModelType | None:
        """
        Get a single record by primary key.
        """
        async with repository_errors(db, f"load {self.model.__name__}"):
            result = await db.execute(select(self.model).filter(self.model.id == id))
            return result.scalars().first()

    async def remove(self, db: AsyncSession, *, id: Any) -> ModelType | None:
        """
        Remove a record by primary key.
        Returns the removed object or None if not found.
        """
        async with repository_errors(db, f"remove {self.model.__name__}"):
            result = await db.execute(select(self.model).filter(self.model.id == id))
            obj = result.scalars().first()
            if obj:
                await db.delete(obj)
                await db.commit()
            return obj
