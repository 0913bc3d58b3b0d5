# backend/passkey_gate/crud/crud_user.py
import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate.core.log_utils import sanitize_for_log
from passkey_gate.crud.base import CRUDBase, repository_errors
from passkey_gate.db.models.user import User, avatar_for_username
from passkey_gate.exceptions import UsernameTaken

logger = logging.getLogger(__name__)


class CRUDUser(CRUDBase[User]):
    async def get_by_username(self, db: AsyncSession, *, username: str) -> User | None:
        """
        Get a user by username (case-insensitive).
        """
        logger.debug("Looking up user by username: %s", sanitize_for_log(username))
        async with repository_errors(db, "load user by username"):
            result = await db.execute(
                select(self.model).filter(func.lower(self.model.username) == username.lower())
            )
            return result.scalars().first()

    async def get_by_id(self, db: AsyncSession, *, user_id: UUID) -> User | None:
        return await super().get(db, id=user_id)

    async def create(
        self,
        db: AsyncSession,
        *,
        username: str,
        display_name: str | None = None,
        commit: bool = True,
    ) -> User:
        """
        Create a new passwordless user.

        With commit=False the row is only flushed, so the caller can bind the
        first passkey in the same transaction.
        """
        logger.info("Creating new user: %s", sanitize_for_log(username))
        db_obj = self.model(
            username=username,
            display_name=display_name,
            avatar=avatar_for_username(username),
        )
        async with repository_errors(db, "create user"):
            db.add(db_obj)
            try:
                if commit:
                    await db.commit()
                    await db.refresh(db_obj)
                else:
                    await db.flush()
            except IntegrityError as e:
                await db.rollback()
                raise UsernameTaken(reason=f"unique violation for {username!r}") from e
        logger.info("User %s (ID: %s) created.", sanitize_for_log(username), db_obj.id)
        return db_obj


user = CRUDUser(User)
