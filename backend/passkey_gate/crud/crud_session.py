# backend/passkey_gate/crud/crud_session.py
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate.crud.base import CRUDBase, repository_errors
from passkey_gate.db.models.auth_session import AuthSession

logger = logging.getLogger(__name__)


class CRUDAuthSession(CRUDBase[AuthSession]):
    async def create(
        self,
        db: AsyncSession,
        *,
        token_hash: str,
        user_id: UUID,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        db_obj = self.model(
            id=token_hash,
            user_id=user_id,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        async with repository_errors(db, "create session"):
            db.add(db_obj)
            await db.commit()
        return db_obj

    async def get_active(
        self, db: AsyncSession, *, token_hash: str, now: datetime
    ) -> AuthSession | None:
        """Session row for `token_hash` if it has not expired at `now`."""
        async with repository_errors(db, "load session"):
            result = await db.execute(
                select(self.model).where(self.model.id == token_hash, self.model.expires_at > now)
            )
            return result.scalar_one_or_none()

    async def delete_expired(self, db: AsyncSession, *, now: datetime) -> int:
        async with repository_errors(db, "purge sessions"):
            result = await db.execute(
                delete(self.model)
                .where(self.model.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount or 0


auth_session = CRUDAuthSession(AuthSession)
