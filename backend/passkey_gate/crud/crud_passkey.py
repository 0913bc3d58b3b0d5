# backend/passkey_gate/crud/crud_passkey.py
"""
Credential repository.

Every query that takes a `user_id` is owner-scoped: a user can never read,
rename or delete another user's passkey through these methods.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from passkey_gate.core.log_utils import sanitize_for_log, short_id
from passkey_gate.crud.base import CRUDBase, repository_errors
from passkey_gate.db.models.passkey import Passkey
from passkey_gate.exceptions import DuplicateCredential

logger = logging.getLogger(__name__)


class CRUDPasskey(CRUDBase[Passkey]):
    async def find_by_credential_id(
        self, db: AsyncSession, *, credential_id: bytes
    ) -> Passkey | None:
        async with repository_errors(db, "look up credential"):
            result = await db.execute(
                select(self.model).where(self.model.credential_id == credential_id)
            )
            return result.scalar_one_or_none()

    async def list_by_user(self, db: AsyncSession, *, user_id: UUID) -> list[Passkey]:
        async with repository_errors(db, "list credentials"):
            result = await db.execute(
                select(self.model)
                .where(self.model.user_id == user_id)
                .order_by(self.model.created_at, self.model.id)
            )
            return list(result.scalars().all())

    async def count_for_user(self, db: AsyncSession, *, user_id: UUID) -> int:
        async with repository_errors(db, "count credentials"):
            result = await db.execute(
                select(func.count()).select_from(self.model).where(self.model.user_id == user_id)
            )
            return result.scalar() or 0

    async def insert(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        credential_id: bytes,
        public_key: bytes,
        sign_count: int = 0,
        transports: list[str] | None = None,
        aaguid: str | None = None,
        device_name: str | None = None,
        backup_eligible: bool = False,
        backup_state: bool = False,
    ) -> Passkey:
        """
        Persist a new credential and commit.

        A pending user created in the same session (new-account flow) is
        committed together with it.

        Raises:
            DuplicateCredential: The credential ID is already stored.
            RepositoryError: Any other database failure.
        """
        db_obj = self.model(
            user_id=user_id,
            credential_id=credential_id,
            public_key=public_key,
            sign_count=sign_count,
            transports=transports,
            aaguid=aaguid,
            device_name=device_name,
            backup_eligible=backup_eligible,
            backup_state=backup_state,
        )
        async with repository_errors(db, "insert credential"):
            db.add(db_obj)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateCredential(
                    reason=f"unique violation for credential {short_id(credential_id)}"
                ) from e
            await db.refresh(db_obj)
        logger.info("Stored credential %s for user %s", short_id(credential_id), user_id)
        return db_obj

    async def update_counter_and_last_used(
        self,
        db: AsyncSession,
        *,
        passkey_id: UUID,
        expected_sign_count: int,
        new_sign_count: int,
        last_used_at: datetime,
    ) -> bool:
        """
        Compare-and-set the signature counter.

        The row is only updated while its counter still equals
        `expected_sign_count`. Returns False when another request got there
        first.
        """
        async with repository_errors(db, "update credential counter"):
            result = await db.execute(
                update(self.model)
                .where(
                    self.model.id == passkey_id,
                    self.model.sign_count == expected_sign_count,
                )
                .values(sign_count=new_sign_count, last_used_at=last_used_at)
            )
            await db.commit()
        return bool(result.rowcount == 1)

    async def rename(
        self, db: AsyncSession, *, user_id: UUID, passkey_id: UUID, device_name: str
    ) -> bool:
        """Rename a passkey. Returns True if the user owns it."""
        async with repository_errors(db, "rename credential"):
            result = await db.execute(
                update(self.model)
                .where(self.model.id == passkey_id, self.model.user_id == user_id)
                .values(device_name=device_name)
            )
            await db.commit()
        renamed = bool(result.rowcount and result.rowcount > 0)
        if renamed:
            logger.info(
                "Passkey %s renamed to %s for user %s",
                passkey_id,
                sanitize_for_log(device_name, max_length=64),
                user_id,
            )
        return renamed

    async def delete(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        passkey_id: UUID,
        keep_last: bool = True,
    ) -> bool:
        """
        Delete a passkey owned by `user_id`. Returns True if a row was removed.

        With keep_last=True the row is only removed while the user has at
        least one other passkey; the check is part of the DELETE statement.
        """
        others = aliased(self.model)
        stmt = delete(self.model).where(
            self.model.id == passkey_id, self.model.user_id == user_id
        )
        if keep_last:
            remaining = (
                select(func.count(others.id)).where(others.user_id == user_id).scalar_subquery()
            )
            stmt = stmt.where(remaining > 1)

        async with repository_errors(db, "delete credential"):
            result = await db.execute(stmt.execution_options(synchronize_session=False))
            await db.commit()
        deleted = bool(result.rowcount and result.rowcount > 0)
        if deleted:
            logger.info("Passkey %s deleted for user %s", passkey_id, user_id)
        return deleted


passkey = CRUDPasskey(Passkey)
