# backend/passkey_gate/services/session_service.py
"""
Opaque browser sessions handed out after a successful passkey ceremony.

The client receives a random token in an HttpOnly cookie; only its SHA-256
digest is stored, so a leaked table cannot be replayed as cookies.
"""

import hashlib
import logging
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate import crud
from passkey_gate.core.config import settings
from passkey_gate.core.log_utils import sanitize_for_log
from passkey_gate.db.models.user import User
from passkey_gate.schemas.auth import VerifiedIdentity

logger = logging.getLogger(__name__)

SESSION_TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def session_duration() -> timedelta:
    return timedelta(days=settings.SESSION_DURATION_DAYS)


async def issue_session(
    db: AsyncSession,
    identity: VerifiedIdentity | User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Create a session for a verified identity.

    Returns:
        The opaque session token to set as the cookie value.
    """
    user_id = identity.user_id if isinstance(identity, VerifiedIdentity) else identity.id
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    expires_at = datetime.now(UTC) + session_duration()

    await crud.auth_session.create(
        db,
        token_hash=hash_token(token),
        user_id=user_id,
        expires_at=expires_at,
        ip_address=ip_address,
        user_agent=sanitize_for_log(user_agent, max_length=512) if user_agent else None,
    )
    logger.info("Session issued for user %s (expires %s)", user_id, expires_at.isoformat())
    return token


async def resolve_session(db: AsyncSession, token: str | None) -> User | None:
    """Return the user owning an unexpired session token, or None."""
    if not token:
        return None
    session = await crud.auth_session.get_active(
        db, token_hash=hash_token(token), now=datetime.now(UTC)
    )
    if session is None:
        return None
    return await crud.user.get(db, id=session.user_id)


async def revoke_session(db: AsyncSession, token: str | None) -> bool:
    if not token:
        return False
    removed = await crud.auth_session.remove(db, id=hash_token(token))
    if removed:
        logger.info("Session revoked for user %s", removed.user_id)
    return removed is not None


async def purge_expired_sessions(db: AsyncSession) -> int:
    purged = await crud.auth_session.delete_expired(db, now=datetime.now(UTC))
    if purged:
        logger.info("Purged %d expired session(s)", purged)
    return purged
