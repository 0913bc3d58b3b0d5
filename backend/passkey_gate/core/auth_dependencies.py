# backend/passkey_gate/core/auth_dependencies.py
"""
Session-cookie authentication dependencies.

The cookie carries an opaque token issued by `session_service`; these
dependencies resolve it to a `User` for the routers.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate.core.config import settings
from passkey_gate.db.models.user import User
from passkey_gate.db.session import get_async_session
from passkey_gate.services import session_service


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


async def current_user_optional(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> User | None:
    """The signed-in user, or None for anonymous requests."""
    return await session_service.resolve_session(db, get_session_token(request))


async def current_user(
    user: Annotated[User | None, Depends(current_user_optional)],
) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated.",
        )
    return user


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=int(session_service.session_duration().total_seconds()),
        path="/",
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )
