# backend/passkey_gate/api/routers/auth.py
"""
Account endpoints: passwordless sign-up, username availability, current
user and logout.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate import crud
from passkey_gate.core.auth_dependencies import (
    clear_session_cookie,
    current_user,
    get_session_token,
    set_session_cookie,
)
from passkey_gate.core.log_utils import sanitize_for_log
from passkey_gate.core.rate_limit import get_real_client_ip, limiter
from passkey_gate.core.security_logger import security_log
from passkey_gate.db.models.user import User
from passkey_gate.db.session import get_async_session
from passkey_gate.exceptions import CeremonyError, UsernameTaken
from passkey_gate.schemas.auth import AccountRegisterRequest, AuthResponse
from passkey_gate.schemas.user import UsernameAvailability, UserRead, validate_username
from passkey_gate.services import passkey_service, session_service
from passkey_gate.services.challenge_store import ChallengeStore, get_challenge_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def _username_taken() -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already taken.")


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account with its first passkey",
)
@limiter.limit("5/minute")
async def register_account(
    request: Request,
    response: Response,
    body: AccountRegisterRequest,
    db: Annotated[AsyncSession, Depends(get_async_session)],
    store: Annotated[ChallengeStore, Depends(get_challenge_store)],
) -> dict:
    """
    Complete the new-account registration ceremony.

    The user row and its passkey are committed together; if the ceremony
    fails nothing is created. On success the new user is signed in.
    """
    if await crud.user.get_by_username(db, username=body.username):
        raise _username_taken()

    client_ip = get_real_client_ip(request)
    try:
        user = await crud.user.create(db, username=body.username, commit=False)
        await passkey_service.complete_registration(
            db,
            store,
            body.credential,
            body.challenge,
            user.id,
            body.device_name,
            target_username=body.username,
        )
    except UsernameTaken as e:
        raise _username_taken() from e
    except CeremonyError as e:
        await db.rollback()
        security_log.passkey_failed(client_ip, e.code)
        logger.warning(
            "Account registration for %s failed from %s: %s (%s)",
            sanitize_for_log(body.username),
            sanitize_for_log(client_ip),
            e.code,
            sanitize_for_log(e.reason),
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Registration failed. Please try again.",
        ) from e

    token = await session_service.issue_session(
        db, user, ip_address=client_ip, user_agent=request.headers.get("User-Agent")
    )
    set_session_cookie(response, token)

    security_log.passkey_registered(client_ip, str(user.id))
    logger.info("Account %s created from %s", sanitize_for_log(user.username), client_ip)
    return {"status": "ok", "user": UserRead.model_validate(user)}


@router.get(
    "/check-username",
    response_model=UsernameAvailability,
    summary="Check whether a username is available",
)
@limiter.limit("30/minute")
async def check_username(
    request: Request,  # noqa: ARG001 - Required by rate limiter
    username: Annotated[str, Query(min_length=1)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict:
    try:
        username = validate_username(username)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    existing = await crud.user.get_by_username(db, username=username)
    return {"username": username, "available": existing is None}


@router.get("/me", response_model=UserRead, summary="Current user")
async def read_me(user: Annotated[User, Depends(current_user)]) -> User:
    return user


@router.post("/logout", summary="Sign out")
async def logout(
    request: Request,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict:
    """Revoke the session (if any) and clear the cookie. Always succeeds."""
    await session_service.revoke_session(db, get_session_token(request))
    clear_session_cookie(response)
    return {"status": "logged_out"}
