# backend/passkey_gate/api/routers/passkey.py
"""
Passkey (WebAuthn) API endpoints.

Provides endpoints for:
- Registration options (new account by username, or an extra passkey for the
  signed-in user) and verification of an extra passkey
- Authentication with discoverable passkeys (public, like login)
- Managing passkeys (list, rename, delete)

Ceremony failures are answered with one generic message per ceremony; the
specific reason only goes to the application and security logs.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn.helpers import bytes_to_base64url

from passkey_gate import crud
from passkey_gate.core.auth_dependencies import (
    current_user,
    current_user_optional,
    set_session_cookie,
)
from passkey_gate.core.log_utils import sanitize_for_log as _sanitize_for_log
from passkey_gate.core.rate_limit import get_real_client_ip, limiter
from passkey_gate.core.security_logger import security_log
from passkey_gate.db.models.user import User
from passkey_gate.db.session import get_async_session
from passkey_gate.exceptions import CeremonyError, LastCredentialError
from passkey_gate.schemas.auth import AuthResponse
from passkey_gate.schemas.user import UserRead, validate_username
from passkey_gate.services import passkey_service, session_service
from passkey_gate.services.challenge_store import ChallengeStore, get_challenge_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/passkey", tags=["Passkey - WebAuthn Authentication"])

REGISTRATION_FAILED = "Registration failed. Please try again."
AUTHENTICATION_FAILED = "Authentication failed."


# --- Schemas ---


class RegistrationOptionsRequest(BaseModel):
    """Username for the new-account flow; omitted when signed in."""

    username: str | None = Field(None, description="Username for a new account")

    @field_validator("username")
    @classmethod
    def _check_username(cls, v: str | None) -> str | None:
        return validate_username(v) if v is not None else None


class RegistrationVerifyRequest(BaseModel):
    """Request to verify a registration response."""

    credential: dict = Field(..., description="Credential from navigator.credentials.create()")
    challenge: str = Field(..., min_length=1, description="Challenge echoed from the options")
    device_name: str | None = Field(None, max_length=255, description="User-friendly name")


class AuthenticationVerifyRequest(BaseModel):
    """Request to verify an authentication response."""

    credential: dict = Field(..., description="Credential from navigator.credentials.get()")
    challenge: str = Field(..., min_length=1, description="Challenge echoed from the options")


class PasskeyResponse(BaseModel):
    """Passkey information for display."""

    id: str
    credential_id: str
    device_name: str | None
    created_at: str | None
    last_used_at: str | None
    transports: list[str] = []
    backup_eligible: bool
    backup_state: bool


class PasskeyStatusResponse(BaseModel):
    """Passkey status for user."""

    passkey_count: int
    passkeys: list[PasskeyResponse]


class RenameRequest(BaseModel):
    """Request to rename a passkey."""

    name: str = Field(..., min_length=1, max_length=255)


def _log_ceremony_failure(request: Request, ceremony: str, exc: CeremonyError) -> None:
    client_ip = get_real_client_ip(request)
    security_log.passkey_failed(client_ip, exc.code)
    logger.warning(
        "Passkey %s failed from %s: %s (%s)",
        ceremony,
        _sanitize_for_log(client_ip),
        exc.code,
        _sanitize_for_log(exc.reason),
    )


# --- Registration Endpoints ---


@router.post("/register/options", summary="Get passkey registration options")
@limiter.limit("5/minute")
async def get_registration_options(
    request: Request,  # noqa: ARG001 - Required by rate limiter
    db: Annotated[AsyncSession, Depends(get_async_session)],
    store: Annotated[ChallengeStore, Depends(get_challenge_store)],
    user: Annotated[User | None, Depends(current_user_optional)],
    body: RegistrationOptionsRequest | None = None,
) -> dict:
    """
    Get WebAuthn registration options.

    Signed in: options to add a passkey, excluding the ones already bound.
    Anonymous: options for a new account named `username`.
    """
    if user is not None:
        return await passkey_service.begin_registration(db, store, user)

    if body is None or not body.username:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username required.",
        )
    if await crud.user.get_by_username(db, username=body.username):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already taken.",
        )
    return await passkey_service.begin_registration(db, store, body.username)


@router.post(
    "/register/verify",
    response_model=PasskeyResponse,
    summary="Verify and complete passkey registration",
)
@limiter.limit("5/minute")
async def verify_registration(
    request: Request,
    body: RegistrationVerifyRequest,
    user: Annotated[User, Depends(current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
    store: Annotated[ChallengeStore, Depends(get_challenge_store)],
) -> dict:
    """
    Verify the registration response and bind the passkey to the signed-in user.

    Call this after navigator.credentials.create() returns successfully.
    """
    try:
        passkey = await passkey_service.complete_registration(
            db,
            store,
            body.credential,
            body.challenge,
            user.id,
            body.device_name,
            target_username=user.username,
        )
    except CeremonyError as e:
        _log_ceremony_failure(request, "registration", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=REGISTRATION_FAILED,
        ) from e

    security_log.passkey_registered(get_real_client_ip(request), str(user.id))
    logger.info("Passkey %s added for user %s", passkey.id, _sanitize_for_log(user.username))

    return {
        "id": str(passkey.id),
        "credential_id": bytes_to_base64url(passkey.credential_id),
        "device_name": passkey.device_name,
        "created_at": passkey.created_at.isoformat() if passkey.created_at else None,
        "last_used_at": None,
        "transports": passkey.transports or [],
        "backup_eligible": passkey.backup_eligible,
        "backup_state": passkey.backup_state,
    }


# --- Authentication Endpoints (Public) ---


@router.post("/authenticate/options", summary="Get passkey authentication options")
@limiter.limit("10/minute")
async def get_authentication_options(
    request: Request,  # noqa: ARG001 - Required by rate limiter
    store: Annotated[ChallengeStore, Depends(get_challenge_store)],
) -> dict:
    """
    Get WebAuthn authentication options for discoverable credentials.

    No user lookup; allowCredentials is always empty.
    """
    return await passkey_service.begin_authentication(store)


@router.post(
    "/authenticate/verify",
    response_model=AuthResponse,
    summary="Verify passkey authentication and sign in",
)
@limiter.limit("5/minute")
async def verify_authentication(
    request: Request,
    response: Response,
    body: AuthenticationVerifyRequest,
    db: Annotated[AsyncSession, Depends(get_async_session)],
    store: Annotated[ChallengeStore, Depends(get_challenge_store)],
) -> dict:
    """
    Verify the authentication response and start a session.

    Call this after navigator.credentials.get() returns successfully.
    """
    client_ip = get_real_client_ip(request)
    try:
        identity = await passkey_service.complete_authentication(
            db, store, body.credential, body.challenge, client_ip=client_ip
        )
    except CeremonyError as e:
        _log_ceremony_failure(request, "authentication", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AUTHENTICATION_FAILED,
        ) from e

    user = await crud.user.get(db, id=identity.user_id)
    if user is None:
        # Credential rows cascade with their user
        logger.error(
            "Passkey %s verified for missing user %s", identity.credential_id, identity.user_id
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AUTHENTICATION_FAILED,
        )

    token = await session_service.issue_session(
        db,
        identity,
        ip_address=client_ip,
        user_agent=request.headers.get("User-Agent"),
    )
    set_session_cookie(response, token)

    security_log.login_success(client_ip, str(user.id), method="passkey")
    logger.info(
        "Passkey login successful for user %s from %s",
        _sanitize_for_log(user.username),
        _sanitize_for_log(client_ip),
    )
    return {"status": "ok", "user": UserRead.model_validate(user)}


# --- Management Endpoints (Authenticated) ---


@router.get(
    "/list",
    response_model=PasskeyStatusResponse,
    summary="List user's passkeys",
)
async def list_passkeys(
    user: Annotated[User, Depends(current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict:
    """Get all passkeys for the current user."""
    passkeys = await passkey_service.list_user_passkeys(db, user)
    return {"passkey_count": len(passkeys), "passkeys": passkeys}


@router.put("/{passkey_id}/name", summary="Rename a passkey")
async def rename_passkey(
    passkey_id: UUID,
    body: RenameRequest,
    user: Annotated[User, Depends(current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict:
    """Rename a passkey to a new user-friendly name."""
    success = await passkey_service.rename_passkey(db, user, passkey_id, body.name)

    if not success:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Passkey not found.",
        )

    return {"status": "renamed", "name": body.name.strip()}


@router.delete("/{passkey_id}", summary="Delete a passkey")
async def delete_passkey(
    passkey_id: UUID,
    user: Annotated[User, Depends(current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict:
    """
    Delete a passkey.

    Accounts are passwordless, so the last passkey cannot be removed.
    """
    try:
        success = await passkey_service.delete_passkey(db, user, passkey_id)
    except LastCredentialError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot delete your only passkey.",
        ) from e

    if not success:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Passkey not found.",
        )

    return {"status": "deleted"}
