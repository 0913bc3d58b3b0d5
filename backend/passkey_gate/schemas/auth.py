# backend/passkey_gate/schemas/auth.py
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from passkey_gate.schemas.user import UserRead, UsernameField


class VerifiedIdentity(BaseModel):
    """
    Outcome of a successful authentication ceremony.

    Handed to the session issuer; never persisted as such.
    """

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    credential_id: str = Field(..., description="base64url credential ID")
    verified_at: datetime


class AccountRegisterRequest(UsernameField):
    """Create an account together with its first passkey."""

    credential: dict = Field(..., description="Credential from navigator.credentials.create()")
    challenge: str = Field(..., min_length=1, description="Challenge echoed from the options")
    device_name: str | None = Field(None, max_length=255, description="User-friendly name")


class AuthResponse(BaseModel):
    status: str = "ok"
    user: UserRead
