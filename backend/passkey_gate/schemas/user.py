# backend/passkey_gate/schemas/user.py
import re
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")


def validate_username(value: str) -> str:
    value = value.strip()
    if not USERNAME_PATTERN.match(value):
        raise ValueError(
            "Username must be 3-32 characters: letters, digits, '.', '_' or '-'."
        )
    return value


class UserRead(BaseModel):
    """Public view of an account."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: str
    display_name: str | None = None
    avatar: str
    created_at: datetime


class UsernameField(BaseModel):
    username: str = Field(..., description="Desired or existing username")

    @field_validator("username")
    @classmethod
    def _check_username(cls, v: str) -> str:
        return validate_username(v)


class UsernameAvailability(BaseModel):
    username: str
    available: bool
