# backend/passkey_gate/db/models/user.py

import hashlib
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from passkey_gate.db.base_class import Base

if TYPE_CHECKING:
    from passkey_gate.db.models.passkey import Passkey


def avatar_for_username(username: str) -> str:
    """Deterministic avatar seed: first 16 hex chars of SHA-256(lowercased username)."""
    return hashlib.sha256(username.lower().encode("utf-8")).hexdigest()[:16]


class User(Base):
    """A passwordless account. Credentials live in `Passkey` rows."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar: Mapped[str] = mapped_column(String(16), nullable=False, default="d")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        nullable=False,
    )

    passkeys: Mapped[list["Passkey"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, username={self.username!r})>"
