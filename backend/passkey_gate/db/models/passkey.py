# backend/passkey_gate/db/models/passkey.py
"""
Model for WebAuthn/Passkey credentials.

Each user can bind several passkeys (e.g., different devices); a credential
belongs to exactly one user.
"""

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, LargeBinary, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from passkey_gate.db.base_class import Base

if TYPE_CHECKING:
    from passkey_gate.db.models.user import User


class Passkey(Base):
    """
    A WebAuthn credential bound to a user.

    A passkey allows passwordless authentication using biometrics,
    security keys, or platform authenticators (Touch ID, Windows Hello).
    """

    __tablename__ = "user_passkeys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Raw credential ID returned by the authenticator.
    # Unique across ALL users: it is the lookup key during authentication.
    credential_id: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, unique=True, index=True
    )

    # COSE-encoded public key
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    # Signature counter; 0 means the authenticator does not implement one
    sign_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Transport hints (e.g., ["usb", "internal", "hybrid"]), advisory only
    transports: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Authenticator model identifier
    aaguid: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # User-facing label (e.g., "MacBook Touch ID")
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        nullable=False,
    )

    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # BE/BS flags for synced passkeys
    backup_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    backup_state: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="passkeys")

    def __repr__(self) -> str:
        return (
            f"<Passkey(id={self.id}, user_id={self.user_id}, "
            f"device={self.device_name}, sign_count={self.sign_count})>"
        )
