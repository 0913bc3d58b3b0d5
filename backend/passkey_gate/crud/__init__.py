# backend/passkey_gate/crud/__init__.py
"""
CRUD operations package.
Re-exports the repository instances used by the services and routers.
"""

from .crud_passkey import passkey
from .crud_session import auth_session
from .crud_user import user

__all__ = ["auth_session", "passkey", "user"]
