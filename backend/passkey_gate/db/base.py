# backend/passkey_gate/db/base.py

# Every model must be imported here so that Base.metadata knows about it
# (Alembic's env.py and the test suite's create_all rely on this).
from passkey_gate.db.base_class import Base  # noqa: F401
from passkey_gate.db.models.auth_session import AuthSession  # noqa: F401
from passkey_gate.db.models.passkey import Passkey  # noqa: F401
from passkey_gate.db.models.user import User  # noqa: F401
