# backend/passkey_gate/services/challenge_store.py
"""
Ephemeral storage of pending WebAuthn ceremony challenges.

A challenge ties one set of issued options to one verification attempt:
- 256 random bits, base64url-encoded (the form the client echoes back)
- valid for WEBAUTHN_CHALLENGE_TTL_SECONDS
- redeemable exactly once, and only for the ceremony kind it was issued for

Two backends share the same interface:
- InMemoryChallengeStore: a lock-guarded dict plus a periodic sweep task
- RedisChallengeStore: one key per challenge with EX, redeemed with GETDEL
"""

import asyncio
import contextlib
import enum
import json
import logging
import secrets
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from redis.asyncio import Redis
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from passkey_gate.core.config import settings
from passkey_gate.core.log_utils import short_id

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
REDIS_KEY_PREFIX = "webauthn:challenge:"


class ChallengeKind(str, enum.Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class ExistingSubject:
    """Registration for an account that already exists."""

    user_id: uuid.UUID


@dataclass(frozen=True)
class ProvisionalSubject:
    """Registration for an account that will be created on success."""

    username: str


Subject = ExistingSubject | ProvisionalSubject


@dataclass(frozen=True)
class PendingChallenge:
    value: str
    kind: ChallengeKind
    expires_at: datetime
    subject: Subject | None = None

    @property
    def challenge_bytes(self) -> bytes:
        return base64url_to_bytes(self.value)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_challenge_value() -> str:
    return bytes_to_base64url(secrets.token_bytes(CHALLENGE_BYTES))


class ChallengeStore(Protocol):
    async def issue(
        self, kind: ChallengeKind, subject: Subject | None = None
    ) -> PendingChallenge: ...

    async def redeem(self, value: str, kind: ChallengeKind) -> PendingChallenge | None: ...

    async def sweep_expired(self) -> int: ...

    def start_sweeper(self) -> None: ...

    async def stop_sweeper(self) -> None: ...


class InMemoryChallengeStore:
    """
    Process-local challenge store.

    Every read-modify-write of the map happens under one lock and contains no
    await, so concurrent redemptions of the same value (from coroutines or
    threads) cannot both succeed, and the sweep cannot interleave with them.
    """

    def __init__(
        self,
        ttl_seconds: int | None = None,
        sweep_interval_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds or settings.WEBAUTHN_CHALLENGE_TTL_SECONDS)
        self.sweep_interval = (
            sweep_interval_seconds or settings.WEBAUTHN_CHALLENGE_SWEEP_INTERVAL_SECONDS
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[ChallengeKind, str], PendingChallenge] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def issue(self, kind: ChallengeKind, subject: Subject | None = None) -> PendingChallenge:
        pending = PendingChallenge(
            value=_new_challenge_value(),
            kind=kind,
            expires_at=self._clock() + self.ttl,
            subject=subject,
        )
        with self._lock:
            self._entries[(kind, pending.value)] = pending
        logger.debug("Issued %s challenge %s", kind.value, short_id(pending.value))
        return pending

    async def redeem(self, value: str, kind: ChallengeKind) -> PendingChallenge | None:
        """Remove and return the challenge, or None if absent, wrong kind or expired."""
        with self._lock:
            pending = self._entries.pop((kind, value), None)
        if pending is None:
            logger.warning("No pending %s challenge %s", kind.value, short_id(value))
            return None
        if pending.is_expired(self._clock()):
            logger.warning("Expired %s challenge %s", kind.value, short_id(value))
            return None
        return pending

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept %d expired challenge(s)", len(expired))
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep_expired()

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(), name="challenge-sweeper"
        )
        logger.info("Challenge sweeper started (every %ss).", self.sweep_interval)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
        logger.info("Challenge sweeper stopped.")


def _subject_to_dict(subject: Subject | None) -> dict | None:
    if isinstance(subject, ExistingSubject):
        return {"type": "existing", "user_id": str(subject.user_id)}
    if isinstance(subject, ProvisionalSubject):
        return {"type": "provisional", "username": subject.username}
    return None


def _subject_from_dict(data: dict | None) -> Subject | None:
    if not data:
        return None
    if data.get("type") == "existing":
        return ExistingSubject(user_id=uuid.UUID(data["user_id"]))
    if data.get("type") == "provisional":
        return ProvisionalSubject(username=data["username"])
    raise ValueError(f"Unknown challenge subject type: {data.get('type')!r}")


class RedisChallengeStore:
    """
    Challenge store shared by several web workers.

    Keys expire in Redis itself, so there is nothing to sweep. GETDEL makes
    redemption a single atomic command (Redis >= 6.2).
    """

    def __init__(
        self,
        redis: Redis,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.WEBAUTHN_CHALLENGE_TTL_SECONDS
        self._clock = clock

    @staticmethod
    def _key(kind: ChallengeKind, value: str) -> str:
        return f"{REDIS_KEY_PREFIX}{kind.value}:{value}"

    async def issue(self, kind: ChallengeKind, subject: Subject | None = None) -> PendingChallenge:
        pending = PendingChallenge(
            value=_new_challenge_value(),
            kind=kind,
            expires_at=self._clock() + timedelta(seconds=self.ttl_seconds),
            subject=subject,
        )
        payload = json.dumps(
            {
                "expires_at": pending.expires_at.isoformat(),
                "subject": _subject_to_dict(subject),
            }
        )
        await self.redis.set(self._key(kind, pending.value), payload, ex=self.ttl_seconds)
        logger.debug("Stored %s challenge %s in Redis", kind.value, short_id(pending.value))
        return pending

    async def redeem(self, value: str, kind: ChallengeKind) -> PendingChallenge | None:
        raw = await self.redis.getdel(self._key(kind, value))
        if not raw:
            logger.warning("No pending %s challenge %s", kind.value, short_id(value))
            return None

        data = json.loads(raw)
        pending = PendingChallenge(
            value=value,
            kind=kind,
            expires_at=datetime.fromisoformat(data["expires_at"]),
            subject=_subject_from_dict(data.get("subject")),
        )
        # Redis expiry has one-second granularity
        if pending.is_expired(self._clock()):
            logger.warning("Expired %s challenge %s", kind.value, short_id(value))
            return None
        return pending

    async def sweep_expired(self) -> int:
        return 0

    def start_sweeper(self) -> None:
        pass

    async def stop_sweeper(self) -> None:
        await self.redis.aclose()


_challenge_store: ChallengeStore | None = None


def build_challenge_store() -> ChallengeStore:
    if settings.WEBAUTHN_CHALLENGE_BACKEND == "redis":
        logger.info(
            "Using Redis challenge store at %s:%s", settings.REDIS_HOST, settings.REDIS_PORT
        )
        return RedisChallengeStore(Redis.from_url(settings.REDIS_URL, decode_responses=False))
    return InMemoryChallengeStore()


def get_challenge_store() -> ChallengeStore:
    """FastAPI dependency returning the process-wide challenge store."""
    global _challenge_store
    if _challenge_store is None:
        _challenge_store = build_challenge_store()
    return _challenge_store
