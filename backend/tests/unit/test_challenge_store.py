# backend/tests/unit/test_challenge_store.py
"""
Unit tests for the challenge stores.
"""

import asyncio
import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from webauthn.helpers import base64url_to_bytes

from passkey_gate.services.challenge_store import (
    REDIS_KEY_PREFIX,
    ChallengeKind,
    ExistingSubject,
    InMemoryChallengeStore,
    ProvisionalSubject,
    RedisChallengeStore,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryChallengeStore(ttl_seconds=300, sweep_interval_seconds=60, clock=clock)


@pytest.mark.asyncio
async def test_issue_generates_256_bit_base64url_values(store):
    pending = await store.issue(ChallengeKind.AUTHENTICATION)

    assert len(base64url_to_bytes(pending.value)) == 32
    assert "=" not in pending.value
    assert pending.challenge_bytes == base64url_to_bytes(pending.value)
    assert pending.subject is None


@pytest.mark.asyncio
async def test_issued_values_are_unique(store):
    values = {(await store.issue(ChallengeKind.AUTHENTICATION)).value for _ in range(200)}
    assert len(values) == 200


@pytest.mark.asyncio
async def test_issue_sets_expiry_from_ttl(store, clock):
    pending = await store.issue(ChallengeKind.REGISTRATION, ProvisionalSubject("alice"))
    assert pending.expires_at == clock.now + timedelta(seconds=300)


@pytest.mark.asyncio
async def test_redeem_is_single_use(store):
    pending = await store.issue(ChallengeKind.AUTHENTICATION)

    first = await store.redeem(pending.value, ChallengeKind.AUTHENTICATION)
    second = await store.redeem(pending.value, ChallengeKind.AUTHENTICATION)

    assert first == pending
    assert second is None


@pytest.mark.asyncio
async def test_redeem_unknown_value_returns_none(store):
    assert await store.redeem("never-issued", ChallengeKind.REGISTRATION) is None


@pytest.mark.asyncio
async def test_redeem_keeps_subject(store):
    user_id = uuid.uuid4()
    pending = await store.issue(ChallengeKind.REGISTRATION, ExistingSubject(user_id))

    redeemed = await store.redeem(pending.value, ChallengeKind.REGISTRATION)

    assert redeemed.subject == ExistingSubject(user_id)


@pytest.mark.asyncio
async def test_wrong_kind_does_not_consume_challenge(store):
    pending = await store.issue(ChallengeKind.REGISTRATION, ProvisionalSubject("bob"))

    assert await store.redeem(pending.value, ChallengeKind.AUTHENTICATION) is None
    assert await store.redeem(pending.value, ChallengeKind.REGISTRATION) is not None


@pytest.mark.asyncio
async def test_redeem_just_before_expiry_succeeds(store, clock):
    pending = await store.issue(ChallengeKind.AUTHENTICATION)
    clock.advance(299.9)

    assert await store.redeem(pending.value, ChallengeKind.AUTHENTICATION) is not None


@pytest.mark.asyncio
async def test_redeem_after_expiry_fails(store, clock):
    pending = await store.issue(ChallengeKind.AUTHENTICATION)
    clock.advance(300.001)

    assert await store.redeem(pending.value, ChallengeKind.AUTHENTICATION) is None
    # The expired entry is gone, not left for the sweep
    assert len(store) == 0


@pytest.mark.asyncio
async def test_sweep_removes_only_expired(store, clock):
    old = await store.issue(ChallengeKind.AUTHENTICATION)
    clock.advance(200)
    fresh = await store.issue(ChallengeKind.REGISTRATION, ProvisionalSubject("carol"))
    clock.advance(150)

    removed = await store.sweep_expired()

    assert removed == 1
    assert len(store) == 1
    assert await store.redeem(old.value, ChallengeKind.AUTHENTICATION) is None
    assert await store.redeem(fresh.value, ChallengeKind.REGISTRATION) is not None


@pytest.mark.asyncio
async def test_concurrent_redemptions_single_winner(store):
    pending = await store.issue(ChallengeKind.AUTHENTICATION)

    results = await asyncio.gather(
        *(store.redeem(pending.value, ChallengeKind.AUTHENTICATION) for _ in range(50))
    )

    assert sum(r is not None for r in results) == 1


def test_threaded_redemptions_single_winner():
    store = InMemoryChallengeStore(ttl_seconds=300)
    pending = asyncio.run(store.issue(ChallengeKind.AUTHENTICATION))

    def attempt(_):
        return asyncio.run(store.redeem(pending.value, ChallengeKind.AUTHENTICATION))

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(attempt, range(64)))

    assert sum(r is not None for r in results) == 1


@pytest.mark.asyncio
async def test_background_sweeper_runs_and_stops(clock):
    store = InMemoryChallengeStore(ttl_seconds=300, sweep_interval_seconds=0.01, clock=clock)
    await store.issue(ChallengeKind.AUTHENTICATION)
    clock.advance(301)

    store.start_sweeper()
    try:
        for _ in range(100):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await store.stop_sweeper()

    assert len(store) == 0
    assert store._sweeper is None


# --- Redis backend ---


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.set = AsyncMock()
    redis.getdel = AsyncMock()
    return redis


@pytest.mark.asyncio
async def test_redis_issue_sets_key_with_ttl(mock_redis, clock):
    store = RedisChallengeStore(mock_redis, ttl_seconds=300, clock=clock)

    pending = await store.issue(ChallengeKind.REGISTRATION, ProvisionalSubject("dave"))

    mock_redis.set.assert_awaited_once()
    key, payload = mock_redis.set.call_args[0]
    assert key == f"{REDIS_KEY_PREFIX}registration:{pending.value}"
    assert mock_redis.set.call_args[1]["ex"] == 300
    assert json.loads(payload)["subject"] == {"type": "provisional", "username": "dave"}


@pytest.mark.asyncio
async def test_redis_redeem_uses_getdel_and_restores_subject(mock_redis, clock):
    store = RedisChallengeStore(mock_redis, ttl_seconds=300, clock=clock)
    user_id = uuid.uuid4()
    pending = await store.issue(ChallengeKind.REGISTRATION, ExistingSubject(user_id))
    mock_redis.getdel.return_value = mock_redis.set.call_args[0][1].encode()

    redeemed = await store.redeem(pending.value, ChallengeKind.REGISTRATION)

    mock_redis.getdel.assert_awaited_once_with(f"{REDIS_KEY_PREFIX}registration:{pending.value}")
    assert redeemed == pending


@pytest.mark.asyncio
async def test_redis_redeem_missing_key_returns_none(mock_redis):
    store = RedisChallengeStore(mock_redis, ttl_seconds=300)
    mock_redis.getdel.return_value = None

    assert await store.redeem("gone", ChallengeKind.AUTHENTICATION) is None


@pytest.mark.asyncio
async def test_redis_redeem_rejects_expired_payload(mock_redis, clock):
    store = RedisChallengeStore(mock_redis, ttl_seconds=300, clock=clock)
    pending = await store.issue(ChallengeKind.AUTHENTICATION)
    mock_redis.getdel.return_value = mock_redis.set.call_args[0][1].encode()
    clock.advance(301)

    assert await store.redeem(pending.value, ChallengeKind.AUTHENTICATION) is None


@pytest.mark.asyncio
async def test_redis_sweep_is_noop(mock_redis):
    store = RedisChallengeStore(mock_redis, ttl_seconds=300)
    assert await store.sweep_expired() == 0
