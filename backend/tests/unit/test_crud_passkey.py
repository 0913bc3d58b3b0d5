# backend/tests/unit/test_crud_passkey.py
"""
Repository behaviour that is hard to provoke against a real database:
lost compare-and-set races and driver failures.
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate import crud
from passkey_gate.exceptions import DuplicateCredential, RepositoryError


@pytest.fixture
def mock_db():
    return MagicMock(spec=AsyncSession)


def _result(rowcount: int) -> MagicMock:
    result = MagicMock()
    result.rowcount = rowcount
    return result


@pytest.mark.asyncio
async def test_counter_update_applies_when_count_unchanged(mock_db):
    mock_db.execute.return_value = _result(1)

    updated = await crud.passkey.update_counter_and_last_used(
        mock_db,
        passkey_id=uuid.uuid4(),
        expected_sign_count=3,
        new_sign_count=4,
        last_used_at=datetime.now(UTC),
    )

    assert updated is True
    mock_db.commit.assert_awaited_once()
    sql = str(mock_db.execute.call_args[0][0])
    assert "sign_count" in sql
    assert "WHERE" in sql


@pytest.mark.asyncio
async def test_counter_update_reports_lost_race(mock_db):
    mock_db.execute.return_value = _result(0)

    updated = await crud.passkey.update_counter_and_last_used(
        mock_db,
        passkey_id=uuid.uuid4(),
        expected_sign_count=3,
        new_sign_count=4,
        last_used_at=datetime.now(UTC),
    )

    assert updated is False


@pytest.mark.asyncio
async def test_insert_unique_violation_becomes_duplicate_credential(mock_db):
    mock_db.commit.side_effect = IntegrityError("INSERT", {}, Exception("unique"))

    with pytest.raises(DuplicateCredential):
        await crud.passkey.insert(
            mock_db,
            user_id=uuid.uuid4(),
            credential_id=b"\x02" * 16,
            public_key=b"key",
        )

    mock_db.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_driver_failure_becomes_repository_error(mock_db):
    failure = OperationalError("SELECT", {}, Exception("connection reset"))
    mock_db.execute.side_effect = failure

    with pytest.raises(RepositoryError) as exc_info:
        await crud.passkey.find_by_credential_id(mock_db, credential_id=b"\x03" * 16)

    assert exc_info.value.__cause__ is failure
    assert "OperationalError" in exc_info.value.reason
    mock_db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_delete_reports_missing_row(mock_db):
    mock_db.execute.return_value = _result(0)

    deleted = await crud.passkey.delete(mock_db, user_id=uuid.uuid4(), passkey_id=uuid.uuid4())

    assert deleted is False
