# backend/tests/api/test_passkey.py
"""
API integration tests for passkey endpoints.

Tests the full HTTP flow for passkey registration, authentication, and management.
"""

from unittest.mock import patch
from uuid import uuid4

import pytest
from fastapi import status
from httpx import AsyncClient

from passkey_gate.core.rate_limit import limiter
from passkey_gate.core.security_logger import security_log
from tests.helpers.api_flows import API_PREFIX, login, register_account, session_headers
from tests.helpers.software_authenticator import SoftwareAuthenticator

PASSKEY = f"{API_PREFIX}/auth/passkey"


async def add_passkey(
    client: AsyncClient, headers: dict, authenticator: SoftwareAuthenticator, name: str
) -> dict:
    options = await client.post(f"{PASSKEY}/register/options", headers=headers)
    assert options.status_code == status.HTTP_200_OK, options.text
    options_data = options.json()
    response = await client.post(
        f"{PASSKEY}/register/verify",
        headers=headers,
        json={
            "credential": authenticator.make_credential(options_data),
            "challenge": options_data["challenge"],
            "device_name": name,
        },
    )
    assert response.status_code == status.HTTP_200_OK, response.text
    return response.json()


# --- Registration ---


@pytest.mark.asyncio
async def test_registration_options_require_username_when_anonymous(
    test_client: AsyncClient,
) -> None:
    response = await test_client.post(f"{PASSKEY}/register/options", json={})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "Username required."


@pytest.mark.asyncio
async def test_registration_options_reject_taken_username(
    test_client: AsyncClient, alice
) -> None:
    response = await test_client.post(f"{PASSKEY}/register/options", json={"username": "ALICE"})

    assert response.status_code == status.HTTP_409_CONFLICT


@pytest.mark.asyncio
async def test_registration_options_reject_invalid_username(test_client: AsyncClient) -> None:
    response = await test_client.post(f"{PASSKEY}/register/options", json={"username": "a b"})

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_registration_options_for_new_account(test_client: AsyncClient) -> None:
    response = await test_client.post(f"{PASSKEY}/register/options", json={"username": "bob"})

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["user"]["name"] == "bob"
    assert data["rp"]["id"] == "localhost"
    assert data["authenticatorSelection"]["residentKey"] == "preferred"
    assert data["attestation"] == "none"
    assert data.get("excludeCredentials", []) == []


@pytest.mark.asyncio
async def test_add_passkey_excludes_existing_and_lists_both(
    test_client: AsyncClient, alice, authenticator
) -> None:
    _, headers = alice

    options = await test_client.post(f"{PASSKEY}/register/options", headers=headers)
    assert len(options.json()["excludeCredentials"]) == 1

    added = await add_passkey(test_client, headers, SoftwareAuthenticator(), "Phone")
    assert added["device_name"] == "Phone"

    listing = await test_client.get(f"{PASSKEY}/list", headers=headers)
    assert listing.status_code == status.HTTP_200_OK
    data = listing.json()
    assert data["passkey_count"] == 2
    assert {p["device_name"] for p in data["passkeys"]} == {"Test device", "Phone"}


@pytest.mark.asyncio
async def test_verify_registration_requires_auth(test_client: AsyncClient) -> None:
    response = await test_client.post(
        f"{PASSKEY}/register/verify",
        json={"credential": {}, "challenge": "abc", "device_name": "Test"},
    )

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.asyncio
async def test_verify_registration_replay_gets_generic_error(
    test_client: AsyncClient, alice
) -> None:
    _, headers = alice
    options = (await test_client.post(f"{PASSKEY}/register/options", headers=headers)).json()
    credential = SoftwareAuthenticator().make_credential(options)
    payload = {"credential": credential, "challenge": options["challenge"]}

    first = await test_client.post(f"{PASSKEY}/register/verify", headers=headers, json=payload)
    with patch.object(security_log, "passkey_failed") as mock_failed:
        second = await test_client.post(
            f"{PASSKEY}/register/verify", headers=headers, json=payload
        )

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_400_BAD_REQUEST
    assert second.json()["detail"] == "Registration failed. Please try again."
    assert mock_failed.call_args[0][1] == "challenge_invalid"


# --- Authentication ---


@pytest.mark.asyncio
async def test_authentication_options_are_anonymous(test_client: AsyncClient, alice) -> None:
    response = await test_client.post(f"{PASSKEY}/authenticate/options")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data.get("allowCredentials", []) == []
    assert data["rpId"] == "localhost"
    assert "challenge" in data


@pytest.mark.asyncio
async def test_login_sets_session_cookie(test_client: AsyncClient, alice, authenticator) -> None:
    user, _ = alice

    response = await login(test_client, authenticator)

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()["status"] == "ok"
    assert response.json()["user"]["username"] == "alice"

    cookie = response.headers["set-cookie"].lower()
    assert "httponly" in cookie
    assert "samesite=strict" in cookie
    assert "path=/" in cookie

    me = await test_client.get(f"{API_PREFIX}/auth/me", headers=session_headers(response))
    assert me.json()["id"] == user["id"]


@pytest.mark.asyncio
async def test_login_failures_share_one_message(
    test_client: AsyncClient, alice, authenticator
) -> None:
    stranger = SoftwareAuthenticator()
    options = await test_client.post(f"{PASSKEY}/register/options", json={"username": "zed"})
    stranger.make_credential(options.json())
    assert (await login(test_client, authenticator, sign_count=3)).status_code == 200

    unknown = await login(test_client, stranger)
    wrong_origin = await login(test_client, authenticator, origin="https://phish.example")
    replayed_counter = await login(test_client, authenticator, sign_count=3)

    for response in (unknown, wrong_origin, replayed_counter):
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"detail": "Authentication failed."}
        assert "set-cookie" not in response.headers


@pytest.mark.asyncio
async def test_cloned_authenticator_is_blocked(
    test_client: AsyncClient, alice, authenticator
) -> None:
    assert (await login(test_client, authenticator, sign_count=10)).status_code == 200

    with patch.object(security_log, "clone_suspected") as mock_clone:
        response = await login(test_client, authenticator, sign_count=10)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    mock_clone.assert_called_once()


@pytest.mark.asyncio
async def test_authentication_challenge_is_single_use(
    test_client: AsyncClient, alice, authenticator
) -> None:
    options = (await test_client.post(f"{PASSKEY}/authenticate/options")).json()
    payload = {
        "credential": authenticator.get_assertion(options),
        "challenge": options["challenge"],
    }

    first = await test_client.post(f"{PASSKEY}/authenticate/verify", json=payload)
    payload["credential"] = authenticator.get_assertion(options)
    second = await test_client.post(f"{PASSKEY}/authenticate/verify", json=payload)

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.asyncio
async def test_authentication_options_are_rate_limited(test_client: AsyncClient) -> None:
    limiter.enabled = True
    limiter.reset()
    try:
        codes = [
            (await test_client.post(f"{PASSKEY}/authenticate/options")).status_code
            for _ in range(11)
        ]
    finally:
        limiter.reset()

    assert codes[0] == status.HTTP_200_OK
    assert codes[-1] == status.HTTP_429_TOO_MANY_REQUESTS


# --- Management ---


@pytest.mark.asyncio
async def test_list_passkeys_requires_auth(test_client: AsyncClient) -> None:
    response = await test_client.get(f"{PASSKEY}/list")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.asyncio
async def test_rename_passkey(test_client: AsyncClient, alice) -> None:
    _, headers = alice
    passkey_id = (await test_client.get(f"{PASSKEY}/list", headers=headers)).json()["passkeys"][0][
        "id"
    ]

    response = await test_client.put(
        f"{PASSKEY}/{passkey_id}/name", headers=headers, json={"name": " Work laptop "}
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "renamed", "name": "Work laptop"}
    listing = (await test_client.get(f"{PASSKEY}/list", headers=headers)).json()
    assert listing["passkeys"][0]["device_name"] == "Work laptop"


@pytest.mark.asyncio
async def test_rename_unknown_passkey_is_not_found(test_client: AsyncClient, alice) -> None:
    _, headers = alice

    response = await test_client.put(
        f"{PASSKEY}/{uuid4()}/name", headers=headers, json={"name": "x"}
    )

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_cannot_delete_only_passkey(test_client: AsyncClient, alice) -> None:
    _, headers = alice
    passkey_id = (await test_client.get(f"{PASSKEY}/list", headers=headers)).json()["passkeys"][0][
        "id"
    ]

    response = await test_client.delete(f"{PASSKEY}/{passkey_id}", headers=headers)

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["detail"] == "Cannot delete your only passkey."


@pytest.mark.asyncio
async def test_delete_passkey_when_another_remains(test_client: AsyncClient, alice) -> None:
    _, headers = alice
    second_authenticator = SoftwareAuthenticator()
    added = await add_passkey(test_client, headers, second_authenticator, "Backup key")

    response = await test_client.delete(f"{PASSKEY}/{added['id']}", headers=headers)

    assert response.status_code == status.HTTP_200_OK
    listing = await test_client.get(f"{PASSKEY}/list", headers=headers)
    assert listing.json()["passkey_count"] == 1
    # The removed credential can no longer sign in
    assert (await login(test_client, second_authenticator)).status_code == 401


@pytest.mark.asyncio
async def test_cannot_touch_another_users_passkey(
    test_client: AsyncClient, alice, authenticator
) -> None:
    _, alice_headers = alice
    _, bob_headers = await register_account(test_client, SoftwareAuthenticator(), "bob")
    alice_passkey = (await test_client.get(f"{PASSKEY}/list", headers=alice_headers)).json()[
        "passkeys"
    ][0]["id"]

    rename = await test_client.put(
        f"{PASSKEY}/{alice_passkey}/name", headers=bob_headers, json={"name": "mine"}
    )
    delete = await test_client.delete(f"{PASSKEY}/{alice_passkey}", headers=bob_headers)

    assert rename.status_code == status.HTTP_404_NOT_FOUND
    assert delete.status_code == status.HTTP_404_NOT_FOUND
