import pytest_asyncio

from tests.helpers.api_flows import register_account


@pytest_asyncio.fixture
async def alice(test_client, authenticator):
    """A registered account with one passkey; yields (user json, session headers)."""
    data, headers = await register_account(test_client, authenticator, "alice")
    return data["user"], headers
