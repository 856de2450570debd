"""Tests for the SQL account lookup."""

from unittest.mock import AsyncMock

import pytest

from riskengine.db.models import AccountDB
from riskengine.db.repositories import SqlAccountRepository


class TestSqlAccountRepository:
    @pytest.mark.asyncio
    async def test_get_maps_row(self):
        session = AsyncMock()
        session.get = AsyncMock(return_value=AccountDB(id="acc-1", user_id="user-1", balance=75.5))

        account = await SqlAccountRepository().get(session, "acc-1")

        session.get.assert_awaited_once_with(AccountDB, "acc-1")
        assert (account.id, account.user_id, account.balance) == ("acc-1", "user-1", 75.5)

    @pytest.mark.asyncio
    async def test_missing_account(self):
        session = AsyncMock()
        session.get = AsyncMock(return_value=None)

        assert await SqlAccountRepository().get(session, "nope") is None
