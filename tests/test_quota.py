"""Tests for the fail-closed quota checker."""

import sqlite3
from unittest.mock import AsyncMock

import pytest

from conftest import MB
from foldly.quota import QuotaChecker


class TestQuotaChecker:
    """Quota decisions against a real database."""

    @pytest.mark.asyncio
    async def test_fits(self, db, quota_checker):
        await db.create_user("u1", storage_limit=100 * MB, storage_used=10 * MB)

        result = await quota_checker.check_user_quota("u1", 5 * MB)

        assert result.can_upload is True
        assert result.current_usage == 10 * MB
        assert result.remaining == 90 * MB
        assert result.percentage_used == 10
        assert result.near_limit is False

    @pytest.mark.asyncio
    async def test_exact_fit_is_allowed(self, db, quota_checker):
        await db.create_user("u2", storage_limit=500 * MB, storage_used=490 * MB)

        result = await quota_checker.check_user_quota("u2", 10 * MB)

        assert result.can_upload is True
        assert result.near_limit is True

    @pytest.mark.asyncio
    async def test_over_limit(self, db, quota_checker):
        await db.create_user("u3", storage_limit=100 * MB, storage_used=99 * MB)

        result = await quota_checker.check_user_quota("u3", 2 * MB)

        assert result.can_upload is False
        assert "Storage limit reached" in result.reason

    @pytest.mark.asyncio
    async def test_unknown_user_is_denied(self, quota_checker):
        result = await quota_checker.check_user_quota("ghost", 1)

        assert result.can_upload is False
        assert result.percentage_used == 100

    @pytest.mark.asyncio
    async def test_lookup_failure_is_denied(self):
        database = AsyncMock()
        database.get_user_quota.side_effect = sqlite3.OperationalError("disk I/O error")
        checker = QuotaChecker(database)

        result = await checker.check_user_quota("u1", 1)

        assert result.can_upload is False
        assert result.percentage_used == 100
        assert result.near_limit is True

    @pytest.mark.asyncio
    async def test_zero_limit_is_denied(self):
        database = AsyncMock()
        database.get_user_quota.return_value = {"used": 0, "limit": 0}

        result = await QuotaChecker(database).check_user_quota("u1", 1)

        assert result.can_upload is False

    @pytest.mark.asyncio
    async def test_storage_info(self, db, quota_checker):
        await db.create_user("u4", storage_limit=100 * MB, storage_used=90 * MB)

        info = await quota_checker.get_storage_info("u4")

        assert info.usage_percentage == 90
        assert info.remaining_bytes == 10 * MB
        assert info.should_show_warning is True
