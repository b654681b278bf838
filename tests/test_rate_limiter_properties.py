"""
防滥用属性测试
IP 黑名单、每日配额（used + estimated <= limit）、UTC 零点重置与响应头
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st, settings, HealthCheck
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import reset_singletons
from gateway.rate_limiter import RateLimiter, get_rate_limiter
from gateway.storage_adapter import get_storage_adapter

FIXED_NOW = datetime(2026, 3, 14, 15, 30, tzinfo=timezone.utc)


class TestRateLimiter:
    """防滥用管理器测试"""

    @pytest.fixture
    def rate_limiter(self):
        """创建固定时间的管理器实例"""
        limiter = RateLimiter()
        limiter._initialized = True  # 跳过初始化
        limiter._now = lambda: FIXED_NOW
        return limiter

    @pytest.mark.asyncio
    async def test_block_and_unblock(self, rate_limiter):
        assert await rate_limiter.is_ip_blocked("10.0.0.1") is False
        await rate_limiter.block_ip("10.0.0.1", duration_hours=2)
        assert await rate_limiter.is_ip_blocked("10.0.0.1") is True

        adapter = await get_storage_adapter()
        ttl = await adapter.ttl("ip_blocked:10.0.0.1")
        assert 0 < ttl <= 2 * 3600

        await rate_limiter.unblock_ip("10.0.0.1")
        assert await rate_limiter.is_ip_blocked("10.0.0.1") is False

    @pytest.mark.asyncio
    async def test_blocklist_read_failure_is_open(self, rate_limiter):
        broken = AsyncMock()
        broken.get.side_effect = ConnectionError("storage down")
        with patch("gateway.rate_limiter.get_storage_adapter", AsyncMock(return_value=broken)):
            assert await rate_limiter.is_ip_blocked("10.0.0.1") is False

    @pytest.mark.asyncio
    async def test_quota_read_failure_denies(self, rate_limiter):
        broken = AsyncMock()
        broken.get.side_effect = ConnectionError("storage down")
        with patch("gateway.rate_limiter.get_storage_adapter", AsyncMock(return_value=broken)):
            status = await rate_limiter.check_rate_limit("10.0.0.1", 1.0)
        assert status.allowed is False
        assert status.credits_remaining == 0

    @pytest.mark.asyncio
    async def test_resets_at_next_utc_midnight(self, rate_limiter):
        status = await rate_limiter.check_rate_limit("10.0.0.1", 1.0)
        assert status.resets_at == datetime(2026, 3, 15, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_usage_keyed_by_utc_date(self, rate_limiter):
        await rate_limiter.increment_usage("10.0.0.1", 99.0)
        assert (await rate_limiter.check_rate_limit("10.0.0.1", 2.0)).allowed is False

        rate_limiter._now = lambda: FIXED_NOW + timedelta(days=1)
        assert (await rate_limiter.check_rate_limit("10.0.0.1", 2.0)).allowed is True

    @pytest.mark.asyncio
    async def test_increment_ttl_covers_rest_of_day(self, rate_limiter):
        await rate_limiter.increment_usage("10.0.0.1", 3.3)
        adapter = await get_storage_adapter()
        ttl = await adapter.ttl("ip_daily:10.0.0.1:2026-03-14")
        # 距零点 8.5 小时 + 1 小时
        assert 9.5 * 3600 - 5 <= ttl <= 9.5 * 3600

    @pytest.mark.asyncio
    async def test_usage_stats_and_headers(self, rate_limiter):
        await rate_limiter.increment_usage("10.0.0.1", 40.25)
        stats = await rate_limiter.get_usage_stats("10.0.0.1")
        assert stats.credits_used == 40.3
        assert stats.credits_remaining == 59.7

        headers = rate_limiter.format_rate_limit_headers(stats)
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "59.7"
        assert headers["X-RateLimit-Reset"] == str(int(datetime(2026, 3, 15, tzinfo=timezone.utc).timestamp()))

    @given(
        used=st.integers(min_value=0, max_value=1500).map(lambda v: v / 10),
        estimated=st.integers(min_value=1, max_value=500).map(lambda v: v / 10),
    )
    @settings(max_examples=60, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_quota_decision(self, rate_limiter, used, estimated):
        """allowed 当且仅当 used + estimated <= limit"""

        async def run_test():
            reset_singletons()
            if used:
                await rate_limiter.increment_usage("10.0.0.9", used)
            status = await rate_limiter.check_rate_limit("10.0.0.9", estimated)
            assert status.allowed == (round(used + estimated, 1) <= 100)
            assert status.credits_remaining == round(max(0.0, 100 - used), 1)
            reset_singletons()

        asyncio.run(run_test())

    @pytest.mark.asyncio
    async def test_limits_from_config(self, monkeypatch):
        monkeypatch.setenv("DAILY_FREE_CREDITS", "25")
        monkeypatch.setenv("IP_BLOCK_HOURS", "6")
        limiter = await get_rate_limiter()
        assert limiter.daily_limit == 25
        assert limiter is await get_rate_limiter()
