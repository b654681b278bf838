"""
防滥用模块
IP 黑名单（ip_blocked:{ip}）与试用流量的 IP 每日积分配额（ip_daily:{ip}:{YYYY-MM-DD}，UTC）
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from log import log
from config import get_daily_free_credits, get_ip_block_hours
from .core.cost_model import round_to_tenth
from .models import RateLimitStatus
from .storage_adapter import get_storage_adapter


def _blocked_key(ip: str) -> str:
    return f"ip_blocked:{ip}"


class RateLimiter:
    """IP 黑名单与每日配额管理器"""

    def __init__(self):
        self._daily_limit: float = 100.0
        self._block_hours: int = 24
        self._initialized = False

    async def initialize(self):
        """从配置加载每日额度与默认封禁时长"""
        if self._initialized:
            return
        self._daily_limit = await get_daily_free_credits()
        self._block_hours = await get_ip_block_hours()
        self._initialized = True

    @property
    def daily_limit(self) -> float:
        return self._daily_limit

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _date_key(self, now: datetime) -> str:
        return now.strftime("%Y-%m-%d")

    def _reset_time(self, now: datetime) -> datetime:
        """下一个 UTC 零点"""
        tomorrow = (now + timedelta(days=1)).date()
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)

    def _quota_key(self, ip: str, now: datetime) -> str:
        return f"ip_daily:{ip}:{self._date_key(now)}"

    @staticmethod
    def _parse_usage(raw: Optional[str]) -> float:
        if not raw:
            return 0.0
        try:
            return round_to_tenth(float(raw))
        except (TypeError, ValueError):
            return 0.0

    # ---------- 黑名单 ----------

    async def is_ip_blocked(self, ip: str) -> bool:
        """读取失败视为未封禁"""
        try:
            adapter = await get_storage_adapter()
            return (await adapter.get(_blocked_key(ip))) == "true"
        except Exception as e:
            log.error(f"Failed to check IP blocklist: {e}")
            return False

    async def block_ip(self, ip: str, duration_hours: Optional[int] = None):
        hours = duration_hours if duration_hours is not None else self._block_hours
        adapter = await get_storage_adapter()
        await adapter.put(_blocked_key(ip), "true", ttl=int(hours * 3600))
        log.warning(f"IP blocked: ip={ip} hours={hours}")

    async def unblock_ip(self, ip: str):
        adapter = await get_storage_adapter()
        await adapter.delete(_blocked_key(ip))
        log.info(f"IP unblocked: ip={ip}")

    # ---------- 每日配额 ----------

    async def check_rate_limit(self, ip: str, estimated_credits: float) -> RateLimitStatus:
        """
        检查 IP 今日剩余额度

        used + estimated <= limit 时允许；存储读取失败时拒绝
        """
        now = self._now()
        resets_at = self._reset_time(now)
        try:
            adapter = await get_storage_adapter()
            used = self._parse_usage(await adapter.get(self._quota_key(ip, now)))
        except Exception as e:
            log.error(f"Rate limit check failed for {ip}: {e}")
            return RateLimitStatus(
                allowed=False,
                credits_used=self._daily_limit,
                credits_remaining=0.0,
                limit=self._daily_limit,
                resets_at=resets_at,
            )

        allowed = round_to_tenth(used + estimated_credits) <= self._daily_limit
        remaining = round_to_tenth(max(0.0, self._daily_limit - used))
        log.debug(
            f"Rate limit check: ip={ip} used={used} remaining={remaining} "
            f"estimated={estimated_credits} allowed={allowed}"
        )
        return RateLimitStatus(
            allowed=allowed,
            credits_used=used,
            credits_remaining=remaining,
            limit=self._daily_limit,
            resets_at=resets_at,
        )

    async def increment_usage(self, ip: str, credits: float):
        """按实际积分累加今日用量，TTL 为距 UTC 零点秒数 + 1 小时；失败只记录日志"""
        now = self._now()
        key = self._quota_key(ip, now)
        try:
            adapter = await get_storage_adapter()
            current = self._parse_usage(await adapter.get(key))
            added = round_to_tenth(credits)
            total = round_to_tenth(current + added)
            ttl = int((self._reset_time(now) - now).total_seconds()) + 3600
            await adapter.put(key, f"{total:.1f}", ttl=ttl)
            log.debug(f"IP usage incremented: ip={ip} added={added} total={total}")
        except Exception as e:
            log.error(f"Failed to increment IP usage for {ip}: {e}")

    async def get_usage_stats(self, ip: str) -> RateLimitStatus:
        """/usage 使用的今日用量，读取失败时按未使用返回"""
        now = self._now()
        try:
            adapter = await get_storage_adapter()
            used = self._parse_usage(await adapter.get(self._quota_key(ip, now)))
        except Exception as e:
            log.error(f"Failed to read IP usage for {ip}: {e}")
            used = 0.0
        remaining = round_to_tenth(max(0.0, self._daily_limit - used))
        return RateLimitStatus(
            allowed=remaining > 0,
            credits_used=used,
            credits_remaining=remaining,
            limit=self._daily_limit,
            resets_at=self._reset_time(now),
        )

    def format_rate_limit_headers(self, status: RateLimitStatus) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": f"{status.limit:g}",
            "X-RateLimit-Remaining": f"{round_to_tenth(status.credits_remaining):.1f}",
            "X-RateLimit-Reset": str(int(status.resets_at.timestamp())),
            "X-RateLimit-Type": "anonymous-daily",
        }


# 全局实例
_rate_limiter: Optional[RateLimiter] = None


async def get_rate_limiter() -> RateLimiter:
    """获取全局防滥用管理器实例"""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
        await _rate_limiter.initialize()
    return _rate_limiter
