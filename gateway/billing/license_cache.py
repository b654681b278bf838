"""
许可证缓存
缓存键 license:{license_key}，有效许可证缓存 5 分钟，无效许可证缓存 1 小时
"""
import json
import time
from typing import Optional

from log import log
from ..models import LicenseValidation
from ..storage_adapter import get_storage_adapter

VALID_LICENSE_TTL = 5 * 60
INVALID_LICENSE_TTL = 60 * 60


def _cache_key(license_key: str) -> str:
    return f"license:{license_key}"


async def get_license_from_cache(license_key: str) -> Optional[LicenseValidation]:
    """读取缓存，读取失败按未命中处理"""
    try:
        adapter = await get_storage_adapter()
        raw = await adapter.get(_cache_key(license_key))
        if not raw:
            log.debug("License cache miss")
            return None
        cached = LicenseValidation.from_dict(json.loads(raw))
        age = int((time.time() * 1000 - (cached.cached_at or 0)) / 1000)
        log.debug(f"License cache hit: valid={cached.is_valid} credits={cached.credits} age={age}s")
        return cached
    except Exception as e:
        log.error(f"Failed to get license from cache: {e}")
        return None


async def set_license_in_cache(license_key: str, credits: float, is_valid: bool):
    """写入缓存，写入失败只记录日志"""
    try:
        adapter = await get_storage_adapter()
        entry = LicenseValidation(
            is_valid=is_valid,
            credits=float(credits or 0),
            cached_at=int(time.time() * 1000),
        )
        ttl = VALID_LICENSE_TTL if is_valid else INVALID_LICENSE_TTL
        await adapter.put(_cache_key(license_key), json.dumps(entry.to_dict()), ttl=ttl)
        log.debug(f"License cached: valid={is_valid} credits={credits} ttl={ttl}s")
    except Exception as e:
        log.error(f"Failed to cache license: {e}")


async def invalidate_license_cache(license_key: str):
    """删除缓存条目（购买积分或停用许可证后调用）"""
    try:
        adapter = await get_storage_adapter()
        await adapter.delete(_cache_key(license_key))
        log.info("License cache invalidated")
    except Exception as e:
        log.error(f"Failed to invalidate license cache: {e}")
