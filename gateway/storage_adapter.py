"""
存储适配器模块
统一的键值存储与配置存储接口：配置 REDIS_URI 时使用 Redis，否则使用进程内内存存储
"""
import json
import time
import asyncio
from typing import Any, Dict, Optional, Tuple

from log import log
from config import get_redis_uri, get_redis_prefix


class MemoryStorageAdapter:
    """进程内存储（开发和测试使用），支持 TTL"""

    backend = "memory"

    def __init__(self):
        self._kv: Dict[str, Tuple[str, Optional[float]]] = {}
        self._config: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def initialize(self):
        return None

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= time.time()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._kv.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                self._kv.pop(key, None)
                return None
            return value

    async def put(self, key: str, value: str, ttl: Optional[int] = None):
        expires_at = time.time() + ttl if ttl else None
        async with self._lock:
            self._kv[key] = (value, expires_at)

    async def delete(self, key: str):
        async with self._lock:
            self._kv.pop(key, None)

    async def ttl(self, key: str) -> Optional[int]:
        async with self._lock:
            entry = self._kv.get(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(entry[1] - time.time()))

    async def get_config(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    async def set_config(self, key: str, value: Any):
        self._config[key] = value

    async def close(self):
        return None


class RedisStorageAdapter:
    """Redis 存储，所有键加 REDIS_PREFIX 命名空间；配置保存在 {prefix}:config 哈希中"""

    backend = "redis"

    def __init__(self, redis_uri: str, prefix: str):
        self._uri = redis_uri
        self._prefix = prefix.strip(":")
        self._client = None

    async def initialize(self):
        import redis.asyncio as redis_lib

        if self._uri.startswith("rediss://"):
            self._client = redis_lib.from_url(self._uri, decode_responses=True, ssl_cert_reqs=None)
        else:
            self._client = redis_lib.from_url(self._uri, decode_responses=True)
        await self._client.ping()
        log.info(f"Redis storage connected (prefix={self._prefix})")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    @property
    def _config_hash(self) -> str:
        return f"{self._prefix}:config"

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def put(self, key: str, value: str, ttl: Optional[int] = None):
        if ttl:
            await self._client.set(self._key(key), value, ex=int(ttl))
        else:
            await self._client.set(self._key(key), value)

    async def delete(self, key: str):
        await self._client.delete(self._key(key))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self._client.ttl(self._key(key))
        return remaining if remaining is not None and remaining >= 0 else None

    async def get_config(self, key: str, default: Any = None) -> Any:
        raw = await self._client.hget(self._config_hash, key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            return raw

    async def set_config(self, key: str, value: Any):
        await self._client.hset(self._config_hash, key, json.dumps(value, ensure_ascii=False))

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


# 全局实例
_storage_adapter = None
_storage_lock = asyncio.Lock()


async def get_storage_adapter():
    """获取全局存储适配器实例"""
    global _storage_adapter
    if _storage_adapter is not None:
        return _storage_adapter
    async with _storage_lock:
        if _storage_adapter is None:
            redis_uri = get_redis_uri()
            if redis_uri:
                adapter = RedisStorageAdapter(redis_uri, get_redis_prefix())
            else:
                log.warning("REDIS_URI not set, using in-memory storage")
                adapter = MemoryStorageAdapter()
            await adapter.initialize()
            _storage_adapter = adapter
    return _storage_adapter


async def close_storage_adapter():
    """关闭全局存储适配器"""
    global _storage_adapter
    if _storage_adapter is not None:
        try:
            await _storage_adapter.close()
        except Exception as e:
            log.error(f"Failed to close storage adapter: {e}")
        _storage_adapter = None
