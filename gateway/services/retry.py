"""
上游请求重试与错误分类
ProviderTransient 按指数退避重试；ProviderEdgeBlocked / ProviderFatal 立即抛出
"""
import json
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from log import log
from ..errors import ProviderEdgeBlocked, ProviderFatal, ProviderTransient
from ..httpx_client import http_client

T = TypeVar("T")

# CDN / WAF 拦截页特征
EDGE_MARKERS = (
    "cloudflare",
    "error code: 10",
    "attention required",
    "access denied",
    "cf-ray",
    "request blocked",
)
EDGE_STATUS_CODES = (403, 451)


def _is_json_body(resp: httpx.Response) -> bool:
    try:
        return isinstance(resp.json(), (dict, list))
    except (ValueError, json.JSONDecodeError):
        return False


def is_edge_block(resp: httpx.Response) -> bool:
    """
    判断响应是否为边缘网络拦截

    403/451 且响应体不是供应商的 JSON 错误结构（HTML 或纯文本拦截页）；
    供应商自己的 JSON 鉴权 / 权限错误即使包含 "access denied" 也不算拦截
    """
    if resp.status_code not in EDGE_STATUS_CODES:
        return False
    if _is_json_body(resp):
        return False
    body = (resp.text or "").lower()
    if any(marker in body for marker in EDGE_MARKERS):
        log.debug(f"Edge block marker found in {resp.status_code} response")
    return True


def raise_for_provider_status(provider: str, resp: httpx.Response):
    """按状态码把非 2xx 响应转换为 ProviderError"""
    status = resp.status_code
    if 200 <= status < 300:
        return
    detail = (resp.text or "")[:300]
    if is_edge_block(resp):
        raise ProviderEdgeBlocked(provider, f"edge blocked (status {status})", status)
    if status == 429 or status >= 500:
        raise ProviderTransient(provider, f"status {status}: {detail}", status)
    raise ProviderFatal(provider, f"status {status}: {detail}", status)


async def send_provider_request(provider: str, method: str, url: str,
                                timeout: Optional[float] = 300.0, **kwargs) -> httpx.Response:
    """
    发送上游请求并分类错误

    网络错误 / 超时转换为 ProviderTransient，非 2xx 按状态码分类
    """
    try:
        async with http_client.get_client(timeout=timeout) as client:
            resp = await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        raise ProviderTransient(provider, f"network error: {e}") from e
    raise_for_provider_status(provider, resp)
    return resp


def parse_json_body(provider: str, resp: httpx.Response):
    try:
        return resp.json()
    except (ValueError, json.JSONDecodeError) as e:
        raise ProviderFatal(provider, "malformed response body", resp.status_code) from e


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    label: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    对 ProviderTransient 进行指数退避重试

    最多执行 max_retries + 1 次；延迟依次为 initial_delay * multiplier^attempt。
    其它异常直接抛出。
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except ProviderTransient as e:
            if attempt >= max_retries:
                log.error(f"[RETRY] {label} exhausted after {attempt + 1} attempts: {e}")
                raise
            delay = initial_delay * (backoff_multiplier ** attempt)
            log.warning(f"[RETRY] {label} {e} ({attempt + 1}/{max_retries}) in {delay:.1f}s")
            await sleep(delay)
            attempt += 1
