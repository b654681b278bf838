"""
HTTP 客户端模块
为上游 STT / LLM / 计费服务统一创建 httpx.AsyncClient（支持代理，测试时可注入 transport）
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx

from config import get_proxy_config


class HttpClientManager:
    """httpx 客户端工厂"""

    def __init__(self):
        self._transport: Optional[httpx.AsyncBaseTransport] = None

    def set_transport(self, transport: Optional[httpx.AsyncBaseTransport]):
        """替换底层 transport（测试中注入 httpx.MockTransport）"""
        self._transport = transport

    @asynccontextmanager
    async def get_client(self, timeout: Optional[float] = 30.0, **kwargs):
        kwargs.setdefault("follow_redirects", True)
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            proxy = await get_proxy_config()
            if proxy:
                kwargs["proxy"] = proxy
        async with httpx.AsyncClient(timeout=timeout, **kwargs) as client:
            yield client


http_client = HttpClientManager()
