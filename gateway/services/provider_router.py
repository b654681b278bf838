"""
STT 提供商路由
选择提供商与传输方式（直传 / 对象存储中转），瞬时错误重试，边缘拦截时单跳回退，空结果归一化为无语音
"""
import asyncio
from typing import AsyncIterable, Awaitable, Callable, Dict, Optional, Union

from log import log
from config import (
    get_deepgram_api_key,
    get_default_stt_provider,
    get_elevenlabs_api_key,
    get_groq_api_key,
    get_retry_initial_delay,
    get_retry_max_retries,
    get_staging_threshold,
)
from ..errors import BadRequest, InternalMisconfiguration, ProviderEdgeBlocked, ProviderError, ProviderFatal
from ..models import AudioPayload, PROVIDER_LABELS, SourceTag, SttProvider, TranscriptionHints, TranscriptionResult
from ..object_storage import get_object_storage
from ..pipeline import RequestContext
from ..task_manager import create_managed_task
from .deepgram_client import DeepgramClient
from .elevenlabs_client import ElevenLabsClient
from .groq_client import GroqClient
from .retry import retry_with_backoff

# 边缘拦截时的回退目标（只回退一次）
FALLBACK_PROVIDERS = {
    SttProvider.ELEVENLABS: SttProvider.DEEPGRAM,
    SttProvider.DEEPGRAM: SttProvider.ELEVENLABS,
    SttProvider.GROQ: SttProvider.DEEPGRAM,
}

API_KEY_GETTERS: Dict[SttProvider, Callable[[], Awaitable[Optional[str]]]] = {
    SttProvider.ELEVENLABS: get_elevenlabs_api_key,
    SttProvider.DEEPGRAM: get_deepgram_api_key,
    SttProvider.GROQ: get_groq_api_key,
}

AudioBody = Union[bytes, AsyncIterable[bytes]]


async def read_body(body: AudioBody) -> bytes:
    """把请求体读入内存（直传模式，供重试与回退重放）"""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    chunks = []
    async for chunk in body:
        if chunk:
            chunks.append(chunk)
    return b"".join(chunks)


class ProviderRouter:
    """转写路由器"""

    def __init__(self, clients=None, storage_factory=None, sleep=asyncio.sleep):
        self._clients = clients or {
            SttProvider.ELEVENLABS: ElevenLabsClient(),
            SttProvider.DEEPGRAM: DeepgramClient(),
            SttProvider.GROQ: GroqClient(),
        }
        self._storage_factory = storage_factory or get_object_storage
        self._sleep = sleep

    async def resolve_provider(self, requested: Optional[str], ctx: Optional[RequestContext] = None) -> SttProvider:
        """按 X-STT-Provider 选择提供商，无效值记录警告并使用默认提供商"""
        default_name = await get_default_stt_provider()
        try:
            default = SttProvider(default_name)
        except ValueError:
            default = SttProvider.ELEVENLABS
        if not requested:
            return default
        try:
            return SttProvider(requested.strip().lower())
        except ValueError:
            message = f"Invalid STT provider '{requested}', using {default.value}"
            if ctx is not None:
                ctx.logger.warning(message)
            else:
                log.warning(message)
            return default

    async def _api_key(self, provider: SttProvider) -> Optional[str]:
        return await API_KEY_GETTERS[provider]()

    async def should_stage(self, provider: SttProvider, content_length: int) -> bool:
        return content_length >= await get_staging_threshold(provider.value)

    async def _call_with_retry(self, ctx: RequestContext, provider: SttProvider, payload: AudioPayload,
                               hints: TranscriptionHints, api_key: str) -> TranscriptionResult:
        client = self._clients[provider]
        return await retry_with_backoff(
            lambda: client.transcribe(payload, hints, api_key),
            max_retries=await get_retry_max_retries(),
            initial_delay=await get_retry_initial_delay(),
            label=f"{provider.value} request={ctx.request_id}",
            sleep=self._sleep,
        )

    async def _call_with_fallback(self, ctx: RequestContext, provider: SttProvider, payload: AudioPayload,
                                  hints: TranscriptionHints, api_key: str) -> TranscriptionResult:
        try:
            return await self._call_with_retry(ctx, provider, payload, hints, api_key)
        except ProviderEdgeBlocked as e:
            fallback = FALLBACK_PROVIDERS[provider]
            ctx.logger.warning(
                "Provider edge-blocked, falling back",
                provider=provider.value,
                fallback=fallback.value,
                status=e.status_code,
            )
            fallback_key = await self._api_key(fallback)
            if not fallback_key:
                raise ProviderFatal(fallback.value, "fallback provider not configured") from e
            try:
                result = await self._call_with_retry(ctx, fallback, payload, hints, fallback_key)
            except ProviderError as fe:
                raise ProviderFatal(fallback.value, f"fallback failed: {fe.detail}", fe.status_code) from fe
            result.fallback_from = provider
            return result

    async def transcribe(self, ctx: RequestContext, provider: SttProvider, body: AudioBody,
                         content_type: str, content_length: int,
                         hints: TranscriptionHints) -> TranscriptionResult:
        """
        转写音频

        Raises:
            BadRequest: 直传路径请求体为空
            InternalMisconfiguration: 缺少提供商密钥或对象存储配置
            ProviderTransient: 重试耗尽
            ProviderFatal: 不可重试的错误，或回退失败
        """
        api_key = await self._api_key(provider)
        if not api_key:
            ctx.logger.error("Missing provider credential", provider=provider.value)
            raise InternalMisconfiguration(f"{PROVIDER_LABELS[provider]} is not configured")

        staged = None
        storage = None
        if await self.should_stage(provider, content_length):
            storage = await self._storage_factory()
            staged = await storage.stage(body, content_type, content_length)
            payload = AudioPayload(content_type=content_type, size=content_length, url=staged.url)
            ctx.logger.info("Audio staged to object storage", key=staged.key, size=content_length)
        else:
            data = await read_body(body)
            if not data:
                ctx.logger.warning("Empty request body")
                raise BadRequest("Empty body", "Request body must contain audio data")
            payload = AudioPayload(content_type=content_type, size=len(data), data=data)

        try:
            result = await self._call_with_fallback(ctx, provider, payload, hints, api_key)
        finally:
            if staged is not None:
                create_managed_task(storage.delete(staged.key), name=f"cleanup-{staged.key}")

        if not result.text or not result.text.strip():
            result.text = ""
            result.duration_seconds = 0.0
            result.source = SourceTag.NO_SPEECH
        ctx.logger.info(
            "Transcription finished",
            provider=result.provider_label,
            durationSeconds=result.duration_seconds,
            noSpeech=result.no_speech,
        )
        return result
