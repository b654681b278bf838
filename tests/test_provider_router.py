"""
STT 路由与 LLM 路由测试
提供商选择、中转阈值、边缘拦截回退（只回退一次）、无语音归一化、后处理提取与成本
"""
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gateway.errors import BadRequest, InternalMisconfiguration, ProviderEdgeBlocked, ProviderFatal, ProviderTransient
from gateway.httpx_client import http_client
from gateway.models import LlmProvider, SourceTag, SttProvider, TranscriptionHints, TranscriptionResult
from gateway.object_storage import StagedObject, generate_object_key
from gateway.pipeline import RequestContext
from gateway.services.elevenlabs_client import ElevenLabsClient
from gateway.services.llm_router import LlmRouter, build_correction_request
from gateway.services.provider_router import ProviderRouter
from gateway.task_manager import wait_for_pending_tasks

AUDIO = b"RIFF....WAVE" * 8


def make_ctx() -> RequestContext:
    return RequestContext.create("198.51.100.4", "req-router")


def result_for(provider: SttProvider, text: str = "hello", duration: float = 30.0) -> TranscriptionResult:
    return TranscriptionResult(text=text, duration_seconds=duration, provider=provider, language="en")


def make_clients(**side_effects):
    clients = {}
    for provider in SttProvider:
        client = MagicMock()
        effect = side_effects.get(provider.value, result_for(provider))
        if isinstance(effect, (list, Exception)):
            client.transcribe = AsyncMock(side_effect=effect)
        else:
            client.transcribe = AsyncMock(return_value=effect)
        clients[provider] = client
    return clients


class FakeStorage:
    def __init__(self):
        self.staged = []
        self.deleted = []

    async def stage(self, body, content_type, size):
        obj = StagedObject(key=generate_object_key(content_type), url="https://r2.test/get?sig=1",
                           content_type=content_type, size=size)
        self.staged.append(obj)
        return obj

    async def delete(self, key):
        self.deleted.append(key)


class TestProviderSelection:

    @pytest.mark.asyncio
    async def test_default_and_override(self):
        router = ProviderRouter(clients=make_clients())
        assert await router.resolve_provider(None) == SttProvider.ELEVENLABS
        assert await router.resolve_provider("Deepgram") == SttProvider.DEEPGRAM
        assert await router.resolve_provider("groq") == SttProvider.GROQ

    @pytest.mark.asyncio
    async def test_invalid_value_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_STT_PROVIDER", "deepgram")
        router = ProviderRouter(clients=make_clients())
        assert await router.resolve_provider("whisper-9000", make_ctx()) == SttProvider.DEEPGRAM

    @pytest.mark.asyncio
    async def test_staging_thresholds(self):
        router = ProviderRouter(clients=make_clients())
        mib = 1024 * 1024
        assert not await router.should_stage(SttProvider.ELEVENLABS, 15 * mib - 1)
        assert await router.should_stage(SttProvider.ELEVENLABS, 15 * mib)
        assert not await router.should_stage(SttProvider.DEEPGRAM, 20 * mib)
        assert await router.should_stage(SttProvider.DEEPGRAM, 30 * mib)

    def test_object_key_format(self):
        key = generate_object_key("audio/x-m4a")
        assert key.startswith("temp/")
        assert key.endswith(".m4a")
        assert generate_object_key("application/x-unknown").endswith(".bin")


class TestTranscribe:

    @pytest.mark.asyncio
    async def test_direct_path_buffers_body(self, provider_keys):
        clients = make_clients()
        router = ProviderRouter(clients=clients, sleep=AsyncMock())

        async def chunks():
            yield AUDIO[:10]
            yield AUDIO[10:]

        result = await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, chunks(), "audio/wav", len(AUDIO),
                                         TranscriptionHints())
        payload = clients[SttProvider.ELEVENLABS].transcribe.await_args.args[0]
        assert payload.data == AUDIO
        assert not payload.is_staged
        assert result.text == "hello"

    @pytest.mark.asyncio
    async def test_large_upload_is_staged_and_cleaned_up(self, provider_keys):
        storage = FakeStorage()
        clients = make_clients()
        router = ProviderRouter(clients=clients, storage_factory=AsyncMock(return_value=storage), sleep=AsyncMock())
        size = 40 * 1024 * 1024

        await router.transcribe(make_ctx(), SttProvider.DEEPGRAM, AUDIO, "audio/mp4", size, TranscriptionHints())
        await wait_for_pending_tasks(timeout=1.0)

        payload = clients[SttProvider.DEEPGRAM].transcribe.await_args.args[0]
        assert payload.url == "https://r2.test/get?sig=1"
        assert storage.deleted == [storage.staged[0].key]

    @pytest.mark.asyncio
    async def test_staged_object_deleted_on_failure(self, provider_keys):
        storage = FakeStorage()
        clients = make_clients(deepgram=ProviderFatal("deepgram", "bad audio", 400))
        router = ProviderRouter(clients=clients, storage_factory=AsyncMock(return_value=storage), sleep=AsyncMock())

        with pytest.raises(ProviderFatal):
            await router.transcribe(make_ctx(), SttProvider.DEEPGRAM, AUDIO, "audio/mp4", 40 * 1024 * 1024,
                                    TranscriptionHints())
        await wait_for_pending_tasks(timeout=1.0)
        assert len(storage.deleted) == 1

    @pytest.mark.asyncio
    async def test_missing_key_is_misconfiguration(self):
        clients = make_clients()
        router = ProviderRouter(clients=clients)
        with pytest.raises(InternalMisconfiguration):
            await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                    TranscriptionHints())
        clients[SttProvider.ELEVENLABS].transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_edge_block_falls_back_once(self, provider_keys):
        clients = make_clients(elevenlabs=ProviderEdgeBlocked("elevenlabs", "edge blocked", 403))
        router = ProviderRouter(clients=clients, sleep=AsyncMock())

        result = await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                         TranscriptionHints())
        assert result.provider == SttProvider.DEEPGRAM
        assert result.fallback_from == SttProvider.ELEVENLABS
        assert result.provider_label == "deepgram-nova3 (fallback from elevenlabs-scribe-v2)"
        assert clients[SttProvider.ELEVENLABS].transcribe.await_count == 1

    @pytest.mark.asyncio
    async def test_fallback_is_single_hop(self, provider_keys):
        clients = make_clients(
            elevenlabs=ProviderEdgeBlocked("elevenlabs", "edge blocked", 403),
            deepgram=ProviderEdgeBlocked("deepgram", "edge blocked", 403),
        )
        router = ProviderRouter(clients=clients, sleep=AsyncMock())
        with pytest.raises(ProviderFatal):
            await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                    TranscriptionHints())
        assert clients[SttProvider.ELEVENLABS].transcribe.await_count == 1
        assert clients[SttProvider.DEEPGRAM].transcribe.await_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ProviderFatal("elevenlabs", "bad request", 400),
        ProviderTransient("elevenlabs", "status 503", 503),
    ])
    async def test_other_failures_do_not_fall_back(self, provider_keys, error):
        clients = make_clients(elevenlabs=error)
        sleep = AsyncMock()
        router = ProviderRouter(clients=clients, sleep=sleep)
        with pytest.raises(type(error)):
            await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                    TranscriptionHints())
        clients[SttProvider.DEEPGRAM].transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_retried_then_succeeds(self, provider_keys):
        clients = make_clients(groq=[ProviderTransient("groq", "429", 429), result_for(SttProvider.GROQ)])
        sleep = AsyncMock()
        router = ProviderRouter(clients=clients, sleep=sleep)
        result = await router.transcribe(make_ctx(), SttProvider.GROQ, AUDIO, "audio/wav", len(AUDIO),
                                         TranscriptionHints())
        assert result.provider == SttProvider.GROQ
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_vendor_json_403_does_not_fall_back(self, provider_keys):
        http_client.set_transport(httpx.MockTransport(lambda r: httpx.Response(403, json={
            "detail": {"status": "invalid_api_key", "message": "Access denied: missing permission"},
        })))
        clients = make_clients()
        clients[SttProvider.ELEVENLABS] = ElevenLabsClient()
        router = ProviderRouter(clients=clients, sleep=AsyncMock())
        with pytest.raises(ProviderFatal):
            await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                    TranscriptionHints())
        clients[SttProvider.DEEPGRAM].transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_direct_body_rejected(self, provider_keys):
        clients = make_clients()
        router = ProviderRouter(clients=clients, sleep=AsyncMock())
        with pytest.raises(BadRequest) as exc:
            await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, b"", "audio/wav", 1024,
                                    TranscriptionHints())
        assert exc.value.error == "Empty body"
        clients[SttProvider.ELEVENLABS].transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_whitespace_transcript_is_no_speech(self, provider_keys):
        clients = make_clients(elevenlabs=result_for(SttProvider.ELEVENLABS, text="   ", duration=12.0))
        router = ProviderRouter(clients=clients, sleep=AsyncMock())
        result = await router.transcribe(make_ctx(), SttProvider.ELEVENLABS, AUDIO, "audio/wav", len(AUDIO),
                                         TranscriptionHints())
        assert result.source == SourceTag.NO_SPEECH
        assert result.text == ""
        assert result.duration_seconds == 0.0


class TestLlmRouter:

    def make_router(self, raw, prompt_tokens=1000, completion_tokens=500):
        clients = {}
        for provider in LlmProvider:
            client = MagicMock()
            client.chat = AsyncMock(return_value=(raw, prompt_tokens, completion_tokens))
            clients[provider] = client
        return LlmRouter(clients=clients, sleep=AsyncMock()), clients

    def test_correction_request(self):
        payload = build_correction_request("Fix punctuation", "hello world")
        assert payload["messages"][0] == {"role": "system", "content": "Fix punctuation"}
        assert "--TRANSCRIPT--" in payload["messages"][1]["content"]
        assert payload["temperature"] == 0

    @pytest.mark.asyncio
    async def test_default_provider_is_cerebras(self):
        router, _ = self.make_router({})
        assert await router.resolve_provider(None) == LlmProvider.CEREBRAS
        assert await router.resolve_provider("GROQ") == LlmProvider.GROQ
        assert await router.resolve_provider("bogus") == LlmProvider.CEREBRAS

    @pytest.mark.asyncio
    async def test_post_process_extracts_and_costs(self, provider_keys):
        raw = {"choices": [{"message": {"content": "<<CLEANED>>Hello, world.<END>"}}]}
        router, clients = self.make_router(raw)
        result = await router.post_process(make_ctx(), "hello world", "Fix it", LlmProvider.GROQ)
        assert result.corrected == "Hello, world."
        assert result.applied
        assert result.cost_usd == round((1000 * 0.59 + 500 * 0.79) / 1_000_000, 6)
        clients[LlmProvider.CEREBRAS].chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blank_prompt_skips_llm(self, provider_keys):
        router, clients = self.make_router({})
        result = await router.post_process(make_ctx(), "raw text", "   ", LlmProvider.CEREBRAS)
        assert result.corrected == "raw text"
        assert not result.applied
        assert result.cost_usd == 0
        clients[LlmProvider.CEREBRAS].chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unextractable_response_is_fatal(self, provider_keys):
        router, _ = self.make_router({"choices": []})
        with pytest.raises(ProviderFatal):
            await router.post_process(make_ctx(), "raw", "Fix", LlmProvider.CEREBRAS)

    @pytest.mark.asyncio
    async def test_missing_key_is_misconfiguration(self):
        router, _ = self.make_router({})
        with pytest.raises(InternalMisconfiguration):
            await router.post_process(make_ctx(), "raw", "Fix", LlmProvider.CEREBRAS)
