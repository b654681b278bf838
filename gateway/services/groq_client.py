"""
Groq 客户端
Whisper 转写（whisper-large-v3）与 Llama 对话补全（llama-3.3-70b-versatile），OpenAI 兼容接口
"""
from typing import Any, Dict, Optional, Tuple

from log import log
from config import get_groq_base_url, get_http_timeout
from ..errors import ProviderFatal, ProviderTransient
from ..httpx_client import http_client
from ..models import AudioPayload, SourceTag, SttProvider, TranscriptionHints, TranscriptionResult
from ..transform.text_processing import extract_transcription_text
from .deepgram_client import normalize_mime_type
from .retry import parse_json_body, send_provider_request

GROQ_TRANSCRIPTION_MODEL = "whisper-large-v3"
GROQ_CHAT_MODEL = "llama-3.3-70b-versatile"

EXTENSION_BY_MIME = {
    "audio/mp4": ".m4a",
    "audio/mpeg": ".mp3",
    "audio/flac": ".flac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/webm": ".webm",
}


def derive_duration_seconds(body: Dict[str, Any]) -> float:
    """优先使用 duration 字段，否则取分段结束时间的最大值"""
    duration = body.get("duration")
    if isinstance(duration, (int, float)) and duration > 0:
        return float(duration)
    segments = body.get("segments")
    if isinstance(segments, list):
        ends = [s.get("end") for s in segments if isinstance(s, dict) and isinstance(s.get("end"), (int, float))]
        if ends:
            return float(max(ends))
    return 0.0


def extract_usage(body: Any) -> Tuple[int, int]:
    """从 usage 字段读取 prompt / completion token 数"""
    usage = body.get("usage") if isinstance(body, dict) else None
    if not isinstance(usage, dict):
        return 0, 0
    try:
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)
    except (TypeError, ValueError):
        return 0, 0


class GroqClient:
    """Groq Whisper 转写与对话补全"""

    provider = SttProvider.GROQ

    async def _fetch_staged_audio(self, payload: AudioPayload) -> Tuple[bytes, str]:
        """Groq 不支持 URL 模式：先下载中转对象再上传"""
        try:
            async with http_client.get_client(timeout=await get_http_timeout()) as client:
                resp = await client.get(payload.url)
        except Exception as e:
            raise ProviderTransient(self.provider.value, f"failed to fetch staged audio: {e}") from e
        if resp.status_code >= 400:
            raise ProviderTransient(self.provider.value, f"failed to fetch staged audio: {resp.status_code}", resp.status_code)
        return resp.content, resp.headers.get("content-type") or payload.content_type

    async def transcribe(self, payload: AudioPayload, hints: TranscriptionHints,
                         api_key: str) -> TranscriptionResult:
        if payload.is_staged:
            audio, content_type = await self._fetch_staged_audio(payload)
        else:
            audio, content_type = payload.data, payload.content_type

        mime = normalize_mime_type(content_type)
        filename = f"audio{EXTENSION_BY_MIME.get(mime, '.m4a')}"
        data: Dict[str, str] = {"model": GROQ_TRANSCRIPTION_MODEL, "response_format": "verbose_json"}
        if hints.language and hints.language.strip().lower() != "auto":
            data["language"] = hints.language.strip().lower()
        if hints.prompt:
            data["prompt"] = hints.prompt

        base_url = await get_groq_base_url()
        log.info(
            f"REQ groq model={GROQ_TRANSCRIPTION_MODEL} staged={payload.is_staged} "
            f"size={len(audio or b'')} language={data.get('language', 'auto')}"
        )
        resp = await send_provider_request(
            self.provider.value,
            "POST",
            f"{base_url}/audio/transcriptions",
            timeout=await get_http_timeout(),
            headers={"Authorization": f"Bearer {api_key}"},
            data=data,
            files={"file": (filename, audio, mime)},
        )
        body = parse_json_body(self.provider.value, resp)
        if not isinstance(body, dict):
            raise ProviderFatal(self.provider.value, "unexpected response structure", resp.status_code)

        text = extract_transcription_text(body)
        language = body.get("language") or hints.language
        if not text:
            log.info("groq: no speech detected")
            return TranscriptionResult(
                text="",
                duration_seconds=0.0,
                provider=self.provider,
                language=language,
                source=SourceTag.NO_SPEECH,
            )

        duration = derive_duration_seconds(body)
        log.info(f"groq: transcribed duration={duration}s language={language}")
        return TranscriptionResult(text=text, duration_seconds=duration, provider=self.provider, language=language)

    async def chat(self, payload: Dict[str, Any], api_key: str,
                   base_url: Optional[str] = None) -> Tuple[Any, int, int]:
        """对话补全，返回 (原始 JSON, prompt_tokens, completion_tokens)"""
        base = base_url or await get_groq_base_url()
        resp = await send_provider_request(
            "groq",
            "POST",
            f"{base}/chat/completions",
            timeout=await get_http_timeout(),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={"model": GROQ_CHAT_MODEL, **payload, "stream": False},
        )
        body = parse_json_body("groq", resp)
        prompt_tokens, completion_tokens = extract_usage(body)
        return body, prompt_tokens, completion_tokens
