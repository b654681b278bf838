"""
Deepgram Nova-3 转写客户端（批量）
直传模式发送原始音频字节；URL 模式发送 JSON {"url": ...}
"""
from typing import List, Optional
from urllib.parse import urlencode

from log import log
from config import get_http_timeout
from ..errors import ProviderFatal
from ..models import AudioPayload, SourceTag, SttProvider, TranscriptionHints, TranscriptionResult
from .retry import parse_json_body, send_provider_request

DEEPGRAM_API_URL = "https://api.deepgram.com/v1/listen"
DEEPGRAM_MODEL = "nova-3"

MIME_OVERRIDES = {
    "audio/mp4": "audio/mp4",
    "audio/m4a": "audio/mp4",
    "audio/x-m4a": "audio/mp4",
    "audio/mpeg": "audio/mpeg",
    "audio/mp3": "audio/mpeg",
    "audio/mpga": "audio/mpeg",
    "audio/flac": "audio/flac",
    "audio/x-flac": "audio/flac",
    "audio/ogg": "audio/ogg",
    "audio/opus": "audio/opus",
    "audio/wav": "audio/wav",
    "audio/x-wav": "audio/wav",
    "audio/webm": "audio/webm",
}
DEFAULT_AUDIO_MIME = "audio/mp4"


def normalize_mime_type(content_type: Optional[str]) -> str:
    """规范化 Content-Type（去掉参数，映射别名）"""
    if not content_type:
        return DEFAULT_AUDIO_MIME
    candidate = content_type.split(";")[0].strip().lower()
    if candidate in MIME_OVERRIDES:
        return MIME_OVERRIDES[candidate]
    if candidate.startswith("audio/"):
        return candidate
    return DEFAULT_AUDIO_MIME


def build_deepgram_url(language: Optional[str], vocabulary: List[str]) -> str:
    params = [
        ("model", DEEPGRAM_MODEL),
        ("smart_format", "true"),
        ("utterances", "true"),
    ]
    if language and language.strip().lower() != "auto":
        params.append(("language", language.strip().lower()))
    else:
        params.append(("detect_language", "true"))
    if vocabulary:
        params.append(("keyterm", ",".join(vocabulary)))
    return f"{DEEPGRAM_API_URL}?{urlencode(params)}"


class DeepgramClient:
    """Deepgram 批量转写"""

    provider = SttProvider.DEEPGRAM

    async def transcribe(self, payload: AudioPayload, hints: TranscriptionHints,
                         api_key: str) -> TranscriptionResult:
        url = build_deepgram_url(hints.language, hints.vocabulary)
        headers = {"Authorization": f"Token {api_key}"}
        if payload.is_staged:
            kwargs = {"json": {"url": payload.url}}
        else:
            headers["Content-Type"] = normalize_mime_type(payload.content_type)
            kwargs = {"content": payload.data}

        log.info(
            f"REQ deepgram model={DEEPGRAM_MODEL} staged={payload.is_staged} size={payload.size} "
            f"language={hints.language or 'auto'} keyterms={len(hints.vocabulary)}"
        )
        resp = await send_provider_request(
            self.provider.value,
            "POST",
            url,
            timeout=await get_http_timeout(),
            headers=headers,
            **kwargs,
        )
        body = parse_json_body(self.provider.value, resp)
        if not isinstance(body, dict):
            raise ProviderFatal(self.provider.value, "unexpected response structure", resp.status_code)

        channels = (body.get("results") or {}).get("channels") or []
        channel = channels[0] if channels and isinstance(channels[0], dict) else {}
        alternatives = channel.get("alternatives") or []
        alternative = alternatives[0] if alternatives and isinstance(alternatives[0], dict) else {}
        transcript = alternative.get("transcript") or ""
        language = channel.get("detected_language") or hints.language

        if not transcript.strip():
            log.info("deepgram: no speech detected")
            return TranscriptionResult(
                text="",
                duration_seconds=0.0,
                provider=self.provider,
                language=language,
                source=SourceTag.NO_SPEECH,
            )

        try:
            duration = float((body.get("metadata") or {}).get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0.0
        log.info(f"deepgram: transcribed duration={duration}s language={language}")
        return TranscriptionResult(
            text=transcript,
            duration_seconds=duration,
            provider=self.provider,
            language=language,
        )
