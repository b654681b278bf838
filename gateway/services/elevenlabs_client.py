"""
ElevenLabs Scribe v2 转写客户端
multipart/form-data 请求，xi-api-key 认证，语言代码使用 ISO-639-3
"""
import json
from typing import Any, Dict, Optional

from log import log
from config import get_http_timeout
from ..errors import ProviderFatal
from ..models import AudioPayload, SourceTag, SttProvider, TranscriptionHints, TranscriptionResult
from .retry import parse_json_body, send_provider_request

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1/speech-to-text"
ELEVENLABS_MODEL = "scribe_v2"

ISO_639_1_TO_3 = {
    "en": "eng", "es": "spa", "fr": "fra", "de": "deu", "it": "ita", "pt": "por",
    "ja": "jpn", "ko": "kor", "zh": "zho", "ar": "ara", "ru": "rus", "hi": "hin",
    "nl": "nld", "pl": "pol", "tr": "tur", "vi": "vie", "th": "tha", "id": "ind",
    "uk": "ukr", "cs": "ces", "ro": "ron", "el": "ell", "hu": "hun", "sv": "swe",
    "da": "dan", "fi": "fin", "no": "nor", "he": "heb", "ms": "msa", "bn": "ben",
    "ta": "tam", "te": "tel", "mr": "mar", "gu": "guj", "kn": "kan", "ml": "mal",
    "pa": "pan", "ur": "urd", "fa": "fas", "af": "afr", "sq": "sqi", "am": "amh",
    "hy": "hye", "az": "aze", "eu": "eus", "be": "bel", "bs": "bos", "bg": "bul",
    "ca": "cat", "hr": "hrv", "et": "est", "tl": "tgl", "gl": "glg", "ka": "kat",
    "is": "isl", "ga": "gle", "kk": "kaz", "km": "khm", "lo": "lao", "lv": "lav",
    "lt": "lit", "mk": "mkd", "mt": "mlt", "mn": "mon", "my": "mya", "ne": "nep",
    "ps": "pus", "si": "sin", "sk": "slk", "sl": "slv", "so": "som", "sw": "swa",
    "sr": "srp", "su": "sun", "jv": "jav", "cy": "cym", "zu": "zul",
}


def map_language_code(code: Optional[str]) -> str:
    """ISO-639-1 转 ISO-639-3；auto 或空返回空串（自动检测），三字母代码原样返回"""
    if not code or code.strip().lower() == "auto":
        return ""
    normalized = code.strip().lower()
    if len(normalized) == 3:
        return normalized
    return ISO_639_1_TO_3.get(normalized, normalized)


def file_extension(content_type: str) -> str:
    ct = (content_type or "").lower()
    if "mp4" in ct or "m4a" in ct:
        return "m4a"
    if "mpeg" in ct or "mp3" in ct:
        return "mp3"
    for ext in ("wav", "flac", "ogg", "webm"):
        if ext in ct:
            return ext
    return "audio"


def duration_from_words(words: Any) -> float:
    """用最后一个词的结束时间作为音频时长"""
    if not isinstance(words, list) or not words:
        return 0.0
    last = words[-1]
    if isinstance(last, dict):
        try:
            return float(last.get("end") or 0)
        except (TypeError, ValueError):
            return 0.0
    return 0.0


class ElevenLabsClient:
    """ElevenLabs 转写"""

    provider = SttProvider.ELEVENLABS

    def build_form(self, payload: AudioPayload, hints: TranscriptionHints):
        """构造表单字段与文件；URL 模式下 cloud_storage_url 作为无文件名的表单字段发送"""
        data: Dict[str, str] = {
            "model_id": ELEVENLABS_MODEL,
            "timestamps_granularity": "word",
            "tag_audio_events": "false",
        }
        language_code = map_language_code(hints.language)
        if language_code:
            data["language_code"] = language_code
        if hints.vocabulary:
            data["biased_keywords"] = json.dumps(hints.vocabulary, ensure_ascii=False)

        if payload.is_staged:
            files = {"cloud_storage_url": (None, payload.url)}
        else:
            filename = f"audio.{file_extension(payload.content_type)}"
            files = {"file": (filename, payload.data, payload.content_type)}
        return data, files

    async def transcribe(self, payload: AudioPayload, hints: TranscriptionHints,
                         api_key: str) -> TranscriptionResult:
        data, files = self.build_form(payload, hints)
        log.info(
            f"REQ elevenlabs model={ELEVENLABS_MODEL} staged={payload.is_staged} "
            f"size={payload.size} language={data.get('language_code', 'auto')} "
            f"keyterms={len(hints.vocabulary)}"
        )
        resp = await send_provider_request(
            self.provider.value,
            "POST",
            ELEVENLABS_API_URL,
            timeout=await get_http_timeout(),
            headers={"xi-api-key": api_key},
            data=data,
            files=files,
        )
        body = parse_json_body(self.provider.value, resp)
        if not isinstance(body, dict):
            raise ProviderFatal(self.provider.value, "unexpected response structure", resp.status_code)

        text = body.get("text") or ""
        language = body.get("language_code")
        if not isinstance(text, str) or not text.strip():
            log.info("elevenlabs: no speech detected")
            return TranscriptionResult(
                text="",
                duration_seconds=0.0,
                provider=self.provider,
                language=language,
                source=SourceTag.NO_SPEECH,
            )

        duration = duration_from_words(body.get("words"))
        log.info(f"elevenlabs: transcribed duration={duration}s language={language}")
        return TranscriptionResult(
            text=text,
            duration_seconds=duration,
            provider=self.provider,
            language=language,
        )
