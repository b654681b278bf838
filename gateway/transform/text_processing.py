"""
文本处理工具
词表解析、从各种供应商响应结构中提取文本、后处理标记清理
"""
import re
from typing import Any, List, Optional

MAX_VOCABULARY_TERMS = 100
MAX_TERM_LENGTH = 50

_VOCAB_SPLIT = re.compile(r"[,\n;]+")
_BULLET_PREFIX = re.compile(r"^[-*]\s*")
CLEAN_MARKER_PATTERN = re.compile(
    r"<<CLEANED>>|<<CLEANED>|<CLEANED>>|<CLEANED>|<<END>>|<<END>|<END>>|<END>",
    re.IGNORECASE,
)


def parse_vocabulary(raw: Optional[str]) -> List[str]:
    """
    解析自定义词表

    按逗号 / 换行 / 分号切分，去掉行首的 - 或 * 列表符号，
    保留 1-50 个字符的词条，最多 100 个
    """
    if not raw:
        return []
    terms: List[str] = []
    for part in _VOCAB_SPLIT.split(raw):
        term = _BULLET_PREFIX.sub("", part.strip()).strip()
        if not term or len(term) > MAX_TERM_LENGTH:
            continue
        terms.append(term)
        if len(terms) >= MAX_VOCABULARY_TERMS:
            break
    return terms


def extract_transcription_text(response: Any) -> Optional[str]:
    """从转写响应中提取文本（text / result / output_text / transcription / data / results / segments / output）"""
    if isinstance(response, str):
        trimmed = response.strip()
        return trimmed or None
    if not isinstance(response, dict):
        return None

    for key in ("text", "result", "output_text"):
        value = response.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    nested = extract_transcription_text(response.get("transcription"))
    if nested:
        return nested

    for key in ("data", "results"):
        items = response.get(key)
        if isinstance(items, list):
            for item in items:
                found = extract_transcription_text(item)
                if found:
                    return found

    segments = response.get("segments")
    if isinstance(segments, list):
        parts = []
        for segment in segments:
            if isinstance(segment, str) and segment.strip():
                parts.append(segment.strip())
            elif isinstance(segment, dict) and isinstance(segment.get("text"), str) and segment["text"].strip():
                parts.append(segment["text"].strip())
        if parts:
            return " ".join(parts).strip()

    output = response.get("output")
    if isinstance(output, list):
        for item in output:
            found = extract_transcription_text(item)
            if found:
                return found
    return None


def try_extract_correction_text(value: Any) -> Optional[str]:
    """
    深度提取 LLM 返回文本

    依次尝试：字符串本身；response / result / output_text / text 字段；嵌套 response；
    choices[]（choice 本身、message、delta）；output 与 content（数组拼接）
    """
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return None

    for key in ("response", "result", "output_text", "text"):
        candidate = value.get(key)
        if isinstance(candidate, str) and candidate:
            return candidate

    nested = try_extract_correction_text(value.get("response"))
    if nested:
        return nested

    choices = value.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            text = try_extract_correction_text(choice)
            if text:
                return text
            if not isinstance(choice, dict):
                continue
            text = try_extract_correction_text(choice.get("message"))
            if text:
                return text
            text = try_extract_correction_text(choice.get("delta"))
            if text:
                return text

    for key in ("output", "content"):
        text = _extract_text_from_content(value.get(key))
        if text:
            return text
    return None


def _extract_text_from_content(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value

    if isinstance(value, dict):
        direct = value.get("text")
        if isinstance(direct, str) and direct:
            return direct
        nested = try_extract_correction_text(value.get("message"))
        if nested:
            return nested
        nested = _extract_text_from_content(value.get("content"))
        if nested:
            return nested

    if isinstance(value, list):
        segments = [t for t in (try_extract_correction_text(item) for item in value) if t]
        if segments:
            return "".join(segments)
    return None


def extract_corrected_text(response: Any) -> str:
    text = try_extract_correction_text(response)
    if isinstance(text, str) and text:
        return text
    raise ValueError("Correction response missing text")


def build_transcript_user_content(text: str) -> str:
    return f"--TRANSCRIPT--\n{text}\n--ENDTRANSCRIPT--"


def strip_clean_markers(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    return CLEAN_MARKER_PATTERN.sub("", text).strip()
