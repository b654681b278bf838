"""
数据模型定义
认证用户、余额、配额状态、转写结果等数据模型，以及请求体模型
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .core.cost_model import CREDITS_PER_MINUTE


class UserKind(str, Enum):
    """调用方类型"""
    LICENSED = "licensed"   # 付费许可证
    TRIAL = "trial"         # 试用设备


class SttProvider(str, Enum):
    """语音转写提供商"""
    ELEVENLABS = "elevenlabs"
    DEEPGRAM = "deepgram"
    GROQ = "groq"


class LlmProvider(str, Enum):
    """后处理 LLM 提供商"""
    CEREBRAS = "cerebras"
    GROQ = "groq"


# 响应头 / 响应体中使用的提供商展示名
PROVIDER_LABELS = {
    SttProvider.ELEVENLABS: "elevenlabs-scribe-v2",
    SttProvider.DEEPGRAM: "deepgram-nova3",
    SttProvider.GROQ: "groq-whisper-large-v3",
}


class SourceTag(str, Enum):
    """转写结果来源"""
    TRANSCRIBED = "transcribed"
    NO_SPEECH = "no_speech"


class OrchestratorState(str, Enum):
    """/transcribe 请求的终止状态"""
    RECEIVED = "received"
    BLOCKED = "blocked"
    BAD_REQUEST = "bad_request"
    AUTH_FAILED = "auth_failed"
    CREDIT_DENIED = "credit_denied"
    TRANSCRIBING = "transcribing"
    NO_SPEECH = "no_speech"
    POST_PROCESSING = "post_processing"
    BILLED = "billed"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthenticatedUser:
    """已认证的调用方，license_key 与 device_id 恰有一个"""
    kind: UserKind
    credits_at_auth_time: float
    license_key: Optional[str] = None
    device_id: Optional[str] = None

    def __post_init__(self):
        if (self.license_key is None) == (self.device_id is None):
            raise ValueError("exactly one of license_key and device_id must be set")
        if self.kind == UserKind.LICENSED and not self.license_key:
            raise ValueError("licensed user requires license_key")
        if self.kind == UserKind.TRIAL and not self.device_id:
            raise ValueError("trial user requires device_id")

    @property
    def is_licensed(self) -> bool:
        return self.kind == UserKind.LICENSED

    @property
    def identifier(self) -> str:
        return self.license_key if self.license_key else self.device_id


@dataclass
class DeviceBalance:
    """试用设备余额"""
    credits_remaining: float
    total_allocated: float
    credits_used: float = 0.0

    @property
    def minutes_remaining(self) -> int:
        return int(math.floor(self.credits_remaining / CREDITS_PER_MINUTE))

    @property
    def is_exhausted(self) -> bool:
        return self.credits_remaining <= 0

    def to_dict(self) -> Dict[str, Any]:
        """转换为存储格式"""
        return {
            "creditsRemaining": self.credits_remaining,
            "totalAllocated": self.total_allocated,
            "creditsUsed": self.credits_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceBalance":
        """从存储格式创建"""
        return cls(
            credits_remaining=float(data.get("creditsRemaining", 0)),
            total_allocated=float(data.get("totalAllocated", 0)),
            credits_used=float(data.get("creditsUsed", 0)),
        )


@dataclass
class LicenseValidation:
    """许可证校验结果（缓存条目）"""
    is_valid: bool
    credits: float = 0.0
    cached_at: Optional[int] = None   # 毫秒时间戳

    def to_dict(self) -> Dict[str, Any]:
        return {"credits": self.credits, "isValid": self.is_valid, "cachedAt": self.cached_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicenseValidation":
        return cls(
            is_valid=bool(data.get("isValid", False)),
            credits=float(data.get("credits", 0) or 0),
            cached_at=data.get("cachedAt"),
        )


@dataclass
class RateLimitStatus:
    """IP 每日配额状态"""
    allowed: bool
    credits_used: float
    credits_remaining: float
    limit: float
    resets_at: datetime


@dataclass
class TranscriptionHints:
    """转写提示：语言、词表、提示词"""
    language: Optional[str] = None
    vocabulary: List[str] = field(default_factory=list)
    prompt: Optional[str] = None
    mode: Optional[str] = None


@dataclass
class AudioPayload:
    """
    发送给提供商的音频载荷

    直传模式携带 data（已缓冲的字节），中转模式携带 url（预签名 GET 地址）。
    主提供商与回退提供商复用同一个载荷。
    """
    content_type: str
    size: int
    data: Optional[bytes] = None
    url: Optional[str] = None

    @property
    def is_staged(self) -> bool:
        return self.url is not None


@dataclass
class TranscriptionResult:
    """转写结果"""
    text: str
    duration_seconds: float
    provider: SttProvider
    language: Optional[str] = None
    source: SourceTag = SourceTag.TRANSCRIBED
    fallback_from: Optional[SttProvider] = None

    @property
    def no_speech(self) -> bool:
        return self.source == SourceTag.NO_SPEECH

    @property
    def provider_label(self) -> str:
        label = PROVIDER_LABELS[self.provider]
        if self.fallback_from is not None:
            return f"{label} (fallback from {PROVIDER_LABELS[self.fallback_from]})"
        return label


@dataclass
class PostProcessResult:
    """LLM 后处理结果"""
    corrected: str
    provider: LlmProvider
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    applied: bool = True


class PostProcessBody(BaseModel):
    """POST /post-process 请求体"""
    model_config = ConfigDict(extra="allow")

    text: Optional[Any] = None
    prompt: Optional[Any] = None
    license_key: Optional[str] = None
    device_id: Optional[str] = None
    identifier: Optional[str] = None
