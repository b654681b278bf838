"""
错误类型定义
GatewayError：请求前置检查失败，直接映射为 HTTP 响应
ProviderError：上游提供商失败，由路由器决定重试 / 回退 / 终止
"""
import math
from datetime import datetime
from typing import Any, Dict, Optional

from .core.cost_model import CREDITS_PER_MINUTE


class GatewayError(Exception):
    """可直接转换为 JSON 错误响应的异常"""

    status_code = 500
    error = "Internal error"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.extra}


class Blocked(GatewayError):
    status_code = 403
    error = "Access denied"

    def __init__(self):
        super().__init__("Your IP has been temporarily blocked due to abuse")


class AuthRequired(GatewayError):
    status_code = 401
    error = "Identifier required"

    def __init__(self):
        super().__init__("You must provide either a license_key or device_id")


class AuthInvalid(GatewayError):
    status_code = 401
    error = "Invalid license"

    def __init__(self, message: str = "The provided license key is invalid or expired"):
        super().__init__(message)


class CreditsInsufficient(GatewayError):
    status_code = 402
    error = "Insufficient credits"

    def __init__(self, balance: float, estimated: float):
        super().__init__(
            f"You have {balance:.1f} credits remaining. "
            f"This transcription requires approximately {estimated:.1f} credits.",
            extra={
                "credits_remaining": balance,
                "minutes_remaining": int(math.floor(balance / CREDITS_PER_MINUTE)),
                "minutes_required": int(math.ceil(estimated / CREDITS_PER_MINUTE)),
                "credits_per_minute": CREDITS_PER_MINUTE,
            },
        )


class TrialExhausted(GatewayError):
    status_code = 402
    error = "Trial credits exhausted"

    def __init__(self, balance: float, total_allocated: float):
        super().__init__(
            f"Your device trial credits are exhausted. "
            f"You have {balance:.1f} of {total_allocated:g} credits remaining.",
            extra={
                "credits_remaining": balance,
                "total_allocated": total_allocated,
                "credits_per_minute": CREDITS_PER_MINUTE,
            },
        )


class QuotaExceeded(GatewayError):
    status_code = 429
    error = "Rate limit exceeded"

    def __init__(self, resets_at: datetime, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            "Daily IP rate limit exceeded. Try again tomorrow or use a license key for unlimited access.",
            extra={"resets_at": resets_at.isoformat().replace("+00:00", "Z")},
            headers=headers,
        )


class BadRequest(GatewayError):
    status_code = 400

    def __init__(self, error: str, message: str, extra: Optional[Dict[str, Any]] = None):
        self.error = error
        super().__init__(message, extra=extra)


class PayloadTooLarge(GatewayError):
    status_code = 413
    error = "File too large"

    def __init__(self, actual_bytes: int, max_bytes: int):
        actual_mb = actual_bytes / (1024 * 1024)
        max_mb = max_bytes / (1024 * 1024)
        super().__init__(
            f"Audio file must be {max_mb:.0f} MB or smaller. Your file is {actual_mb:.2f} MB.",
            extra={"max_size_mb": round(max_mb), "actual_size_mb": round(actual_mb, 2)},
        )


class InternalMisconfiguration(GatewayError):
    status_code = 500
    error = "Server misconfigured"

    def __init__(self, message: str = "Transcription service is not configured"):
        super().__init__(message)


class ProviderError(Exception):
    """上游提供商错误基类"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.detail = message
        self.status_code = status_code


class ProviderTransient(ProviderError):
    """网络错误、超时、5xx、429，可重试"""


class ProviderEdgeBlocked(ProviderError):
    """被 CDN / 边缘网络拦截，触发一次回退"""


class ProviderFatal(ProviderError):
    """其它 4xx 或响应格式错误，不重试不回退"""
