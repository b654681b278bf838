"""
成本模型
供应商成本（美元）与积分之间的换算，全部为纯函数，使用 Decimal 计算避免浮点误差
"""
import math
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Dict, Union

Number = Union[int, float, Decimal]

# 1 积分 = 0.001 美元
USD_PER_CREDIT = 0.001
CREDITS_PER_MINUTE = 6.3

# 按文件大小估算时长：约 1 MiB ≈ 1 分钟压缩音频
BYTES_PER_MINUTE_ESTIMATE = 1024 * 1024
MIN_ESTIMATE_SECONDS = 10
MIN_CREDITS = 0.1

# STT 单价（美元/分钟）与最低计费秒数
STT_PRICING: Dict[str, Dict[str, float]] = {
    "elevenlabs": {"per_minute": 0.00983, "min_seconds": 0},
    "deepgram": {"per_minute": 0.0043, "min_seconds": 0},
    "deepgram-live": {"per_minute": 0.0055, "min_seconds": 0},
    "groq": {"per_minute": 0.111 / 60, "min_seconds": 10},
}

# LLM 单价（美元/百万 token）
LLM_PRICING: Dict[str, Dict[str, float]] = {
    "groq": {"prompt": 0.59, "completion": 0.79},
    "cerebras": {"prompt": 0.85, "completion": 1.20},
}

_TENTH = Decimal("0.1")
_MICRO = Decimal("0.000001")


def _d(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_usd(usd: Number) -> float:
    """四舍五入到微美元（6 位小数）"""
    return float(_d(usd).quantize(_MICRO, rounding=ROUND_HALF_UP))


def round_to_tenth(value: Number) -> float:
    """四舍五入到 0.1"""
    return float(_d(value).quantize(_TENTH, rounding=ROUND_HALF_UP))


def round_up_to_tenth(value: Number) -> float:
    """向上取整到 0.1，负数按 0 处理"""
    d = _d(value)
    if d <= 0:
        return 0.0
    return float(d.quantize(_TENTH, rounding=ROUND_CEILING))


def stt_cost(duration_seconds: Number, provider: str) -> float:
    """
    计算转写成本（美元）

    Args:
        duration_seconds: 音频时长（秒）
        provider: elevenlabs / deepgram / deepgram-live / groq

    Returns:
        美元成本，时长非法或为 0 时返回 0
    """
    pricing = STT_PRICING.get(provider)
    if pricing is None:
        raise ValueError(f"Unknown STT provider: {provider}")
    try:
        seconds = float(duration_seconds)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(seconds) or seconds <= 0:
        return 0.0
    billable = max(_d(seconds), _d(pricing["min_seconds"]))
    usd = billable / Decimal(60) * _d(pricing["per_minute"])
    return round_usd(usd)


def llm_cost(prompt_tokens: int, completion_tokens: int, provider: str) -> float:
    """计算 LLM 成本（美元），提示与补全 token 分别计价"""
    pricing = LLM_PRICING.get(provider)
    if pricing is None:
        raise ValueError(f"Unknown LLM provider: {provider}")
    prompt = max(0, int(prompt_tokens or 0))
    completion = max(0, int(completion_tokens or 0))
    million = Decimal(1_000_000)
    usd = (Decimal(prompt) * _d(pricing["prompt"]) + Decimal(completion) * _d(pricing["completion"])) / million
    return round_usd(usd)


def usd_to_credits(usd: Number) -> float:
    """
    美元换算积分：向上取整到 0.1，任何正成本至少 0.1 积分，零成本为 0
    """
    d = _d(usd)
    if d <= 0:
        return 0.0
    credits = d / _d(USD_PER_CREDIT)
    return max(MIN_CREDITS, round_up_to_tenth(credits))


def credits_to_usd(credits: Number) -> float:
    return round_usd(_d(credits) * _d(USD_PER_CREDIT))


def estimate_credits_from_size(size_bytes: int) -> float:
    """
    根据文件大小预估积分（在读取音频之前使用）

    最少按 10 秒计，结果向上取整到 0.1，不小于 0.1
    """
    size = max(0, int(size_bytes or 0))
    minutes = Decimal(size) / Decimal(BYTES_PER_MINUTE_ESTIMATE)
    seconds = max(Decimal(MIN_ESTIMATE_SECONDS), minutes * 60)
    credits = seconds / Decimal(60) * _d(CREDITS_PER_MINUTE)
    return max(MIN_CREDITS, round_up_to_tenth(credits))


def minutes_remaining(credits: Number) -> int:
    return int(math.floor(float(credits) / CREDITS_PER_MINUTE))


def minutes_required(credits: Number) -> int:
    return int(math.ceil(float(credits) / CREDITS_PER_MINUTE))
