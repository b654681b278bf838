"""
积分闸门
调用上游之前按预估积分检查余额（不预扣），服务完成后按实际积分扣费
"""
import asyncio
from typing import Any, Dict

from .billing.billing_client import record_usage
from .billing.device_credits import deduct_device_credits, get_device_balance
from .core.cost_model import round_to_tenth
from .errors import CreditsInsufficient, QuotaExceeded, TrialExhausted
from .models import AuthenticatedUser
from .pipeline import Err, Ok, RequestContext, Result
from .rate_limiter import get_rate_limiter
from .task_manager import create_managed_task


async def validate_credits(ctx: RequestContext, user: AuthenticatedUser, estimated: float) -> Result:
    """
    按预估积分检查余额

    许可证用户：认证时余额（四舍五入到 0.1）>= 预估
    试用用户：设备余额与 IP 每日配额都必须覆盖预估
    """
    ctx.estimated_credits = estimated
    if user.is_licensed:
        return _validate_licensed(ctx, user, estimated)
    return await _validate_trial(ctx, user, estimated)


def _validate_licensed(ctx: RequestContext, user: AuthenticatedUser, estimated: float) -> Result:
    balance = round_to_tenth(user.credits_at_auth_time)
    if balance < estimated:
        ctx.logger.warning(
            "Insufficient credits - licensed request rejected",
            balance=balance,
            estimated=estimated,
            deficit=round_to_tenth(estimated - balance),
        )
        return Err(CreditsInsufficient(balance, estimated))
    ctx.logger.info("Licensed user has sufficient credits", balance=balance, estimated=estimated)
    return Ok()


async def _validate_trial(ctx: RequestContext, user: AuthenticatedUser, estimated: float) -> Result:
    device = await get_device_balance(user.device_id)
    if device.is_exhausted or device.credits_remaining < estimated:
        ctx.logger.warning(
            "Trial credits exhausted",
            remaining=device.credits_remaining,
            estimated=estimated,
            totalAllocated=device.total_allocated,
        )
        return Err(TrialExhausted(device.credits_remaining, device.total_allocated))

    limiter = await get_rate_limiter()
    status = await limiter.check_rate_limit(ctx.client_ip, estimated)
    if not status.allowed:
        ctx.logger.warning(
            "IP daily quota exceeded",
            ip=ctx.client_ip,
            creditsRemaining=status.credits_remaining,
            resetsAt=status.resets_at.isoformat(),
        )
        return Err(QuotaExceeded(status.resets_at, headers=limiter.format_rate_limit_headers(status)))

    ctx.logger.info(
        "Trial user passed credit checks",
        deviceCredits=device.credits_remaining,
        ipQuotaRemaining=status.credits_remaining,
        estimated=estimated,
    )
    return Ok()


async def deduct_credits(ctx: RequestContext, user: AuthenticatedUser, actual: float,
                         metadata: Dict[str, Any]):
    """
    按实际积分扣费，所有错误只记录日志

    许可证用户写入计费后端；试用用户同时扣减设备余额与 IP 今日用量
    """
    try:
        if user.is_licensed:
            await record_usage(user.license_key, actual, metadata)
            return

        limiter = await get_rate_limiter()
        results = await asyncio.gather(
            deduct_device_credits(user.device_id, actual),
            limiter.increment_usage(ctx.client_ip, actual),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                ctx.logger.error("Credit deduction failed", error=str(result), credits=actual)
        ctx.logger.info("Trial credits deducted", credits=actual)
    except Exception as e:
        ctx.logger.error("Credit deduction failed", error=str(e), credits=actual)


def schedule_deduction(ctx: RequestContext, user: AuthenticatedUser, actual: float,
                       metadata: Dict[str, Any]):
    """在后台执行扣费，不阻塞响应"""
    return create_managed_task(
        deduct_credits(ctx, user, actual, metadata),
        name=f"deduct-{ctx.request_id}",
    )
