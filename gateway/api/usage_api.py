"""
GET /usage 路由
查询许可证余额或试用设备余额（试用用户附带 IP 每日配额信息）
"""
from fastapi import APIRouter, Request

from ..auth import extract_auth, mask_identifier
from ..billing.billing_client import validate_and_get_credits
from ..billing.device_credits import get_device_balance
from ..core.cost_model import CREDITS_PER_MINUTE, minutes_remaining, round_to_tenth
from ..errors import AuthRequired
from ..pipeline import RequestContext, error_response, failure_response, get_client_ip, json_response
from ..rate_limiter import get_rate_limiter

router = APIRouter()


@router.get("/usage")
async def usage(request: Request):
    ctx = RequestContext.create(get_client_ip(request))
    params = dict(request.query_params)
    try:
        auth = extract_auth(params, ctx)
        refresh = str(params.get("refresh", "")).lower() in ("true", "1", "yes", "on")

        if auth.license_key:
            ctx.logger.info("Usage query for licensed user", refresh=refresh)
            validation = await validate_and_get_credits(auth.license_key, force_refresh=refresh)
            if not validation.is_valid:
                ctx.logger.warning("Usage query with invalid license", identifier=mask_identifier(auth.license_key))
                return json_response(
                    ctx,
                    {"error": "Invalid license key", "message": "The provided license key is invalid or expired"},
                    status_code=401,
                )
            credits = round_to_tenth(validation.credits)
            return json_response(ctx, {
                "credits_remaining": credits,
                "minutes_remaining": minutes_remaining(credits),
                "credits_per_minute": CREDITS_PER_MINUTE,
                "is_licensed": True,
                "is_trial": False,
                "is_anonymous": False,
            })

        if auth.device_id:
            balance = await get_device_balance(auth.device_id)
            limiter = await get_rate_limiter()
            ip_stats = await limiter.get_usage_stats(ctx.client_ip)
            ctx.logger.info(
                "Usage query for trial user",
                deviceCredits=balance.credits_remaining,
                ipQuotaRemaining=ip_stats.credits_remaining,
            )
            return json_response(
                ctx,
                {
                    "credits_remaining": round_to_tenth(balance.credits_remaining),
                    "minutes_remaining": balance.minutes_remaining,
                    "credits_per_minute": CREDITS_PER_MINUTE,
                    "is_licensed": False,
                    "is_trial": True,
                    "is_anonymous": False,
                    "device_id": auth.device_id,
                    "total_allocated": balance.total_allocated,
                    "credits_used": round_to_tenth(balance.credits_used),
                    "resets_at": ip_stats.resets_at.isoformat().replace("+00:00", "Z"),
                },
                headers={
                    "X-Device-Credits-Remaining": f"{round_to_tenth(balance.credits_remaining):.1f}",
                    "X-IP-RateLimit-Remaining": f"{ip_stats.credits_remaining:.1f}",
                },
            )

        ctx.logger.warning("Usage query rejected - no identifier provided", ip=ctx.client_ip)
        return error_response(ctx, AuthRequired())
    except Exception as e:
        ctx.logger.error("Usage query failed", error=str(e))
        return failure_response(ctx, "Usage query failed", str(e) or "Unknown error")
