"""
认证解析
从查询参数 / JSON 请求体 / 旧版 identifier 参数中解析 license_key 或 device_id，
生成 AuthenticatedUser（许可证优先）
"""
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .billing.billing_client import validate_and_get_credits
from .billing.device_credits import get_device_balance
from .errors import AuthInvalid, AuthRequired
from .models import AuthenticatedUser, UserKind
from .pipeline import Err, Ok, RequestContext, Result

_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$")
_HEX = re.compile(r"^[a-f0-9]+$")


@dataclass
class AuthInput:
    license_key: Optional[str] = None
    device_id: Optional[str] = None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def looks_like_device_id(value: str) -> bool:
    """设备 ID 为 SHA-256 十六进制串；旧版设备 ID 为长度 >= 40 的十六进制串"""
    if _SHA256_HEX.match(value):
        return True
    return len(value) >= 40 and bool(_HEX.match(value))


def mask_identifier(value: str) -> str:
    if len(value) <= 8:
        return value
    return f"{value[:4]}…{value[-4:]}"


def extract_auth(params: Mapping[str, Any], ctx: Optional[RequestContext] = None) -> AuthInput:
    """
    从参数映射（查询参数或 JSON 请求体）中提取认证信息

    旧版 identifier 参数按格式判断为设备 ID 或许可证
    """
    license_key = _clean(params.get("license_key"))
    device_id = _clean(params.get("device_id"))
    if license_key:
        return AuthInput(license_key=license_key, device_id=device_id)

    identifier = _clean(params.get("identifier"))
    if not identifier:
        return AuthInput(license_key=None, device_id=device_id)

    if looks_like_device_id(identifier):
        if ctx is not None:
            ctx.logger.info("Identifier resolved as device ID", identifier=mask_identifier(identifier))
        return AuthInput(license_key=None, device_id=device_id or identifier)

    if ctx is not None:
        ctx.logger.info("Identifier resolved as license key", identifier=mask_identifier(identifier))
    return AuthInput(license_key=identifier, device_id=device_id)


async def validate_auth(ctx: RequestContext, auth: AuthInput, force_refresh: bool = False) -> Result:
    """
    校验调用方身份

    Returns:
        Ok(AuthenticatedUser)；缺少标识返回 Err(AuthRequired)，许可证无效返回 Err(AuthInvalid)。
        试用设备在此处从不被拒绝（余额检查由积分闸门负责）。
    """
    if not auth.license_key and not auth.device_id:
        ctx.logger.warning("Authentication failed - no license_key or device_id provided")
        return Err(AuthRequired())

    if auth.license_key:
        validation = await validate_and_get_credits(auth.license_key, force_refresh=force_refresh)
        if not validation.is_valid:
            ctx.logger.warning("License key validation failed", identifier=mask_identifier(auth.license_key))
            return Err(AuthInvalid())
        user = AuthenticatedUser(
            kind=UserKind.LICENSED,
            license_key=auth.license_key,
            credits_at_auth_time=validation.credits,
        )
        ctx.logger.info("Licensed user authenticated", credits=validation.credits)
        return Ok(user)

    balance = await get_device_balance(auth.device_id)
    user = AuthenticatedUser(
        kind=UserKind.TRIAL,
        device_id=auth.device_id,
        credits_at_auth_time=balance.credits_remaining,
    )
    ctx.logger.info(
        "Trial user authenticated",
        credits=balance.credits_remaining,
        totalAllocated=balance.total_allocated,
    )
    return Ok(user)
