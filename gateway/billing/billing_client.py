"""
许可证计费后端客户端
校验许可证并获取余额（缓存优先），转写完成后记录用量
"""
from typing import Any, Dict

from log import log, mask_secret
from config import get_billing_api_url, get_billing_api_key
from ..httpx_client import http_client
from ..models import LicenseValidation
from .license_cache import get_license_from_cache, set_license_in_cache

BILLING_TIMEOUT = 15.0


async def validate_and_get_credits(license_key: str, force_refresh: bool = False) -> LicenseValidation:
    """
    校验许可证并返回余额

    Args:
        license_key: 许可证密钥
        force_refresh: 为 True 时跳过缓存，直接请求计费后端

    Returns:
        LicenseValidation；网络错误、非 JSON 响应、计费后端未配置时返回无效（不缓存）
    """
    if not force_refresh:
        cached = await get_license_from_cache(license_key)
        if cached is not None:
            return cached
    else:
        log.info("Force refresh requested, bypassing license cache")

    api_url = await get_billing_api_url()
    api_key = await get_billing_api_key()
    if not api_url or not api_key:
        log.error("Billing backend not configured (BILLING_API_URL / BILLING_API_KEY)")
        return LicenseValidation(is_valid=False, credits=0.0)

    try:
        async with http_client.get_client(timeout=BILLING_TIMEOUT) as client:
            resp = await client.post(
                f"{api_url}/api/license/validate",
                headers={"Content-Type": "application/json", "X-API-Key": api_key},
                json={"license_key": license_key, "include_credits": True},
            )
        if resp.status_code >= 500:
            log.error(f"License validation failed: backend status={resp.status_code}")
            return LicenseValidation(is_valid=False, credits=0.0)
        data = resp.json()
    except Exception as e:
        log.error(f"License validation failed: {e}")
        return LicenseValidation(is_valid=False, credits=0.0)

    if not isinstance(data, dict):
        log.error("License validation failed: unexpected response body")
        return LicenseValidation(is_valid=False, credits=0.0)

    is_valid = data.get("valid") is True
    credits = float(data.get("credits") or 0) if is_valid else 0.0
    await set_license_in_cache(license_key, credits, is_valid)

    if is_valid:
        log.info(f"License validated: key={mask_secret(license_key)} credits={credits}")
    else:
        log.warning(f"Invalid license key: key={mask_secret(license_key)} error={data.get('error') or 'invalid'}")
    return LicenseValidation(is_valid=is_valid, credits=credits)


async def record_usage(license_key: str, credits: float, metadata: Dict[str, Any]):
    """
    记录许可证用量并用返回的余额刷新缓存

    永不抛出异常，失败只记录日志
    """
    api_url = await get_billing_api_url()
    api_key = await get_billing_api_key()
    if not api_url or not api_key:
        log.error("Cannot record usage: billing backend not configured")
        return

    try:
        async with http_client.get_client(timeout=BILLING_TIMEOUT) as client:
            resp = await client.post(
                f"{api_url}/api/license/credits",
                headers={"Content-Type": "application/json", "X-API-Key": api_key},
                json={"license_key": license_key, "amount": credits, "metadata": metadata},
            )
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error", "Unknown error")
            except Exception:
                detail = resp.text[:200]
            log.warning(f"Failed to record usage: status={resp.status_code} error={detail}")
            return

        data = resp.json()
        remaining = data.get("credits_remaining")
        log.info(
            f"Usage recorded: key={mask_secret(license_key)} "
            f"deducted={data.get('credits_deducted', credits)} remaining={remaining}"
        )
        if remaining is not None:
            await set_license_in_cache(license_key, float(remaining), True)
    except Exception as e:
        log.error(f"Error recording usage: {e}")
