"""
Configuration for the STT edge gateway.
Centralizes all configuration to avoid duplication across modules.
"""
import os
from typing import Any, Optional

# 默认 STT / LLM 提供商
DEFAULT_STT_PROVIDER = "elevenlabs"
DEFAULT_LLM_PROVIDER = "cerebras"

# 超过该大小的音频走对象存储中转（按提供商）
DEFAULT_STAGING_THRESHOLDS = {
    "elevenlabs": 15 * 1024 * 1024,
    "deepgram": 30 * 1024 * 1024,
    "groq": 15 * 1024 * 1024,
}

MAX_AUDIO_SIZE = 2 * 1024 * 1024 * 1024  # 2 GiB


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on")
    return bool(value)


# Dynamic Configuration System
async def get_config_value(key: str, default: Any = None, env_var: Optional[str] = None) -> Any:
    override_env = False
    env_override = os.getenv("CONFIG_OVERRIDE_ENV")
    if env_override:
        if env_override.lower() in ("true", "1", "yes", "on"):
            override_env = True
    if not override_env:
        try:
            from gateway.storage_adapter import get_storage_adapter
            storage_adapter = await get_storage_adapter()
            ov = await storage_adapter.get_config("override_env")
            override_env = _parse_bool(ov) if ov is not None else False
        except Exception:
            override_env = False
    if (not override_env) and env_var and os.getenv(env_var):
        return os.getenv(env_var)
    try:
        from gateway.storage_adapter import get_storage_adapter
        storage_adapter = await get_storage_adapter()
        value = await storage_adapter.get_config(key)
        if value is not None:
            return value
    except Exception:
        pass
    return default


async def _get_float(key: str, default: float, env_var: str) -> float:
    env_value = os.getenv(env_var)
    if env_value:
        try:
            return float(env_value)
        except ValueError:
            pass
    return float(await get_config_value(key, default))


async def _get_int(key: str, default: int, env_var: str) -> int:
    env_value = os.getenv(env_var)
    if env_value:
        try:
            return int(env_value)
        except ValueError:
            pass
    return int(await get_config_value(key, default))


# Configuration getters - all async
async def get_proxy_config():
    """Get proxy configuration."""
    proxy_url = await get_config_value("proxy", env_var="PROXY")
    return proxy_url if proxy_url else None


async def get_http_timeout() -> float:
    """
    Get upstream HTTP timeout in seconds.

    Environment variable: HTTP_TIMEOUT
    TOML config key: http_timeout
    Default: 300
    """
    return await _get_float("http_timeout", 300.0, "HTTP_TIMEOUT")


async def get_server_host() -> str:
    """
    Get server host setting.

    Environment variable: HOST
    TOML config key: host
    Default: 0.0.0.0
    """
    return str(await get_config_value("host", "0.0.0.0", "HOST"))


async def get_server_port() -> int:
    """
    Get server port setting.

    Environment variable: PORT
    TOML config key: port
    Default: 7861
    """
    return await _get_int("port", 7861, "PORT")


# Storage（存储适配器自身只读环境变量，避免循环依赖）
def get_redis_uri() -> Optional[str]:
    """Environment variable: REDIS_URI"""
    return os.getenv("REDIS_URI") or None


def get_redis_prefix() -> str:
    """Environment variable: REDIS_PREFIX, default STTGW"""
    return os.getenv("REDIS_PREFIX") or "STTGW"


# Billing backend
async def get_billing_api_url() -> Optional[str]:
    """
    Get licensed billing backend base URL.

    Environment variable: BILLING_API_URL
    TOML config key: billing_api_url
    Default: None
    """
    value = await get_config_value("billing_api_url", None, "BILLING_API_URL")
    return str(value).rstrip("/") if value else None


async def get_billing_api_key() -> Optional[str]:
    """
    Get shared secret sent as X-API-Key to the billing backend.

    Environment variable: BILLING_API_KEY
    TOML config key: billing_api_key
    """
    value = await get_config_value("billing_api_key", None, "BILLING_API_KEY")
    return str(value) if value else None


# Vendor credentials
async def get_elevenlabs_api_key() -> Optional[str]:
    """Environment variable: ELEVENLABS_API_KEY"""
    value = await get_config_value("elevenlabs_api_key", None, "ELEVENLABS_API_KEY")
    return str(value) if value else None


async def get_deepgram_api_key() -> Optional[str]:
    """Environment variable: DEEPGRAM_API_KEY"""
    value = await get_config_value("deepgram_api_key", None, "DEEPGRAM_API_KEY")
    return str(value) if value else None


async def get_groq_api_key() -> Optional[str]:
    """Environment variable: GROQ_API_KEY"""
    value = await get_config_value("groq_api_key", None, "GROQ_API_KEY")
    return str(value) if value else None


async def get_groq_base_url() -> str:
    """
    Get Groq OpenAI-compatible base URL.

    Environment variable: GROQ_BASE_URL
    TOML config key: groq_base_url
    Default: https://api.groq.com/openai/v1
    """
    value = await get_config_value("groq_base_url", "https://api.groq.com/openai/v1", "GROQ_BASE_URL")
    return str(value).rstrip("/")


async def get_cerebras_api_key() -> Optional[str]:
    """Environment variable: CEREBRAS_API_KEY"""
    value = await get_config_value("cerebras_api_key", None, "CEREBRAS_API_KEY")
    return str(value) if value else None


async def get_default_stt_provider() -> str:
    """
    Get default STT provider.

    Environment variable: DEFAULT_STT_PROVIDER
    TOML config key: default_stt_provider
    Default: elevenlabs
    """
    value = await get_config_value("default_stt_provider", DEFAULT_STT_PROVIDER, "DEFAULT_STT_PROVIDER")
    return str(value).strip().lower()


async def get_default_llm_provider() -> str:
    """
    Get default post-processing provider.

    Environment variable: DEFAULT_LLM_PROVIDER
    TOML config key: default_llm_provider
    Default: cerebras
    """
    value = await get_config_value("default_llm_provider", DEFAULT_LLM_PROVIDER, "DEFAULT_LLM_PROVIDER")
    return str(value).strip().lower()


# Credits
async def get_trial_credit_allocation() -> float:
    """
    Get credits granted to a new trial device.

    Environment variable: TRIAL_CREDIT_ALLOCATION
    TOML config key: trial_credit_allocation
    Default: 150
    """
    return await _get_float("trial_credit_allocation", 150.0, "TRIAL_CREDIT_ALLOCATION")


async def get_daily_free_credits() -> float:
    """
    Get per-IP daily credit ceiling for trial traffic.

    Environment variable: DAILY_FREE_CREDITS
    TOML config key: daily_free_credits
    Default: 100
    """
    return await _get_float("daily_free_credits", 100.0, "DAILY_FREE_CREDITS")


async def get_ip_block_hours() -> int:
    """
    Get default blocklist duration in hours.

    Environment variable: IP_BLOCK_HOURS
    TOML config key: ip_block_hours
    Default: 24
    """
    return await _get_int("ip_block_hours", 24, "IP_BLOCK_HOURS")


# Transport
async def get_staging_threshold(provider: str) -> int:
    """
    Get staging threshold in bytes for a provider.

    Environment variable: STAGING_THRESHOLD_<PROVIDER> (e.g. STAGING_THRESHOLD_DEEPGRAM)
    TOML config key: staging_threshold_<provider>
    Default: elevenlabs 15 MiB, deepgram 30 MiB, groq 15 MiB
    """
    name = provider.lower()
    default = DEFAULT_STAGING_THRESHOLDS.get(name, 15 * 1024 * 1024)
    return await _get_int(f"staging_threshold_{name}", default, f"STAGING_THRESHOLD_{name.upper()}")


async def get_max_audio_size() -> int:
    """
    Get maximum accepted audio size in bytes.

    Environment variable: MAX_AUDIO_SIZE
    TOML config key: max_audio_size
    Default: 2 GiB
    """
    return await _get_int("max_audio_size", MAX_AUDIO_SIZE, "MAX_AUDIO_SIZE")


async def get_retry_max_retries() -> int:
    """Get max retries for transient provider errors (RETRY_MAX_RETRIES, default 3)."""
    return await _get_int("retry_max_retries", 3, "RETRY_MAX_RETRIES")


async def get_retry_initial_delay() -> float:
    """Get initial retry delay in seconds (RETRY_INITIAL_DELAY, default 1.0)."""
    return await _get_float("retry_initial_delay", 1.0, "RETRY_INITIAL_DELAY")


async def get_post_processing_enabled() -> bool:
    """
    Get inline post-processing switch for /transcribe.

    Environment variable: POST_PROCESSING_ENABLED
    TOML config key: post_processing_enabled
    Default: true
    """
    env_value = os.getenv("POST_PROCESSING_ENABLED")
    if env_value:
        return env_value.lower() in ("true", "1", "yes", "on")
    return _parse_bool(await get_config_value("post_processing_enabled", True))


# Object storage (S3-compatible, Cloudflare R2)
async def get_r2_account_id() -> Optional[str]:
    """Environment variable: R2_ACCOUNT_ID"""
    value = await get_config_value("r2_account_id", None, "R2_ACCOUNT_ID")
    return str(value) if value else None


async def get_r2_access_key_id() -> Optional[str]:
    """Environment variable: R2_ACCESS_KEY_ID"""
    value = await get_config_value("r2_access_key_id", None, "R2_ACCESS_KEY_ID")
    return str(value) if value else None


async def get_r2_secret_access_key() -> Optional[str]:
    """Environment variable: R2_SECRET_ACCESS_KEY"""
    value = await get_config_value("r2_secret_access_key", None, "R2_SECRET_ACCESS_KEY")
    return str(value) if value else None


async def get_r2_bucket() -> Optional[str]:
    """Environment variable: R2_BUCKET"""
    value = await get_config_value("r2_bucket", None, "R2_BUCKET")
    return str(value) if value else None


async def get_r2_endpoint() -> Optional[str]:
    """
    Get S3 endpoint URL.

    Environment variable: R2_ENDPOINT
    Default: https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com
    """
    value = await get_config_value("r2_endpoint", None, "R2_ENDPOINT")
    if value:
        return str(value).rstrip("/")
    account_id = await get_r2_account_id()
    if account_id:
        return f"https://{account_id}.r2.cloudflarestorage.com"
    return None


async def get_presign_expiry_seconds() -> int:
    """Get presigned URL lifetime (PRESIGN_EXPIRY_SECONDS, default 900)."""
    return await _get_int("presign_expiry_seconds", 15 * 60, "PRESIGN_EXPIRY_SECONDS")
