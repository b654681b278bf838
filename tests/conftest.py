"""
测试公共夹具
每个测试使用全新的内存存储与防滥用实例，清除网关相关环境变量
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import gateway.object_storage as object_storage_module
import gateway.rate_limiter as rate_limiter_module
import gateway.storage_adapter as storage_module
from gateway.httpx_client import http_client

GATEWAY_ENV_VARS = (
    "REDIS_URI", "REDIS_PREFIX", "CONFIG_OVERRIDE_ENV", "PROXY", "HTTP_TIMEOUT",
    "BILLING_API_URL", "BILLING_API_KEY",
    "ELEVENLABS_API_KEY", "DEEPGRAM_API_KEY", "GROQ_API_KEY", "GROQ_BASE_URL", "CEREBRAS_API_KEY",
    "DEFAULT_STT_PROVIDER", "DEFAULT_LLM_PROVIDER",
    "TRIAL_CREDIT_ALLOCATION", "DAILY_FREE_CREDITS", "IP_BLOCK_HOURS",
    "STAGING_THRESHOLD_ELEVENLABS", "STAGING_THRESHOLD_DEEPGRAM", "STAGING_THRESHOLD_GROQ",
    "MAX_AUDIO_SIZE", "RETRY_MAX_RETRIES", "RETRY_INITIAL_DELAY", "POST_PROCESSING_ENABLED",
    "R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET", "R2_ENDPOINT",
    "PRESIGN_EXPIRY_SECONDS",
)

TRIAL_DEVICE_ID = "a" * 64
LICENSE_KEY = "LIC-TEST-0001-ABCD"


def reset_singletons():
    """重置模块级单例（hypothesis 每个样例内部也会调用）"""
    storage_module._storage_adapter = None
    rate_limiter_module._rate_limiter = None
    object_storage_module._object_storage = None


@pytest.fixture(autouse=True)
def isolated_gateway(monkeypatch):
    for var in GATEWAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_singletons()
    http_client.set_transport(None)

    import gateway.api.transcribe_api as transcribe_api
    import gateway.api.post_process_api as post_process_api
    monkeypatch.setattr(transcribe_api, "_orchestrator", None)
    monkeypatch.setattr(post_process_api, "_llm_router", None)
    yield
    http_client.set_transport(None)
    reset_singletons()


@pytest.fixture
def billing_env(monkeypatch):
    monkeypatch.setenv("BILLING_API_URL", "https://billing.test")
    monkeypatch.setenv("BILLING_API_KEY", "billing-secret-key")


@pytest.fixture
def provider_keys(monkeypatch):
    monkeypatch.setenv("ELEVENLABS_API_KEY", "el-key")
    monkeypatch.setenv("DEEPGRAM_API_KEY", "dg-key")
    monkeypatch.setenv("GROQ_API_KEY", "groq-key")
    monkeypatch.setenv("CEREBRAS_API_KEY", "cb-key")
    monkeypatch.setenv("RETRY_INITIAL_DELAY", "0.0001")
