"""
HTTP / WebSocket 路由测试
通过 FastAPI TestClient 调用完整应用，上游客户端与扣费均被替换
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import LICENSE_KEY, TRIAL_DEVICE_ID
import gateway.api.post_process_api as post_process_api
import gateway.api.transcribe_api as transcribe_api
from gateway.api.post_process_api import MAX_TEXT_LENGTH, parse_post_process_body
from gateway.errors import BadRequest
from gateway.models import LicenseValidation, LlmProvider, SttProvider, TranscriptionResult
from gateway.rate_limiter import get_rate_limiter
from gateway.services.llm_router import LlmRouter
from gateway.services.orchestrator import TranscriptionOrchestrator
from gateway.services.provider_router import ProviderRouter
from web import app

BLOCKED_IP = "203.0.113.50"


@pytest.fixture
def client():
    return TestClient(app)


def fake_llm_router(content="Hello, world.") -> LlmRouter:
    clients = {}
    for provider in LlmProvider:
        llm = MagicMock()
        llm.chat = AsyncMock(return_value=({"choices": [{"message": {"content": content}}]}, 2000, 1000))
        clients[provider] = llm
    return LlmRouter(clients=clients, sleep=AsyncMock())


def block(ip: str):
    async def run():
        await (await get_rate_limiter()).block_ip(ip, duration_hours=1)
    asyncio.run(run())


class TestKeepaliveAndPreflight:

    def test_keepalive_head(self, client):
        assert client.head("/keepalive").status_code == 200

    @pytest.mark.parametrize("path", ["/transcribe", "/post-process"])
    def test_options_preflight(self, client, path):
        resp = client.options(path)
        assert resp.status_code == 204
        assert resp.headers["access-control-allow-origin"] == "*"


class TestUsageRoute:

    def test_requires_identifier(self, client):
        resp = client.get("/usage")
        assert resp.status_code == 401
        assert resp.json()["error"] == "Identifier required"

    def test_trial_device(self, client):
        resp = client.get("/usage", params={"device_id": TRIAL_DEVICE_ID})
        assert resp.status_code == 200
        body = resp.json()
        assert body["credits_remaining"] == 150.0
        assert body["minutes_remaining"] == 23
        assert body["is_trial"] is True
        assert body["total_allocated"] == 150
        assert body["resets_at"].endswith("Z")
        assert resp.headers["x-device-credits-remaining"] == "150.0"
        assert resp.headers["x-ip-ratelimit-remaining"] == "100.0"

    def test_licensed_refresh(self, client):
        validate = AsyncMock(return_value=LicenseValidation(is_valid=True, credits=70.04))
        with patch("gateway.api.usage_api.validate_and_get_credits", validate):
            resp = client.get("/usage", params={"license_key": LICENSE_KEY, "refresh": "true"})
        body = resp.json()
        assert body["credits_remaining"] == 70.0
        assert body["minutes_remaining"] == 11
        assert body["is_licensed"] is True
        validate.assert_awaited_once_with(LICENSE_KEY, force_refresh=True)

    def test_invalid_license(self, client):
        with patch("gateway.api.usage_api.validate_and_get_credits",
                   AsyncMock(return_value=LicenseValidation(is_valid=False, credits=0))):
            resp = client.get("/usage", params={"license_key": LICENSE_KEY})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid license key"


class TestPostProcessBody:

    @pytest.mark.parametrize("raw,error", [
        ([], "Invalid JSON"),
        ({"prompt": "x"}, "Missing field"),
        ({"text": "   ", "prompt": "x"}, "Empty text"),
        ({"text": "hello"}, "Missing field"),
        ({"text": "hello", "prompt": "  "}, "Empty prompt"),
    ])
    def test_rejections(self, raw, error):
        with pytest.raises(BadRequest) as exc:
            parse_post_process_body(raw)
        assert exc.value.error == error

    def test_text_too_long(self):
        with pytest.raises(BadRequest) as exc:
            parse_post_process_body({"text": "x" * (MAX_TEXT_LENGTH + 1), "prompt": "p"})
        assert exc.value.to_body()["actual_length"] == MAX_TEXT_LENGTH + 1

    def test_trimmed(self):
        _, text, prompt = parse_post_process_body({"text": " hi ", "prompt": " fix "})
        assert (text, prompt) == ("hi", "fix")


class TestPostProcessRoute:

    def test_success(self, client, provider_keys, monkeypatch):
        monkeypatch.setattr(post_process_api, "_llm_router", fake_llm_router())
        with patch("gateway.api.post_process_api.schedule_deduction") as deduction:
            resp = client.post("/post-process", json={
                "text": "hello world", "prompt": "Fix punctuation", "device_id": TRIAL_DEVICE_ID,
            })
        assert resp.status_code == 200
        assert resp.json() == {"corrected": "Hello, world.", "cost": {"usd": 0.0029, "credits": 2.9}}
        assert resp.headers["x-llm-provider"] == "cerebras"
        assert resp.headers["x-credits-used"] == "2.9"
        deduction.assert_called_once()

    def test_requires_json_content_type(self, client):
        resp = client.post("/post-process", content=b"text=hi", headers={"content-type": "text/plain"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid Content-Type"

    def test_invalid_json(self, client):
        resp = client.post("/post-process", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON"

    def test_missing_auth(self, client):
        resp = client.post("/post-process", json={"text": "hello", "prompt": "fix"})
        assert resp.status_code == 401

    def test_blocked_ip(self, client):
        block(BLOCKED_IP)
        resp = client.post("/post-process", json={"text": "hello", "prompt": "fix"},
                           headers={"cf-connecting-ip": BLOCKED_IP})
        assert resp.status_code == 403


class TestTranscribeRoute:

    def test_streams_body_to_provider(self, client, provider_keys, monkeypatch):
        stt = {}
        for provider in SttProvider:
            fake = MagicMock()
            fake.transcribe = AsyncMock(return_value=TranscriptionResult(
                text="route works", duration_seconds=30.0, provider=provider, language="en"))
            stt[provider] = fake
        orchestrator = TranscriptionOrchestrator(
            provider_router=ProviderRouter(clients=stt, sleep=AsyncMock()),
            llm_router=fake_llm_router(),
        )
        monkeypatch.setattr(transcribe_api, "_orchestrator", orchestrator)
        audio = b"\x00" * 4096

        with patch("gateway.services.orchestrator.schedule_deduction"):
            resp = client.post(
                "/transcribe",
                params={"device_id": TRIAL_DEVICE_ID},
                content=audio,
                headers={"content-type": "audio/wav"},
            )
        assert resp.status_code == 200
        assert resp.json()["text"] == "route works"
        assert resp.headers["x-stt-provider"] == "elevenlabs-scribe-v2"
        assert "x-request-id" in resp.headers
        payload = stt[SttProvider.ELEVENLABS].transcribe.await_args.args[0]
        assert payload.data == audio

    def test_wrong_content_type(self, client):
        resp = client.post("/transcribe", params={"device_id": TRIAL_DEVICE_ID}, content=b"abc",
                           headers={"content-type": "text/plain"})
        assert resp.status_code == 400
        assert resp.json()["received"] == "text/plain"


class TestLiveRoute:

    def test_rejects_without_auth(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/transcribe"):
                pass
        assert exc.value.code == 1008

    def test_rejects_blocked_ip(self, client):
        block(BLOCKED_IP)
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/transcribe?device_id={TRIAL_DEVICE_ID}",
                                          headers={"cf-connecting-ip": BLOCKED_IP}):
                pass
        assert exc.value.code == 1008
