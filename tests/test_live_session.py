"""
实时转写会话测试
使用内存中的假 WebSocket 与假上游连接，检查转发、时长累计与一次性结算
"""
import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import AsyncMock, patch
from starlette.websockets import WebSocketState

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import TRIAL_DEVICE_ID
from gateway.models import AuthenticatedUser, UserKind
from gateway.pipeline import RequestContext
from gateway.services.live_session import LIVE_PROVIDER_LABEL, LiveSession, build_live_url


class FakeClientSocket:
    """最小化的 Starlette WebSocket 替身"""

    def __init__(self, messages=()):
        self.incoming = asyncio.Queue()
        for message in messages:
            self.incoming.put_nowait(message)
        self.client_state = WebSocketState.CONNECTED
        self.sent = []
        self.close_code = None

    async def receive(self):
        return await self.incoming.get()

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=None):
        self.close_code = code
        self.client_state = WebSocketState.DISCONNECTED

    def types(self):
        return [m["type"] for m in self.sent]


class FakeUpstream:
    """Deepgram Live 连接替身；收到 CloseStream 后结束迭代"""

    def __init__(self, messages=(), hold_open=False):
        self.queue = asyncio.Queue()
        for message in messages:
            self.queue.put_nowait(message)
        if not hold_open:
            self.queue.put_nowait(None)
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def send(self, data):
        self.sent.append(data)
        if isinstance(data, str) and json.loads(data).get("type") == "CloseStream":
            self.queue.put_nowait(None)

    async def close(self):
        self.closed = True


def results(transcript: str, duration: float, is_final: bool = True) -> str:
    return json.dumps({
        "type": "Results",
        "duration": duration,
        "is_final": is_final,
        "speech_final": is_final,
        "channel": {"alternatives": [{"transcript": transcript}]},
    })


def make_session(websocket, upstream=None, connector=None, language=None, vocabulary=None) -> LiveSession:
    ctx = RequestContext.create("198.51.100.20", "live-req")
    user = AuthenticatedUser(kind=UserKind.TRIAL, device_id=TRIAL_DEVICE_ID, credits_at_auth_time=150.0)
    if connector is None:
        connector = AsyncMock(return_value=upstream)
    return LiveSession(ctx, user, websocket, language=language, vocabulary=vocabulary, connector=connector)


@pytest.fixture
def deduction_spy():
    with patch("gateway.services.live_session.schedule_deduction") as spy:
        yield spy


class TestBuildLiveUrl:

    def test_auto_language_ignores_vocabulary(self):
        query = parse_qs(urlparse(build_live_url(None, "Acme, Zed")).query)
        assert query["detect_language"] == ["true"]
        assert "keyterm" not in query
        assert query["encoding"] == ["linear16"]
        assert query["sample_rate"] == ["16000"]

    def test_explicit_language_with_keyterms(self):
        query = parse_qs(urlparse(build_live_url("en", "Acme, Zed")).query)
        assert query["language"] == ["en"]
        assert query["keyterm"] == ["Acme:1.5,Zed:1.5"]

    def test_too_many_keyterms_dropped(self):
        vocabulary = ",".join(f"t{i}" for i in range(101))
        query = parse_qs(urlparse(build_live_url("en", vocabulary)).query)
        assert "keyterm" not in query


class TestUpstreamMessages:

    @pytest.mark.asyncio
    async def test_accumulates_duration_and_forwards(self):
        websocket = FakeClientSocket()
        session = make_session(websocket)
        await session.handle_upstream_message(results("hello", 2.5))
        await session.handle_upstream_message(results("", 1.0, is_final=False))
        await session.handle_upstream_message(json.dumps({"type": "Metadata", "duration": 99}))
        await session.handle_upstream_message("not json")
        assert session.total_duration_seconds == 3.5
        assert websocket.sent == [{"type": "transcript", "text": "hello", "is_final": True, "speech_final": True}]


class TestSettlement:

    @pytest.mark.asyncio
    async def test_end_session_is_idempotent(self, deduction_spy):
        websocket = FakeClientSocket()
        session = make_session(websocket)
        session.total_duration_seconds = 60.0
        await session.end_session()
        await session.end_session()
        assert session.settlements == 1
        assert session.credits_used == 5.5
        deduction_spy.assert_called_once()
        assert websocket.types() == ["session_complete"]

    @pytest.mark.asyncio
    async def test_zero_duration_not_billed(self, deduction_spy):
        session = make_session(FakeClientSocket())
        await session.end_session()
        assert session.credits_used == 0
        assert session.settlements == 0
        deduction_spy.assert_not_called()


class TestRun:

    @pytest.mark.asyncio
    async def test_upstream_close_settles_once(self, provider_keys, deduction_spy):
        websocket = FakeClientSocket()
        upstream = FakeUpstream([results("hello", 30.0), results("world", 30.0)])
        session = make_session(websocket, upstream)

        await asyncio.wait_for(session.run(), timeout=5)

        assert websocket.types() == ["ready", "transcript", "transcript", "session_complete"]
        assert websocket.sent[0]["session_id"] == "live-req"
        assert websocket.sent[-1] == {"type": "session_complete", "duration_seconds": 60.0, "credits_used": 5.5}
        assert websocket.close_code == 1000
        assert upstream.closed
        deduction_spy.assert_called_once()
        _, user, credits, metadata = deduction_spy.call_args.args
        assert credits == 5.5
        assert metadata["stt_provider"] == LIVE_PROVIDER_LABEL
        assert metadata["endpoint"] == "/ws/transcribe"

    @pytest.mark.asyncio
    async def test_audio_forwarded_and_client_disconnect_ends_session(self, provider_keys, deduction_spy):
        websocket = FakeClientSocket([
            {"type": "websocket.receive", "bytes": b"\x01\x02"},
            {"type": "websocket.receive", "text": "hello?"},
            {"type": "websocket.disconnect", "code": 1000},
        ])
        upstream = FakeUpstream(hold_open=True)
        session = make_session(websocket, upstream)

        await asyncio.wait_for(session.run(), timeout=5)

        assert upstream.sent == [b"\x01\x02"]
        assert session.ended
        assert session.settlements == 0
        deduction_spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_message_closes_upstream_stream(self, provider_keys, deduction_spy):
        websocket = FakeClientSocket([{"type": "websocket.receive", "text": json.dumps({"type": "stop"})}])
        upstream = FakeUpstream([results("final words", 6.0)], hold_open=True)
        session = make_session(websocket, upstream)

        await asyncio.wait_for(session.run(), timeout=5)

        assert json.loads(upstream.sent[0]) == {"type": "CloseStream"}
        assert websocket.types()[-1] == "session_complete"
        assert session.settlements == 1

    @pytest.mark.asyncio
    async def test_connector_receives_live_url(self, provider_keys, deduction_spy):
        connector = AsyncMock(return_value=FakeUpstream())
        session = make_session(FakeClientSocket(), connector=connector, language="de")
        await asyncio.wait_for(session.run(), timeout=5)
        url, api_key = connector.await_args.args
        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "language=de" in url
        assert api_key == "dg-key"

    @pytest.mark.asyncio
    async def test_upstream_connect_failure(self, provider_keys, deduction_spy):
        websocket = FakeClientSocket()
        session = make_session(websocket, connector=AsyncMock(side_effect=OSError("refused")))
        await session.run()
        assert websocket.types() == ["error"]
        assert websocket.close_code == 1011
        deduction_spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_key(self, deduction_spy):
        websocket = FakeClientSocket()
        connector = AsyncMock()
        session = make_session(websocket, connector=connector)
        await session.run()
        assert websocket.close_code == 1011
        connector.assert_not_awaited()
