"""
实时转写会话（WebSocket /ws/transcribe）

客户端 → 网关：二进制 PCM 音频帧（16kHz 单声道 16-bit）；文本帧 {"type":"stop"} 结束会话
网关 → 客户端：
    {"type":"ready", "session_id": ...}
    {"type":"transcript", "text": ..., "is_final": bool, "speech_final": bool}
    {"type":"session_complete", "duration_seconds": ..., "credits_used": ...}
    {"type":"error", "message": ...}

上游为 Deepgram Live API；会话结束时（任一方先结束）只结算一次
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from starlette.websockets import WebSocket, WebSocketState

from config import get_deepgram_api_key
from ..core.cost_model import round_to_tenth, stt_cost, usd_to_credits
from ..credit_gate import schedule_deduction
from ..models import AuthenticatedUser
from ..pipeline import RequestContext

DEEPGRAM_LIVE_URL = "wss://api.deepgram.com/v1/listen"
LIVE_PRICING_KEY = "deepgram-live"
LIVE_PROVIDER_LABEL = "deepgram-nova3-live"
MAX_KEYTERMS = 100
KEYTERM_BOOST = "1.5"

UpstreamConnector = Callable[[str, str], Awaitable[Any]]


def build_live_url(language: Optional[str], vocabulary: Optional[str]) -> str:
    """
    构造 Deepgram Live 地址

    词汇增强只在显式指定语言时生效（自动检测语言时忽略）
    """
    params = [
        ("model", "nova-3"),
        ("smart_format", "true"),
        ("interim_results", "true"),
        ("punctuate", "true"),
        ("endpointing", "300"),
        ("encoding", "linear16"),
        ("sample_rate", "16000"),
        ("channels", "1"),
    ]
    if language and language != "auto":
        params.append(("language", language))
        terms = [t.strip() for t in (vocabulary or "").split(",") if t.strip()]
        if 0 < len(terms) <= MAX_KEYTERMS:
            params.append(("keyterm", ",".join(f"{t}:{KEYTERM_BOOST}" for t in terms)))
    else:
        params.append(("detect_language", "true"))
    return f"{DEEPGRAM_LIVE_URL}?{urlencode(params)}"


async def connect_deepgram(url: str, api_key: str):
    """默认上游连接器"""
    from websockets.asyncio.client import connect

    return await connect(url, additional_headers={"Authorization": f"Token {api_key}"})


class LiveSession:
    """单个实时会话，负责双向转发与一次性结算"""

    def __init__(self, ctx: RequestContext, user: AuthenticatedUser, websocket: WebSocket,
                 language: Optional[str] = None, vocabulary: Optional[str] = None,
                 connector: Optional[UpstreamConnector] = None):
        self.ctx = ctx
        self.user = user
        self.websocket = websocket
        self.language = language
        self.vocabulary = vocabulary
        self._connector = connector or connect_deepgram
        self.upstream = None
        self.total_duration_seconds = 0.0
        self.credits_used = 0.0
        self.settlements = 0
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def _client_connected(self) -> bool:
        return self.websocket.client_state == WebSocketState.CONNECTED

    async def send_to_client(self, message: Dict[str, Any]):
        if not self._client_connected():
            return
        try:
            await self.websocket.send_text(json.dumps(message))
        except Exception as e:
            self.ctx.logger.debug("Failed to send message to client", error=str(e))

    async def handle_upstream_message(self, raw):
        """处理一条 Deepgram 消息：累计时长并转发非空或最终的转写结果"""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            self.ctx.logger.warning("Failed to parse upstream message", error=str(e))
            return
        if not isinstance(data, dict) or data.get("type") != "Results":
            return

        duration = data.get("duration")
        if isinstance(duration, (int, float)) and duration > 0:
            self.total_duration_seconds += float(duration)

        alternatives: List[Dict[str, Any]] = (data.get("channel") or {}).get("alternatives") or []
        transcript = ""
        if alternatives and isinstance(alternatives[0], dict):
            transcript = alternatives[0].get("transcript") or ""
        is_final = bool(data.get("is_final", False))
        if transcript or is_final:
            await self.send_to_client({
                "type": "transcript",
                "text": transcript,
                "is_final": is_final,
                "speech_final": bool(data.get("speech_final", False)),
            })

    async def end_session(self):
        """结算会话（幂等）：计算实际费用，通知客户端，后台扣费"""
        if self._ended:
            return
        self._ended = True

        cost_usd = stt_cost(self.total_duration_seconds, LIVE_PRICING_KEY)
        self.credits_used = round_to_tenth(usd_to_credits(cost_usd))
        self.ctx.logger.info(
            "Streaming session ended - calculating credits",
            totalDuration=self.total_duration_seconds,
            costUsd=cost_usd,
            creditsUsed=self.credits_used,
        )
        await self.send_to_client({
            "type": "session_complete",
            "duration_seconds": self.total_duration_seconds,
            "credits_used": self.credits_used,
        })
        if self.credits_used <= 0:
            self.ctx.logger.info("No billable audio in session, skipping deduction")
            return
        self.settlements += 1
        schedule_deduction(self.ctx, self.user, self.credits_used, {
            "audio_duration_seconds": self.total_duration_seconds,
            "transcription_cost_usd": cost_usd,
            "language": self.language or "auto",
            "endpoint": "/ws/transcribe",
            "streaming": True,
            "stt_provider": LIVE_PROVIDER_LABEL,
        })

    async def _pump_client(self):
        """客户端 → 上游"""
        while True:
            message = await self.websocket.receive()
            if message.get("type") == "websocket.disconnect":
                self.ctx.logger.info("Client WebSocket closed")
                return
            data = message.get("bytes")
            if data is not None:
                await self.upstream.send(data)
                continue
            text = message.get("text")
            if not text:
                continue
            try:
                control = json.loads(text)
            except ValueError:
                self.ctx.logger.debug("Received non-JSON text message from client")
                continue
            if isinstance(control, dict) and control.get("type") == "stop":
                self.ctx.logger.info("Client requested session stop")
                await self.upstream.send(json.dumps({"type": "CloseStream"}))

    async def _pump_upstream(self):
        """上游 → 客户端；上游关闭或出错即结束会话"""
        try:
            async for raw in self.upstream:
                await self.handle_upstream_message(raw)
            self.ctx.logger.info("Upstream connection closed", totalDuration=self.total_duration_seconds)
        except Exception as e:
            self.ctx.logger.error("Upstream WebSocket error", error=str(e))
            await self.send_to_client({"type": "error", "message": "Transcription service error"})
        await self.end_session()

    async def _close_upstream(self):
        if self.upstream is None:
            return
        try:
            await self.upstream.close()
        except Exception as e:
            self.ctx.logger.debug("Failed to close upstream connection", error=str(e))

    async def run(self):
        """运行会话直到任一方结束；调用前客户端连接必须已接受"""
        api_key = await get_deepgram_api_key()
        if not api_key:
            self.ctx.logger.error("Missing provider credential", provider=LIVE_PRICING_KEY)
            await self.send_to_client({"type": "error", "message": "Transcription service is not configured"})
            await self.websocket.close(code=1011, reason="Server misconfigured")
            return

        url = build_live_url(self.language, self.vocabulary)
        try:
            self.upstream = await self._connector(url, api_key)
        except Exception as e:
            self.ctx.logger.error("Failed to connect to upstream", error=str(e))
            await self.send_to_client({"type": "error", "message": "Failed to establish transcription connection"})
            await self.websocket.close(code=1011, reason="Upstream unavailable")
            return

        self.ctx.logger.info("Connected to upstream live API")
        await self.send_to_client({"type": "ready", "session_id": self.ctx.request_id})

        client_task = asyncio.create_task(self._pump_client(), name=f"live-client-{self.ctx.request_id}")
        upstream_task = asyncio.create_task(self._pump_upstream(), name=f"live-upstream-{self.ctx.request_id}")
        try:
            done, pending = await asyncio.wait({client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    self.ctx.logger.warning("Live session pump failed", error=str(task.exception()))
            await self.end_session()
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            await self.end_session()
            await self._close_upstream()
            if self._client_connected():
                try:
                    await self.websocket.close(code=1000, reason="Session ended")
                except Exception as e:
                    self.ctx.logger.debug("Failed to close client connection", error=str(e))
