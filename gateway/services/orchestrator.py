"""
转写编排器（POST /transcribe）
IP 黑名单 → 请求头校验 → 认证 → 预估 → 积分闸门 → 转写 → （可选）后处理 → 后台扣费 → 响应
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, Mapping, Optional, Union

from fastapi.responses import JSONResponse

from config import get_max_audio_size, get_post_processing_enabled
from ..auth import extract_auth, validate_auth
from ..core.cost_model import MIN_CREDITS, estimate_credits_from_size, round_usd, stt_cost, usd_to_credits
from ..core.price_formatter import format_credits, format_usd
from ..credit_gate import schedule_deduction, validate_credits
from ..errors import BadRequest, Blocked, GatewayError, PayloadTooLarge, ProviderFatal
from ..models import OrchestratorState, PostProcessResult, TranscriptionHints, TranscriptionResult
from ..pipeline import RequestContext, error_response, failure_response, json_response
from ..rate_limiter import get_rate_limiter
from ..transform.text_processing import parse_vocabulary
from .llm_router import LlmRouter
from .provider_router import ProviderRouter


@dataclass
class TranscribeRequest:
    """与 Web 框架无关的请求描述"""
    client_ip: str
    headers: Mapping[str, str]               # 小写键
    query: Mapping[str, str]
    body: Union[bytes, AsyncIterable[bytes]] = b""
    request_id: Optional[str] = None


@dataclass
class TranscribeOutcome:
    state: OrchestratorState
    response: JSONResponse
    context: RequestContext
    credits: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


class TranscriptionOrchestrator:
    """转写请求状态机"""

    def __init__(self, provider_router: Optional[ProviderRouter] = None, llm_router: Optional[LlmRouter] = None):
        self.provider_router = provider_router or ProviderRouter()
        self.llm_router = llm_router or LlmRouter()

    async def validate_headers(self, ctx: RequestContext, headers: Mapping[str, str]):
        """校验 Content-Type 与 Content-Length，返回 (content_type, content_length)"""
        content_type = _header(headers, "content-type") or ""
        if not content_type.startswith("audio/"):
            ctx.logger.warning("Invalid Content-Type", contentType=content_type)
            raise BadRequest("Invalid Content-Type", "Content-Type must be audio/*", {"received": content_type})

        raw_length = _header(headers, "content-length")
        if not raw_length:
            ctx.logger.warning("Missing Content-Length")
            raise BadRequest("Missing Content-Length", "Content-Length header is required for streaming transcription")
        try:
            content_length = int(raw_length)
        except (TypeError, ValueError):
            content_length = -1
        if content_length <= 0:
            ctx.logger.warning("Invalid Content-Length", contentLength=raw_length)
            raise BadRequest("Invalid Content-Length", "Content-Length must be a positive integer")

        max_size = await get_max_audio_size()
        if content_length > max_size:
            ctx.logger.warning("File too large", contentLength=content_length)
            raise PayloadTooLarge(content_length, max_size)
        return content_type, content_length

    async def _post_process(self, ctx: RequestContext, request: TranscribeRequest,
                            result: TranscriptionResult) -> Optional[PostProcessResult]:
        """可选后处理；失败时回退到原始转写文本"""
        prompt = request.query.get("post_processing_prompt")
        if not prompt or not prompt.strip():
            return None
        requested = request.query.get("post_processing_enabled")
        if requested is not None and requested.strip().lower() in ("false", "0", "no", "off"):
            ctx.logger.info("Post-processing disabled by caller")
            return None
        if not await get_post_processing_enabled():
            return None
        provider = await self.llm_router.resolve_provider(_header(request.headers, "x-llm-provider"), ctx)
        try:
            return await self.llm_router.post_process(ctx, result.text, prompt, provider)
        except Exception as e:
            ctx.logger.warning("Post-processing failed, returning raw transcript", error=str(e))
            return PostProcessResult(corrected=result.text, provider=provider, applied=False)

    def _build_response(self, ctx: RequestContext, result: TranscriptionResult, usd: float, credits: float,
                        post: Optional[PostProcessResult]) -> JSONResponse:
        body: Dict[str, Any] = {
            "text": result.text,
            "language": result.language,
            "duration": result.duration_seconds,
            "cost": {"usd": usd, "credits": credits},
            "metadata": {
                "request_id": ctx.request_id,
                "stt_provider": result.provider_label,
            },
        }
        if post is not None:
            body["metadata"]["post_processing_applied"] = post.applied
            if post.applied:
                body["corrected"] = post.corrected
        if result.no_speech:
            body["no_speech_detected"] = True
        headers = {
            "X-STT-Provider": result.provider_label,
            "X-Total-Cost-Usd": format_usd(usd),
            "X-Credits-Used": format_credits(credits),
        }
        return json_response(ctx, body, headers=headers)

    async def handle(self, request: TranscribeRequest) -> TranscribeOutcome:
        ctx = RequestContext.create(request.client_ip, request.request_id)
        state = OrchestratorState.RECEIVED
        try:
            limiter = await get_rate_limiter()
            if await limiter.is_ip_blocked(ctx.client_ip):
                ctx.logger.warning("Blocked IP attempted access", ip=ctx.client_ip)
                return TranscribeOutcome(OrchestratorState.BLOCKED, error_response(ctx, Blocked()), ctx)

            state = OrchestratorState.BAD_REQUEST
            content_type, content_length = await self.validate_headers(ctx, request.headers)

            state = OrchestratorState.AUTH_FAILED
            auth = await validate_auth(ctx, extract_auth(request.query, ctx))
            if not auth.ok:
                return TranscribeOutcome(state, error_response(ctx, auth.error), ctx)
            user = auth.value

            estimated = estimate_credits_from_size(content_length)
            gate = await validate_credits(ctx, user, estimated)
            if not gate.ok:
                return TranscribeOutcome(OrchestratorState.CREDIT_DENIED, error_response(ctx, gate.error), ctx)

            state = OrchestratorState.TRANSCRIBING
            provider = await self.provider_router.resolve_provider(_header(request.headers, "x-stt-provider"), ctx)
            initial_prompt = request.query.get("initial_prompt") or None
            language = request.query.get("language") or None
            mode = request.query.get("mode") or None
            hints = TranscriptionHints(
                language=language,
                vocabulary=parse_vocabulary(initial_prompt),
                prompt=initial_prompt,
                mode=mode,
            )
            ctx.logger.info(
                "Transcription pipeline starting",
                provider=provider.value,
                contentLength=content_length,
                language=language or "auto",
                userType=user.kind.value,
                estimatedCredits=estimated,
            )
            result = await self.provider_router.transcribe(
                ctx, provider, request.body, content_type, content_length, hints
            )

            if result.no_speech:
                ctx.logger.info("No speech detected - returning empty transcript with zero cost")
                return TranscribeOutcome(
                    OrchestratorState.NO_SPEECH,
                    self._build_response(ctx, result, 0.0, 0.0, None),
                    ctx,
                )

            state = OrchestratorState.POST_PROCESSING
            stt_usd = stt_cost(result.duration_seconds, result.provider.value)
            post = await self._post_process(ctx, request, result)
            llm_usd = post.cost_usd if post is not None else 0.0
            total_usd = round_usd(stt_usd + llm_usd)
            credits = usd_to_credits(total_usd)
            if credits <= 0:
                # 有文本但供应商未给出时长，按最低积分计费
                ctx.logger.warning("Transcript without billable duration, charging minimum",
                                   provider=result.provider_label)
                credits = MIN_CREDITS

            schedule_deduction(ctx, user, credits, {
                "audio_duration_seconds": result.duration_seconds,
                "transcription_cost_usd": stt_usd,
                "post_processing_cost_usd": llm_usd,
                "language": result.language or language or "auto",
                "mode": mode,
                "endpoint": "/transcribe",
                "streaming": True,
                "stt_provider": result.provider_label,
            })
            ctx.logger.info(
                "Transcription complete",
                durationSeconds=result.duration_seconds,
                credits=credits,
                costUsd=total_usd,
                provider=result.provider_label,
            )
            return TranscribeOutcome(
                OrchestratorState.BILLED,
                self._build_response(ctx, result, total_usd, credits, post),
                ctx,
                credits=credits,
            )
        except GatewayError as e:
            if isinstance(e, BadRequest):
                state = OrchestratorState.BAD_REQUEST
            return TranscribeOutcome(state, error_response(ctx, e), ctx)
        except ProviderFatal as e:
            ctx.logger.error("Transcription failed", error=str(e), provider=e.provider)
            return TranscribeOutcome(
                OrchestratorState.FAILED,
                failure_response(ctx, "Transcription failed", e.detail, status_code=502),
                ctx,
            )
        except Exception as e:
            ctx.logger.error("Transcription pipeline failed", error=str(e))
            return TranscribeOutcome(
                OrchestratorState.FAILED,
                failure_response(ctx, "Transcription failed", str(e) or "Unknown error"),
                ctx,
            )
