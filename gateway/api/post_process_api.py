"""
POST /post-process 路由
独立的文本后处理：对已有转写文本按提示词进行 LLM 校正
"""
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Request, Response

from ..auth import extract_auth, validate_auth
from ..core.cost_model import usd_to_credits
from ..core.price_formatter import format_credits, format_usd
from ..credit_gate import schedule_deduction, validate_credits
from ..errors import BadRequest, Blocked, GatewayError
from ..models import PostProcessBody
from ..pipeline import CORS_HEADERS, RequestContext, error_response, failure_response, get_client_ip, json_response
from ..rate_limiter import get_rate_limiter
from ..services.llm_router import LlmRouter

ESTIMATED_POST_PROCESS_CREDITS = 1.0
MAX_TEXT_LENGTH = 100000

router = APIRouter()

_llm_router: Optional[LlmRouter] = None


def get_llm_router() -> LlmRouter:
    global _llm_router
    if _llm_router is None:
        _llm_router = LlmRouter()
    return _llm_router


def parse_post_process_body(raw: Any) -> Tuple[PostProcessBody, str, str]:
    """校验请求体，返回 (body, text, prompt)；text 与 prompt 已去除首尾空白"""
    if not isinstance(raw, dict):
        raise BadRequest("Invalid JSON", "Request body must be valid JSON")
    try:
        body = PostProcessBody(**raw)
    except ValueError:
        raise BadRequest("Invalid JSON", "Request body must be valid JSON")

    if not body.text or not isinstance(body.text, str):
        raise BadRequest("Missing field", 'Request body must include "text" field')
    text = body.text.strip()
    if not text:
        raise BadRequest("Empty text", "Text field cannot be empty")
    if len(text) > MAX_TEXT_LENGTH:
        raise BadRequest(
            "Text too long",
            f"Text must be {MAX_TEXT_LENGTH} characters or less",
            {"max_length": MAX_TEXT_LENGTH, "actual_length": len(text)},
        )

    if not body.prompt or not isinstance(body.prompt, str):
        raise BadRequest("Missing field", 'Request body must include "prompt" field')
    prompt = body.prompt.strip()
    if not prompt:
        raise BadRequest("Empty prompt", "Prompt field cannot be empty")
    return body, text, prompt


@router.options("/post-process")
async def post_process_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/post-process")
async def post_process(request: Request):
    ctx = RequestContext.create(get_client_ip(request))
    try:
        limiter = await get_rate_limiter()
        if await limiter.is_ip_blocked(ctx.client_ip):
            ctx.logger.warning("Blocked IP attempted access", ip=ctx.client_ip)
            return error_response(ctx, Blocked())

        if "application/json" not in request.headers.get("content-type", ""):
            raise BadRequest("Invalid Content-Type", "Content-Type must be application/json")
        try:
            raw = await request.json()
        except ValueError:
            ctx.logger.warning("Invalid JSON body")
            raise BadRequest("Invalid JSON", "Request body must be valid JSON")
        body, text, prompt = parse_post_process_body(raw)

        auth = await validate_auth(ctx, extract_auth(body.model_dump(), ctx))
        if not auth.ok:
            return error_response(ctx, auth.error)
        user = auth.value

        gate = await validate_credits(ctx, user, ESTIMATED_POST_PROCESS_CREDITS)
        if not gate.ok:
            return error_response(ctx, gate.error)

        llm_router = get_llm_router()
        provider = await llm_router.resolve_provider(request.headers.get("x-llm-provider"), ctx)
        ctx.logger.info(
            "Post-process starting",
            textLength=len(text),
            userType=user.kind.value,
            provider=provider.value,
        )
        result = await llm_router.post_process(ctx, text, prompt, provider)
        credits = usd_to_credits(result.cost_usd)

        if credits > 0:
            schedule_deduction(ctx, user, credits, {
                "post_processing_cost_usd": result.cost_usd,
                "input_length": len(text),
                "output_length": len(result.corrected),
                "endpoint": "/post-process",
                "llm_provider": provider.value,
            })
        ctx.logger.info(
            "Post-processing complete",
            latencyMs=ctx.logger.elapsed_ms(),
            costUsd=result.cost_usd,
            inputLength=len(text),
            outputLength=len(result.corrected),
        )
        return json_response(
            ctx,
            {"corrected": result.corrected, "cost": {"usd": result.cost_usd, "credits": credits}},
            headers={
                "X-LLM-Provider": provider.value,
                "X-Total-Cost-Usd": format_usd(result.cost_usd),
                "X-Credits-Used": format_credits(credits),
            },
        )
    except GatewayError as e:
        return error_response(ctx, e)
    except Exception as e:
        ctx.logger.error("Post-process failed", error=str(e))
        return failure_response(ctx, "Post-processing failed", str(e) or "Unknown error")
