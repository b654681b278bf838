"""
WebSocket /ws/transcribe 路由
接受连接之前完成 IP 黑名单、认证与积分检查；拒绝时以 1008 关闭
"""
from fastapi import APIRouter, WebSocket

from ..auth import extract_auth, validate_auth
from ..core.cost_model import estimate_credits_from_size
from ..credit_gate import validate_credits
from ..errors import Blocked
from ..pipeline import RequestContext, get_client_ip
from ..rate_limiter import get_rate_limiter
from ..services.live_session import LiveSession

POLICY_VIOLATION = 1008

router = APIRouter()


@router.websocket("/ws/transcribe")
async def live_transcribe(websocket: WebSocket):
    ctx = RequestContext.create(get_client_ip(websocket))
    params = dict(websocket.query_params)

    limiter = await get_rate_limiter()
    if await limiter.is_ip_blocked(ctx.client_ip):
        ctx.logger.warning("Blocked IP attempted live session", ip=ctx.client_ip)
        await websocket.close(code=POLICY_VIOLATION, reason=Blocked.error)
        return

    auth = await validate_auth(ctx, extract_auth(params, ctx))
    if not auth.ok:
        ctx.logger.warning("Live session auth failed", reason=auth.error.error)
        await websocket.close(code=POLICY_VIOLATION, reason=auth.error.error)
        return
    user = auth.value

    # 时长未知，按最小预估检查
    gate = await validate_credits(ctx, user, estimate_credits_from_size(0))
    if not gate.ok:
        await websocket.close(code=POLICY_VIOLATION, reason=gate.error.error)
        return

    language = params.get("language") or None
    vocabulary = params.get("vocabulary") or None
    ctx.logger.info(
        "Live session starting",
        userType=user.kind.value,
        language=language or "auto",
        hasVocabulary=bool(vocabulary),
    )
    await websocket.accept()
    session = LiveSession(ctx, user, websocket, language=language, vocabulary=vocabulary)
    await session.run()
