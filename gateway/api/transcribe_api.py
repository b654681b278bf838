"""
POST /transcribe 路由
请求体按原始音频流接收，编排逻辑见 services/orchestrator.py
"""
from typing import Optional

from fastapi import APIRouter, Request, Response

from ..pipeline import CORS_HEADERS, get_client_ip
from ..services.orchestrator import TranscribeRequest, TranscriptionOrchestrator

router = APIRouter()

_orchestrator: Optional[TranscriptionOrchestrator] = None


def get_orchestrator() -> TranscriptionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = TranscriptionOrchestrator()
    return _orchestrator


@router.options("/transcribe")
async def transcribe_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/transcribe")
async def transcribe(request: Request):
    """转写上传的音频（Content-Type: audio/*，必须带 Content-Length）"""
    outcome = await get_orchestrator().handle(TranscribeRequest(
        client_ip=get_client_ip(request),
        headers={k.lower(): v for k, v in request.headers.items()},
        query=dict(request.query_params),
        body=request.stream(),
    ))
    return outcome.response
