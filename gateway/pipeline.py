"""
请求管线公共组件
Ok/Err 结果类型、请求上下文 RequestContext、JSON 响应与 CORS 头
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from starlette.requests import HTTPConnection
from fastapi.responses import JSONResponse

from log import RequestLogger
from .errors import GatewayError

T = TypeVar("T")

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-STT-Provider, X-LLM-Provider",
    "Access-Control-Max-Age": "86400",
}


@dataclass
class Ok(Generic[T]):
    value: T = None
    ok: bool = field(default=True, init=False)


@dataclass
class Err:
    error: GatewayError
    ok: bool = field(default=False, init=False)


Result = Union[Ok, Err]


@dataclass
class RequestContext:
    """单个请求的上下文，日志对象随上下文传递"""
    request_id: str
    client_ip: str
    logger: RequestLogger
    estimated_credits: Optional[float] = None

    @classmethod
    def create(cls, client_ip: str, request_id: Optional[str] = None) -> "RequestContext":
        rid = request_id or str(uuid.uuid4())
        return cls(request_id=rid, client_ip=client_ip, logger=RequestLogger(rid))


def get_client_ip(request: HTTPConnection) -> str:
    """获取客户端 IP：优先 CF-Connecting-IP，其次 X-Forwarded-For 第一个地址"""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def json_response(ctx: Optional[RequestContext], content: Any, status_code: int = 200,
                  headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    merged = dict(CORS_HEADERS)
    if ctx is not None:
        merged["X-Request-ID"] = ctx.request_id
    if headers:
        merged.update(headers)
    return JSONResponse(content=content, status_code=status_code, headers=merged)


def error_response(ctx: Optional[RequestContext], err: GatewayError) -> JSONResponse:
    return json_response(ctx, err.to_body(), status_code=err.status_code, headers=err.headers)


def failure_response(ctx: RequestContext, error: str, message: str, status_code: int = 500) -> JSONResponse:
    """未预期失败的响应，附带 requestId 便于排查"""
    return json_response(
        ctx,
        {"error": error, "message": message, "requestId": ctx.request_id},
        status_code=status_code,
    )
