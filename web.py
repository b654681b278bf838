"""
Main Web Integration - Integrates all routers and modules
集合router并开启主服务
"""
import asyncio
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

# Import all routers
from gateway.api.transcribe_api import router as transcribe_router
from gateway.api.post_process_api import router as post_process_router
from gateway.api.usage_api import router as usage_router
from gateway.api.live_api import router as live_router

# Import managers and utilities
from gateway.task_manager import pending_task_count, shutdown_all_tasks
from gateway.storage_adapter import close_storage_adapter, get_storage_adapter
from gateway.rate_limiter import get_rate_limiter
from gateway.core.cost_model import LLM_PRICING, STT_PRICING
from gateway.core.price_formatter import format_rate_with_unit
from config import get_max_audio_size, get_server_host, get_server_port
from log import log


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    log.info("Starting STT edge gateway")

    # 预热存储与防滥用配置
    try:
        adapter = await get_storage_adapter()
        await get_rate_limiter()
        log.info(f"Storage backend ready: {adapter.backend}")
    except Exception as e:
        log.error(f"Failed to initialize storage: {e}")

    yield

    log.info("Shutting down STT edge gateway")

    # 先等待后台扣费任务完成，再关闭存储
    try:
        log.info(f"Waiting for {pending_task_count()} background tasks")
        await shutdown_all_tasks(timeout=10.0)
        log.info("All background tasks finished")
    except Exception as e:
        log.error(f"Error while shutting down background tasks: {e}")

    try:
        await close_storage_adapter()
    except Exception as e:
        log.error(f"Error while closing storage: {e}")

    log.info("STT edge gateway stopped")


# 创建FastAPI应用
app = FastAPI(
    title="STT Edge Gateway",
    description="Speech-to-text gateway with credit metering, provider routing and LLM post-processing",
    version="1.0.0",
    lifespan=lifespan
)

# CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-STT-Provider", "X-LLM-Provider"],
    expose_headers=["X-Request-ID", "X-STT-Provider", "X-Total-Cost-Usd", "X-Credits-Used"],
    max_age=86400,
)

# 挂载路由器
app.include_router(
    transcribe_router,
    prefix="",
    tags=["Transcription"]
)

app.include_router(
    post_process_router,
    prefix="",
    tags=["Post-processing"]
)

app.include_router(
    usage_router,
    prefix="",
    tags=["Usage"]
)

app.include_router(
    live_router,
    prefix="",
    tags=["Live Transcription"]
)


# 保活接口（仅响应 HEAD）
@app.head("/keepalive")
async def keepalive() -> Response:
    return Response(status_code=200)

__all__ = ['app']


async def main():
    """异步主启动函数"""
    from hypercorn.asyncio import serve
    from hypercorn.config import Config

    port = await get_server_port()
    host = await get_server_host()

    log.info("=" * 60)
    log.info("Starting STT edge gateway")
    log.info("=" * 60)
    log.info(f"Transcription endpoint: http://127.0.0.1:{port}/transcribe")
    log.info(f"Live endpoint: ws://127.0.0.1:{port}/ws/transcribe")
    log.info("=" * 60)
    for provider, pricing in STT_PRICING.items():
        log.info(f"STT rate {provider}: {format_rate_with_unit(pricing['per_minute'], 'min')}")
    for provider, pricing in LLM_PRICING.items():
        log.info(
            f"LLM rate {provider}: prompt {format_rate_with_unit(pricing['prompt'], '1M tokens')}, "
            f"completion {format_rate_with_unit(pricing['completion'], '1M tokens')}"
        )
    log.info("=" * 60)

    # 配置hypercorn
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = "-"
    config.errorlog = "-"
    config.loglevel = "INFO"
    config.use_colors = True

    # 请求体大小限制与最大音频大小一致
    config.max_request_body_size = await get_max_audio_size()

    # 大文件上传与转写耗时较长
    config.keep_alive_timeout = 300
    config.read_timeout = 300
    config.write_timeout = 300

    config.startup_timeout = 120

    await serve(app, config)

if __name__ == "__main__":
    asyncio.run(main())
