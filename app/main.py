"""
app.main
~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import chat_endpoints, chat_ws
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import WebSocketRateLimiter, limiter
from app.core.settings import settings
from app.db import close_mongo, connect_mongo, get_database
from app.db.memory_repository import InMemoryMessageRepository
from app.db.message_repository import MessageRepository, MongoMessageRepository, PersistenceError
from app.schemas.api_response import ApiResponse
from app.services.broker import ChatBroker

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    repo: MessageRepository
    if settings.STORAGE_BACKEND == "mongo":
        await connect_mongo()
        repo = MongoMessageRepository(get_database())
    else:
        repo = InMemoryMessageRepository()

    app.state.broker = ChatBroker(
        repo,
        history_limit=settings.HISTORY_LIMIT,
        rate_limiter=WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL),
    )
    logger.info(
        "🚀 应用已启动 | env=%s | storage=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.STORAGE_BACKEND,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    if settings.STORAGE_BACKEND == "mongo":
        await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="多房间实时聊天中继",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.CLIENT_ORIGIN],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(chat_endpoints.router, tags=["Chat History & Presence"])
app.include_router(chat_ws.router, tags=["WebSocket Chat"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(PersistenceError)
async def persistence_exception_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """存储不可用时返回 503，客户端可稍后重试。"""
    logger.warning("存储不可用: %s %s -> %s", request.method, request.url, exc)
    response = ApiResponse.fail(msg="存储暂不可用，请稍后重试", code=503, data=None)
    return JSONResponse(status_code=503, content=response.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


@app.get("/", tags=["System"])
async def root() -> dict:
    return {"message": f"{settings.PROJECT_NAME} is running"}


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。"""
    broker: ChatBroker = request.app.state.broker
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "storage": settings.STORAGE_BACKEND,
            "online": broker.connections.online_count,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
