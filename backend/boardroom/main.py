"""
Boardroom - FastAPI 应用入口
Turn-taking multi-agent discussion engine
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from boardroom.config import settings
from boardroom.api.router import api_router
from boardroom.core.exceptions import DiscussionError
from boardroom.core.observability import MetricsMiddleware, metrics_store


def configure_logging() -> None:
    """配置结构化日志（stdlib 负责级别过滤，structlog 负责渲染）"""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )
    renderer = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if settings.LOG_FORMAT == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        store_backend=settings.LOCAL_STORE_BACKEND,
        default_provider=settings.LLM_DEFAULT_PROVIDER,
    )
    yield
    logger.info("application_shutting_down", metrics=metrics_store.snapshot()["discussions"])


def _register_service_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["Health"])
    async def health_check():
        """健康检查，附带当前生效的讨论限制"""
        return {
            "status": "healthy",
            "app_name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "store_backend": settings.LOCAL_STORE_BACKEND,
            "limits": {
                "max_speeches_per_participant": settings.DISCUSSION_MAX_SPEECHES_PER_PARTICIPANT,
                "max_rounds": settings.DISCUSSION_MAX_ROUNDS,
                "advance_timeout_seconds": settings.DISCUSSION_ADVANCE_TIMEOUT,
            },
        }

    @app.get("/metrics", tags=["Observability"])
    async def metrics():
        """核心运行指标"""
        return metrics_store.snapshot()

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "message": f"Welcome to {settings.APP_NAME}",
            "api": settings.API_PREFIX,
            "docs": "/docs",
            "health": "/health",
        }


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DiscussionError)
    async def discussion_error_handler(request: Request, exc: DiscussionError):
        # 5xx 记为错误，其余属于调用方可处理的拒绝
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "discussion_request_failed",
            path=request.url.path,
            method=request.method,
            error_type=exc.error_type,
            error=exc.message,
        )
        content = {"detail": exc.message, "error_type": exc.error_type}
        if exc.retryable:
            content["retryable"] = True
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error_type": "internal_error",
                "message": str(exc) if settings.DEBUG else "An unexpected error occurred",
            },
        )


def create_application() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
## Boardroom discussion engine

Moderated multi-agent discussions: a manager persona opens, expert personas
and the user take turns under a per-seat speech quota and a round limit, and
the manager closes with a short summary.
        """,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)

    app.include_router(api_router, prefix=settings.API_PREFIX)
    _register_service_routes(app)
    _register_exception_handlers(app)
    return app


app = create_application()


def main():
    """主入口函数"""
    import uvicorn

    uvicorn.run(
        "boardroom.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
