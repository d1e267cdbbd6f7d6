"""
Application - FastAPI 應用組裝
lifespan 負責啟動背景服務與依序關閉
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from ntpu_assistant.api import health, metrics, webhook
from ntpu_assistant.core.config import Settings, get_settings
from ntpu_assistant.core.errors import NotReadyError
from ntpu_assistant.services.container import ServiceContainer

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _log_level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 and status_code != 404:
        return logging.WARNING
    return logging.DEBUG


def create_app(settings: Optional[Settings] = None,
               container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    建立 FastAPI 應用

    測試時可直接傳入組好的 container；否則在 lifespan 中依 settings 建立
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = container or ServiceContainer.from_settings(settings)
        app.state.container = services
        logger.info("[Startup] %s %s 啟動中", settings.PROJECT_NAME, settings.VERSION)
        await services.start()
        try:
            yield
        finally:
            logger.info("[Shutdown] 開始關閉服務")
            await services.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        logger.log(
            _log_level_for(response.status_code),
            "[HTTP] %s %s %d (%.1fms)",
            request.method, request.url.path, response.status_code,
            (time.monotonic() - started) * 1000,
        )
        return response

    app.add_exception_handler(NotReadyError, webhook.not_ready_handler)
    app.include_router(health.router)
    app.include_router(webhook.router)
    app.include_router(metrics.router)
    return app
