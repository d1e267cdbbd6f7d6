"""
Health API - 存活與就緒檢查
"""
import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, RedirectResponse

from ntpu_assistant.api.deps import get_container
from ntpu_assistant.core.errors import StorageError
from ntpu_assistant.core.timeouts import READINESS_CHECK_TIMEOUT
from ntpu_assistant.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/", include_in_schema=False)
async def root(container: ServiceContainer = Depends(get_container)):
    return RedirectResponse(container.settings.REPOSITORY_URL, status_code=307)


@router.api_route("/livez", methods=["GET", "HEAD"])
async def livez():
    return {"status": "alive"}


def _cache_counts(container: ServiceContainer) -> dict:
    store = container.store
    return {
        "students": store.count_students(),
        "contacts": store.count_contacts(),
        "courses": store.count_courses(),
        "historical_courses": store.count_historical_courses(),
        "syllabi": store.count_syllabi(),
        "programs": store.count_programs(),
        "stickers": container.stickers.count(),
    }


@router.api_route("/readyz", methods=["GET", "HEAD"])
async def readyz(container: ServiceContainer = Depends(get_container)):
    """
    就緒檢查

    資料庫 ping 超過 3 秒或失敗回 503；暖機中也回 503 並附上進度
    """
    readiness = container.readiness.status()
    try:
        await asyncio.wait_for(asyncio.to_thread(container.store.ping), READINESS_CHECK_TIMEOUT)
        counts = await asyncio.to_thread(_cache_counts, container)
    except (StorageError, TimeoutError) as e:
        logger.warning("[Health] 資料庫檢查失敗: %s", e or "timeout")
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "reason": "database unavailable", "database": "unavailable",
                     "readiness": readiness},
        )

    llm_enabled = container.llm.enabled
    body = {
        "status": "ready" if readiness["ready"] else "not ready",
        "database": "connected",
        "readiness": readiness,
        "cache": counts,
        "features": {
            "bm25_search": container.bm25.is_enabled(),
            "nlu": llm_enabled,
            "query_expansion": llm_enabled and container.bm25.is_enabled(),
        },
    }
    return JSONResponse(status_code=200 if readiness["ready"] else 503, content=body)
