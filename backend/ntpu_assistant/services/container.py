"""
Service Container - 服務組裝
依 Settings 建立所有服務並負責依序關閉
"""
import asyncio
import logging
from typing import Optional
from zoneinfo import ZoneInfo

from ntpu_assistant.core.clock import Clock
from ntpu_assistant.core.config import Settings
from ntpu_assistant.services.bm25_index import BM25Index
from ntpu_assistant.services.cache_store import CacheStore
from ntpu_assistant.services.chat_service import ChatService
from ntpu_assistant.services.llm_service import LLMService
from ntpu_assistant.services.metrics import Metrics
from ntpu_assistant.services.rate_limiter import GlobalLimiter, KeyedLimiter, LLMRateLimiter
from ntpu_assistant.services.readiness import ReadinessGate
from ntpu_assistant.services.scheduler import Scheduler
from ntpu_assistant.services.scraper_client import ScraperClient
from ntpu_assistant.services.sticker_manager import StickerManager
from ntpu_assistant.services.warmup import WarmupService

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(self, settings: Settings, store: CacheStore, client: ScraperClient,
                 clock: Optional[Clock] = None, metrics: Optional[Metrics] = None,
                 llm: Optional[LLMService] = None):
        self.settings = settings
        self.clock = clock or Clock(ZoneInfo(settings.TIMEZONE))
        self.metrics = metrics or Metrics()
        self.store = store
        self.client = client
        self.llm = llm if llm is not None else LLMService.from_settings(settings, self.metrics)
        self.bm25 = BM25Index(self.metrics)
        self.stickers = StickerManager(store, client)
        self.readiness = ReadinessGate(settings.WARMUP_GRACE_PERIOD, self.clock)

        self.user_limiter = KeyedLimiter(
            "user", settings.USER_RATE_BURST, settings.USER_RATE_REFILL,
            clock=self.clock, metrics=self.metrics,
        )
        self.llm_limiter = LLMRateLimiter(
            settings.LLM_RATE_BURST, settings.LLM_RATE_REFILL, settings.LLM_RATE_DAILY,
            clock=self.clock, metrics=self.metrics,
        )
        self.global_limiter = GlobalLimiter(settings.GLOBAL_RATE_RPS, clock=self.clock, metrics=self.metrics)

        self.warmup = WarmupService(
            store, client, bm25=self.bm25, metrics=self.metrics, clock=self.clock,
            llm_configured=self.llm.enabled,
            load_batch=settings.SYLLABUS_LOAD_BATCH, save_batch=settings.SYLLABUS_SAVE_BATCH,
        )
        self.scheduler = Scheduler(
            store, self.warmup, self.readiness, settings.warmup_modules,
            warmup_hour=settings.WARMUP_HOUR, cleanup_hour=settings.CLEANUP_HOUR,
            cleanup_initial_delay=settings.CLEANUP_INITIAL_DELAY,
            warmup_timeout=settings.WARMUP_TIMEOUT,
            metrics_interval=settings.METRICS_UPDATE_INTERVAL,
            bm25=self.bm25, stickers=self.stickers, metrics=self.metrics,
            limiters=[self.user_limiter, self.llm_limiter],
            clock=self.clock, tz=self.clock.tz,
        )
        self.chat = ChatService(
            store, client, self.user_limiter, llm_limiter=self.llm_limiter,
            bm25=self.bm25, llm=self.llm, stickers=self.stickers,
            metrics=self.metrics, clock=self.clock, timeout=settings.WEBHOOK_TIMEOUT,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        clock = Clock(ZoneInfo(settings.TIMEZONE))
        metrics = Metrics()
        store = CacheStore.open(
            settings.DATABASE_PATH, settings.CACHE_TTL, soft_ttl=settings.SOFT_TTL,
            clock=clock, evict_students=settings.EVICT_STUDENTS,
        )
        client = ScraperClient(
            settings.base_urls,
            timeout=settings.SCRAPER_TIMEOUT,
            max_retries=settings.SCRAPER_MAX_RETRIES,
            initial_delay=settings.SCRAPER_INITIAL_DELAY,
            max_delay=settings.SCRAPER_MAX_DELAY,
            min_interval=settings.SCRAPER_MIN_INTERVAL,
            max_concurrency=settings.SCRAPER_MAX_CONCURRENCY,
            metrics=metrics,
        )
        return cls(settings, store, client, clock=clock, metrics=metrics)

    async def start(self) -> None:
        interval = self.settings.RATE_LIMIT_CLEANUP_INTERVAL
        self.user_limiter.start(interval)
        self.llm_limiter.start(interval)
        if self.settings.MAINTENANCE_ENABLED:
            self.scheduler.start()
        else:
            logger.info("[Startup] 背景排程已停用")
            await asyncio.to_thread(self.bm25.rebuild_from_store, self.store)
        if not (self.settings.WAIT_FOR_WARMUP and self.settings.MAINTENANCE_ENABLED):
            self.readiness.mark_ready()

    async def shutdown(self) -> None:
        """排程 → LLM → 抓取客戶端 → 快取 → 限流清理"""
        await self.scheduler.stop()
        await self.llm.close()
        await self.client.close()
        await asyncio.to_thread(self.store.close)
        await self.user_limiter.stop()
        await self.llm_limiter.stop()
        logger.info("[Shutdown] Shutdown complete")
