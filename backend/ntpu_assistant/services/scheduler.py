"""
Scheduler - 背景排程
啟動暖機、每日 03:00 暖機、04:00 清理與定期更新指標；所有工作在 stop() 時依序取消
"""
import asyncio
import logging
import time
from datetime import tzinfo
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from ntpu_assistant.core.clock import TAIPEI, Clock, seconds_until
from ntpu_assistant.core.errors import NTPUError
from ntpu_assistant.services.bm25_index import BM25Index
from ntpu_assistant.services.cache_store import FAMILY_MODELS, CacheStore
from ntpu_assistant.services.metrics import Metrics
from ntpu_assistant.services.rate_limiter import KeyedLimiter
from ntpu_assistant.services.readiness import ReadinessGate
from ntpu_assistant.services.sticker_manager import StickerManager
from ntpu_assistant.services.warmup import WarmupService

logger = logging.getLogger(__name__)


class Scheduler:
    """
    背景工作管理

    - 每個工作各自一個 task，NTPUError 只記錄並等下一輪
    - 未預期的例外以 logger.exception 記錄後該工作結束，不重新啟動
    - 第一次暖機結束（不論成敗）後標記 readiness
    """

    def __init__(self, store: CacheStore, warmup: WarmupService, readiness: ReadinessGate,
                 modules: Sequence[str], warmup_hour: int = 3, cleanup_hour: int = 4,
                 cleanup_initial_delay: float = 30.0, warmup_timeout: float = 7200.0,
                 metrics_interval: float = 300.0, bm25: Optional[BM25Index] = None,
                 stickers: Optional[StickerManager] = None, metrics: Optional[Metrics] = None,
                 limiters: Sequence[KeyedLimiter] = (), clock: Optional[Clock] = None,
                 tz: tzinfo = TAIPEI, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.warmup = warmup
        self.readiness = readiness
        self.modules = list(modules)
        self.warmup_hour = warmup_hour
        self.cleanup_hour = cleanup_hour
        self.cleanup_initial_delay = cleanup_initial_delay
        self.warmup_timeout = warmup_timeout
        self.metrics_interval = metrics_interval
        self.bm25 = bm25
        self.stickers = stickers
        self.metrics = metrics
        self.limiters = list(limiters)
        self.clock = clock or Clock()
        self.tz = tz
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        jobs = {
            "warmup": self._warmup_loop,
            "cleanup": self._cleanup_loop,
            "metrics": self._metrics_loop,
        }
        for name, job in jobs.items():
            self._tasks.append(asyncio.create_task(self._guard(name, job), name=f"scheduler-{name}"))
        logger.info("[Scheduler] 已啟動（暖機 %02d:00、清理 %02d:00）", self.warmup_hour, self.cleanup_hour)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[Scheduler] 已停止")

    async def _guard(self, name: str, job: Callable[[], Awaitable[None]]) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            logger.debug("[Scheduler] %s 工作已取消", name)
            raise
        except Exception:
            logger.exception("[Scheduler] %s 工作發生未預期錯誤，停止此工作", name)

    async def _sleep_until(self, hour: int) -> None:
        await self._sleep(seconds_until(self.clock.now(), hour, self.tz))

    # ------------------------------------------------------------------
    # warmup
    # ------------------------------------------------------------------

    async def run_warmup_once(self, warm_id: bool = False) -> bool:
        """執行一次暖機，超過 warmup_timeout 即取消；回傳是否成功"""
        try:
            async with asyncio.timeout(self.warmup_timeout):
                await self.warmup.run(self.modules, warm_id=warm_id)
            return True
        except TimeoutError:
            logger.error("[Scheduler] 暖機超過 %.0fs，已取消", self.warmup_timeout)
        except NTPUError as e:
            logger.error("[Scheduler] 暖機失敗: %s", e)
        return False

    async def bootstrap(self) -> None:
        """啟動時：載入頭像、重建索引、完整暖機（含學號），結束後標記就緒"""
        try:
            if self.stickers is not None:
                try:
                    await self.stickers.load()
                except NTPUError as e:
                    logger.warning("[Scheduler] 頭像載入失敗: %s", e)
            if self.bm25 is not None:
                try:
                    await asyncio.to_thread(self.bm25.rebuild_from_store, self.store)
                except NTPUError as e:
                    logger.warning("[Scheduler] 啟動時重建索引失敗: %s", e)
            await self.run_warmup_once(warm_id=True)
        finally:
            self.readiness.mark_ready()

    async def _warmup_loop(self) -> None:
        await self.bootstrap()
        while True:
            await self._sleep_until(self.warmup_hour)
            logger.info("[Scheduler] 開始每日暖機")
            await self.run_warmup_once(warm_id=False)

    # ------------------------------------------------------------------
    # cleanup
    # ------------------------------------------------------------------

    async def run_cleanup_once(self) -> Dict[str, int]:
        started = time.monotonic()
        deleted = await asyncio.to_thread(self.store.cleanup_expired)
        if self.bm25 is not None and deleted.get("syllabi"):
            await asyncio.to_thread(self.bm25.rebuild_from_store, self.store)
        duration = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_job("cleanup", "all", duration)
        logger.info("[Scheduler] 清理完成 (%.1fs): %s", duration,
                    ", ".join(f"{k}={v}" for k, v in deleted.items()))
        return deleted

    async def _cleanup_shielded(self) -> None:
        task = asyncio.ensure_future(self.run_cleanup_once())
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # 清理進行中不中斷，等它結束再傳遞取消
            await asyncio.wait([task])
            raise

    async def _cleanup_loop(self) -> None:
        await self._sleep(self.cleanup_initial_delay)
        try:
            await self._cleanup_shielded()
        except NTPUError as e:
            logger.error("[Scheduler] 啟動清理失敗: %s", e)
        while True:
            await self._sleep_until(self.cleanup_hour)
            try:
                await self._cleanup_shielded()
            except NTPUError as e:
                logger.error("[Scheduler] 清理失敗: %s", e)

    # ------------------------------------------------------------------
    # metrics
    # ------------------------------------------------------------------

    async def update_metrics(self) -> None:
        if self.metrics is None:
            return
        for family in FAMILY_MODELS:
            count = await asyncio.to_thread(self.store.count, family)
            self.metrics.set_cache_size(family, count)
        if self.bm25 is not None:
            self.metrics.set_index_size("syllabus", self.bm25.count())
        for limiter in self.limiters:
            self.metrics.set_active_keys(limiter.name, limiter.active_count())

    async def _metrics_loop(self) -> None:
        while True:
            try:
                await self.update_metrics()
            except NTPUError as e:
                logger.warning("[Scheduler] 更新指標失敗: %s", e)
            await self._sleep(self.metrics_interval)
