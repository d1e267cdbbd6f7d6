"""
Sticker Manager - 回覆頭像
啟動時從快取載入，快取沒有資料才到網路抓一次；全部來源失敗時使用產生的頭像
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, Tuple

from ntpu_assistant.core.errors import StorageError, UpstreamError
from ntpu_assistant.core.timeouts import STICKER_FETCH_RETRIES
from ntpu_assistant.schemas.cache import Sticker
from ntpu_assistant.services.cache_store import CacheStore
from ntpu_assistant.services.scraper_client import ScraperClient
from ntpu_assistant.services.scrapers import stickers as sticker_scraper

logger = logging.getLogger(__name__)


class StickerManager:
    def __init__(self, store: CacheStore, client: ScraperClient,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.client = client
        self._sleep = sleep
        self._stickers: List[str] = []
        self.loaded = False

    def count(self) -> int:
        return len(self._stickers)

    def random_url(self) -> str:
        """隨機挑一張；尚未載入時使用產生的頭像"""
        pool = self._stickers or sticker_scraper.fallback_stickers()
        return random.choice(pool)

    async def load(self) -> int:
        try:
            cached = await asyncio.to_thread(self.store.get_all_stickers)
        except StorageError as e:
            logger.warning("[Sticker] 讀取快取失敗，改從網路抓取: %s", e)
            cached = []
        if cached:
            self._stickers = [s.url for s in cached]
            self.loaded = True
            logger.info("[Sticker] 從快取載入 %d 張", len(cached))
            return len(cached)
        logger.info("[Sticker] 快取沒有資料，從網路抓取")
        return await self.refresh()

    async def _fetch_with_retry(self, url: str, source: str) -> List[str]:
        last_error: Optional[Exception] = None
        for attempt in range(STICKER_FETCH_RETRIES):
            if attempt > 0:
                await self._sleep(2 ** attempt)
            try:
                urls = await sticker_scraper.fetch_page(self.client, url, source)
            except UpstreamError as e:
                last_error = e
                continue
            if urls:
                return urls
            last_error = UpstreamError("external", "parse", message=f"no stickers found on {url}")
        raise last_error

    async def refresh(self) -> int:
        sources: List[Tuple[str, str]] = [(u, "spy_family") for u in sticker_scraper.SPY_FAMILY_PAGES]
        sources.append((sticker_scraper.ICHIGO_PAGE, "ichigo"))
        results = await asyncio.gather(
            *(self._fetch_with_retry(url, source) for url, source in sources),
            return_exceptions=True,
        )

        stickers: List[Sticker] = []
        failed = 0
        for (url, source), result in zip(sources, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failed += 1
                logger.warning("[Sticker] %s 抓取失敗: %s", url, result)
                continue
            stickers.extend(Sticker(url=u, source=source, success_count=1) for u in result)

        if not stickers:
            logger.warning("[Sticker] 所有來源都失敗，使用產生的頭像")
            stickers = [Sticker(url=u, source="fallback") for u in sticker_scraper.fallback_stickers()]

        try:
            await asyncio.to_thread(self.store.save_stickers_batch, stickers)
        except StorageError as e:
            logger.warning("[Sticker] 寫入快取失敗: %s", e)

        self._stickers = [s.url for s in stickers]
        self.loaded = True
        logger.info("[Sticker] 載入 %d 張 (成功來源 %d, 失敗 %d)",
                    len(stickers), len(sources) - failed, failed)
        return len(stickers)
