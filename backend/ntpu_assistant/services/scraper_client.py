"""
Scraper Client - 上游抓取客戶端
依類別（lms / sea）維護有序的備援網址清單，負責節流、重試與退避
"""
import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.core.timeouts import UPSTREAM_HEAD_TIMEOUT
from ntpu_assistant.services.metrics import Metrics

logger = logging.getLogger(__name__)

EXTERNAL = "external"

_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:127.0) Gecko/20100101 Firefox/127.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:127.0) Gecko/20100101 Firefox/127.0",
]

_DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "zh-TW,zh;q=0.9,en-US;q=0.8,en;q=0.7",
}


def decode_body(response: httpx.Response) -> str:
    """依 Content-Type 解碼，宣告 Big5 的頁面用 cp950（Big5 超集）"""
    content_type = response.headers.get("content-type", "").lower()
    if "big5" in content_type:
        return response.content.decode("cp950", errors="replace")
    return response.text


class ScraperClient:
    """
    上游 HTTP 客戶端

    - 同一類別的請求之間至少間隔 min_interval 秒
    - 網路錯誤、逾時、429 與 5xx 以 initial_delay * 2^attempt 退避並輪替網址
    - 其他 4xx 直接失敗
    - max_retries 為第一次之後的重試次數
    """

    def __init__(
        self,
        base_urls: Mapping[str, List[str]],
        timeout: float = 60.0,
        max_retries: int = 10,
        initial_delay: float = 4.0,
        max_delay: float = 60.0,
        min_interval: float = 2.0,
        max_concurrency: int = 8,
        jitter: bool = True,
        metrics: Optional[Metrics] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_urls: Dict[str, List[str]] = {
            category: [u.rstrip("/") for u in urls] for category, urls in base_urls.items()
        }
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.min_interval = min_interval
        self.jitter = jitter
        self.metrics = metrics
        self._sleep = sleep

        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers=_DEFAULT_HEADERS,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=max(max_concurrency, 1) * 2,
                                max_keepalive_connections=10),
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._index: Dict[str, int] = {category: 0 for category in self.base_urls}
        self._pace_locks: Dict[str, asyncio.Lock] = {}
        self._last_request: Dict[str, float] = {}
        self.bytes_by_module: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # base url selection
    # ------------------------------------------------------------------

    def current_base(self, category: str) -> str:
        urls = self.base_urls.get(category)
        if not urls:
            raise UpstreamError(category, "config", message="no base URLs configured")
        return urls[self._index.get(category, 0) % len(urls)]

    def _rotate(self, category: str, failed_base: str) -> None:
        urls = self.base_urls.get(category) or []
        if len(urls) < 2:
            return
        # 其他請求可能已經輪替過
        if self.current_base(category) != failed_base:
            return
        self._index[category] = (self._index.get(category, 0) + 1) % len(urls)
        logger.info("[Scraper] %s 改用備援網址 %s", category, self.current_base(category))

    def category_for_url(self, url: str) -> Optional[str]:
        host = urlsplit(url).netloc.lower()
        for category, urls in self.base_urls.items():
            if any(urlsplit(base).netloc.lower() == host for base in urls):
                return category
        return None

    # ------------------------------------------------------------------
    # pacing / backoff
    # ------------------------------------------------------------------

    async def _pace(self, category: str) -> None:
        if self.min_interval <= 0:
            return
        lock = self._pace_locks.setdefault(category, asyncio.Lock())
        async with lock:
            last = self._last_request.get(category)
            if last is not None:
                wait = last + self.min_interval - time.monotonic()
                if wait > 0:
                    await self._sleep(wait)
            self._last_request[category] = time.monotonic()

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失敗後的等待秒數（±25% 抖動）"""
        delay = min(self.initial_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay = delay * 0.75 + random.uniform(0, delay / 2)
        return delay

    # ------------------------------------------------------------------
    # requests
    # ------------------------------------------------------------------

    async def _send(self, category: str, bases: Optional[List[str]], path: str, method: str,
                    params: Optional[Mapping] = None, data: Optional[Mapping] = None,
                    module: Optional[str] = None, content: Optional[str] = None,
                    max_retries: Optional[int] = None) -> httpx.Response:
        module = module or category
        headers = {}
        if content is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        started = time.monotonic()
        retries = self.max_retries if max_retries is None else max_retries
        attempts = retries + 1
        kind = "network"
        last_status: Optional[int] = None
        message = ""

        for attempt in range(attempts):
            base = bases[0] if bases else self.current_base(category)
            url = base + path
            retry_after = 0.0
            try:
                await self._pace(category)
                async with self._semaphore:
                    response = await self._client.request(
                        method, url, params=params, data=data, content=content,
                        headers={**headers, "User-Agent": random.choice(_USER_AGENTS)},
                    )
            except httpx.TimeoutException as e:
                kind, last_status, message = "timeout", None, str(e) or type(e).__name__
                if bases is None:
                    self._rotate(category, base)
            except httpx.TransportError as e:
                kind, last_status, message = "network", None, str(e) or type(e).__name__
                if bases is None:
                    self._rotate(category, base)
            else:
                status = response.status_code
                if 200 <= status < 300:
                    size = len(response.content)
                    self.bytes_by_module[module] = self.bytes_by_module.get(module, 0) + size
                    if attempt > 0:
                        logger.info("[Scraper] %s 第 %d 次嘗試成功", url, attempt + 1)
                    self._record(module, "success", started)
                    return response
                kind, last_status, message = "status", status, url
                if status == 429:
                    retry_after = _retry_after_seconds(response)
                elif status >= 500:
                    if bases is None:
                        self._rotate(category, base)
                else:
                    self._record(module, "error", started)
                    raise UpstreamError(category, "status", status, url)

            if attempt < attempts - 1:
                delay = max(self.backoff_delay(attempt), min(retry_after, self.max_delay))
                logger.debug("[Scraper] %s 失敗 (%s)，%.1f 秒後重試 (%d/%d)",
                             url, message, delay, attempt + 1, retries)
                await self._sleep(delay)

        self._record(module, "error", started)
        logger.warning("[Scraper] %s%s 重試 %d 次後仍失敗: %s %s",
                       category, path, retries, kind, last_status or message)
        raise UpstreamError(category, kind, last_status, message)

    def _record(self, module: str, status: str, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_scrape(module, status, time.monotonic() - started)

    async def request(self, category: str, path: str, params: Optional[Mapping] = None,
                      data: Optional[Mapping] = None, method: Optional[str] = None,
                      module: Optional[str] = None, max_retries: Optional[int] = None) -> httpx.Response:
        method = method or ("POST" if data is not None else "GET")
        if not path.startswith("/"):
            path = "/" + path
        return await self._send(category, None, path, method, params, data, module,
                                max_retries=max_retries)

    async def post_form(self, category: str, path: str, body: str, module: Optional[str] = None,
                        max_retries: Optional[int] = None) -> httpx.Response:
        """送出已編碼的表單（例如 Big5 編碼的查詢字串）"""
        return await self._send(category, None, path, "POST", module=module, content=body,
                                max_retries=max_retries)

    async def fetch(self, category: str, path: str, params: Optional[Mapping] = None,
                    data: Optional[Mapping] = None, method: Optional[str] = None,
                    module: Optional[str] = None, max_retries: Optional[int] = None) -> bytes:
        response = await self.request(category, path, params, data, method, module, max_retries)
        return response.content

    async def fetch_url(self, url: str, module: Optional[str] = None,
                        max_retries: Optional[int] = None) -> httpx.Response:
        """
        抓取完整網址

        網址屬於已設定的類別時改走該類別的備援清單，否則只對該網址重試
        """
        parts = urlsplit(url)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        category = self.category_for_url(url)
        if category is not None:
            return await self._send(category, None, path, "GET", module=module, max_retries=max_retries)
        origin = f"{parts.scheme}://{parts.netloc}"
        return await self._send(EXTERNAL, [origin], path, "GET", module=module or EXTERNAL,
                                max_retries=max_retries)

    async def get_document(self, category: str, path: str, params: Optional[Mapping] = None,
                           data: Optional[Mapping] = None, module: Optional[str] = None,
                           max_retries: Optional[int] = None) -> BeautifulSoup:
        response = await self.request(category, path, params, data, module=module, max_retries=max_retries)
        return BeautifulSoup(decode_body(response), "html.parser")

    async def get_document_url(self, url: str, module: Optional[str] = None,
                               max_retries: Optional[int] = None) -> BeautifulSoup:
        response = await self.fetch_url(url, module=module, max_retries=max_retries)
        return BeautifulSoup(decode_body(response), "html.parser")

    async def check_category(self, category: str) -> Optional[str]:
        """
        以 HEAD 請求依序檢查備援網址

        回傳第一個狀態碼小於 500 的網址並設為目前網址，全部失敗回傳 None
        """
        for index, base in enumerate(self.base_urls.get(category, [])):
            try:
                response = await self._client.head(base, timeout=UPSTREAM_HEAD_TIMEOUT)
            except httpx.HTTPError as e:
                logger.debug("[Scraper] HEAD %s 失敗: %s", base, e)
                continue
            if response.status_code < 500:
                self._index[category] = index
                return base
        logger.warning("[Scraper] %s 所有備援網址都無法連線", category)
        return None

    async def close(self) -> None:
        await self._client.aclose()


def _retry_after_seconds(response: httpx.Response) -> float:
    value = response.headers.get("retry-after", "")
    try:
        seconds = float(value)
    except ValueError:
        return 0.0
    return seconds if seconds > 0 else 0.0
