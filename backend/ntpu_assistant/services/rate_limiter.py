"""
Rate Limiter - 限流
Token bucket、以使用者為 key 的 bucket、LLM 用的雙層（每小時 + 每日）限流與 webhook 全域限流
"""
import asyncio
import logging
import threading
from datetime import date
from typing import Dict, List, Optional

from ntpu_assistant.core.clock import Clock
from ntpu_assistant.services.metrics import Metrics

logger = logging.getLogger(__name__)

SHARD_COUNT = 16


class TokenBucket:
    """
    Token bucket

    補充量 = 經過秒數 × refill_per_second，上限為 burst；allow() 消耗一個 token
    本身不加鎖，由持有者負責同步
    """

    def __init__(self, burst: float, refill_per_second: float, now: float):
        self.burst = float(burst)
        self.refill_per_second = float(refill_per_second)
        self.tokens = float(burst)
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(now - self.last_refill, 0.0)
        self.tokens = min(self.burst, self.tokens + elapsed * self.refill_per_second)
        self.last_refill = now

    def check(self, now: float) -> bool:
        self.refill(now)
        return self.tokens >= 1.0

    def consume(self) -> None:
        if self.tokens >= 1.0:
            self.tokens -= 1.0

    def allow(self, now: float) -> bool:
        if self.check(now):
            self.tokens -= 1.0
            return True
        return False

    def is_full(self, now: float) -> bool:
        self.refill(now)
        return self.tokens >= self.burst


class _Entry:
    __slots__ = ("bucket", "day", "daily_count")

    def __init__(self, bucket: TokenBucket):
        self.bucket = bucket
        self.day: Optional[date] = None
        self.daily_count = 0


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, _Entry] = {}


class KeyedLimiter:
    """
    以 key 區分的 token bucket

    key 依雜湊分散到多個 shard，每個 shard 一把鎖；空字串 key 一律放行
    """

    def __init__(self, name: str, burst: float, refill_per_second: float,
                 clock: Optional[Clock] = None, metrics: Optional[Metrics] = None):
        self.name = name
        self.burst = burst
        self.refill_per_second = refill_per_second
        self.clock = clock or Clock()
        self.metrics = metrics
        self._shards: List[_Shard] = [_Shard() for _ in range(SHARD_COUNT)]
        self._cleanup_task: Optional[asyncio.Task] = None

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % SHARD_COUNT]

    def _entry(self, shard: _Shard, key: str, now: float) -> _Entry:
        entry = shard.entries.get(key)
        if entry is None:
            entry = _Entry(TokenBucket(self.burst, self.refill_per_second, now))
            shard.entries[key] = entry
        return entry

    def _record(self, allowed: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit(self.name, allowed)

    def allow(self, key: str) -> bool:
        if not key:
            return True
        now = self.clock.monotonic()
        shard = self._shard(key)
        with shard.lock:
            allowed = self._entry(shard, key, now).bucket.allow(now)
        self._record(allowed)
        return allowed

    def remaining(self, key: str) -> int:
        """目前可用的整數 token 數，不消耗"""
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return int(self.burst)
            entry.bucket.refill(self.clock.monotonic())
            return int(entry.bucket.tokens)

    def active_count(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    def _reapable(self, entry: _Entry, now: float) -> bool:
        return entry.bucket.is_full(now)

    def cleanup(self) -> int:
        """移除已補滿的 key，回傳移除數量"""
        now = self.clock.monotonic()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [k for k, e in shard.entries.items() if self._reapable(e, now)]
                for key in stale:
                    del shard.entries[key]
                removed += len(stale)
        if self.metrics is not None:
            self.metrics.set_active_keys(self.name, self.active_count())
        return removed

    async def run_cleanup(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.cleanup()
            if removed:
                logger.debug("[RateLimiter] %s 清除 %d 個閒置 key", self.name, removed)

    def start(self, interval: float) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self.run_cleanup(interval), name=f"ratelimit-cleanup-{self.name}"
            )

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class LLMRateLimiter(KeyedLimiter):
    """
    LLM 呼叫的雙層限流

    每小時 bucket（burst, refill_per_hour）加上每日計數（當地午夜歸零），兩層都通過才放行
    """

    def __init__(self, burst: float, refill_per_hour: float, daily_limit: int,
                 clock: Optional[Clock] = None, metrics: Optional[Metrics] = None,
                 name: str = "llm"):
        super().__init__(name, burst, refill_per_hour / 3600.0, clock=clock, metrics=metrics)
        self.daily_limit = daily_limit

    def _today(self) -> date:
        return self.clock.now().date()

    def check(self, key: str) -> Optional[str]:
        """
        嘗試放行一次

        放行回傳 None，拒絕時回傳拒絕的層級 "daily" 或 "hourly"
        """
        if not key:
            return None
        now = self.clock.monotonic()
        today = self._today()
        shard = self._shard(key)
        with shard.lock:
            entry = self._entry(shard, key, now)
            if entry.day != today:
                entry.day = today
                entry.daily_count = 0
            if self.daily_limit > 0 and entry.daily_count >= self.daily_limit:
                layer = "daily"
            elif not entry.bucket.check(now):
                layer = "hourly"
            else:
                entry.bucket.consume()
                entry.daily_count += 1
                layer = None
        self._record(layer is None)
        return layer

    def allow(self, key: str) -> bool:
        return self.check(key) is None

    def daily_remaining(self, key: str) -> int:
        if self.daily_limit <= 0:
            return -1
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None or entry.day != self._today():
                return self.daily_limit
            return max(self.daily_limit - entry.daily_count, 0)

    def _reapable(self, entry: _Entry, now: float) -> bool:
        # 當日仍有用量的 key 要保留，否則每日上限會被重置
        used_today = entry.day == self._today() and entry.daily_count > 0
        return not used_today and entry.bucket.is_full(now)


class GlobalLimiter:
    """webhook 的全域限流（每秒 rps 個請求）"""

    def __init__(self, rps: float, clock: Optional[Clock] = None, metrics: Optional[Metrics] = None):
        self.clock = clock or Clock()
        self.metrics = metrics
        self._lock = threading.Lock()
        self._bucket = TokenBucket(rps, rps, self.clock.monotonic())

    def allow(self) -> bool:
        with self._lock:
            allowed = self._bucket.allow(self.clock.monotonic())
        if self.metrics is not None:
            self.metrics.record_rate_limit("global", allowed)
        return allowed
