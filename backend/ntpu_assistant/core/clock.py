"""
Clock - 時鐘抽象
排程與 readiness 透過 Clock 取得時間，測試可換成 ManualClock
"""
import time
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

TAIPEI = ZoneInfo("Asia/Taipei")


class Clock:
    """系統時鐘，now() 回傳固定時區的 aware datetime"""

    def __init__(self, tz: tzinfo = TAIPEI):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def unix(self) -> int:
        return int(time.time())

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """手動推進的時鐘"""

    def __init__(self, start: datetime, tz: tzinfo = TAIPEI):
        super().__init__(tz)
        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
        self._now = start.astimezone(tz)
        self._mono = 1000.0

    def now(self) -> datetime:
        return self._now

    def unix(self) -> int:
        return int(self._now.timestamp())

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)
        self._mono += seconds

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=self.tz)
        delta = (when - self._now).total_seconds()
        self._now = when.astimezone(self.tz)
        self._mono += max(delta, 0.0)


def next_run_at(now: datetime, hour: int, tz: tzinfo = TAIPEI) -> datetime:
    """
    下一次 hour:00 的時間點（以 tz 的牆上時鐘計算）

    已過今天的 hour:00 就排到隔天
    """
    local = now.astimezone(tz)
    target = datetime(local.year, local.month, local.day, hour, 0, 0, tzinfo=tz)
    if local >= target:
        next_day = local.date() + timedelta(days=1)
        target = datetime(next_day.year, next_day.month, next_day.day, hour, 0, 0, tzinfo=tz)
    return target


def seconds_until(now: datetime, hour: int, tz: tzinfo = TAIPEI) -> float:
    return (next_run_at(now, hour, tz) - now).total_seconds()


def local_midnight(now: datetime, tz: tzinfo = TAIPEI) -> datetime:
    """now 所在日期的 00:00（tz 時區）"""
    local = now.astimezone(tz)
    return datetime(local.year, local.month, local.day, tzinfo=tz)
