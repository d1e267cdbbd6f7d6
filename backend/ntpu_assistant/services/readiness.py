"""
Readiness Gate - 暖機期間的流量閘門
第一次暖機完成前 webhook 回 503；超過寬限期後即使暖機未完成也放行
"""
import logging
import threading
from typing import Dict, Optional

from ntpu_assistant.core.clock import Clock

logger = logging.getLogger(__name__)


class ReadinessGate:
    def __init__(self, timeout: float, clock: Optional[Clock] = None):
        self.timeout = timeout
        self.clock = clock or Clock()
        self._started = self.clock.monotonic()
        self._ready = False
        self._lock = threading.Lock()

    def elapsed(self) -> float:
        return self.clock.monotonic() - self._started

    def is_ready(self) -> bool:
        with self._lock:
            if self._ready:
                return True
        return self.elapsed() >= self.timeout

    def mark_ready(self) -> None:
        with self._lock:
            if self._ready:
                return
            self._ready = True
        logger.info("[Readiness] 服務已就緒（%.1fs）", self.elapsed())

    def status(self) -> Dict[str, object]:
        with self._lock:
            ready = self._ready
        elapsed = self.elapsed()
        if ready:
            reason = "ready"
        elif elapsed >= self.timeout:
            ready = True
            reason = "grace period elapsed"
        else:
            reason = "data refresh in progress"
        return {
            "ready": ready,
            "reason": reason,
            "elapsed_seconds": round(elapsed, 1),
            "timeout_seconds": self.timeout,
        }
