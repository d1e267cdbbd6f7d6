"""
Error Types - 錯誤類型
服務內部使用的例外階層，請求路徑只會把它們轉成安全的訊息
"""
from typing import List, Optional


class NTPUError(Exception):
    """所有服務例外的基底類別"""


class ConfigError(NTPUError):
    """啟動時設定驗證失敗（致命）"""


class StorageError(NTPUError):
    """快取讀寫失敗，op 為失敗的操作名稱"""

    def __init__(self, op: str, message: str = ""):
        self.op = op
        super().__init__(f"storage {op} failed" + (f": {message}" if message else ""))


class UpstreamError(NTPUError):
    """
    上游抓取在重試後仍失敗

    kind: network / timeout / status / parse
    """

    def __init__(self, category: str, kind: str, last_status: Optional[int] = None, message: str = ""):
        self.category = category
        self.kind = kind
        self.last_status = last_status
        detail = f"upstream {category} {kind}"
        if last_status is not None:
            detail += f" (status {last_status})"
        if message:
            detail += f": {message}"
        super().__init__(detail)

    @property
    def retryable(self) -> bool:
        return self.kind != "status" or (self.last_status or 0) >= 500 or self.last_status == 429


class RateLimitedError(NTPUError):
    """限流拒絕，layer 為拒絕的層級（user / hourly / daily / global）"""

    def __init__(self, layer: str):
        self.layer = layer
        super().__init__(f"rate limited by {layer} layer")


class NotReadyError(NTPUError):
    """服務仍在暖機，尚未就緒"""

    def __init__(self, reason: str = "data refresh in progress"):
        self.reason = reason
        super().__init__(reason)


class WarmupError(NTPUError):
    """一次暖機中必要模組失敗，errors 保留各模組的原始例外"""

    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"warmup failed ({len(self.errors)} module errors): {summary}")
