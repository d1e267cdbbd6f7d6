"""
Metrics Service - Prometheus 指標
每個 Metrics 實例擁有自己的 CollectorRegistry，測試之間互不干擾
"""
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_JOB_BUCKETS = (1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200)
_REQUEST_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60)


class Metrics:
    """集中管理服務指標"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.webhook_total = Counter(
            "ntpu_webhook_total", "Webhook events processed",
            ["event_type", "status"], registry=r,
        )
        self.webhook_duration = Histogram(
            "ntpu_webhook_duration_seconds", "Webhook processing time",
            buckets=_REQUEST_BUCKETS, registry=r,
        )
        self.scraper_total = Counter(
            "ntpu_scraper_total", "Upstream scrape requests",
            ["module", "status"], registry=r,
        )
        self.scraper_duration = Histogram(
            "ntpu_scraper_duration_seconds", "Upstream scrape latency",
            ["module"], buckets=_REQUEST_BUCKETS, registry=r,
        )
        self.cache_operations = Counter(
            "ntpu_cache_operations_total", "Cache lookups",
            ["module", "result"], registry=r,
        )
        self.cache_size = Gauge(
            "ntpu_cache_size", "Cached rows per family",
            ["module"], registry=r,
        )
        self.llm_total = Counter(
            "ntpu_llm_total", "LLM calls",
            ["operation", "status"], registry=r,
        )
        self.llm_duration = Histogram(
            "ntpu_llm_duration_seconds", "LLM call latency",
            ["operation"], buckets=_REQUEST_BUCKETS, registry=r,
        )
        self.search_total = Counter(
            "ntpu_search_total", "Syllabus searches",
            ["type", "status"], registry=r,
        )
        self.search_duration = Histogram(
            "ntpu_search_duration_seconds", "Syllabus search latency",
            ["type"], buckets=_REQUEST_BUCKETS, registry=r,
        )
        self.index_size = Gauge(
            "ntpu_index_size", "Documents in search indexes",
            ["index"], registry=r,
        )
        self.rate_limiter_allowed = Counter(
            "ntpu_rate_limiter_allowed_total", "Requests admitted by rate limiters",
            ["limiter"], registry=r,
        )
        self.rate_limiter_dropped = Counter(
            "ntpu_rate_limiter_dropped_total", "Requests rejected by rate limiters",
            ["limiter"], registry=r,
        )
        self.rate_limiter_active_keys = Gauge(
            "ntpu_rate_limiter_active_keys", "Tracked keys per rate limiter",
            ["limiter"], registry=r,
        )
        self.job_duration = Histogram(
            "ntpu_job_duration_seconds", "Background job duration",
            ["job", "module"], buckets=_JOB_BUCKETS, registry=r,
        )
        self.warmup_rows = Counter(
            "ntpu_warmup_rows_total", "Rows handled by warmup modules",
            ["module", "outcome"], registry=r,
        )

    # ------------------------------------------------------------------
    # recording helpers
    # ------------------------------------------------------------------

    def record_webhook(self, event_type: str, status: str, seconds: float) -> None:
        self.webhook_total.labels(event_type=event_type, status=status).inc()
        self.webhook_duration.observe(seconds)

    def record_scrape(self, module: str, status: str, seconds: float) -> None:
        self.scraper_total.labels(module=module, status=status).inc()
        self.scraper_duration.labels(module=module).observe(seconds)

    def record_cache(self, module: str, hit: bool) -> None:
        self.cache_operations.labels(module=module, result="hit" if hit else "miss").inc()

    def record_llm(self, operation: str, status: str, seconds: float) -> None:
        self.llm_total.labels(operation=operation, status=status).inc()
        self.llm_duration.labels(operation=operation).observe(seconds)

    def record_search(self, search_type: str, status: str, seconds: float) -> None:
        self.search_total.labels(type=search_type, status=status).inc()
        self.search_duration.labels(type=search_type).observe(seconds)

    def record_rate_limit(self, limiter: str, allowed: bool) -> None:
        if allowed:
            self.rate_limiter_allowed.labels(limiter=limiter).inc()
        else:
            self.rate_limiter_dropped.labels(limiter=limiter).inc()

    def set_active_keys(self, limiter: str, count: int) -> None:
        self.rate_limiter_active_keys.labels(limiter=limiter).set(count)

    def record_job(self, job: str, module: str, seconds: float) -> None:
        self.job_duration.labels(job=job, module=module).observe(seconds)

    def record_warmup_rows(self, module: str, updated: int, skipped: int, errors: int) -> None:
        for outcome, value in (("updated", updated), ("skipped", skipped), ("error", errors)):
            if value:
                self.warmup_rows.labels(module=module, outcome=outcome).inc(value)

    def set_cache_size(self, module: str, count: int) -> None:
        self.cache_size.labels(module=module).set(count)

    def set_index_size(self, index: str, count: int) -> None:
        self.index_size.labels(index=index).set(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST
