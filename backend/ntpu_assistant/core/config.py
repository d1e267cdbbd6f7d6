import os
import re
from functools import lru_cache
from typing import Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings

from ntpu_assistant.core.errors import ConfigError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

DEFAULT_LMS_URLS = "http://120.126.197.52,https://120.126.197.52,https://lms.ntpu.edu.tw"
DEFAULT_SEA_URLS = "http://120.126.197.7,https://120.126.197.7,https://sea.cc.ntpu.edu.tw"

KNOWN_WARMUP_MODULES = ("contact", "program", "id", "course", "syllabus")
KNOWN_LLM_PROVIDERS = ("gemini", "groq", "cerebras", "openai")


def parse_duration(value) -> float:
    """
    解析時間長度為秒數

    接受數字（秒）或 "168h"、"10m"、"1h30m"、"500ms" 這類字串
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    PROJECT_NAME: str = "NTPU Assistant"
    VERSION: str = "1.0.0"
    REPOSITORY_URL: str = "https://github.com/garyellow/ntpu-linebot-go"

    # Server
    PORT: int = 10000
    LOG_LEVEL: str = "info"
    DATA_DIR: str = "./data"
    WEBHOOK_TIMEOUT: float = 60.0
    SHUTDOWN_TIMEOUT: float = 70.0
    LINE_CHANNEL_SECRET: str = ""

    # Cache
    CACHE_TTL: float = 168 * 3600.0
    SOFT_TTL: float = 120 * 3600.0
    EVICT_STUDENTS: bool = False

    # Scraper
    SCRAPER_TIMEOUT: float = 60.0
    SCRAPER_MAX_RETRIES: int = 10
    SCRAPER_INITIAL_DELAY: float = 4.0
    SCRAPER_MAX_DELAY: float = 60.0
    SCRAPER_MIN_INTERVAL: float = 2.0
    SCRAPER_MAX_CONCURRENCY: int = 8
    LMS_BASE_URLS: str = DEFAULT_LMS_URLS
    SEA_BASE_URLS: str = DEFAULT_SEA_URLS

    # Warmup / scheduling
    WARMUP_GRACE_PERIOD: float = 600.0
    WAIT_FOR_WARMUP: bool = True
    WARMUP_MODULES: str = "contact,program,course,syllabus"
    WARMUP_TIMEOUT: float = 2 * 3600.0
    WARMUP_HOUR: int = 3
    CLEANUP_HOUR: int = 4
    CLEANUP_INITIAL_DELAY: float = 30.0
    METRICS_UPDATE_INTERVAL: float = 300.0
    MAINTENANCE_ENABLED: bool = True
    TIMEZONE: str = "Asia/Taipei"
    SYLLABUS_LOAD_BATCH: int = 100
    SYLLABUS_SAVE_BATCH: int = 50

    # Rate limits
    USER_RATE_BURST: float = 15
    USER_RATE_REFILL: float = 0.1
    LLM_RATE_BURST: float = 60
    LLM_RATE_REFILL: float = 30
    LLM_RATE_DAILY: int = 180
    GLOBAL_RATE_RPS: float = 100
    RATE_LIMIT_CLEANUP_INTERVAL: float = 300.0

    # LLM providers (OpenAI-compatible endpoints)
    LLM_ENABLED: bool = False
    LLM_PROVIDERS: str = "gemini,groq,cerebras,openai"
    GEMINI_API_KEY: str = ""
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    GEMINI_MODELS: str = "gemini-2.5-flash,gemini-2.5-flash-lite"
    GROQ_API_KEY: str = ""
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_MODELS: str = "llama-3.3-70b-versatile,llama-3.1-8b-instant"
    CEREBRAS_API_KEY: str = ""
    CEREBRAS_BASE_URL: str = "https://api.cerebras.ai/v1"
    CEREBRAS_MODELS: str = "llama-3.3-70b"
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODELS: str = "gpt-4o-mini"
    LLM_TIMEOUT: float = 30.0

    # Metrics
    METRICS_USERNAME: str = "prometheus"
    METRICS_PASSWORD: str = ""

    @field_validator(
        "WEBHOOK_TIMEOUT", "SHUTDOWN_TIMEOUT", "CACHE_TTL", "SOFT_TTL",
        "SCRAPER_TIMEOUT", "SCRAPER_INITIAL_DELAY", "SCRAPER_MAX_DELAY",
        "SCRAPER_MIN_INTERVAL", "WARMUP_GRACE_PERIOD", "WARMUP_TIMEOUT",
        "CLEANUP_INITIAL_DELAY", "METRICS_UPDATE_INTERVAL",
        "RATE_LIMIT_CLEANUP_INTERVAL", "LLM_TIMEOUT",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value):
        return parse_duration(value)

    @property
    def DATABASE_PATH(self) -> str:
        return os.path.join(self.DATA_DIR, "cache.db")

    @property
    def base_urls(self) -> Dict[str, List[str]]:
        return {
            "lms": _split_list(self.LMS_BASE_URLS),
            "sea": _split_list(self.SEA_BASE_URLS),
        }

    @property
    def warmup_modules(self) -> List[str]:
        return [m.lower() for m in _split_list(self.WARMUP_MODULES)]

    @property
    def llm_providers(self) -> List[str]:
        """已設定 API key 的供應商，依 LLM_PROVIDERS 的順序"""
        keys = {
            "gemini": self.GEMINI_API_KEY,
            "groq": self.GROQ_API_KEY,
            "cerebras": self.CEREBRAS_API_KEY,
            "openai": self.OPENAI_API_KEY,
        }
        return [p for p in (x.lower() for x in _split_list(self.LLM_PROVIDERS)) if keys.get(p)]

    def provider_settings(self, provider: str) -> Dict[str, object]:
        prefix = provider.upper()
        return {
            "api_key": getattr(self, f"{prefix}_API_KEY"),
            "base_url": getattr(self, f"{prefix}_BASE_URL"),
            "models": _split_list(getattr(self, f"{prefix}_MODELS")),
        }

    @property
    def llm_configured(self) -> bool:
        return self.LLM_ENABLED and bool(self.llm_providers)

    def validate_runtime(self) -> "Settings":
        """語意層面的檢查，失敗時拋出 ConfigError"""
        problems = []
        if not 0 < self.PORT < 65536:
            problems.append(f"PORT out of range: {self.PORT}")
        if self.LOG_LEVEL.lower() not in ("debug", "info", "warning", "warn", "error"):
            problems.append(f"unknown LOG_LEVEL: {self.LOG_LEVEL}")
        if self.CACHE_TTL <= 0:
            problems.append("CACHE_TTL must be positive")
        if self.SOFT_TTL <= 0 or self.SOFT_TTL > self.CACHE_TTL:
            problems.append("SOFT_TTL must be positive and not exceed CACHE_TTL")
        if self.SCRAPER_MAX_RETRIES < 0:
            problems.append("SCRAPER_MAX_RETRIES must not be negative")
        if self.SCRAPER_MAX_CONCURRENCY < 1:
            problems.append("SCRAPER_MAX_CONCURRENCY must be at least 1")
        for category, urls in self.base_urls.items():
            if not urls:
                problems.append(f"no base URLs configured for {category}")
        for hour_field in ("WARMUP_HOUR", "CLEANUP_HOUR"):
            if not 0 <= getattr(self, hour_field) <= 23:
                problems.append(f"{hour_field} must be within 0-23")
        for module in self.warmup_modules:
            if module not in KNOWN_WARMUP_MODULES:
                problems.append(f"unknown warmup module: {module}")
        for provider in _split_list(self.LLM_PROVIDERS):
            if provider.lower() not in KNOWN_LLM_PROVIDERS:
                problems.append(f"unknown LLM provider: {provider}")
        if self.USER_RATE_BURST <= 0 or self.LLM_RATE_BURST <= 0 or self.GLOBAL_RATE_RPS <= 0:
            problems.append("rate limit burst and rps must be positive")
        if self.USER_RATE_REFILL < 0 or self.LLM_RATE_REFILL < 0 or self.LLM_RATE_DAILY < 0:
            problems.append("rate limit refill and daily limit must not be negative")
        if self.SYLLABUS_LOAD_BATCH < 1 or self.SYLLABUS_SAVE_BATCH < 1:
            problems.append("syllabus batch sizes must be positive")
        try:
            ZoneInfo(self.TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"unknown TIMEZONE: {self.TIMEZONE}")
        if problems:
            raise ConfigError("; ".join(problems))
        return self

    class Config:
        env_file = ".env"
        env_prefix = "NTPU_"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
