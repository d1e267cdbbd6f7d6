"""
Pytest configuration and fixtures
"""
from datetime import datetime
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from ntpu_assistant.core.clock import TAIPEI, ManualClock
from ntpu_assistant.core.config import Settings
from ntpu_assistant.schemas.cache import Contact, Course, Student, Syllabus
from ntpu_assistant.services.cache_store import CacheStore
from ntpu_assistant.services.metrics import Metrics

WEEK = 7 * 24 * 3600


@pytest.fixture
def clock():
    """2024-10-01 12:00 台北時間（113 學年度上學期）"""
    return ManualClock(datetime(2024, 10, 1, 12, 0, tzinfo=TAIPEI))


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def store(tmp_path, clock):
    """每個測試一個獨立的 SQLite 檔案"""
    cache = CacheStore.open(str(tmp_path / "cache.db"), WEEK, soft_ttl=5 * 24 * 3600, clock=clock)
    yield cache
    cache.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=str(tmp_path),
        LLM_ENABLED=False,
        METRICS_PASSWORD="",
        LINE_CHANNEL_SECRET="",
        WAIT_FOR_WARMUP=True,
        MAINTENANCE_ENABLED=False,
    )


@pytest.fixture
def mock_client():
    """ScraperClient 替身，只提供暖機會讀到的屬性"""
    client = MagicMock()
    client.bytes_by_module = {}
    client.check_category = AsyncMock(return_value=None)
    return client


def make_course(uid: str, title: str = "微積分", teachers: List[str] = None, **kwargs) -> Course:
    year = int(uid[:3])
    term = int(uid[3])
    return Course(
        uid=uid,
        year=year,
        term=term,
        no=uid[4:],
        title=title,
        teachers=teachers if teachers is not None else ["王小明"],
        **kwargs,
    )


def make_syllabus(uid: str, title: str = "", objectives: str = "", outline: str = "",
                  schedule: str = "") -> Syllabus:
    return Syllabus(
        uid=uid,
        year=int(uid[:3]),
        term=int(uid[3]),
        title=title,
        objectives=objectives,
        outline=outline,
        schedule=schedule,
    ).with_hash()


def make_student(student_id: str, name: str = "王小明", year: int = 112, department: str = "資訊工程學系") -> Student:
    return Student(id=student_id, name=name, year=year, department=department)


def make_contact(uid: str, name: str = "資訊工程學系", contact_type: str = "unit", **kwargs) -> Contact:
    return Contact(uid=uid, type=contact_type, name=name, **kwargs)


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (database, HTTP app)")
    config.addinivalue_line("markers", "slow: Slow tests (> 1 second)")
