"""
Warmup semester detection
"""
import pytest

from conftest import make_course
from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.schemas.cache import Semester
from ntpu_assistant.services.scrapers import courses as course_scraper
from ntpu_assistant.services.semester import detect_warmup_semesters

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


@pytest.fixture
def upstream_checks(monkeypatch):
    """記錄向上游查詢的學期，accepted 內的學期回報有課程"""
    calls = []
    accepted = set()

    async def check(client, year, term):
        calls.append(Semester(year, term))
        return Semester(year, term) in accepted

    monkeypatch.setattr(course_scraper, "has_semester_courses", check)
    return calls, accepted


async def test_cached_semesters_are_accepted_without_upstream_check(store, mock_client, clock, upstream_checks):
    calls, _ = upstream_checks
    store.save_courses_batch([make_course("1131U0001")])
    store.save_historical_courses_batch([make_course("1122U0001")])

    result = await detect_warmup_semesters(store, mock_client, clock.now(), count=2)

    assert result == [Semester(113, 1), Semester(112, 2)]
    assert calls == []


async def test_upstream_check_accepts_semester(store, mock_client, clock, upstream_checks):
    calls, accepted = upstream_checks
    accepted.add(Semester(112, 1))

    result = await detect_warmup_semesters(store, mock_client, clock.now())

    assert result == [Semester(112, 1)]
    assert calls[:3] == [Semester(113, 1), Semester(112, 2), Semester(112, 1)]


async def test_stops_after_four_semesters(store, mock_client, clock, upstream_checks):
    calls, accepted = upstream_checks
    accepted.update(Semester(y, t) for y in range(105, 114) for t in (1, 2))

    result = await detect_warmup_semesters(store, mock_client, clock.now())

    expected = [Semester(113, 1), Semester(112, 2), Semester(112, 1), Semester(111, 2)]
    assert result == expected
    assert calls == expected


async def test_falls_back_to_newest_cached_semesters(store, mock_client, clock, upstream_checks):
    calls, _ = upstream_checks
    # 比查詢範圍更舊的學期只能從快取取得
    store.save_courses_batch([make_course("1051U0001"), make_course("1042U0001")])

    result = await detect_warmup_semesters(store, mock_client, clock.now())

    assert result == [Semester(105, 1), Semester(104, 2)]
    assert len(calls) == 8


async def test_falls_back_to_calendar(store, mock_client, clock, monkeypatch):
    async def broken(client, year, term):
        raise UpstreamError("sea", "timeout")

    monkeypatch.setattr(course_scraper, "has_semester_courses", broken)

    result = await detect_warmup_semesters(store, mock_client, clock.now())

    assert result == [Semester(113, 1), Semester(112, 2), Semester(112, 1), Semester(111, 2)]
