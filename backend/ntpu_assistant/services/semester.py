"""
Semester - 學期推算
民國學年：9 月起為上學期（term 1），2 月到 8 月為下學期（term 2），1 月仍屬上學期
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.core.timeouts import SEARCH_SEMESTER_COUNT, SEMESTER_CHECK_LIMIT, WARMUP_SEMESTER_COUNT
from ntpu_assistant.schemas.cache import Semester
from ntpu_assistant.services.scrapers import courses as course_scraper

logger = logging.getLogger(__name__)


def roc_year(when: datetime) -> int:
    return when.year - 1911


def current_semester(when: datetime) -> Semester:
    month = when.month
    year = roc_year(when)
    if 2 <= month <= 8:
        return Semester(year - 1, 2)
    if month >= 9:
        return Semester(year, 1)
    return Semester(year - 1, 1)


def previous_semester(semester: Semester) -> Semester:
    if semester.term == 2:
        return Semester(semester.year, 1)
    return Semester(semester.year - 1, 2)


def candidate_semesters(when: datetime, count: int) -> List[Semester]:
    """從目前學期往回推 count 個學期（新到舊）"""
    result = []
    semester = current_semester(when)
    for _ in range(count):
        result.append(semester)
        semester = previous_semester(semester)
    return result


def search_semesters(when: datetime) -> List[Semester]:
    """課程查詢預設搜尋的學期"""
    return candidate_semesters(when, SEARCH_SEMESTER_COUNT)


async def _has_courses(store, client, semester: Semester) -> bool:
    hot = await asyncio.to_thread(store.count_courses_by_semester, semester.year, semester.term)
    if hot > 0:
        return True
    cold = await asyncio.to_thread(store.count_historical_by_semester, semester.year, semester.term)
    if cold > 0:
        return True
    if client is None:
        return False
    try:
        return await course_scraper.has_semester_courses(client, semester.year, semester.term)
    except UpstreamError as e:
        logger.debug("[Semester] %s 查詢失敗: %s", semester, e)
        return False


async def detect_warmup_semesters(store, client, when: datetime,
                                  count: int = WARMUP_SEMESTER_COUNT,
                                  check_limit: Optional[int] = None) -> List[Semester]:
    """
    找出最近 count 個有課程資料的學期

    1. 從目前學期往回檢查，快取有資料或上游查得到課程即採用
    2. 一個都沒有時改用快取裡最近的學期
    3. 快取也是空的就直接用日曆推算的學期
    """
    limit = check_limit or max(SEMESTER_CHECK_LIMIT, count)
    accepted: List[Semester] = []
    for semester in candidate_semesters(when, limit):
        if await _has_courses(store, client, semester):
            accepted.append(semester)
            if len(accepted) >= count:
                break
    if accepted:
        logger.info("[Semester] 暖機學期: %s", ", ".join(str(s) for s in accepted))
        return accepted

    recent = await asyncio.to_thread(store.distinct_recent_semesters, count)
    if recent:
        logger.warning("[Semester] 無法偵測學期，改用快取中最近的學期: %s", ", ".join(str(s) for s in recent))
        return list(recent)

    fallback = candidate_semesters(when, count)
    logger.warning("[Semester] 快取沒有任何學期資料，使用日曆推算: %s", ", ".join(str(s) for s in fallback))
    return fallback
