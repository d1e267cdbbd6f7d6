"""
Clock, schedule computation and semester helpers
"""
from datetime import datetime, timedelta

import pytest

from ntpu_assistant.core.clock import TAIPEI, ManualClock, local_midnight, next_run_at, seconds_until
from ntpu_assistant.schemas.cache import Semester
from ntpu_assistant.services.semester import (
    candidate_semesters,
    current_semester,
    previous_semester,
    search_semesters,
)

pytestmark = pytest.mark.unit


class TestNextRunAt:
    def test_later_today(self):
        now = datetime(2024, 10, 1, 1, 30, tzinfo=TAIPEI)
        assert next_run_at(now, 3) == datetime(2024, 10, 1, 3, 0, tzinfo=TAIPEI)

    def test_already_passed_moves_to_tomorrow(self):
        now = datetime(2024, 10, 1, 3, 0, tzinfo=TAIPEI)
        assert next_run_at(now, 3) == datetime(2024, 10, 2, 3, 0, tzinfo=TAIPEI)

    def test_month_end(self):
        now = datetime(2024, 10, 31, 23, 0, tzinfo=TAIPEI)
        assert next_run_at(now, 4) == datetime(2024, 11, 1, 4, 0, tzinfo=TAIPEI)

    @pytest.mark.parametrize("minute_offset", [-1, 0, 1])
    def test_crossing_midnight_is_positive_and_bounded(self, minute_offset):
        now = datetime(2024, 12, 31, 23, 59, 59, tzinfo=TAIPEI) + timedelta(minutes=minute_offset)
        for hour in (0, 3, 4, 23):
            delay = seconds_until(now, hour)
            assert 0 < delay < 24 * 3600 + 1

    def test_utc_input_uses_local_wall_clock(self):
        # 2024-09-30 19:30 UTC = 2024-10-01 03:30 台北
        utc_now = datetime.fromisoformat("2024-09-30T19:30:00+00:00")
        assert next_run_at(utc_now, 3) == datetime(2024, 10, 2, 3, 0, tzinfo=TAIPEI)

    def test_local_midnight(self):
        now = datetime(2024, 10, 1, 15, 0, tzinfo=TAIPEI)
        assert local_midnight(now) == datetime(2024, 10, 1, tzinfo=TAIPEI)


class TestManualClock:
    def test_advance_moves_wall_and_monotonic(self):
        clock = ManualClock(datetime(2024, 1, 1, 0, 0))
        start_mono = clock.monotonic()
        start_unix = clock.unix()
        clock.advance(90)
        assert clock.monotonic() - start_mono == 90
        assert clock.unix() - start_unix == 90
        assert clock.now().tzinfo is not None

    def test_set_never_moves_monotonic_backwards(self):
        clock = ManualClock(datetime(2024, 1, 2, 0, 0, tzinfo=TAIPEI))
        mono = clock.monotonic()
        clock.set(datetime(2024, 1, 1, 0, 0, tzinfo=TAIPEI))
        assert clock.monotonic() == mono


class TestSemester:
    @pytest.mark.parametrize("when,expected", [
        (datetime(2024, 9, 1), Semester(113, 1)),
        (datetime(2024, 12, 31), Semester(113, 1)),
        (datetime(2025, 1, 15), Semester(113, 1)),
        (datetime(2025, 2, 1), Semester(113, 2)),
        (datetime(2025, 8, 31), Semester(113, 2)),
    ])
    def test_current_semester(self, when, expected):
        assert current_semester(when) == expected

    def test_previous_semester(self):
        assert previous_semester(Semester(113, 2)) == Semester(113, 1)
        assert previous_semester(Semester(113, 1)) == Semester(112, 2)

    def test_candidate_semesters_newest_first(self):
        assert candidate_semesters(datetime(2025, 3, 1), 4) == [
            Semester(113, 2), Semester(113, 1), Semester(112, 2), Semester(112, 1),
        ]

    def test_search_semesters_is_two(self):
        assert search_semesters(datetime(2024, 10, 1)) == [Semester(113, 1), Semester(112, 2)]
