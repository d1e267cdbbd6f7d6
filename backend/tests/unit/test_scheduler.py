"""
Scheduler jobs and readiness wiring
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import WEEK, make_contact, make_syllabus
from ntpu_assistant.core.errors import UpstreamError, WarmupError
from ntpu_assistant.services.bm25_index import BM25Index
from ntpu_assistant.services.rate_limiter import KeyedLimiter
from ntpu_assistant.services.readiness import ReadinessGate
from ntpu_assistant.services.scheduler import Scheduler

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def make_scheduler(store, clock, metrics=None, warmup=None, **kwargs):
    if warmup is None:
        warmup = MagicMock()
        warmup.run = AsyncMock()
    readiness = ReadinessGate(600, clock=clock)
    return Scheduler(store, warmup, readiness, ["contact", "course"], clock=clock,
                     metrics=metrics, **kwargs)


async def test_bootstrap_marks_ready_after_successful_warmup(store, clock):
    stickers = MagicMock()
    stickers.load = AsyncMock(return_value=3)
    bm25 = BM25Index()
    scheduler = make_scheduler(store, clock, bm25=bm25, stickers=stickers)

    await scheduler.bootstrap()

    stickers.load.assert_awaited_once()
    scheduler.warmup.run.assert_awaited_once_with(["contact", "course"], warm_id=True)
    assert scheduler.readiness.status()["reason"] == "ready"


async def test_bootstrap_marks_ready_even_when_warmup_fails(store, clock):
    warmup = MagicMock()
    warmup.run = AsyncMock(side_effect=WarmupError([UpstreamError("sea", "timeout")]))
    stickers = MagicMock()
    stickers.load = AsyncMock(side_effect=UpstreamError("external", "network"))
    scheduler = make_scheduler(store, clock, warmup=warmup, stickers=stickers)

    await scheduler.bootstrap()

    assert scheduler.readiness.is_ready()
    assert scheduler.readiness.status()["reason"] == "ready"


async def test_warmup_timeout_cancels_run(store, clock):
    warmup = MagicMock()

    async def slow(*args, **kwargs):
        await asyncio.sleep(10)

    warmup.run = slow
    scheduler = make_scheduler(store, clock, warmup=warmup, warmup_timeout=0.01)
    assert await scheduler.run_warmup_once() is False


async def test_cleanup_rebuilds_index_when_syllabi_expire(store, clock, metrics):
    store.save_syllabi_batch([
        make_syllabus("1131U0001", title="微積分", objectives="極限"),
        make_syllabus("1131U0002", title="會計學", objectives="分錄"),
    ])
    store.save_contacts_batch([make_contact("c1")])
    bm25 = BM25Index()
    bm25.rebuild_from_store(store)
    assert bm25.count() == 2

    clock.advance(WEEK + 1)
    scheduler = make_scheduler(store, clock, metrics=metrics, bm25=bm25)
    deleted = await scheduler.run_cleanup_once()

    assert deleted["syllabi"] == 2
    assert deleted["contacts"] == 1
    assert bm25.count() == 0
    assert metrics.registry.get_sample_value(
        "ntpu_job_duration_seconds_count", {"job": "cleanup", "module": "all"}) == 1


async def test_update_metrics(store, clock, metrics):
    store.save_contacts_batch([make_contact("c1"), make_contact("c2", name="圖書館")])
    limiter = KeyedLimiter("user", 1, 1, clock=clock)
    limiter.allow("someone")
    scheduler = make_scheduler(store, clock, metrics=metrics, bm25=BM25Index(), limiters=[limiter])

    await scheduler.update_metrics()

    assert metrics.registry.get_sample_value("ntpu_cache_size", {"module": "contacts"}) == 2
    assert metrics.registry.get_sample_value("ntpu_cache_size", {"module": "courses"}) == 0
    assert metrics.registry.get_sample_value("ntpu_index_size", {"index": "syllabus"}) == 0
    assert metrics.registry.get_sample_value("ntpu_rate_limiter_active_keys", {"limiter": "user"}) == 1


async def test_start_and_stop(store, clock):
    gate = asyncio.Event()

    async def fake_sleep(seconds):
        # 所有排程等待都卡住，直到 stop() 取消
        await gate.wait()

    scheduler = make_scheduler(store, clock, sleep=fake_sleep)
    scheduler.start()
    scheduler.start()
    assert len(scheduler._tasks) == 3

    for _ in range(100):
        if scheduler.readiness.status()["reason"] == "ready":
            break
        await asyncio.sleep(0.01)
    assert scheduler.readiness.status()["reason"] == "ready"
    assert scheduler.running

    await scheduler.stop()
    assert not scheduler.running
    assert scheduler._tasks == []


async def test_cleanup_finishes_before_cancel_propagates(store, clock):
    scheduler = make_scheduler(store, clock)
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def slow_cleanup():
        started.set()
        await release.wait()
        finished.append(True)
        return {}

    scheduler.run_cleanup_once = slow_cleanup
    task = asyncio.create_task(scheduler._cleanup_shielded())
    await started.wait()
    task.cancel()
    await asyncio.sleep(0)
    assert not task.done()

    release.set()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert finished == [True]
