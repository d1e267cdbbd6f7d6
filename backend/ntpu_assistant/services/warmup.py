"""
Warmup Service - 快取暖機
contact / program / id / course 平行執行，syllabus 等 course 完成後才開始

    contact  ─┐
    program  ─┤
    id       ─┤
    course   ─┴──► syllabus

contact、course、id 為必要模組，失敗會取消整組並拋出 WarmupError；
program、syllabus 失敗只記錄警告
"""
import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional

from ntpu_assistant.core.clock import Clock
from ntpu_assistant.core.errors import NTPUError, UpstreamError, WarmupError
from ntpu_assistant.core.timeouts import ID_FIRST_YEAR, ID_LAST_YEAR
from ntpu_assistant.schemas.cache import Course, CourseProgram, ProgramRequirement, Semester
from ntpu_assistant.services.bm25_index import BM25Index
from ntpu_assistant.services.cache_store import CacheStore
from ntpu_assistant.services.metrics import Metrics
from ntpu_assistant.services.scraper_client import ScraperClient
from ntpu_assistant.services.scrapers import contacts as contact_scraper
from ntpu_assistant.services.scrapers import courses as course_scraper
from ntpu_assistant.services.scrapers import ids as id_scraper
from ntpu_assistant.services.scrapers import programs as program_scraper
from ntpu_assistant.services.scrapers import syllabus as syllabus_scraper
from ntpu_assistant.services.semester import detect_warmup_semesters, roc_year

logger = logging.getLogger(__name__)

MODULE_ORDER = ("contact", "program", "id", "course", "syllabus")
REQUIRED_MODULES = ("contact", "course", "id")
ID_PREFIXES = ("4", "7", "8")

# 各模組抓取時使用的上游類別
MODULE_CATEGORIES = {
    "contact": "sea",
    "course": "sea",
    "syllabus": "sea",
    "program": "lms",
    "id": "lms",
}


def parse_modules(raw: str) -> List[str]:
    """逗號分隔的模組清單，去掉空白與重複"""
    modules: List[str] = []
    for item in raw.split(","):
        item = item.strip().lower()
        if item and item not in modules:
            modules.append(item)
    return modules


class ModuleStats:
    """單一模組的暖機統計"""

    def __init__(self, module: str):
        self.module = module
        self.started_at = 0
        self.duration = 0.0
        self.updated = 0
        self.skipped = 0
        self.errors = 0
        self.bytes_fetched = 0
        self.status = "pending"

    def to_dict(self) -> Dict[str, object]:
        return {
            "module": self.module,
            "status": self.status,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration, 3),
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "bytes_fetched": self.bytes_fetched,
        }


class WarmupResult:
    def __init__(self, modules: List[str]):
        self.modules = modules
        self.stats: Dict[str, ModuleStats] = {m: ModuleStats(m) for m in modules}
        self.duration = 0.0

    def __getitem__(self, module: str) -> ModuleStats:
        return self.stats[module]

    def to_dict(self) -> Dict[str, object]:
        return {
            "duration_seconds": round(self.duration, 3),
            "modules": {m: s.to_dict() for m, s in self.stats.items()},
        }


class WarmupService:
    """
    暖機協調器

    所有資料庫操作都透過 asyncio.to_thread 交給同步的 CacheStore
    """

    def __init__(self, store: CacheStore, client: ScraperClient,
                 bm25: Optional[BM25Index] = None, metrics: Optional[Metrics] = None,
                 clock: Optional[Clock] = None, llm_configured: bool = False,
                 load_batch: int = 100, save_batch: int = 50):
        self.store = store
        self.client = client
        self.bm25 = bm25
        self.metrics = metrics
        self.clock = clock or Clock()
        self.llm_configured = llm_configured
        self.load_batch = load_batch
        self.save_batch = save_batch
        self.last_result: Optional[WarmupResult] = None

    def resolve_modules(self, modules: Iterable[str], warm_id: bool = False) -> List[str]:
        """依固定順序整理要執行的模組；id 只有明確要求或 warm_id 時才跑"""
        requested = set(modules)
        if warm_id:
            requested.add("id")
        return [m for m in MODULE_ORDER if m in requested]

    async def check_upstreams(self, modules: Iterable[str]) -> Dict[str, Optional[str]]:
        """
        開始抓取前先確認各類別有可用的網址

        只負責挑選可連線的網址，全部失敗時照常執行，交給後續的重試處理
        """
        categories = sorted({MODULE_CATEGORIES[m] for m in modules if m in MODULE_CATEGORIES})
        available = {}
        for category in categories:
            available[category] = await self.client.check_category(category)
            if available[category] is not None:
                logger.debug("[Warmup] %s 使用 %s", category, available[category])
        return available

    async def run(self, modules: Iterable[str], reset: bool = False, warm_id: bool = False) -> WarmupResult:
        selected = self.resolve_modules(modules, warm_id)
        result = WarmupResult(selected)
        self.last_result = result
        started = time.monotonic()

        if reset:
            logger.warning("[Warmup] 重設快取資料")
            await asyncio.to_thread(self.store.truncate)
            logger.info("[Warmup] 快取重設完成")

        course_done = asyncio.Event()
        if "course" not in selected:
            course_done.set()

        logger.info("[Warmup] 開始暖機: %s", ", ".join(selected) or "(無模組)")
        await self.check_upstreams(selected)
        try:
            async with asyncio.TaskGroup() as tg:
                for module in selected:
                    if module == "course":
                        coro = self._run_course(result["course"], course_done)
                    elif module == "syllabus":
                        coro = self._run_syllabus(result["syllabus"], course_done)
                    else:
                        coro = self._run_module(module, result[module])
                    tg.create_task(coro, name=f"warmup-{module}")
        except ExceptionGroup as eg:
            expected, unexpected = eg.split(NTPUError)
            if unexpected is not None:
                raise
            result.duration = time.monotonic() - started
            logger.error("[Warmup] 暖機失敗 (%.1fs): %s", result.duration,
                         "; ".join(str(e) for e in expected.exceptions))
            raise WarmupError(list(expected.exceptions)) from eg

        result.duration = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_job("warmup", "all", result.duration)
        logger.info("[Warmup] 暖機完成 (%.1fs): %s", result.duration, ", ".join(
            f"{m}={s.updated}/{s.skipped}/{s.errors}" for m, s in result.stats.items()
        ))
        return result

    # ------------------------------------------------------------------
    # module wrappers
    # ------------------------------------------------------------------

    async def _timed(self, stats: ModuleStats, coro, required: bool) -> None:
        stats.started_at = self.clock.unix()
        stats.status = "running"
        bytes_before = self.client.bytes_by_module.get(stats.module, 0)
        started = time.monotonic()
        try:
            await coro
            stats.status = "success"
        except NTPUError as e:
            stats.status = "error"
            if required:
                logger.error("[Warmup] %s 模組失敗: %s", stats.module, e)
                raise
            logger.warning("[Warmup] %s 模組失敗（不影響其他模組）: %s", stats.module, e)
        except asyncio.CancelledError:
            stats.status = "canceled"
            raise
        finally:
            stats.duration = time.monotonic() - started
            stats.bytes_fetched = self.client.bytes_by_module.get(stats.module, 0) - bytes_before
            if self.metrics is not None:
                self.metrics.record_job("warmup", stats.module, stats.duration)
                self.metrics.record_warmup_rows(stats.module, stats.updated, stats.skipped, stats.errors)

    async def _run_module(self, module: str, stats: ModuleStats) -> None:
        body = {
            "contact": self.warmup_contacts,
            "program": self.warmup_programs,
            "id": self.warmup_ids,
        }[module]
        await self._timed(stats, body(stats), required=module in REQUIRED_MODULES)

    async def _run_course(self, stats: ModuleStats, course_done: asyncio.Event) -> None:
        try:
            await self._timed(stats, self.warmup_courses(stats), required=True)
        finally:
            course_done.set()

    async def _run_syllabus(self, stats: ModuleStats, course_done: asyncio.Event) -> None:
        if not course_done.is_set():
            logger.debug("[Warmup] syllabus 等待 course 完成")
        await course_done.wait()
        if not self.llm_configured or self.bm25 is None:
            stats.status = "skipped"
            logger.info("[Warmup] syllabus 模組略過: 未設定 LLM 或 BM25 索引")
            return
        await self._timed(stats, self.warmup_syllabi(stats), required=False)

    # ------------------------------------------------------------------
    # modules
    # ------------------------------------------------------------------

    async def warmup_contacts(self, stats: ModuleStats) -> None:
        contacts, errors = await contact_scraper.scrape_all_contacts(self.client)
        stats.errors += len(errors)
        for error in errors:
            logger.warning("[Warmup] contact 部分來源失敗: %s", error)
        stats.updated += await asyncio.to_thread(self.store.save_contacts_batch, contacts)

    async def warmup_programs(self, stats: ModuleStats) -> None:
        try:
            programs = await program_scraper.scrape_programs(self.client)
        except UpstreamError as e:
            logger.warning("[Warmup] 學程抓取失敗: %s", e)
            stats.errors += 1
            programs = []
        if not programs:
            programs = await asyncio.to_thread(program_scraper.load_static_programs)
            logger.info("[Warmup] 學程改用內建清單 (%d 筆)", len(programs))
        sync = await asyncio.to_thread(self.store.sync_programs, programs)
        stats.updated += sync.inserted + sync.updated + sync.deleted
        stats.skipped += max(len(programs) - sync.inserted - sync.updated, 0)
        logger.info("[Warmup] 學程同步: 新增 %d, 更新 %d, 刪除 %d", sync.inserted, sync.updated, sync.deleted)

    async def warmup_ids(self, stats: ModuleStats) -> None:
        last_year = min(roc_year(self.clock.now()), ID_LAST_YEAR)
        tasks = [
            (prefix, year, department)
            for prefix in ID_PREFIXES
            for year in range(last_year, ID_FIRST_YEAR - 1, -1)
            for department in id_scraper.department_codes(prefix)
        ]
        logger.info("[Warmup] 學號模組開始 (%d 個查詢)", len(tasks))
        completed = 0
        for prefix, year, department in tasks:
            try:
                students = await id_scraper.scrape_students(self.client, prefix, year, department)
            except UpstreamError as e:
                stats.errors += 1
                logger.warning("[Warmup] 學號 %s%d%s 抓取失敗: %s", prefix, year, department, e)
                continue
            stats.updated += await asyncio.to_thread(self.store.save_students_batch, students)
            completed += 1
            if completed % 50 == 0:
                logger.info("[Warmup] 學號模組進度 %d/%d，學生 %d 筆", completed, len(tasks), stats.updated)
        if tasks and completed == 0:
            raise UpstreamError("lms", "partial", message=f"all {len(tasks)} student queries failed")

    async def warmup_courses(self, stats: ModuleStats) -> List[Semester]:
        semesters = await detect_warmup_semesters(self.store, self.client, self.clock.now())
        saved: List[Semester] = []
        last_error: Optional[UpstreamError] = None
        for semester in semesters:
            try:
                courses = await course_scraper.scrape_semester(self.client, semester.year, semester.term)
            except UpstreamError as e:
                stats.errors += 1
                last_error = e
                logger.warning("[Warmup] %s 課程抓取失敗: %s", semester, e)
                continue
            if not courses:
                logger.info("[Warmup] %s 沒有課程資料", semester)
                continue
            stats.updated += await asyncio.to_thread(self.store.save_courses_batch, courses)
            edges = course_scraper.program_edges(courses)
            await asyncio.to_thread(self.store.save_course_programs, [c.uid for c in courses], edges)
            saved.append(semester)
            logger.info("[Warmup] %s 課程 %d 筆，學程關聯 %d 筆", semester, len(courses), len(edges))

        if not saved and last_error is not None:
            raise last_error
        if saved:
            hot = await asyncio.to_thread(self.store.hot_semesters)
            stale = [s for s in hot if s not in semesters]
            if stale:
                moved = await asyncio.to_thread(self.store.demote_semesters, stale)
                logger.info("[Warmup] %s 移至歷史課程 (%d 筆)", ", ".join(str(s) for s in stale), moved)
        return saved

    async def _iter_course_batches(self):
        semesters = await asyncio.to_thread(self.store.hot_semesters)
        for semester in semesters:
            offset = 0
            while True:
                batch = await asyncio.to_thread(
                    self.store.get_courses_by_year_term_paginated,
                    semester.year, semester.term, self.load_batch, offset,
                )
                if not batch:
                    break
                yield batch
                if len(batch) < self.load_batch:
                    break
                offset += len(batch)

    async def _refine_program_edges(self, course: Course, full_names: List[ProgramRequirement]) -> bool:
        """用大綱頁上的完整學程名稱修正課程列表的截短名稱；沒有差異時不寫入"""
        if not full_names:
            return False
        existing = await asyncio.to_thread(self.store.get_programs_for_course, course.uid)
        raw = [ProgramRequirement(program_name=e.program_name, course_type=e.course_type) for e in existing]
        refined = syllabus_scraper.match_program_types([p.program_name for p in full_names], raw)
        current = {(e.program_name, e.course_type) for e in existing}
        wanted = {(r.program_name, r.course_type) for r in refined}
        if not wanted or wanted == current:
            return False
        edges = [CourseProgram(course_uid=course.uid, program_name=n, course_type=t) for n, t in sorted(wanted)]
        await asyncio.to_thread(self.store.save_course_programs, [course.uid], edges)
        return True

    async def warmup_syllabi(self, stats: ModuleStats) -> None:
        pending = []

        async def flush():
            if pending:
                stats.updated += await asyncio.to_thread(self.store.save_syllabi_batch, list(pending))
                pending.clear()

        async for batch in self._iter_course_batches():
            for course in batch:
                if not course.detail_url:
                    stats.skipped += 1
                    continue
                try:
                    detail = await syllabus_scraper.scrape_course_detail(self.client, course)
                except UpstreamError as e:
                    stats.errors += 1
                    logger.debug("[Warmup] %s 大綱抓取失敗: %s", course.uid, e)
                    continue
                await self._refine_program_edges(course, detail.programs)
                syllabus = detail.syllabus
                if syllabus.is_empty():
                    stats.skipped += 1
                    continue
                stored_hash = await asyncio.to_thread(self.store.get_syllabus_content_hash, course.uid)
                if stored_hash == syllabus.content_hash:
                    stats.skipped += 1
                    continue
                pending.append(syllabus)
                if len(pending) >= self.save_batch:
                    await flush()
        await flush()

        logger.info("[Warmup] 大綱更新 %d, 略過 %d, 失敗 %d", stats.updated, stats.skipped, stats.errors)
        count = await asyncio.to_thread(self.bm25.rebuild_from_store, self.store)
        logger.info("[Warmup] BM25 索引 %d 筆", count)
