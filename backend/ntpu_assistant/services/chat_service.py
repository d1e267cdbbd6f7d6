"""
Chat Service - 文字查詢處理
學號、聯絡資訊、課程、智慧搜尋與學程查詢；與傳輸層無關，webhook 只負責轉換格式
"""
import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from ntpu_assistant.core.clock import Clock
from ntpu_assistant.core.errors import NTPUError, RateLimitedError, UpstreamError
from ntpu_assistant.core.identifiers import is_course_no, is_student_id, parse_course_uid
from ntpu_assistant.core.timeouts import REQUEST_MAX_RETRIES
from ntpu_assistant.schemas.cache import Contact, Course, Semester, Student
from ntpu_assistant.schemas.chat import ChatReply
from ntpu_assistant.services.bm25_index import BM25Index
from ntpu_assistant.services.cache_store import CacheStore
from ntpu_assistant.services.llm_service import IntentResult, LLMService
from ntpu_assistant.services.metrics import Metrics
from ntpu_assistant.services.rate_limiter import KeyedLimiter, LLMRateLimiter
from ntpu_assistant.services.scraper_client import ScraperClient
from ntpu_assistant.services.scrapers import contacts as contact_scraper
from ntpu_assistant.services.scrapers import courses as course_scraper
from ntpu_assistant.services.scrapers import ids as id_scraper
from ntpu_assistant.services.semester import search_semesters
from ntpu_assistant.services.sticker_manager import StickerManager

logger = logging.getLogger(__name__)

MAX_RESULTS = 10

SAFE_ERROR_MESSAGE = "系統暫時無法處理您的查詢，請稍後再試"
RATE_LIMIT_MESSAGES = {
    "user": "訊息太頻繁了，請稍等一下再試",
    "hourly": "智慧功能使用次數已達每小時上限，請稍後再試",
    "daily": "智慧功能今日使用次數已達上限，明天再來吧",
}

HELP_MESSAGE = "\n".join([
    "可以這樣問我：",
    "・學號 412345678／學生 王小明",
    "・系代碼 85／系 資工",
    "・課程 微積分／老師 王小明",
    "・課程 110 微積分（查歷史學期）",
    "・1131U0001（課程編號）",
    "・找課 想學資料分析",
    "・聯絡 資工系／緊急",
    "・學程 金融科技／學程列表",
    "・額度（查看剩餘使用次數）",
])

QUOTA_EXPLANATION = "\n".join([
    "訊息額度：每則訊息扣除 1 次，一段時間後自動恢復",
    "AI 額度：自然語言對話與智慧搜尋（找課）會扣除，分為每小時與每日上限",
    "使用關鍵字查詢（例如：課程 微積分）不扣 AI 額度",
])

EMERGENCY_PHONES = [
    ("三峽校區總機", "0286741111"),
    ("三峽 24H 緊急行政電話", "0226731949"),
    ("三峽 24H 急難救助（校安中心）", "0226711234"),
    ("三峽大門哨所", "0226733920"),
    ("三峽宿舍夜間緊急電話", "0286716784"),
    ("臺北校區 24H 急難救助", "0225023671"),
    ("北大派出所", "0226730561"),
]


def keyword_pattern(keywords: Sequence[str]) -> re.Pattern:
    """開頭比對的關鍵字，長的優先"""
    ordered = sorted(keywords, key=len, reverse=True)
    return re.compile("^(" + "|".join(re.escape(k) for k in ordered) + ")", re.IGNORECASE)


_SMART = keyword_pattern(["找課", "找課程", "搜課"])
_HISTORICAL = re.compile(r"^(課程?|course|class)\s+(\d{2,3})\s+(.+)$", re.IGNORECASE)
_COURSE_UID = re.compile(r"\d{3,4}[umnp]\d{4}", re.IGNORECASE)
_COURSE = keyword_pattern([
    "課", "課程", "科目", "課名", "課程名稱", "師", "老師", "教師", "教授",
    "授課教師", "class", "course", "teacher", "professor", "prof",
])
_STUDENT = keyword_pattern(["學號", "學生", "姓名", "student", "id"])
_DEPARTMENT = keyword_pattern([
    "系代碼", "系所代碼", "科系代碼", "系所", "科系", "系名", "系", "所", "dep", "department",
])
_PROGRAM_LIST = keyword_pattern(["學程列表", "所有學程", "program list", "programs"])
_PROGRAM = keyword_pattern(["學程", "program"])
_CONTACT = keyword_pattern([
    "聯繫", "聯絡", "聯繫方式", "聯絡方式", "連繫", "連絡", "電話", "分機", "email", "信箱", "contact",
])
_HELP = keyword_pattern(["使用說明", "說明", "help", "?", "？"])
_USAGE = keyword_pattern(["用量", "配額", "額度", "扣打", "quota", "usage", "limit"])
QUOTA_EXPLAIN_KEYWORD = "額度說明"


def _rest(pattern: re.Pattern, text: str) -> str:
    return pattern.sub("", text, count=1).strip()


def format_student(student: Student) -> str:
    department = student.department or id_scraper.department_name(student.id)
    return f"{student.name}｜{student.id}｜{student.year} 學年度入學｜{department}"


def format_contact(contact: Contact) -> str:
    parts = [contact.name]
    if contact.title:
        parts.append(contact.title)
    if contact.organization:
        parts.append(contact.organization)
    if contact.extension:
        parts.append(f"分機 {contact.extension}")
    if contact.phone:
        parts.append(contact.phone)
    if contact.email:
        parts.append(contact.email)
    if contact.website:
        parts.append(contact.website)
    return "｜".join(parts)


def format_course(course: Course, confidence: Optional[float] = None) -> str:
    lines = [f"{course.title}（{course.uid}）"]
    if course.teachers:
        lines.append("教師：" + "、".join(course.teachers))
    if course.times:
        lines.append("時間：" + "、".join(course.times))
    if course.locations:
        lines.append("地點：" + "、".join(course.locations))
    if confidence is not None:
        lines.append(f"相關度：{confidence:.0%}")
    if course.detail_url:
        lines.append(course.detail_url)
    return "\n".join(lines)


class ChatService:
    """
    文字訊息處理

    每則訊息先過使用者限流；需要 LLM 的功能另外經過 LLM 限流。
    回覆一律是安全的文字，內部錯誤只寫入 log
    """

    def __init__(self, store: CacheStore, client: ScraperClient, user_limiter: KeyedLimiter,
                 llm_limiter: Optional[LLMRateLimiter] = None, bm25: Optional[BM25Index] = None,
                 llm: Optional[LLMService] = None, stickers: Optional[StickerManager] = None,
                 metrics: Optional[Metrics] = None, clock: Optional[Clock] = None,
                 timeout: Optional[float] = None):
        self.store = store
        self.client = client
        self.user_limiter = user_limiter
        self.llm_limiter = llm_limiter
        self.bm25 = bm25
        self.llm = llm
        self.stickers = stickers
        self.metrics = metrics
        self.clock = clock or Clock()
        self.timeout = timeout

    @property
    def llm_enabled(self) -> bool:
        return self.llm is not None and self.llm.enabled

    def _reply(self, messages: List[str], rate_limited: Optional[str] = None) -> ChatReply:
        icon = self.stickers.random_url() if self.stickers is not None else ""
        return ChatReply(messages=messages, sender_icon=icon, rate_limited=rate_limited)

    def _check_llm(self, chat_key: str) -> None:
        if self.llm_limiter is None:
            return
        layer = self.llm_limiter.check(chat_key)
        if layer is not None:
            raise RateLimitedError(layer)

    async def handle_text(self, chat_key: str, text: str, timeout: Optional[float] = None) -> ChatReply:
        """timeout 未指定時用 self.timeout；超時回覆安全訊息"""
        timeout = self.timeout if timeout is None else timeout
        text = " ".join(text.split())
        if not text:
            return self._reply([])
        if not self.user_limiter.allow(chat_key):
            return self._reply([RATE_LIMIT_MESSAGES["user"]], rate_limited="user")
        try:
            async with asyncio.timeout(timeout):
                messages = await self.dispatch(chat_key, text)
            return self._reply(messages)
        except TimeoutError:
            logger.warning("[Chat] 查詢逾時（%ss），已中止: %r", timeout, text)
            return self._reply([SAFE_ERROR_MESSAGE])
        except RateLimitedError as e:
            return self._reply([RATE_LIMIT_MESSAGES.get(e.layer, RATE_LIMIT_MESSAGES["user"])],
                               rate_limited=e.layer)
        except asyncio.CancelledError:
            raise
        except NTPUError as e:
            logger.warning("[Chat] 查詢失敗 %r: %s", text, e)
            return self._reply([SAFE_ERROR_MESSAGE])
        except Exception:
            logger.exception("[Chat] 處理訊息時發生未預期錯誤: %r", text)
            return self._reply([SAFE_ERROR_MESSAGE])

    async def dispatch(self, chat_key: str, text: str) -> List[str]:
        if text.startswith("緊急"):
            return self.emergency()
        if _HELP.match(text) and not _rest(_HELP, text):
            return [HELP_MESSAGE]
        if text == QUOTA_EXPLAIN_KEYWORD:
            return [QUOTA_EXPLANATION]
        if _USAGE.match(text):
            return self.usage(chat_key)
        if _SMART.match(text):
            return await self.smart_search(chat_key, _rest(_SMART, text))
        match = _HISTORICAL.match(text)
        if match:
            return await self.search_historical_courses(int(match.group(2)), match.group(3).strip())
        if _COURSE_UID.fullmatch(text) or is_course_no(text):
            return await self.course_by_uid(text)
        if is_student_id(text):
            return await self.student_by_id(text)
        if _PROGRAM_LIST.match(text):
            return await self.list_programs()
        if _PROGRAM.match(text):
            return await self.search_programs(_rest(_PROGRAM, text))
        if _STUDENT.match(text):
            return await self.search_students(_rest(_STUDENT, text))
        if _CONTACT.match(text):
            return await self.search_contacts(_rest(_CONTACT, text))
        if _DEPARTMENT.match(text):
            return self.department(_rest(_DEPARTMENT, text))
        if _COURSE.match(text):
            return await self.search_courses(_rest(_COURSE, text))
        if self.llm_enabled:
            return await self.dispatch_intent(chat_key, text)
        return [HELP_MESSAGE]

    async def dispatch_intent(self, chat_key: str, text: str) -> List[str]:
        self._check_llm(chat_key)
        result: IntentResult = await self.llm.parse_intent(text)
        if not result.module:
            return [result.clarification or HELP_MESSAGE]
        param = next(iter(result.params.values()), "")
        handlers: dict = {
            ("course", "search"): lambda: self.search_courses(param),
            ("course", "smart"): lambda: self.smart_search(chat_key, param, expand=False),
            ("course", "uid"): lambda: self.course_by_uid(param),
            ("id", "search"): lambda: self.search_students(param),
            ("id", "student_id"): lambda: self.student_by_id(param),
            ("contact", "search"): lambda: self.search_contacts(param),
            ("program", "search"): lambda: self.search_programs(param),
        }
        if (result.module, result.intent) == ("id", "department"):
            return self.department(param)
        if (result.module, result.intent) == ("contact", "emergency"):
            return self.emergency()
        if (result.module, result.intent) == ("usage", "query"):
            return self.usage(chat_key)
        handler: Optional[Callable[[], Awaitable[List[str]]]] = handlers.get((result.module, result.intent))
        if handler is None:
            return [HELP_MESSAGE]
        return await handler()

    # ------------------------------------------------------------------
    # usage
    # ------------------------------------------------------------------

    def usage(self, chat_key: str) -> List[str]:
        """目前的訊息額度與 AI 額度，只讀取不消耗"""
        lines = [f"訊息額度：剩餘 {self.user_limiter.remaining(chat_key)}/{int(self.user_limiter.burst)} 則"]
        if self.llm_limiter is None or not self.llm_enabled:
            lines.append("AI 額度：智慧功能未啟用")
        else:
            limiter = self.llm_limiter
            lines.append(f"AI 額度（每小時）：剩餘 {limiter.remaining(chat_key)}/{int(limiter.burst)} 次")
            daily = limiter.daily_remaining(chat_key)
            if daily >= 0:
                lines.append(f"AI 額度（今日）：剩餘 {daily}/{limiter.daily_limit} 次")
        lines.append(f"輸入「{QUOTA_EXPLAIN_KEYWORD}」查看哪些操作會扣除額度")
        return ["\n".join(lines)]

    # ------------------------------------------------------------------
    # id
    # ------------------------------------------------------------------

    async def student_by_id(self, student_id: str) -> List[str]:
        student_id = student_id.strip()
        if not is_student_id(student_id):
            return ["學號格式不正確，請輸入 8 或 9 位數學號"]
        student = await asyncio.to_thread(self.store.get_student_by_id, student_id)
        self._record_cache("id", student is not None)
        if student is None:
            return [f"查無學號 {student_id} 的資料（僅收錄 113 學年度以前入學的學生）"]
        return [format_student(student)]

    async def search_students(self, name: str) -> List[str]:
        if not name:
            return ["請輸入要查詢的姓名，例如：學生 王小明"]
        if is_student_id(name):
            return await self.student_by_id(name)
        students = await asyncio.to_thread(self.store.search_students_by_name, name)
        self._record_cache("id", bool(students))
        if not students:
            return [f"查無姓名包含「{name}」的學生"]
        lines = [format_student(s) for s in students[:MAX_RESULTS * 2]]
        return ["\n".join(lines)]

    def department(self, query: str) -> List[str]:
        query = query.strip()
        if not query:
            return ["請輸入系名或系代碼，例如：系 資工"]
        results = []
        for prefix, table in id_scraper.DEPARTMENTS_BY_PREFIX.items():
            for code, name in table.items():
                if query == code or query in name:
                    results.append(f"{name}：{prefix}xx{code}")
        if not results:
            return [f"查無與「{query}」相關的系所"]
        return ["\n".join(results[:MAX_RESULTS * 2])]

    # ------------------------------------------------------------------
    # contact
    # ------------------------------------------------------------------

    def emergency(self) -> List[str]:
        return ["\n".join(f"{name}：{phone}" for name, phone in EMERGENCY_PHONES)]

    async def search_contacts(self, keyword: str) -> List[str]:
        if not keyword:
            return ["請輸入要查詢的單位或人員，例如：聯絡 資工系"]
        contacts = await asyncio.to_thread(self.store.search_contacts, keyword)
        self._record_cache("contact", bool(contacts))
        if not contacts:
            contacts = await contact_scraper.search_contacts(
                self.client, keyword, max_retries=REQUEST_MAX_RETRIES
            )
            if contacts:
                await asyncio.to_thread(self.store.save_contacts_batch, contacts)
        if not contacts:
            return [f"查無與「{keyword}」相關的聯絡資訊"]
        return ["\n".join(format_contact(c) for c in contacts[:MAX_RESULTS * 2])]

    # ------------------------------------------------------------------
    # course
    # ------------------------------------------------------------------

    async def _recent_semesters(self) -> List[Semester]:
        hot = await asyncio.to_thread(self.store.hot_semesters)
        return hot[:2] if hot else search_semesters(self.clock.now())

    async def search_courses(self, keyword: str) -> List[str]:
        if not keyword:
            return ["請輸入課程名稱或教師姓名，例如：課程 微積分"]
        semesters = await self._recent_semesters()
        courses = await asyncio.to_thread(self.store.search_courses, keyword, semesters, False, MAX_RESULTS)
        self._record_cache("course", bool(courses))
        if not courses:
            return [f"最近學期查無與「{keyword}」相關的課程，可以試試「找課 {keyword}」"]
        return [format_course(c) for c in courses]

    async def search_historical_courses(self, year: int, keyword: str) -> List[str]:
        """
        歷史學期查詢

        先查 cold 表；沒有結果時即時抓取並寫入 cold（熱門學期除外）
        """
        hot = set(await asyncio.to_thread(self.store.hot_semesters))
        semesters = [Semester(year, 1), Semester(year, 2)]
        if all(s in hot for s in semesters):
            courses = await asyncio.to_thread(self.store.search_courses, keyword, semesters, False, MAX_RESULTS)
        else:
            courses = await asyncio.to_thread(self.store.search_courses, keyword, semesters, True, MAX_RESULTS)
            self._record_cache("course", bool(courses))
            if not courses:
                courses = await self._scrape_historical(year, keyword, hot)
        if not courses:
            return [f"{year} 學年度查無與「{keyword}」相關的課程"]
        return [format_course(c) for c in courses[:MAX_RESULTS]]

    async def _scrape_historical(self, year: int, keyword: str, hot: set) -> List[Course]:
        found: List[Course] = []
        for field in ("title", "teacher"):
            results = await course_scraper.scrape_courses_by_keyword(
                self.client, year, 0, max_retries=REQUEST_MAX_RETRIES, **{field: keyword}
            )
            found.extend(results)
            if results:
                break
        cold = [c for c in found if c.semester not in hot]
        if cold:
            await asyncio.to_thread(self.store.save_historical_courses_batch, cold)
        unique = {c.uid: c for c in found}
        return sorted(unique.values(), key=lambda c: (-c.year, -c.term, c.uid))

    async def course_by_uid(self, text: str) -> List[str]:
        text = text.strip().upper()
        if is_course_no(text):
            semesters = await self._recent_semesters()
            candidates = [f"{s.year}{s.term}{text}" for s in semesters]
        else:
            candidates = [text]
        for uid in candidates:
            course = await asyncio.to_thread(self.store.get_course_by_uid, uid)
            if course is None:
                course = await self._scrape_course(uid)
            if course is not None:
                return [format_course(course)]
        return [f"查無課程編號 {text}"]

    async def _scrape_course(self, uid: str) -> Optional[Course]:
        parsed = parse_course_uid(uid)
        if parsed is None:
            return None
        year, term, no = parsed
        hot = await asyncio.to_thread(self.store.hot_semesters)
        if Semester(year, term) in hot:
            return None
        self._record_cache("course", False)
        course = await course_scraper.scrape_course_by_uid(self.client, year, term, no,
                                                           max_retries=REQUEST_MAX_RETRIES)
        if course is not None:
            await asyncio.to_thread(self.store.save_historical_courses_batch, [course])
        return course

    async def smart_search(self, chat_key: str, query: str, expand: bool = True) -> List[str]:
        if not query:
            return ["請描述想找的課程，例如：找課 想學資料分析"]
        if self.bm25 is None or not self.bm25.is_enabled():
            return ["智慧搜尋目前無法使用，請改用「課程 關鍵字」查詢"]
        started = time.monotonic()
        search_query = query
        if expand and self.llm_enabled:
            self._check_llm(chat_key)
            try:
                search_query = await self.llm.expand_query(query)
            except UpstreamError as e:
                logger.info("[Chat] 查詢擴展失敗，使用原始查詢: %s", e)
        hits = self.bm25.search(search_query, k=MAX_RESULTS)
        if self.metrics is not None:
            self.metrics.record_search("bm25", "hit" if hits else "miss", time.monotonic() - started)
        if not hits:
            return [f"找不到與「{query}」相關的課程"]
        courses = await asyncio.to_thread(self.store.get_courses_by_uids, [h.uid for h in hits])
        by_uid = {c.uid: c for c in courses}
        messages = []
        for hit in hits:
            course = by_uid.get(hit.uid) or Course(
                uid=hit.uid, year=hit.year, term=hit.term, no=hit.uid[len(f"{hit.year}{hit.term}"):],
                title=hit.title, teachers=list(hit.teachers),
            )
            messages.append(format_course(course, confidence=hit.confidence))
        return messages

    # ------------------------------------------------------------------
    # program
    # ------------------------------------------------------------------

    async def list_programs(self) -> List[str]:
        programs = await asyncio.to_thread(self.store.get_all_programs)
        if not programs:
            return ["目前沒有學程資料"]
        groups: dict = {}
        for program in programs:
            groups.setdefault(program.category or "其他", []).append(program.name)
        return ["\n".join([f"【{category}】"] + names) for category, names in groups.items()]

    async def search_programs(self, keyword: str) -> List[str]:
        if not keyword:
            return await self.list_programs()
        programs = await asyncio.to_thread(self.store.search_programs, keyword)
        if not programs:
            return [f"查無與「{keyword}」相關的學程"]
        messages = []
        for program in programs[:MAX_RESULTS]:
            courses = await asyncio.to_thread(self.store.get_courses_for_program, program.name, MAX_RESULTS)
            lines = [program.name]
            if program.url:
                lines.append(program.url)
            lines.extend(f"・{c.title}（{c.uid}）" for c in courses)
            messages.append("\n".join(lines))
        return messages

    def _record_cache(self, module: str, hit: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_cache(module, hit)


def split_messages(messages: List[str], limit: int = 5) -> Tuple[List[str], int]:
    """回覆訊息數量上限；回傳 (保留的訊息, 被截掉的數量)"""
    if len(messages) <= limit:
        return messages, 0
    return messages[:limit], len(messages) - limit
