"""
Syllabus Scraper - 課程大綱頁面
從課程詳細頁擷取教學目標、內容綱要、教學進度，以及頁面上列出的學程
"""
import logging
import re
from typing import List, NamedTuple

from bs4 import BeautifulSoup

from ntpu_assistant.schemas.cache import Course, ProgramRequirement, Syllabus
from ntpu_assistant.services.scraper_client import ScraperClient

logger = logging.getLogger(__name__)

_SPACES = re.compile(r"[ \t]+")
_NEWLINES = re.compile(r"\n{3,}")
_TAGS = re.compile(r"<[^>]*>")


class DetailResult(NamedTuple):
    syllabus: Syllabus
    programs: List[ProgramRequirement]


def clean_content(text: str) -> str:
    """統一換行、壓縮空白並去掉頭尾空行"""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _SPACES.sub(" ", text)
    text = _NEWLINES.sub("\n\n", text)
    lines = [line.strip() for line in text.split("\n")]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _content_by_prefix(soup: BeautifulSoup, prefix: str) -> str:
    for cell in soup.find_all("td"):
        text = cell.get_text().strip()
        if not text.startswith(prefix):
            continue
        parts = [e.get_text().strip() for e in cell.select("span.font-c13, div.font-c13")]
        parts = [p for p in parts if p]
        if parts:
            return "".join(parts)
        rest = text[len(prefix):].strip().lstrip("：:").strip()
        return rest
    return ""


def _bilingual(soup: BeautifulSoup, merged: str, zh: str, en: str) -> str:
    content = _content_by_prefix(soup, merged)
    if content:
        return content
    zh_text = _content_by_prefix(soup, zh)
    en_text = _content_by_prefix(soup, en)
    if zh_text and en_text:
        return f"{zh_text} {en_text}"
    return zh_text or en_text


def _schedule(soup: BeautifulSoup) -> str:
    for cell in soup.find_all("td"):
        if not cell.get_text().strip().startswith("教學進度"):
            continue
        table = cell.find("table")
        if table is None:
            continue
        rows = table.find_all("tr")
        if not rows:
            continue
        header = rows[0].get_text()
        if "週別" not in header and "Weekly" not in header:
            continue
        items = []
        for row in rows[1:]:
            cells = row.find_all("td")
            if len(cells) < 3:
                continue
            week = cells[0].get_text().strip()
            plan = cells[2].get_text().strip()
            if not plan or plan == "彈性補充教學":
                continue
            items.append(f"{week}: {plan}" if week.startswith("Week") else plan)
        if items:
            return "\n".join(items)
    return ""


def parse_syllabus_page(soup: BeautifulSoup):
    """回傳 (objectives, outline, schedule)"""
    objectives = _bilingual(soup, "教學目標 Course Objectives", "教學目標", "Course Objectives")
    outline = _bilingual(soup, "內容綱要/Course Outline", "內容綱要", "Course Outline")
    return clean_content(objectives), clean_content(outline), clean_content(_schedule(soup))


def parse_programs(soup: BeautifulSoup) -> List[ProgramRequirement]:
    """詳細頁「應修系級 Major:」欄位中以學程結尾的項目"""
    programs = []
    for cell in soup.select("td.font-g13"):
        text = cell.get_text()
        if "Major:" not in text and "應修系級" not in text:
            continue
        bold = cell.select_one("b.font-c15")
        if bold is None:
            continue
        content = bold.decode_contents() or bold.get_text()
        for part in content.split(","):
            part = _TAGS.sub("", part).replace("&nbsp;", "").replace("\xa0", "").strip()
            if part.endswith("學程") and part != "學程":
                programs.append(ProgramRequirement(program_name=part, course_type="選"))
    return programs


def _normalize(name: str) -> str:
    return "".join(name.split())


_CORE_SUFFIXES = (
    "學士暨碩士學分學程", "學士學分學程", "碩士學分學程",
    "學士暨碩士微學程", "學士微學程", "碩士微學程",
    "學分學程", "微學程", "學程",
)
_CORE_PREFIXES = ("學士暨碩士", "學士", "碩士")


def _core(name: str) -> str:
    for suffix in _CORE_SUFFIXES:
        if name.endswith(suffix):
            name = name[:-len(suffix)]
            break
    for prefix in _CORE_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return name.strip()


def _jaccard(a: str, b: str) -> float:
    set_a = {c for c in a if not c.isspace()}
    set_b = {c for c in b if not c.isspace()}
    union = len(set_a | set_b)
    return len(set_a & set_b) / union if union else 0.0


def _matching_type(full_name: str, raw: List[ProgramRequirement]) -> str:
    full_norm = _normalize(full_name)
    for req in raw:
        if _normalize(req.program_name) == full_norm:
            return req.course_type
    for req in raw:
        raw_norm = _normalize(req.program_name)
        if raw_norm and raw_norm in full_norm:
            return req.course_type
    full_core = _core(full_name)
    for req in raw:
        raw_core = _core(req.program_name)
        if raw_core and full_core and (raw_core in full_core or full_core in raw_core):
            return req.course_type
    best, best_score = "", 0.0
    for req in raw:
        if "學程" not in req.program_name:
            continue
        score = _jaccard(full_name, req.program_name)
        if score > best_score and score > 0.7:
            best, best_score = req.course_type, score
    return best or "選"


def match_program_types(full_names: List[str], raw: List[ProgramRequirement]) -> List[ProgramRequirement]:
    """
    詳細頁的完整學程名稱配上課程列表的必選修

    列表上的名稱常被截短，依序用完全相同、包含、去掉學制字樣、字元相似度比對
    """
    return [
        ProgramRequirement(program_name=name, course_type=_matching_type(name, raw))
        for name in full_names
        if name.endswith("學程")
    ]


async def scrape_course_detail(client: ScraperClient, course: Course) -> DetailResult:
    soup = await client.get_document_url(course.detail_url, module="syllabus")
    objectives, outline, schedule = parse_syllabus_page(soup)
    syllabus = Syllabus(
        uid=course.uid,
        year=course.year,
        term=course.term,
        title=course.title,
        teachers=list(course.teachers),
        objectives=objectives,
        outline=outline,
        schedule=schedule,
    ).with_hash()
    return DetailResult(syllabus, parse_programs(soup))
