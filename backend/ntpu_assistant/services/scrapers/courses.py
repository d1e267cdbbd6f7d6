"""
Course Scraper - 課程查詢頁面
SEA 選課系統的 queryByKeyword 依學制（U/M/N/P）列出整學期課程
"""
import html
import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import quote_from_bytes

from bs4 import BeautifulSoup, Tag

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.core.identifiers import course_uid, education_code
from ntpu_assistant.schemas.cache import Course, CourseProgram, ProgramRequirement
from ntpu_assistant.services.scraper_client import ScraperClient, decode_body

logger = logging.getLogger(__name__)

QUERY_BY_KEYWORD_PATH = "/pls/dev_stud/course_query_all.queryByKeyword"
QUERY_BY_CONDITIONS_PATH = "/pls/dev_stud/course_query_all.queryByAllConditions"

# 產生給使用者的連結用網域而不是 IP
USER_FACING_SEA_URL = "https://sea.cc.ntpu.edu.tw"
DETAIL_PATH = "/pls/dev_stud/course_query.queryguide"
TEACHER_PATH = "/pls/faculty/tec_course_table.s_table"

EDUCATION_CODES = ("U", "M", "N", "P")

_CLASSROOM = re.compile(r"(?:教室|上課地點)[:：為](.*?)(?:$|[ .，。；【])")
_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAGS = re.compile(r"<[^>]*>")
_SPACES = re.compile(r"\s+")


def _query_string(href: str) -> str:
    return href.split("?", 1)[1] if "?" in href else ""


def _split_by_br(cell: Tag) -> List[str]:
    raw = _BR.sub("\n", cell.decode_contents())
    return [part.strip() for part in raw.split("\n") if part.strip()]


def _clean_major_name(text: str) -> str:
    text = html.unescape(_TAGS.sub("", text)).replace(" ", "")
    for token in ("有擋修", "有限制"):
        text = text.replace(token, "")
    return text.strip()


def _clean_course_type(text: str) -> str:
    text = _TAGS.sub("", text).strip()
    if "必" in text:
        return "必"
    if "選" in text:
        return "選"
    return ""


def parse_program_requirements(major_cell: Tag, type_cell: Tag) -> List[ProgramRequirement]:
    """應修系級與必選修欄位以 <br> 分行，一行對一行"""
    majors = _split_by_br(major_cell)
    types = _split_by_br(type_cell)
    result = []
    for major, kind in zip(majors, types):
        name = _clean_major_name(major)
        course_type = _clean_course_type(kind)
        if name and course_type:
            result.append(ProgramRequirement(program_name=name, course_type=course_type))
    return result


def _parse_title(cell: Tag) -> Tuple[str, str, str, str]:
    title, detail_query, note, location = "", "", "", ""
    link = cell.find("a")
    if link is not None:
        title = link.get_text(strip=True)
        detail_query = _query_string(link.get("href", ""))
    font = cell.find("font")
    if font is not None:
        text = font.get_text()
        if text.startswith("備註："):
            note = text[len("備註："):].strip()
            match = _CLASSROOM.search(note)
            if match:
                location = _SPACES.sub(" ", match.group(1)).strip()
    return title, detail_query, note, location


def _parse_teachers(cell: Tag) -> Tuple[List[str], List[str]]:
    teachers, urls = [], []
    for link in cell.find_all("a"):
        teachers.append(link.get_text(strip=True))
        query = _query_string(link.get("href", ""))
        if query:
            urls.append(f"{USER_FACING_SEA_URL}{TEACHER_PATH}?{query}")
    return teachers, urls


def _parse_times(cell: Tag) -> Tuple[List[str], List[str]]:
    times, locations = [], []
    for link in cell.find_all("a"):
        line = link.get_text().strip()
        if "每週未維護" in line:
            continue
        parts = line.split("\t", 1)
        times.append(parts[0].strip())
        if len(parts) > 1:
            locations.append(parts[1].strip())
    return times, locations


def parse_courses_page(soup: BeautifulSoup, year: int, term: int) -> List[Course]:
    courses = []
    table = soup.find("table")
    if table is None:
        return courses
    for row in table.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) < 14:
            continue
        row_term = term
        if term == 0:
            text = cells[2].get_text(strip=True)
            row_term = int(text) if text.isdigit() and int(text) > 0 else 1
        no = cells[3].get_text(strip=True)
        title, detail_query, note, classroom = _parse_title(cells[7])
        if not title or not no:
            continue
        teachers, teacher_urls = _parse_teachers(cells[8])
        times, locations = _parse_times(cells[13])
        if classroom:
            locations.append(classroom)
        courses.append(Course(
            uid=course_uid(year, row_term, no),
            year=year,
            term=row_term,
            no=no,
            title=title,
            teachers=teachers,
            teacher_urls=teacher_urls,
            times=times,
            locations=locations,
            detail_url=f"{USER_FACING_SEA_URL}{DETAIL_PATH}?{detail_query}&show_info=all" if detail_query else "",
            note=note,
            education_code=education_code(no),
            program_requirements=parse_program_requirements(cells[5], cells[6]),
        ))
    return courses


def program_edges(courses: List[Course]) -> List[CourseProgram]:
    """課程列表上的學程要求轉成 course↔program 關聯（只留學程）"""
    edges = []
    for course in courses:
        seen = set()
        for req in course.program_requirements:
            if "學程" not in req.program_name or req.program_name in seen:
                continue
            seen.add(req.program_name)
            edges.append(CourseProgram(
                course_uid=course.uid,
                program_name=req.program_name,
                course_type=req.course_type,
            ))
    return edges


def _keyword_params(year: int, term: int, code: str) -> dict:
    params = {"qYear": year, "qTerm": term, "seq1": "A", "seq2": "M", "courseno": code}
    if term == 0:
        params.pop("qTerm")
    return params


async def scrape_semester(client: ScraperClient, year: int, term: int) -> List[Course]:
    """
    抓取某學期四個學制的所有課程

    部分學制失敗時保留其他學制的結果，全部失敗才拋出最後的例外
    """
    courses: List[Course] = []
    last_error: Optional[UpstreamError] = None
    for code in EDUCATION_CODES:
        try:
            soup = await client.get_document("sea", QUERY_BY_KEYWORD_PATH,
                                             params=_keyword_params(year, term, code), module="course")
        except UpstreamError as e:
            logger.warning("[CourseScraper] %d-%d %s 抓取失敗: %s", year, term, code, e)
            last_error = e
            continue
        courses.extend(parse_courses_page(soup, year, term))
    if not courses and last_error is not None:
        raise last_error
    # 同一課號可能出現在多個學制頁面
    unique = {c.uid: c for c in courses}
    return list(unique.values())


async def has_semester_courses(client: ScraperClient, year: int, term: int) -> bool:
    """只用大學部代碼確認該學期是否已有課程"""
    soup = await client.get_document("sea", QUERY_BY_KEYWORD_PATH,
                                     params=_keyword_params(year, term, "U"), module="course")
    return bool(parse_courses_page(soup, year, term))


async def scrape_course_by_uid(client: ScraperClient, year: int, term: int, no: str,
                               max_retries: Optional[int] = None) -> Optional[Course]:
    soup = await client.get_document("sea", QUERY_BY_KEYWORD_PATH, params=_keyword_params(year, term, no),
                                     module="course", max_retries=max_retries)
    for course in parse_courses_page(soup, year, term):
        if course.no.upper() == no.upper():
            return course
    return None


def _big5_form(fields: dict) -> str:
    parts = []
    for key, value in fields.items():
        encoded = quote_from_bytes(str(value).encode("cp950", errors="ignore"))
        parts.append(f"{key}={encoded}")
    return "&".join(parts)


async def scrape_courses_by_keyword(client: ScraperClient, year: int, term: int,
                                    title: str = "", teacher: str = "",
                                    max_retries: Optional[int] = None) -> List[Course]:
    """以課名或教師查詢（表單需以 Big5 編碼）"""
    fields = {"qYear": year}
    if term:
        fields["qTerm"] = term
    if title:
        fields["cour"] = title
    if teacher:
        fields["teach"] = teacher
    fields.update({"seq1": "A", "seq2": "M"})
    response = await client.post_form("sea", QUERY_BY_CONDITIONS_PATH, _big5_form(fields),
                                      module="course", max_retries=max_retries)
    return parse_courses_page(BeautifulSoup(decode_body(response), "html.parser"), year, term)
