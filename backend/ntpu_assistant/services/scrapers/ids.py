"""
Student ID Scraper - 學號搜尋頁面
LMS 的數位學習歷程搜尋頁可以用「前綴 + 學年 + 系代碼」查詢學生
"""
import logging
from typing import Dict, List

from bs4 import BeautifulSoup

from ntpu_assistant.core.identifiers import student_department_code, student_year
from ntpu_assistant.schemas.cache import Student
from ntpu_assistant.services.scraper_client import ScraperClient

logger = logging.getLogger(__name__)

SEARCH_PATH = "/portfolio/search.php"

# 學士班系代碼（法律系依組別細分）
UNDERGRAD_DEPARTMENTS: Dict[str, str] = {
    "71": "法律學系",
    "712": "法律學系法學組",
    "714": "法律學系司法組",
    "716": "法律學系財經法組",
    "72": "公共行政暨政策學系",
    "73": "經濟學系",
    "742": "社會學系",
    "744": "社會工作學系",
    "75": "財政學系",
    "76": "不動產與城鄉環境學系",
    "77": "會計學系",
    "78": "統計學系",
    "79": "企業管理學系",
    "80": "金融與合作經營學系",
    "81": "中國文學系",
    "82": "應用外語學系",
    "83": "歷史學系",
    "84": "休閒運動管理學系",
    "85": "資訊工程學系",
    "86": "通訊工程學系",
    "87": "電機工程學系",
}

MASTER_DEPARTMENTS: Dict[str, str] = {
    "31": "企業管理學系碩士班",
    "32": "會計學系碩士班",
    "33": "統計學系碩士班",
    "34": "金融與合作經營學系碩士班",
    "35": "國際企業研究所碩士班",
    "36": "資訊管理研究所",
    "37": "財務金融英語碩士學位學程",
    "41": "民俗藝術與文化資產研究所",
    "42": "古典文獻學研究所",
    "43": "中國文學系碩士班",
    "44": "歷史學系碩士班",
    "51": "法律學系碩士班一般生組",
    "52": "法律學系碩士班法律專業組",
    "61": "經濟學系碩士班",
    "62": "社會學系碩士班",
    "63": "社會工作學系碩士班",
    "64": "犯罪學研究所",
    "71": "公共行政暨政策學系碩士班",
    "72": "財政學系碩士班",
    "73": "不動產與城鄉環境學系碩士班",
    "74": "都市計劃研究所碩士班",
    "75": "自然資源與環境管理研究所碩士班",
    "76": "城市治理英語碩士學位學程",
    "77": "會計學系碩士在職專班",
    "78": "統計學系碩士在職專班",
    "79": "企業管理學系碩士在職專班",
    "81": "通訊工程學系碩士班",
    "82": "電機工程學系碩士班",
    "83": "資訊工程學系碩士班",
    "91": "智慧醫療管理英語碩士學位學程",
}

PHD_DEPARTMENTS: Dict[str, str] = {
    "32": "會計學系博士班",
    "51": "法律學系博士班",
    "61": "經濟學系博士班",
    "71": "公共行政暨政策學系博士班",
    "73": "不動產與城鄉環境學系博士班",
    "74": "都市計劃研究所博士班",
    "75": "自然資源與環境管理研究所博士班",
    "76": "電機資訊學院博士班",
}

DEPARTMENTS_BY_PREFIX: Dict[str, Dict[str, str]] = {
    "4": UNDERGRAD_DEPARTMENTS,
    "7": MASTER_DEPARTMENTS,
    "8": PHD_DEPARTMENTS,
}


def department_codes(prefix: str) -> List[str]:
    """暖機要掃描的系代碼；法律系以三個組別代替"""
    codes = list(DEPARTMENTS_BY_PREFIX.get(prefix, {}))
    if prefix == "4":
        codes.remove("71")
    return codes


def department_name(student_id: str) -> str:
    prefix = student_id[:1]
    code = student_department_code(student_id)
    table = DEPARTMENTS_BY_PREFIX.get(prefix)
    if table is None:
        return "未知系所"
    if code in table:
        return table[code]
    return {"7": "未知碩士班", "8": "未知博士班"}.get(prefix, "未知系所")


def parse_student_page(soup: BeautifulSoup) -> List[Student]:
    students = []
    for block in soup.select("div.bloglistTitle"):
        link = block.find("a")
        if link is None or not link.get("href"):
            continue
        student_id = link["href"].rstrip("/").split("/")[-1].strip()
        name = link.get_text(strip=True)
        if not student_id or not name:
            continue
        students.append(Student(
            id=student_id,
            name=name,
            year=student_year(student_id),
            department=department_name(student_id),
        ))
    return students


def _total_pages(soup: BeautifulSoup) -> int:
    pages = 1
    for item in soup.select("span.item"):
        text = item.get_text(strip=True)
        if text.isdigit():
            pages = max(pages, int(text))
    return pages


async def scrape_students(client: ScraperClient, prefix: str, year: int, department: str) -> List[Student]:
    """抓取某前綴、學年、系代碼的所有學生（含分頁）"""
    keyword = f"{prefix}{year}{department}"
    params = {"fmScope": 2, "page": 1, "fmKeyword": keyword}
    soup = await client.get_document("lms", SEARCH_PATH, params=params, module="id")
    students = parse_student_page(soup)
    for page in range(2, _total_pages(soup) + 1):
        params["page"] = page
        soup = await client.get_document("lms", SEARCH_PATH, params=params, module="id")
        students.extend(parse_student_page(soup))
    logger.debug("[IDScraper] %s 找到 %d 位學生", keyword, len(students))
    return students


async def scrape_student_by_id(client: ScraperClient, student_id: str) -> List[Student]:
    params = {"fmScope": 2, "page": 1, "fmKeyword": student_id}
    soup = await client.get_document("lms", SEARCH_PATH, params=params, module="id")
    return [s for s in parse_student_page(soup) if s.id == student_id][:1]
