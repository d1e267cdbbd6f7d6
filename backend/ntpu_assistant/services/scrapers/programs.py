"""
Program Scraper - 學程資料夾
LMS 公告板（courseID=28286）依學程類別分成數個資料夾
"""
import logging
import os
from typing import List, Set
from urllib.parse import parse_qs, urlsplit

import yaml
from bs4 import BeautifulSoup

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.schemas.cache import Program
from ntpu_assistant.services.scraper_client import ScraperClient

logger = logging.getLogger(__name__)

LMS_COURSE_ID = "28286"
BOARD_PATH = "/board.php"
MAX_PAGES = 10
USER_FACING_LMS_URL = "https://lms.ntpu.edu.tw"

STATIC_PROGRAMS_PATH = os.path.join(os.path.dirname(__file__), "../../core/data/programs.yaml")

PROGRAM_FOLDERS = [
    ("115531", "碩士學分學程"),
    ("115532", "學士學分學程"),
    ("115533", "學士暨碩士學分學程"),
    ("198807", "碩士跨域微學程"),
    ("198808", "學士跨域微學程"),
    ("198809", "學士暨碩士跨域微學程"),
    ("198811", "碩士單一領域微學程"),
    ("198812", "學士單一領域微學程"),
]

# 公告標題與選課系統名稱不一致的學程
PROGRAM_ALIASES = {
    "英語商學碩士學分學程": "英語授課商學碩士學分學程",
    "英語商學學士學分學程": "英語授課商學學士學分學程",
    "人工智慧英語學士學分學程": "人工智慧英語授課學士學分學程",
    "人工智慧英語學士微學程": "人工智慧英語授課學士微學程",
    "鑑識學分學程": "資本市場鑑識學分學程",
}


def clean_program_name(name: str) -> str:
    """
    公告標題轉成選課系統使用的學程名稱

    截斷「學程」之後的文字，缺少「學分」或「微」的補成「學分學程」，最後套用別名
    """
    index = name.find("學程")
    if index >= 0:
        name = name[:index + len("學程")]
    name = name.strip()
    if name.endswith("學程") and not name.endswith("學分學程") and not name.endswith("微學程"):
        name = name[:-len("學程")] + "學分學程"
    return PROGRAM_ALIASES.get(name, name)


def extract_programs(soup: BeautifulSoup, seen: Set[str], category: str):
    """回傳 (學程列表, 是否有下一頁)"""
    programs = []
    has_next = False
    for link in soup.find_all("a", href=True):
        text = link.get_text(strip=True)
        if text in ("Next", "下一頁"):
            has_next = True
            continue
        href = link["href"]
        query = parse_qs(urlsplit(href).query)
        if query.get("f", [""])[0] != "doc":
            continue
        cid = query.get("cid", [""])[0]
        if not cid or cid in seen or not text:
            continue
        if "學程" not in text or "廢止" in text:
            continue
        url = href if href.startswith("http") else f"{USER_FACING_LMS_URL}/{href.lstrip('/')}"
        seen.add(cid)
        programs.append(Program(name=clean_program_name(text), category=category, url=url))
    return programs, has_next


async def _scrape_folder(client: ScraperClient, folder_id: str, category: str, seen: Set[str]) -> List[Program]:
    programs: List[Program] = []
    for page in range(1, MAX_PAGES + 1):
        params = {"courseID": LMS_COURSE_ID, "f": "doclist", "folderID": folder_id}
        if page > 1:
            params["page"] = page
        try:
            soup = await client.get_document("lms", BOARD_PATH, params=params, module="program")
        except UpstreamError:
            if page == 1:
                raise
            break
        found, has_next = extract_programs(soup, seen, category)
        programs.extend(found)
        if not has_next or not found:
            break
    return programs


async def scrape_programs(client: ScraperClient) -> List[Program]:
    """抓取所有學程資料夾；單一資料夾失敗時略過"""
    seen: Set[str] = set()
    programs: List[Program] = []
    for folder_id, category in PROGRAM_FOLDERS:
        try:
            programs.extend(await _scrape_folder(client, folder_id, category, seen))
        except UpstreamError as e:
            logger.debug("[ProgramScraper] 資料夾 %s (%s) 抓取失敗: %s", folder_id, category, e)
    # 同名學程只保留第一筆
    unique = {}
    for program in programs:
        unique.setdefault(program.name, program)
    return list(unique.values())


def load_static_programs(path: str = STATIC_PROGRAMS_PATH) -> List[Program]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return [Program(**item) for item in data.get("programs", [])]
