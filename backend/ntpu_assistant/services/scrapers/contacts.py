"""
Contact Scraper - 校園通訊錄
SEA 的行政 / 教學單位目錄頁面（Big5 編碼）
"""
import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import quote_from_bytes

from bs4 import BeautifulSoup, NavigableString, Tag

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.core.identifiers import contact_uid
from ntpu_assistant.schemas.cache import Contact
from ntpu_assistant.services.scraper_client import ScraperClient

logger = logging.getLogger(__name__)

ADMINISTRATIVE_PATH = "/pls/ld/CAMPUS_DIR_M.p1?kind=1"
ACADEMIC_PATH = "/pls/ld/CAMPUS_DIR_M.p1?kind=2"
SEARCH_PATH = "/pls/ld/CAMPUS_DIR_M.pq"
DEPARTMENT_PREFIX = "/pls/ld/"

SANXIA_MAIN_PHONE = "0286741111"
USER_FACING_SEA_URL = "https://sea.cc.ntpu.edu.tw"


def build_full_phone(extension: str) -> str:
    """分機至少五碼時組成總機 + 分機的撥號字串"""
    if len(extension) < 5:
        return ""
    return f"{SANXIA_MAIN_PHONE},{extension[:5]}"


def big5_query(keyword: str) -> str:
    return quote_from_bytes(keyword.encode("cp950", errors="ignore"))


def build_search_url(keyword: str) -> str:
    """給使用者點的查詢連結（網域而非 IP）"""
    return f"{USER_FACING_SEA_URL}{SEARCH_PATH}?q={big5_query(keyword)}"


def _email_text(cell: Tag) -> str:
    # 頁面以圖片代替 @
    parts = []
    for span in cell.find_all("span"):
        for node in span.children:
            if isinstance(node, NavigableString):
                parts.append(str(node))
            elif isinstance(node, Tag) and node.name == "img":
                parts.append("@")
    return "".join(parts).strip()


def _parse_members(table: Tag, organization: str) -> List[Contact]:
    members = []
    for row in table.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) < 5:
            continue
        name_cell = cells[0]
        zh = name_cell.select_one("span.lang-zh-Hant") or name_cell.find("span")
        name = zh.get_text(strip=True) if zh else name_cell.get_text(strip=True)
        if not name:
            continue
        en = name_cell.select_one("span.lang-en")
        ext_span = cells[2].find("span")
        extension = ext_span.get_text(strip=True) if ext_span else ""
        members.append(Contact(
            uid=contact_uid("individual", name, organization),
            type="individual",
            name=name,
            name_en=en.get_text(strip=True) if en else "",
            organization=organization,
            title=cells[1].get_text(strip=True),
            extension=extension,
            phone=build_full_phone(extension),
            email=_email_text(cells[4]),
        ))
    return members


def parse_contacts_page(soup: BeautifulSoup) -> List[Contact]:
    """解析單位區塊與其後的成員表格"""
    contacts = []
    for org_div in soup.select("div.alert.alert-info.mt-0.mb-0"):
        links = org_div.select("a.lang.lang-zh-Hant.mx-2")
        superior, name = "", ""
        if len(links) == 1:
            name = links[0].get_text(strip=True)
        elif len(links) > 1:
            superior = links[0].get_text(strip=True)
            name = links[1].get_text(strip=True)
        if not name:
            continue

        location, website = "", ""
        items = org_div.find_all("li")
        if len(items) > 2 and "：" in items[2].get_text():
            location = items[2].get_text().split("：", 1)[1].strip()
        if len(items) > 3:
            anchor = items[3].find("a")
            website = anchor.get_text(strip=True) if anchor else ""

        contacts.append(Contact(
            uid=contact_uid("unit", name),
            type="unit",
            name=name,
            superior=superior,
            location=location,
            website=website,
        ))

        table = org_div.find_next_sibling()
        if isinstance(table, Tag) and "w100" in (table.get("class") or []):
            contacts.extend(_parse_members(table, name))
    return contacts


async def _scrape_directory(client: ScraperClient, index_path: str) -> Tuple[List[Contact], List[str]]:
    index = await client.get_document("sea", index_path, module="contact")
    contacts: List[Contact] = []
    failures: List[str] = []
    for header in index.select("div.card-header"):
        link = header.find("a")
        if link is None or not link.get("href"):
            continue
        href = link["href"]
        try:
            page = await client.get_document("sea", DEPARTMENT_PREFIX + href.lstrip("/"), module="contact")
        except UpstreamError as e:
            failures.append(f"{href}: {e}")
            continue
        contacts.extend(parse_contacts_page(page))
    if not contacts and failures:
        raise UpstreamError("sea", "partial", message=f"all {len(failures)} department pages failed")
    if failures:
        logger.warning("[ContactScraper] %s 有 %d 個單位頁面抓取失敗", index_path, len(failures))
    return contacts, failures


async def scrape_administrative_contacts(client: ScraperClient) -> List[Contact]:
    contacts, _ = await _scrape_directory(client, ADMINISTRATIVE_PATH)
    return contacts


async def scrape_academic_contacts(client: ScraperClient) -> List[Contact]:
    contacts, _ = await _scrape_directory(client, ACADEMIC_PATH)
    return contacts


async def scrape_all_contacts(client: ScraperClient) -> Tuple[List[Contact], List[BaseException]]:
    """兩個目錄都抓，只要一個成功就回傳資料"""
    results = await asyncio.gather(
        scrape_administrative_contacts(client),
        scrape_academic_contacts(client),
        return_exceptions=True,
    )
    contacts: List[Contact] = []
    errors: List[BaseException] = []
    for result in results:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            errors.append(result)
        else:
            contacts.extend(result)
    if errors and len(errors) == len(results):
        raise errors[0]
    return contacts, errors


async def search_contacts(client: ScraperClient, keyword: str,
                          max_retries: Optional[int] = None) -> List[Contact]:
    """即時查詢（快取沒有結果時使用）"""
    path = f"{SEARCH_PATH}?q={big5_query(keyword)}"
    soup = await client.get_document("sea", path, module="contact", max_retries=max_retries)
    return parse_contacts_page(soup)
