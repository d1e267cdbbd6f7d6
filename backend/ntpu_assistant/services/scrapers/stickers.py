"""
Sticker Scraper - 回覆頭像來源
"""
from typing import List

from bs4 import BeautifulSoup

from ntpu_assistant.services.scraper_client import ScraperClient

SPY_FAMILY_BASE = "https://spy-family.net/tvseries/"
SPY_FAMILY_PAGES = [
    "https://spy-family.net/tvseries/special/special1_season1.php",
    "https://spy-family.net/tvseries/special/special2_season1.php",
    "https://spy-family.net/tvseries/special/special9_season1.php",
    "https://spy-family.net/tvseries/special/special13_season1.php",
    "https://spy-family.net/tvseries/special/special16_season1.php",
    "https://spy-family.net/tvseries/special/special17_season1.php",
    "https://spy-family.net/tvseries/special/special3_season2.php",
    "https://spy-family.net/tvseries/special/special10.php",
]

ICHIGO_BASE = "https://ichigoproduction.com/Season1/"
ICHIGO_PAGE = "https://ichigoproduction.com/Season1/special/present_icon.html"

FALLBACK_NAMES = [
    "Anya", "Loid", "Yor", "Bond", "Damian",
    "Becky", "Fiona", "Franky", "Yuri", "Sylvia",
    "Ichigo", "Ai", "Kana", "Aqua", "Ruby",
    "Miyako", "Mem", "Akane", "Taiki", "Sarina",
]
FALLBACK_BACKGROUNDS = ["FF6B6B", "4ECDC4", "45B7D1", "FFA07A", "98D8C8"]


def absolute_url(href: str, base: str) -> str:
    """相對路徑（../）轉成完整網址，無法判斷時回傳空字串"""
    if href.startswith("../"):
        return base + href[3:]
    if href.startswith("http"):
        return href
    if href.startswith("//"):
        return "https:" + href
    return ""


def parse_spy_family(soup: BeautifulSoup) -> List[str]:
    urls = [absolute_url(a.get("href", ""), SPY_FAMILY_BASE)
            for a in soup.select("ul.icondlLists a[href$='.png']")]
    return [u for u in urls if u]


def parse_ichigo(soup: BeautifulSoup) -> List[str]:
    urls = []
    for img in soup.find_all("img", src=True):
        src = img["src"]
        if "core_sys/images/contents/" not in src or ".jpg" not in src:
            continue
        url = absolute_url(src, ICHIGO_BASE)
        if url:
            urls.append(url)
    return urls


def fallback_stickers() -> List[str]:
    return [
        f"https://ui-avatars.com/api/?name={name}&size=256&background="
        f"{FALLBACK_BACKGROUNDS[i % len(FALLBACK_BACKGROUNDS)]}&color=fff"
        for i, name in enumerate(FALLBACK_NAMES)
    ]


async def fetch_page(client: ScraperClient, url: str, source: str) -> List[str]:
    """抓一個來源頁面；重試交給呼叫端"""
    soup = await client.get_document_url(url, module="sticker", max_retries=0)
    return parse_spy_family(soup) if source == "spy_family" else parse_ichigo(soup)
