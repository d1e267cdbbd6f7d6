"""
Sticker manager
"""
import pytest

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.schemas.cache import Sticker
from ntpu_assistant.services.scrapers import stickers as sticker_scraper
from ntpu_assistant.services.sticker_manager import StickerManager

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


async def no_sleep(seconds):
    return None


async def test_load_prefers_cache(store, mock_client, monkeypatch):
    store.save_stickers_batch([Sticker(url="https://example.com/a.png", source="spy_family")])

    async def fail(*args, **kwargs):
        raise AssertionError("should not fetch")

    monkeypatch.setattr(sticker_scraper, "fetch_page", fail)
    manager = StickerManager(store, mock_client, sleep=no_sleep)
    assert await manager.load() == 1
    assert manager.random_url() == "https://example.com/a.png"


async def test_refresh_keeps_partial_results(store, mock_client, monkeypatch):
    async def fetch_page(client, url, source):
        if source == "ichigo":
            return ["https://ichigo.example/1.jpg"]
        raise UpstreamError("external", "timeout")

    monkeypatch.setattr(sticker_scraper, "fetch_page", fetch_page)
    manager = StickerManager(store, mock_client, sleep=no_sleep)
    assert await manager.load() == 1
    assert [s.source for s in store.get_all_stickers()] == ["ichigo"]


async def test_all_sources_failing_uses_fallback(store, mock_client, monkeypatch):
    calls = []
    delays = []

    async def fetch_page(client, url, source):
        calls.append(url)
        return []

    async def record_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(sticker_scraper, "fetch_page", fetch_page)
    manager = StickerManager(store, mock_client, sleep=record_sleep)
    count = await manager.refresh()

    sources = len(sticker_scraper.SPY_FAMILY_PAGES) + 1
    assert len(calls) == sources * 3
    assert sorted(set(delays)) == [2, 4]
    assert count == len(sticker_scraper.fallback_stickers())
    assert manager.random_url().startswith("https://ui-avatars.com/")
    assert store.count_stickers() == count


async def test_random_url_before_load(store, mock_client):
    manager = StickerManager(store, mock_client)
    assert manager.random_url() in sticker_scraper.fallback_stickers()
    assert manager.count() == 0
