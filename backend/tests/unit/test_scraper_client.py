"""
Scraper client: failover, retry and backoff
"""
import httpx
import pytest

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.services.scraper_client import ScraperClient, decode_body

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class Recorder:
    """記錄每次請求的網址與等待秒數"""

    def __init__(self, responder):
        self.responder = responder
        self.urls = []
        self.delays = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.urls.append(str(request.url))
        return self.responder(request, len(self.urls))

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_client(recorder, bases=None, **kwargs):
    options = dict(max_retries=3, initial_delay=1.0, max_delay=60.0, min_interval=0, jitter=False)
    options.update(kwargs)
    return ScraperClient(
        bases or {"lms": ["http://a.example", "http://b.example"]},
        transport=httpx.MockTransport(recorder.handler),
        sleep=recorder.sleep,
        **options,
    )


async def test_all_bases_failing_rotates_and_backs_off():
    recorder = Recorder(lambda request, n: httpx.Response(500))
    client = make_client(recorder)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("lms", "/page")
    finally:
        await client.close()

    assert exc_info.value.kind == "status"
    assert exc_info.value.last_status == 500
    assert exc_info.value.retryable
    assert recorder.urls == [
        "http://a.example/page",
        "http://b.example/page",
        "http://a.example/page",
        "http://b.example/page",
    ]
    assert recorder.delays == [1.0, 2.0, 4.0]


async def test_recovers_on_backup_base():
    def responder(request, n):
        if request.url.host == "a.example":
            return httpx.Response(503)
        return httpx.Response(200, text="ok")

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        body = await client.fetch("lms", "/page", module="id")
        assert body == b"ok"
        assert client.current_base("lms") == "http://b.example"
        assert client.bytes_by_module == {"id": 2}
    finally:
        await client.close()
    assert recorder.delays == [1.0]


async def test_client_error_is_terminal():
    recorder = Recorder(lambda request, n: httpx.Response(404))
    client = make_client(recorder)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("lms", "/missing")
    finally:
        await client.close()
    assert len(recorder.urls) == 1
    assert recorder.delays == []
    assert exc_info.value.last_status == 404
    assert not exc_info.value.retryable


async def test_too_many_requests_honors_retry_after():
    def responder(request, n):
        if n == 1:
            return httpx.Response(429, headers={"Retry-After": "7"})
        return httpx.Response(200, text="done")

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        assert await client.fetch("lms", "/page") == b"done"
    finally:
        await client.close()
    # 429 不輪替網址
    assert recorder.urls == ["http://a.example/page", "http://a.example/page"]
    assert recorder.delays == [7.0]


async def test_network_errors_are_retried():
    def responder(request, n):
        if n < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text="up")

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        assert await client.fetch("lms", "/page") == b"up"
    finally:
        await client.close()
    assert len(recorder.urls) == 3
    assert recorder.delays == [1.0, 2.0]


async def test_network_failure_reports_kind():
    def responder(request, n):
        raise httpx.ConnectError("down", request=request)

    recorder = Recorder(responder)
    client = make_client(recorder, max_retries=1)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("lms", "/page")
    finally:
        await client.close()
    assert exc_info.value.kind == "network"
    assert exc_info.value.last_status is None


async def test_backoff_is_capped_and_jittered():
    client = ScraperClient({"lms": ["http://a.example"]}, initial_delay=4.0, max_delay=60.0)
    try:
        assert client.backoff_delay(10) <= 60.0 * 1.25
        for attempt in range(4):
            base = 4.0 * (2 ** attempt)
            assert base * 0.75 <= client.backoff_delay(attempt) <= base * 1.25
    finally:
        await client.close()


async def test_unconfigured_category():
    recorder = Recorder(lambda request, n: httpx.Response(200))
    client = make_client(recorder)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("sea", "/page")
    finally:
        await client.close()
    assert exc_info.value.kind == "config"


async def test_fetch_url_outside_categories():
    recorder = Recorder(lambda request, n: httpx.Response(200, text="img"))
    client = make_client(recorder)
    try:
        response = await client.fetch_url("https://cdn.example/sticker.png?x=1")
        assert response.content == b"img"
    finally:
        await client.close()
    assert recorder.urls == ["https://cdn.example/sticker.png?x=1"]
    assert client.bytes_by_module == {"external": 3}


async def test_fetch_url_inside_category_uses_failover():
    def responder(request, n):
        if request.url.host == "a.example":
            return httpx.Response(502)
        return httpx.Response(200, text="b")

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        response = await client.fetch_url("http://a.example/doc?id=1")
        assert response.text == "b"
    finally:
        await client.close()
    assert recorder.urls[-1] == "http://b.example/doc?id=1"


async def test_decode_big5_page():
    response = httpx.Response(
        200,
        content="課程查詢".encode("cp950"),
        headers={"Content-Type": "text/html; charset=big5"},
    )
    assert decode_body(response) == "課程查詢"


async def test_check_category_picks_first_reachable_base():
    def responder(request, n):
        assert request.method == "HEAD"
        if request.url.host == "a.example":
            return httpx.Response(503)
        return httpx.Response(200)

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        assert await client.check_category("lms") == "http://b.example"
        assert client.current_base("lms") == "http://b.example"
    finally:
        await client.close()
    assert len(recorder.urls) == 2
    assert recorder.delays == []


async def test_check_category_all_unreachable():
    def responder(request, n):
        if n == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(502)

    recorder = Recorder(responder)
    client = make_client(recorder)
    try:
        assert await client.check_category("lms") is None
        assert client.current_base("lms") == "http://a.example"
        assert await client.check_category("sea") is None
    finally:
        await client.close()
    assert len(recorder.urls) == 2
