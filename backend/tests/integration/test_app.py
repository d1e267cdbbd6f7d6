"""
HTTP app: health, webhook gate and metrics auth
"""
import asyncio
import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from conftest import make_contact, make_syllabus
from ntpu_assistant.application import SECURITY_HEADERS, create_app
from ntpu_assistant.core.errors import StorageError
from ntpu_assistant.schemas.chat import ChatReply
from ntpu_assistant.services.chat_service import HELP_MESSAGE, SAFE_ERROR_MESSAGE
from ntpu_assistant.services.container import ServiceContainer
from ntpu_assistant.services.llm_service import LLMService
from ntpu_assistant.services.scraper_client import ScraperClient

pytestmark = pytest.mark.integration

SECRET = "channel-secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def text_event(text, user="U1", token="tok-1"):
    return {
        "type": "message",
        "replyToken": token,
        "source": {"type": "user", "userId": user},
        "message": {"type": "text", "text": text},
    }


def build(settings, store, clock, metrics, **overrides):
    settings = settings.model_copy(update=overrides)
    client = ScraperClient({"lms": ["http://lms.example"], "sea": ["http://sea.example"]}, metrics=metrics)
    container = ServiceContainer(settings, store, client, clock=clock, metrics=metrics, llm=LLMService([]))
    return create_app(settings, container), container


@pytest.fixture
def app_client(settings, store, clock, metrics):
    app, container = build(settings, store, clock, metrics)
    with TestClient(app) as client:
        yield client, container


class TestHealth:
    def test_root_redirects_to_repository(self, app_client):
        client, container = app_client
        response = client.get("/", follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"] == container.settings.REPOSITORY_URL

    def test_livez(self, app_client):
        client, _ = app_client
        response = client.get("/livez")
        assert response.status_code == 200
        assert response.json() == {"status": "alive"}
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_readyz_reports_counts_and_features(self, settings, store, clock, metrics):
        store.save_contacts_batch([make_contact("c1")])
        store.save_syllabi_batch([make_syllabus("1131U0001", title="微積分", objectives="極限")])
        app, _ = build(settings, store, clock, metrics)
        with TestClient(app) as client:
            response = client.get("/readyz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["database"] == "connected"
        assert body["cache"]["contacts"] == 1
        assert body["cache"]["syllabi"] == 1
        assert body["cache"]["students"] == 0
        assert body["features"] == {"bm25_search": True, "nlu": False, "query_expansion": False}

    def test_readyz_database_unavailable(self, settings, store, clock, metrics, monkeypatch):
        def broken():
            raise StorageError("ping", "database is locked")

        monkeypatch.setattr(store, "ping", broken)
        app, _ = build(settings, store, clock, metrics)
        with TestClient(app) as client:
            response = client.get("/readyz")
        assert response.status_code == 503
        body = response.json()
        assert body["database"] == "unavailable"
        assert body["reason"] == "database unavailable"

    def test_readyz_while_warming_up(self, settings, store, clock, metrics):
        app, container = build(settings, store, clock, metrics, MAINTENANCE_ENABLED=True)
        container.scheduler.start = lambda: None
        with TestClient(app) as client:
            response = client.get("/readyz")
        assert response.status_code == 503
        assert response.json()["readiness"]["reason"] == "data refresh in progress"


class TestWebhook:
    def test_rejected_while_warming_up(self, settings, store, clock, metrics):
        app, container = build(settings, store, clock, metrics, MAINTENANCE_ENABLED=True)
        container.scheduler.start = lambda: None
        with TestClient(app) as client:
            response = client.post("/webhook", json={"events": []})
            assert response.status_code == 503
            assert response.headers["Retry-After"] == "60"
            assert response.json() == {"error": "service refreshing", "retry_after": 60}

            # 寬限期過後一律放行
            clock.advance(container.settings.WARMUP_GRACE_PERIOD + 1)
            assert client.post("/webhook", json={"events": []}).status_code == 200

    def test_signature_is_verified(self, settings, store, clock, metrics):
        app, _ = build(settings, store, clock, metrics, LINE_CHANNEL_SECRET=SECRET)
        body = json.dumps({"events": [text_event("help")]}).encode("utf-8")
        with TestClient(app) as client:
            bad = client.post("/webhook", content=body, headers={"X-Line-Signature": "bogus"})
            missing = client.post("/webhook", content=body)
            good = client.post("/webhook", content=body, headers={"X-Line-Signature": sign(body)})
        assert bad.status_code == 400
        assert missing.status_code == 400
        assert good.status_code == 200
        assert good.json()["replies"][0]["messages"] == [HELP_MESSAGE]

    def test_replies_and_ignored_events(self, app_client, metrics):
        client, _ = app_client
        response = client.post("/webhook", json={"events": [
            text_event("help", token="a"),
            {"type": "follow", "replyToken": "b", "source": {"userId": "U2"}},
            {"type": "message", "replyToken": "c", "source": {"userId": "U3"},
             "message": {"type": "sticker"}},
            text_event("   ", token="d"),
        ]})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert [r["reply_token"] for r in body["replies"]] == ["a"]
        assert body["replies"][0]["sender_icon"]
        assert metrics.registry.get_sample_value(
            "ntpu_webhook_total", {"event_type": "follow", "status": "ignored"}) == 1
        assert metrics.registry.get_sample_value(
            "ntpu_webhook_total", {"event_type": "message", "status": "success"}) == 2

    def test_long_replies_are_truncated(self, app_client):
        client, container = app_client

        async def many(chat_key, text, timeout=None):
            return ChatReply(messages=[f"第 {i} 筆" for i in range(8)])

        container.chat.handle_text = many
        response = client.post("/webhook", json={"events": [text_event("課程 微積分")]})
        [reply] = response.json()["replies"]
        assert len(reply["messages"]) == 5
        assert reply["messages"][:4] == ["第 0 筆", "第 1 筆", "第 2 筆", "第 3 筆"]
        assert "還有 4 筆未顯示" in reply["messages"][4]

    def test_processing_budget_covers_all_events(self, settings, store, clock, metrics):
        app, container = build(settings, store, clock, metrics, WEBHOOK_TIMEOUT=0.05)
        calls = []

        async def stuck(chat_key, text):
            calls.append(text)
            await asyncio.sleep(10)

        container.chat.dispatch = stuck
        with TestClient(app) as client:
            response = client.post("/webhook", json={"events": [
                text_event("課程 微積分", token="a"),
                text_event("課程 會計", user="U2", token="b"),
            ]})
        assert response.status_code == 200
        replies = response.json()["replies"]
        assert [r["reply_token"] for r in replies] == ["a"]
        assert replies[0]["messages"] == [SAFE_ERROR_MESSAGE]
        assert calls == ["課程 微積分"]

    def test_invalid_payload(self, app_client):
        client, _ = app_client
        response = client.post("/webhook", content=b"{not json")
        assert response.status_code == 400

    def test_global_rate_limit(self, settings, store, clock, metrics):
        app, _ = build(settings, store, clock, metrics, GLOBAL_RATE_RPS=1)
        with TestClient(app) as client:
            assert client.post("/webhook", json={"events": []}).status_code == 200
            limited = client.post("/webhook", json={"events": []})
        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == "1"


class TestMetricsEndpoint:
    def test_open_without_password(self, app_client):
        client, _ = app_client
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "ntpu_" in response.text

    def test_basic_auth(self, settings, store, clock, metrics):
        app, _ = build(settings, store, clock, metrics, METRICS_PASSWORD="s3cret")
        with TestClient(app) as client:
            assert client.get("/metrics").status_code == 401
            wrong = client.get("/metrics", auth=("prometheus", "nope"))
            assert wrong.status_code == 401
            assert wrong.headers["WWW-Authenticate"].startswith("Basic")
            assert client.get("/metrics", auth=("prometheus", "s3cret")).status_code == 200
