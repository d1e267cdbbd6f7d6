"""
LLM service: intent payload parsing and provider fallback
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.services.llm_service import LLMService, parse_intent_payload


def reply(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://llm.example/v1/chat/completions"))


def provider(name, models, create):
    client = MagicMock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    return SimpleNamespace(name=name, models=models, client=client, close=client.close)


@pytest.mark.unit
class TestIntentPayload:
    def test_function_with_argument(self):
        result = parse_intent_payload('{"function": "course_search", "arguments": {"keyword": " 微積分 "}}')
        assert (result.module, result.intent, result.params) == ("course", "search", {"keyword": "微積分"})
        assert result.function_name == "course_search"

    def test_function_without_argument(self):
        result = parse_intent_payload('{"function": "contact_emergency"}')
        assert (result.module, result.intent, result.params) == ("contact", "emergency", {})
        usage = parse_intent_payload('{"function": "usage_query"}')
        assert (usage.module, usage.intent, usage.params) == ("usage", "query", {})

    def test_clarification(self):
        result = parse_intent_payload('{"function": null, "reply": "請問要查什麼？"}')
        assert result.module == ""
        assert result.clarification == "請問要查什麼？"

    @pytest.mark.parametrize("payload", [
        "not json",
        "[1, 2]",
        '{"function": "launch_rockets"}',
        '{"function": "id_search", "arguments": {}}',
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(ValueError):
            parse_intent_payload(payload)


@pytest.mark.unit
@pytest.mark.asyncio
class TestLLMService:
    async def test_disabled_without_providers(self):
        service = LLMService([])
        assert not service.enabled
        with pytest.raises(UpstreamError) as exc_info:
            await service.complete("nlu", [])
        assert exc_info.value.kind == "disabled"

    async def test_falls_back_across_models_and_providers(self, metrics):
        first = AsyncMock(side_effect=[connection_error(), reply("")])
        second = AsyncMock(return_value=reply("答案"))
        service = LLMService([
            provider("gemini", ["m1", "m2"], first),
            provider("groq", ["m3"], second),
        ], metrics)
        assert await service.complete("expand", [{"role": "user", "content": "hi"}]) == "答案"
        assert first.await_count == 2
        assert second.await_args.kwargs["model"] == "m3"
        assert metrics.registry.get_sample_value(
            "ntpu_llm_total", {"operation": "expand", "status": "success"}) == 1

    async def test_exhausted(self):
        service = LLMService([provider("gemini", ["m1"], AsyncMock(side_effect=connection_error()))])
        with pytest.raises(UpstreamError) as exc_info:
            await service.complete("nlu", [])
        assert exc_info.value.kind == "exhausted"

    async def test_parse_intent_uses_json_mode(self):
        create = AsyncMock(return_value=reply('{"function": "id_student_id", "arguments": {"student_id": "412345678"}}'))
        service = LLMService([provider("openai", ["gpt"], create)])
        result = await service.parse_intent("學號 412345678 是誰")
        assert result.params == {"student_id": "412345678"}
        assert create.await_args.kwargs["response_format"] == {"type": "json_object"}

    async def test_parse_intent_bad_json_is_upstream_error(self):
        service = LLMService([provider("openai", ["gpt"], AsyncMock(return_value=reply("sorry")))])
        with pytest.raises(UpstreamError) as exc_info:
            await service.parse_intent("hello")
        assert exc_info.value.kind == "parse"

    async def test_expand_query_keeps_original(self):
        service = LLMService([provider("openai", ["gpt"], AsyncMock(return_value=reply("人工智慧\n機器學習")))])
        assert await service.expand_query("AI") == "AI 人工智慧 機器學習"

    async def test_close_closes_every_provider(self):
        providers = [provider("a", ["m"], AsyncMock()), provider("b", ["m"], AsyncMock())]
        service = LLMService(providers)
        await service.close()
        for p in providers:
            p.close.assert_awaited_once()
