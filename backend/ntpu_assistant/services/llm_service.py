"""
LLM Service - 查詢擴展與意圖解析
Gemini / Groq / Cerebras / OpenAI 皆透過 OpenAI 相容端點呼叫，依序嘗試各供應商的模型
"""
import json
import logging
import os
import time
from typing import Dict, List, NamedTuple, Optional

import openai
import yaml
from openai import AsyncOpenAI

from ntpu_assistant.core.config import Settings
from ntpu_assistant.core.errors import UpstreamError
from ntpu_assistant.services.metrics import Metrics

logger = logging.getLogger(__name__)

PROMPT_DIR = os.path.join(os.path.dirname(__file__), "../core/prompts")

# function 名稱 → (模組, 意圖, 參數名稱)
INTENTS = {
    "course_search": ("course", "search", "keyword"),
    "course_smart": ("course", "smart", "query"),
    "course_uid": ("course", "uid", "uid"),
    "id_search": ("id", "search", "name"),
    "id_student_id": ("id", "student_id", "student_id"),
    "id_department": ("id", "department", "department"),
    "contact_search": ("contact", "search", "query"),
    "contact_emergency": ("contact", "emergency", ""),
    "program_search": ("program", "search", "query"),
    "usage_query": ("usage", "query", ""),
    "help": ("help", "", ""),
}


def load_prompt(name: str) -> Dict[str, str]:
    with open(os.path.join(PROMPT_DIR, name), "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


class IntentResult(NamedTuple):
    module: str
    intent: str
    params: Dict[str, str]
    clarification: str = ""
    function_name: str = ""


def parse_intent_payload(content: str) -> IntentResult:
    """把模型回傳的 JSON 轉成 IntentResult；格式錯誤時拋出 ValueError"""
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("intent payload is not an object")
    function = data.get("function")
    if not function:
        return IntentResult("", "", {}, clarification=str(data.get("reply") or "").strip())
    if function not in INTENTS:
        raise ValueError(f"unknown intent function: {function}")
    module, intent, param = INTENTS[function]
    arguments = data.get("arguments") or {}
    params = {}
    if param:
        value = str(arguments.get(param, "")).strip()
        if not value:
            raise ValueError(f"missing argument {param} for {function}")
        params[param] = value
    return IntentResult(module, intent, params, function_name=function)


class LLMProvider:
    def __init__(self, name: str, api_key: str, base_url: str, models: List[str], timeout: float):
        self.name = name
        self.models = models
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def close(self) -> None:
        await self.client.close()


class LLMService:
    """
    LLM 呼叫入口

    complete() 依 providers × models 的順序嘗試，全部失敗拋出 UpstreamError("llm", "exhausted")
    """

    def __init__(self, providers: List[LLMProvider], metrics: Optional[Metrics] = None):
        self.providers = providers
        self.metrics = metrics
        self._intent_prompt = load_prompt("intent_parser.yaml")
        self._expansion_prompt = load_prompt("query_expansion.yaml")

    @classmethod
    def from_settings(cls, settings: Settings, metrics: Optional[Metrics] = None) -> "LLMService":
        providers = []
        if settings.LLM_ENABLED:
            for name in settings.llm_providers:
                conf = settings.provider_settings(name)
                if conf["models"]:
                    providers.append(LLMProvider(
                        name, conf["api_key"], conf["base_url"], conf["models"], settings.LLM_TIMEOUT
                    ))
        if providers:
            logger.info("[LLM] 已啟用供應商: %s", ", ".join(p.name for p in providers))
        return cls(providers, metrics)

    @property
    def enabled(self) -> bool:
        return bool(self.providers)

    def _record(self, operation: str, status: str, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_llm(operation, status, time.monotonic() - started)

    async def complete(self, operation: str, messages: List[Dict[str, str]],
                       temperature: float = 0.3, max_tokens: int = 300, json_mode: bool = False) -> str:
        if not self.providers:
            raise UpstreamError("llm", "disabled", message="no LLM provider configured")
        started = time.monotonic()
        last_error = ""
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        for provider in self.providers:
            for model in provider.models:
                try:
                    response = await provider.client.chat.completions.create(
                        model=model,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                        **kwargs,
                    )
                except openai.APIError as e:
                    last_error = f"{provider.name}/{model}: {e}"
                    logger.warning("[LLM] %s %s/%s 失敗，改用下一個模型: %s", operation, provider.name, model, e)
                    continue
                content = (response.choices[0].message.content or "").strip() if response.choices else ""
                if content:
                    self._record(operation, "success", started)
                    return content
                last_error = f"{provider.name}/{model}: empty response"
        self._record(operation, "error", started)
        raise UpstreamError("llm", "exhausted", message=last_error)

    async def expand_query(self, query: str) -> str:
        """擴展搜尋關鍵字；結果一定包含原始查詢"""
        messages = [
            {"role": "system", "content": self._expansion_prompt.get("system", "")},
            {"role": "user", "content": self._expansion_prompt.get("user", "{query}").format(query=query)},
        ]
        expanded = " ".join((await self.complete("expand", messages, temperature=0.3, max_tokens=200)).split())
        if query not in expanded:
            expanded = f"{query} {expanded}"
        return expanded

    async def parse_intent(self, text: str) -> IntentResult:
        messages = [
            {"role": "system", "content": self._intent_prompt.get("system", "")},
            {"role": "user", "content": text},
        ]
        content = await self.complete("nlu", messages, temperature=0.1, max_tokens=300, json_mode=True)
        try:
            return parse_intent_payload(content)
        except ValueError as e:
            raise UpstreamError("llm", "parse", message=str(e)) from e

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()
        logger.info("[LLM] 已關閉")
