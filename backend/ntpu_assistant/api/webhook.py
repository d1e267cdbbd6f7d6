"""
Webhook API - 聊天訊息入口
請求格式相容 LINE 的 events 結構，回覆以 JSON 回傳由呼叫端轉送
"""
import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ntpu_assistant.api.deps import get_container
from ntpu_assistant.core.errors import NotReadyError
from ntpu_assistant.core.timeouts import GLOBAL_LIMIT_RETRY_AFTER, WEBHOOK_RETRY_AFTER
from ntpu_assistant.schemas.chat import WebhookReply, WebhookRequest, WebhookResponse
from ntpu_assistant.services.chat_service import split_messages
from ntpu_assistant.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])

MAX_EVENTS_PER_WEBHOOK = 100
MAX_MESSAGES_PER_REPLY = 5


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """X-Line-Signature = base64(HMAC-SHA256(channel secret, body))"""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def require_ready(container: ServiceContainer = Depends(get_container)) -> ServiceContainer:
    if container.settings.WAIT_FOR_WARMUP and not container.readiness.is_ready():
        status = container.readiness.status()
        logger.debug("[Webhook] 暖機中，拒絕請求（%.1fs）", status["elapsed_seconds"])
        raise NotReadyError(status["reason"])
    return container


async def not_ready_handler(request: Request, exc: NotReadyError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "service refreshing", "retry_after": WEBHOOK_RETRY_AFTER},
        headers={"Retry-After": str(WEBHOOK_RETRY_AFTER)},
    )


@router.post("/webhook", response_model=WebhookResponse)
async def webhook(
    request: Request,
    container: ServiceContainer = Depends(require_ready),
    x_line_signature: Optional[str] = Header(None),
):
    started = time.monotonic()
    body = await request.body()

    secret = container.settings.LINE_CHANNEL_SECRET
    if secret and not verify_signature(secret, body, x_line_signature or ""):
        logger.warning("[Webhook] 簽章驗證失敗")
        raise HTTPException(status_code=400, detail="invalid signature")

    if not container.global_limiter.allow():
        logger.warning("[Webhook] 超過全域限流")
        return JSONResponse(
            status_code=429,
            content={"error": "too many requests", "retry_after": GLOBAL_LIMIT_RETRY_AFTER},
            headers={"Retry-After": str(GLOBAL_LIMIT_RETRY_AFTER)},
        )

    try:
        payload = WebhookRequest.model_validate_json(body or b"{}")
    except ValidationError as e:
        logger.warning("[Webhook] 請求格式錯誤: %s", e.error_count())
        raise HTTPException(status_code=400, detail="invalid payload")

    events = payload.events
    if len(events) > MAX_EVENTS_PER_WEBHOOK:
        logger.warning("[Webhook] 事件數 %d 超過上限，只處理前 %d 個", len(events), MAX_EVENTS_PER_WEBHOOK)
        events = events[:MAX_EVENTS_PER_WEBHOOK]

    response = WebhookResponse()
    deadline = started + container.settings.WEBHOOK_TIMEOUT
    for index, event in enumerate(events):
        event_started = time.monotonic()
        if event.type != "message" or event.message is None or event.message.type != "text":
            container.metrics.record_webhook(event.type, "ignored", time.monotonic() - event_started)
            continue
        remaining = deadline - event_started
        if remaining <= 0:
            logger.warning("[Webhook] 處理時間已超過 %.0fs，略過剩餘 %d 個事件",
                           container.settings.WEBHOOK_TIMEOUT, len(events) - index)
            break
        reply = await container.chat.handle_text(event.source.chat_key(), event.message.text, timeout=remaining)
        messages, dropped = split_messages(reply.messages, MAX_MESSAGES_PER_REPLY)
        if dropped:
            messages = messages[:-1] + [f"結果過多，還有 {dropped + 1} 筆未顯示，請縮小查詢範圍"]
        status = "rate_limited" if reply.rate_limited else "success"
        container.metrics.record_webhook("message", status, time.monotonic() - event_started)
        if messages:
            response.replies.append(WebhookReply(
                reply_token=event.replyToken, messages=messages, sender_icon=reply.sender_icon,
            ))

    logger.debug("[Webhook] 處理 %d 個事件 (%.2fs)", len(events), time.monotonic() - started)
    return response
