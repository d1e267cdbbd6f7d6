"""
Chat Schemas - webhook 請求與回覆
請求格式沿用 LINE Messaging API 的 events 結構（只取用到的欄位）
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class EventSource(BaseModel):
    type: str = "user"
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None

    def chat_key(self) -> str:
        """限流用的 key：群組與聊天室以 group/room 為單位"""
        return self.groupId or self.roomId or self.userId or ""


class EventMessage(BaseModel):
    type: str = "text"
    text: str = ""


class WebhookEvent(BaseModel):
    type: str
    replyToken: Optional[str] = None
    source: EventSource = Field(default_factory=EventSource)
    message: Optional[EventMessage] = None


class WebhookRequest(BaseModel):
    destination: str = ""
    events: List[WebhookEvent] = Field(default_factory=list)


class ChatReply(BaseModel):
    messages: List[str] = Field(default_factory=list)
    sender_icon: str = ""
    rate_limited: Optional[str] = None


class WebhookReply(BaseModel):
    reply_token: Optional[str] = None
    messages: List[str] = Field(default_factory=list)
    sender_icon: str = ""


class WebhookResponse(BaseModel):
    status: str = "ok"
    replies: List[WebhookReply] = Field(default_factory=list)
