from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    """One customer or echo message normalised from a Messenger/Instagram webhook."""

    page_id: str
    customer_id: str
    conversation_id: str
    platform: Literal["facebook", "instagram"]
    text: str = ""
    media_urls: list[str] = Field(default_factory=list)
    attachments: list = Field(default_factory=list)
    is_echo: bool = False
    mid: Optional[str] = None
    timestamp: datetime


class ReceiptEvent(BaseModel):
    conversation_id: str
    page_id: str
    kind: Literal["delivered", "read"]
    ts: datetime


class ParsedWebhook(BaseModel):
    messages: list[InboundMessage] = Field(default_factory=list)
    receipts: list[ReceiptEvent] = Field(default_factory=list)
