"""Chat models."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class ChatStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    BLOCKED = "blocked"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class Chat(BaseModel):
    """Conversation between a customer and a tasker."""
    id: str = Field(..., description="Chat ID")
    customer_id: str = Field(..., description="Customer profile ID")
    tasker_id: str = Field(..., description="Tasker profile ID")
    booking_id: Optional[str] = Field(None, description="Booking reference that opened the chat")
    task_id: Optional[str] = Field(None, description="Task the chat belongs to, if any")
    status: ChatStatus = Field(default=ChatStatus.ACTIVE)
    last_message_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Message(BaseModel):
    """Single chat message. System messages have no sender."""
    id: str = Field(..., description="Message ID")
    chat_id: str = Field(..., description="Chat ID (FK)")
    sender_id: Optional[str] = Field(None, description="Sender profile ID, None for system messages")
    content: str = Field(..., description="Message body")
    message_type: MessageType = Field(default=MessageType.TEXT)
    is_read: bool = False
    created_at: Optional[str] = None
