"""Schemas for chat conversations and messages."""

from datetime import datetime

from pydantic import BaseModel, Field


class Message(BaseModel):
    id: int
    conversation_id: int = Field(alias="conversationId")
    sender_id: int = Field(alias="senderId")
    sender_name: str = Field(alias="senderName", default="")
    receiver_id: int | None = Field(alias="receiverId", default=None)
    content: str
    message_type: str = Field(alias="messageType", default="TEXT")
    timestamp: datetime | None = None
    is_read: bool = Field(alias="isRead", default=False)

    model_config = {"populate_by_name": True}


class ConversationPeer(BaseModel):
    id: int
    name: str = ""
    image_url: str | None = Field(alias="imageUrl", default=None)

    model_config = {"populate_by_name": True}


class Conversation(BaseModel):
    id: int
    other_user: ConversationPeer = Field(alias="otherUser")
    last_message: Message | None = Field(alias="lastMessage", default=None)
    unread_count: int = Field(alias="unreadCount", default=0, ge=0)

    model_config = {"populate_by_name": True}


class MessagePage(BaseModel):
    """Spring-style page of messages."""

    content: list[Message] = Field(default_factory=list)
    total_pages: int = Field(alias="totalPages", default=0)
    total_elements: int = Field(alias="totalElements", default=0)

    model_config = {"populate_by_name": True}


class SendMessageRequest(BaseModel):
    conversation_id: int = Field(alias="conversationId")
    receiver_id: int = Field(alias="receiverId")
    content: str = Field(min_length=1)

    model_config = {"populate_by_name": True}
