from enum import Enum
from pydantic import BaseModel, Field, validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from regateo.core.utils import as_utc

class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    HIDDEN = "hidden"

class MessageType(str, Enum):
    TEXT = "text"
    SYSTEM = "system"

class ConversationCreate(BaseModel):
    participant_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

class ConversationMessageCreate(BaseModel):
    text: str
    type: MessageType = MessageType.TEXT

class ConversationResponse(BaseModel):
    id: str
    participants: List[str]
    last_message_at: datetime
    last_message_text: str
    unread_by_users: List[str]
    user_status: Dict[str, ConversationStatus]
    details: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    version: int

    @validator("last_message_at", "created_at", "updated_at")
    def dates_as_utc(cls, v):
        return as_utc(v)

    class Config:
        from_attributes = True

    def status_for(self, user_id: str) -> ConversationStatus:
        return self.user_status.get(user_id, ConversationStatus.ACTIVE)

    def is_unread_for(self, user_id: str) -> bool:
        return user_id in self.unread_by_users

class ConversationMessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    text: str
    type: MessageType
    created_at: datetime
    sequence: int

    @validator("created_at")
    def dates_as_utc(cls, v):
        return as_utc(v)

    class Config:
        from_attributes = True

class UnreadCount(BaseModel):
    unread_count: int
