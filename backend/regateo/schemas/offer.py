from enum import Enum
from pydantic import BaseModel, validator, Field
from typing import Optional
from datetime import datetime

from regateo.core.utils import as_utc

class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COUNTERED = "countered"
    DECLINED = "declined"
    EXPIRED = "expired"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

OPEN_STATUSES = frozenset({OfferStatus.PENDING, OfferStatus.COUNTERED})
TERMINAL_STATUSES = frozenset({
    OfferStatus.ACCEPTED,
    OfferStatus.DECLINED,
    OfferStatus.EXPIRED,
    OfferStatus.COMPLETED,
    OfferStatus.CANCELLED,
})

class OfferMessageType(str, Enum):
    OFFER = "offer"
    COUNTER = "counter"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    MESSAGE = "message"

class OfferCreate(BaseModel):
    tool_id: str = Field(..., min_length=1)
    price: float
    message: Optional[str] = None

class OfferAction(BaseModel):
    """Cuerpo común de las transiciones: revisión esperada opcional"""
    expected_version: Optional[int] = Field(None, ge=1)

class OfferCounter(OfferAction):
    price: float
    message: Optional[str] = None

class OfferDecline(OfferAction):
    reason: Optional[str] = None

class OfferMessageCreate(BaseModel):
    text: str

    @validator('text')
    def text_must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('El mensaje no puede estar vacío')
        return v

class OfferResponse(BaseModel):
    id: str
    tool_id: str
    tool_title: str
    currency: str
    buyer_id: str
    seller_id: str
    original_price: float
    current_price: float
    status: OfferStatus
    is_active: bool
    has_unread_messages_buyer: bool
    has_unread_messages_seller: bool
    last_actor_id: str
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    version: int

    @validator("created_at", "updated_at", "expires_at")
    def dates_as_utc(cls, v):
        return as_utc(v)

    class Config:
        from_attributes = True

class OfferMessageResponse(BaseModel):
    id: str
    offer_id: str
    sender_id: str
    recipient_id: str
    message_type: OfferMessageType
    price: Optional[float] = None
    message: Optional[str] = None
    created_at: datetime
    sequence: int
    is_read: bool

    @validator("created_at")
    def dates_as_utc(cls, v):
        return as_utc(v)

    class Config:
        from_attributes = True
