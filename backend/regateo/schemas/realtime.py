from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from regateo.core.utils import utcnow

class Collection(str, Enum):
    OFFERS = "offers"
    CONVERSATIONS = "conversations"

class ChangeEvent(BaseModel):
    """Cambio confirmado de un documento, publicado en el canal de cada participante"""
    collection: Collection
    id: str
    version: int
    data: Dict[str, Any]
    audience: List[str]

class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"

class DocChange(BaseModel):
    type: ChangeType
    id: str
    doc: Dict[str, Any]
    # Estado anterior del documento dentro de la consulta (None si es nuevo)
    previous: Optional[Dict[str, Any]] = None

class QueryUpdate(BaseModel):
    query: str
    docs: List[Dict[str, Any]]
    changes: List[DocChange]
    is_initial: bool = False

class SubscriptionState(BaseModel):
    user_id: str
    offers_as_buyer: List[Dict[str, Any]] = Field(default_factory=list)
    offers_as_seller: List[Dict[str, Any]] = Field(default_factory=list)
    offers: List[Dict[str, Any]] = Field(default_factory=list)
    conversations: List[Dict[str, Any]] = Field(default_factory=list)
    unread_count: int = 0

class NotificationKind(str, Enum):
    BUYER_OFFER = "buyer"
    SELLER_OFFER = "seller"
    CONVERSATION = "conversation"

class Notification(BaseModel):
    id: str
    source_id: str
    kind: NotificationKind
    title: str
    message: str
    link: str
    type: str = "message"
    created_at: datetime = Field(default_factory=utcnow)
