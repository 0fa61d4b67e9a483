"""
Registro de hilos: historial de solo inserción de cada oferta y conversación.

Las entradas se crean dentro de la misma transacción que modifica el
registro padre (ver stores), con sequence = versión que produce esa
escritura. El estado del padre es la fuente de verdad; el hilo es solo
procedencia y nunca se reescribe ni se fusiona.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from regateo.models.conversation import ConversationMessage
from regateo.models.offer import OfferMessage
from regateo.schemas.conversation import ConversationMessageResponse, MessageType
from regateo.schemas.offer import OfferMessageResponse, OfferMessageType
from regateo.stores.base import read_scope


class ThreadLogger:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def offer_entry(
        offer_id: str,
        sender_id: str,
        recipient_id: str,
        message_type: OfferMessageType,
        sequence: int,
        created_at: datetime,
        price: Optional[float] = None,
        message: Optional[str] = None,
    ) -> OfferMessage:
        return OfferMessage(
            offer_id=offer_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            message_type=message_type.value,
            price=price,
            message=message,
            sequence=sequence,
            created_at=created_at,
            is_read=False,
        )

    @staticmethod
    def conversation_entry(
        conversation_id: str,
        sender_id: str,
        text: str,
        message_type: MessageType,
        sequence: int,
        created_at: datetime,
    ) -> ConversationMessage:
        return ConversationMessage(
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            type=message_type.value,
            sequence=sequence,
            created_at=created_at,
        )

    async def offer_history(self, offer_id: str) -> List[OfferMessageResponse]:
        async with read_scope(self.session_factory) as session:
            result = await session.execute(
                select(OfferMessage)
                .where(OfferMessage.offer_id == offer_id)
                .order_by(OfferMessage.sequence)
            )
            return [OfferMessageResponse.model_validate(m) for m in result.scalars().all()]

    async def conversation_history(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[ConversationMessageResponse]:
        """Últimos `limit` mensajes (todos si es None), en orden cronológico"""
        async with read_scope(self.session_factory) as session:
            query = (
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.sequence.desc())
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            messages = list(reversed(result.scalars().all()))
            return [ConversationMessageResponse.model_validate(m) for m in messages]
