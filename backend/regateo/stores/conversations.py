"""
Persistencia de conversaciones directas entre dos usuarios.

La clave de la conversación se deriva del par ordenado de participantes,
así que buscarla es una lectura directa por clave primaria y dos primeros
contactos simultáneos acaban en la misma fila.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from regateo.core.config import settings
from regateo.core.errors import AuthorizationError, ConflictError, NotFoundError
from regateo.core.utils import conversation_key, truncate_preview, utcnow
from regateo.models.conversation import Conversation
from regateo.realtime.feed import ChangeFeed
from regateo.schemas.conversation import (
    ConversationMessageResponse,
    ConversationResponse,
    ConversationStatus,
    MessageType,
)
from regateo.schemas.realtime import ChangeEvent, Collection
from regateo.services.thread_log import ThreadLogger
from regateo.stores.base import read_scope, retry_on_conflict, transaction_scope

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, session_factory: async_sessionmaker, feed: ChangeFeed, thread_logger: Optional[ThreadLogger] = None):
        self.session_factory = session_factory
        self.feed = feed
        self.thread_logger = thread_logger or ThreadLogger(session_factory)

    async def _publish(self, conversation: ConversationResponse) -> None:
        await self.feed.publish(ChangeEvent(
            collection=Collection.CONVERSATIONS,
            id=conversation.id,
            version=conversation.version,
            data=conversation.model_dump(mode="json"),
            audience=list(conversation.participants),
        ))

    @staticmethod
    def _ensure_participant(conversation: Conversation, user_id: str) -> None:
        if user_id not in conversation.participants:
            raise AuthorizationError(
                "No eres participante de esta conversación",
                {"conversation_id": conversation.id},
            )

    async def get(self, conversation_id: str) -> Optional[ConversationResponse]:
        async with read_scope(self.session_factory) as session:
            conversation = await session.get(Conversation, conversation_id)
            return ConversationResponse.model_validate(conversation) if conversation else None

    async def get_between(self, user_a: str, user_b: str) -> Optional[ConversationResponse]:
        """Conversación del par, solo si la fila pertenece exactamente a esos dos usuarios"""
        key = conversation_key(user_a, user_b)
        conversation = await self.get(key)
        if conversation is None:
            return None
        if sorted(conversation.participants) != sorted((user_a, user_b)):
            logger.error(f"La conversación {key} no pertenece al par ({user_a}, {user_b})")
            raise ConflictError("La clave de conversación pertenece a otro par de usuarios")
        return conversation

    async def get_or_create(
        self, user_a: str, user_b: str, details: Optional[Dict[str, Any]] = None
    ) -> Tuple[ConversationResponse, bool]:
        """Devuelve (conversación, creada)"""
        key = conversation_key(user_a, user_b)
        existing = await self.get_between(user_a, user_b)
        if existing is not None:
            return existing, False

        first, second = sorted((user_a, user_b))
        now = utcnow()
        try:
            async with transaction_scope(self.session_factory) as session:
                # Con BEGIN IMMEDIATE otra creación pudo confirmarse mientras esperábamos
                if await session.get(Conversation, key) is not None:
                    created = None
                else:
                    created = Conversation(
                        id=key,
                        participant_a=first,
                        participant_b=second,
                        last_message_at=now,
                        last_message_text="",
                        unread_by_users=[],
                        user_status={first: ConversationStatus.ACTIVE.value, second: ConversationStatus.ACTIVE.value},
                        details=dict(details or {}),
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(created)
                    await session.flush()
                    snapshot = ConversationResponse.model_validate(created)
        except IntegrityError:
            # Creación concurrente del mismo par: gana la primera fila
            logger.info(f"Conversación {key} creada por otra petición concurrente")
            created = None

        if created is None:
            existing = await self.get_between(user_a, user_b)
            if existing is None:
                raise NotFoundError("Conversación no encontrada", {"conversation_id": key})
            return existing, False

        logger.info(f"Conversación {key} creada")
        await self._publish(snapshot)
        return snapshot, True

    async def list_for_participant(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = ConversationStatus.ACTIVE,
        limit: Optional[int] = None,
    ) -> List[ConversationResponse]:
        query = (
            select(Conversation)
            .where(or_(Conversation.participant_a == user_id, Conversation.participant_b == user_id))
            .order_by(Conversation.last_message_at.desc())
        )
        async with read_scope(self.session_factory) as session:
            result = await session.execute(query)
            conversations = [ConversationResponse.model_validate(c) for c in result.scalars().all()]

        # El estado es por usuario dentro de un JSON; se filtra aquí
        if status is not None:
            status = ConversationStatus(status)
            conversations = [c for c in conversations if c.status_for(user_id) == status]
        if limit:
            conversations = conversations[:limit]
        return conversations

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_type: MessageType = MessageType.TEXT,
        expected_version: Optional[int] = None,
    ) -> Tuple[ConversationResponse, ConversationMessageResponse]:
        """
        Añade el mensaje al hilo y actualiza el resumen en un único commit.
        unread_by_users se reemplaza por los participantes menos el remitente.
        """
        async def attempt():
            now = utcnow()
            async with transaction_scope(self.session_factory) as session:
                conversation = await session.get(Conversation, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversación no encontrada", {"conversation_id": conversation_id})
                self._ensure_participant(conversation, sender_id)
                if expected_version is not None and expected_version != conversation.version:
                    raise ConflictError(
                        f"La conversación ha sido modificada. Versión actual: {conversation.version}.",
                        current_version=conversation.version,
                    )

                conversation.last_message_at = now
                conversation.last_message_text = truncate_preview(text, settings.LAST_MESSAGE_PREVIEW_LENGTH)
                conversation.unread_by_users = [p for p in conversation.participants if p != sender_id]
                conversation.updated_at = now

                entry = self.thread_logger.conversation_entry(
                    conversation_id=conversation.id,
                    sender_id=sender_id,
                    text=text,
                    message_type=message_type,
                    sequence=conversation.version + 1,
                    created_at=now,
                )
                session.add(entry)
                await session.flush()

                return (
                    ConversationResponse.model_validate(conversation),
                    ConversationMessageResponse.model_validate(entry),
                )

        if expected_version is None:
            snapshot, entry = await retry_on_conflict(attempt, settings.CAS_MAX_RETRIES, f"conversación {conversation_id}")
        else:
            snapshot, entry = await attempt()

        logger.info(f"Mensaje en conversación {conversation_id} de {sender_id} (v{snapshot.version})")
        await self._publish(snapshot)
        return snapshot, entry

    async def mark_read(self, conversation_id: str, user_id: str) -> ConversationResponse:
        """Quita exactamente a `user_id` de unread_by_users. Sin cambios no hay escritura."""
        async def attempt():
            async with transaction_scope(self.session_factory) as session:
                conversation = await session.get(Conversation, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversación no encontrada", {"conversation_id": conversation_id})
                self._ensure_participant(conversation, user_id)

                unread = list(conversation.unread_by_users or [])
                if user_id not in unread:
                    return ConversationResponse.model_validate(conversation), False

                conversation.unread_by_users = [u for u in unread if u != user_id]
                await session.flush()
                return ConversationResponse.model_validate(conversation), True

        snapshot, changed = await retry_on_conflict(attempt, settings.CAS_MAX_RETRIES, f"conversación {conversation_id}")
        if changed:
            await self._publish(snapshot)
        return snapshot

    async def set_user_status(
        self, conversation_id: str, user_id: str, status: ConversationStatus
    ) -> ConversationResponse:
        """Cambia solo la vista de `user_id`; la del otro participante no se toca"""
        async def attempt():
            async with transaction_scope(self.session_factory) as session:
                conversation = await session.get(Conversation, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversación no encontrada", {"conversation_id": conversation_id})
                self._ensure_participant(conversation, user_id)

                current = dict(conversation.user_status or {})
                if current.get(user_id) == status.value:
                    return ConversationResponse.model_validate(conversation), False

                current[user_id] = status.value
                conversation.user_status = current
                conversation.updated_at = utcnow()
                await session.flush()
                return ConversationResponse.model_validate(conversation), True

        snapshot, changed = await retry_on_conflict(attempt, settings.CAS_MAX_RETRIES, f"conversación {conversation_id}")
        if changed:
            logger.info(f"Conversación {conversation_id}: {user_id} -> {status.value}")
            await self._publish(snapshot)
        return snapshot

    async def messages(self, conversation_id: str, limit: Optional[int] = None) -> List[ConversationMessageResponse]:
        return await self.thread_logger.conversation_history(conversation_id, limit)
