"""
Mensajería directa entre dos usuarios, independiente de las publicaciones.
"""
import logging
from typing import Any, Dict, List, Optional

from regateo.core.config import settings
from regateo.core.errors import AuthorizationError, NotFoundError, ValidationError
from regateo.schemas.conversation import (
    ConversationMessageResponse,
    ConversationResponse,
    ConversationStatus,
    MessageType,
)
from regateo.stores.conversations import ConversationStore

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(self, store: ConversationStore):
        self.store = store

    async def _load_for(self, conversation_id: str, user_id: str) -> ConversationResponse:
        conversation = await self.store.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversación no encontrada", {"conversation_id": conversation_id})
        if user_id not in conversation.participants:
            logger.warning(f"Usuario {user_id} intentó acceder a la conversación {conversation_id}")
            raise AuthorizationError("No eres participante de esta conversación")
        return conversation

    async def get_or_create_conversation(
        self, user_a: str, user_b: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationResponse:
        """
        Conmutativa e idempotente: (A, B) y (B, A) devuelven la misma conversación.
        """
        if not user_a or not user_b:
            raise ValidationError("Faltan los participantes de la conversación")
        if user_a == user_b:
            raise ValidationError("No puedes iniciar una conversación contigo mismo")

        conversation, _ = await self.store.get_or_create(user_a, user_b, metadata)
        return conversation

    async def find_conversation_between_users(self, user_a: str, user_b: str) -> Optional[ConversationResponse]:
        if not user_a or not user_b or user_a == user_b:
            return None
        return await self.store.get_between(user_a, user_b)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        message_type: MessageType = MessageType.TEXT,
        expected_version: Optional[int] = None,
    ) -> ConversationMessageResponse:
        if not text or not text.strip():
            raise ValidationError("El mensaje no puede estar vacío")

        await self._load_for(conversation_id, sender_id)
        conversation, entry = await self.store.append_message(
            conversation_id, sender_id, text, MessageType(message_type), expected_version
        )
        self._notify_by_email(conversation, sender_id, text)
        return entry

    async def mark_as_read(self, conversation_id: str, user_id: str) -> ConversationResponse:
        await self._load_for(conversation_id, user_id)
        return await self.store.mark_read(conversation_id, user_id)

    async def archive_conversation(self, conversation_id: str, user_id: str) -> ConversationResponse:
        await self._load_for(conversation_id, user_id)
        return await self.store.set_user_status(conversation_id, user_id, ConversationStatus.ARCHIVED)

    async def get_conversation(self, conversation_id: str, viewer_id: str) -> ConversationResponse:
        return await self._load_for(conversation_id, viewer_id)

    async def list_user_conversations(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = ConversationStatus.ACTIVE,
        limit: Optional[int] = None,
    ) -> List[ConversationResponse]:
        return await self.store.list_for_participant(
            user_id, status=status, limit=limit or settings.CONVERSATION_LIST_LIMIT
        )

    async def get_conversation_messages(
        self, conversation_id: str, viewer_id: str, limit: Optional[int] = None
    ) -> List[ConversationMessageResponse]:
        await self._load_for(conversation_id, viewer_id)
        return await self.store.messages(conversation_id, limit or settings.MESSAGE_PAGE_LIMIT)

    async def get_unread_conversation_count(self, user_id: str) -> int:
        conversations = await self.store.list_for_participant(user_id, status=None)
        return sum(1 for c in conversations if c.is_unread_for(user_id))

    def _notify_by_email(self, conversation: ConversationResponse, sender_id: str, text: str) -> None:
        if not settings.EMAIL_NOTIFICATIONS_ENABLED:
            return
        from regateo.tasks.notifications import send_message_email_task

        for recipient_id in conversation.unread_by_users:
            send_message_email_task.delay(recipient_id, sender_id, conversation.id, text)
