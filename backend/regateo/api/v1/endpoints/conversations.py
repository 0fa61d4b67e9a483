from fastapi import APIRouter, Depends, Query, status
from typing import Any, List, Optional
import logging

from regateo.api import deps
from regateo.core.errors import NotFoundError
from regateo.schemas.conversation import (
    ConversationCreate,
    ConversationMessageCreate,
    ConversationMessageResponse,
    ConversationResponse,
    ConversationStatus,
    UnreadCount,
)
from regateo.services.messaging import ConversationService

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/", response_model=ConversationResponse)
async def get_or_create_conversation(
    conversation_in: ConversationCreate,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Obtener la conversación con otro usuario, creándola si no existe.
    """
    return await service.get_or_create_conversation(
        current_user_id, conversation_in.participant_id, conversation_in.metadata
    )

@router.get("/", response_model=List[ConversationResponse])
async def list_conversations(
    status: Optional[ConversationStatus] = ConversationStatus.ACTIVE,
    limit: int = Query(20, ge=1, le=100),
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.list_user_conversations(current_user_id, status=status, limit=limit)

@router.get("/unread-count", response_model=UnreadCount)
async def get_unread_count(
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Número de conversaciones con mensajes sin leer para el usuario.
    """
    return UnreadCount(unread_count=await service.get_unread_conversation_count(current_user_id))

@router.get("/with/{user_id}", response_model=ConversationResponse)
async def find_conversation_with(
    user_id: str,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    conversation = await service.find_conversation_between_users(current_user_id, user_id)
    if conversation is None:
        raise NotFoundError("No hay conversación con este usuario", {"user_id": user_id})
    return conversation

@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.get_conversation(conversation_id, current_user_id)

@router.get("/{conversation_id}/messages", response_model=List[ConversationMessageResponse])
async def get_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Últimos mensajes de la conversación en orden cronológico.
    """
    return await service.get_conversation_messages(conversation_id, current_user_id, limit)

@router.post("/{conversation_id}/messages", response_model=ConversationMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    message_in: ConversationMessageCreate,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.send_message(conversation_id, current_user_id, message_in.text, message_in.type)

@router.post("/{conversation_id}/read", response_model=ConversationResponse)
async def mark_as_read(
    conversation_id: str,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.mark_as_read(conversation_id, current_user_id)

@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: str,
    service: ConversationService = Depends(deps.get_conversation_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Archivar la conversación solo para el usuario actual.
    """
    return await service.archive_conversation(conversation_id, current_user_id)
