from fastapi import APIRouter, Depends, Query, status
from typing import Any, List, Optional
import logging

from regateo.api import deps
from regateo.schemas.offer import (
    OfferAction,
    OfferCounter,
    OfferCreate,
    OfferDecline,
    OfferMessageCreate,
    OfferMessageResponse,
    OfferResponse,
    OfferStatus,
)
from regateo.services.offers import OfferService

logger = logging.getLogger(__name__)

router = APIRouter()

def _expected(action: Optional[OfferAction]) -> Optional[int]:
    return action.expected_version if action else None

@router.post("/", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    *,
    offer_in: OfferCreate,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Crear una nueva oferta para una publicación.
    """
    return await service.create_offer(current_user_id, offer_in.tool_id, offer_in.price, offer_in.message)

@router.get("/", response_model=List[OfferResponse])
async def list_offers(
    role: str = Query("buyer", pattern="^(buyer|seller)$"),
    status: Optional[OfferStatus] = None,
    active: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Obtener las ofertas del usuario como comprador o como vendedor.
    """
    if role == "seller":
        return await service.list_seller_offers(current_user_id, status=status, active=active, limit=limit)
    return await service.list_buyer_offers(current_user_id, status=status, active=active, limit=limit)

@router.get("/tool/{tool_id}", response_model=List[OfferResponse])
async def list_tool_offers(
    tool_id: str,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Obtener las ofertas de una publicación (solo el vendedor).
    """
    return await service.list_tool_offers(tool_id, current_user_id)

@router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: str,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.get_offer(offer_id, current_user_id)

@router.get("/{offer_id}/actions", response_model=List[str])
async def get_offer_actions(
    offer_id: str,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Acciones que el usuario puede intentar ahora sobre la oferta.
    """
    return await service.get_available_actions(offer_id, current_user_id)

@router.get("/{offer_id}/messages", response_model=List[OfferMessageResponse])
async def get_offer_messages(
    offer_id: str,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Historial de la negociación en orden de secuencia.
    """
    return await service.get_offer_messages(offer_id, current_user_id)

@router.post("/{offer_id}/messages", response_model=OfferMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_offer_message(
    offer_id: str,
    message_in: OfferMessageCreate,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.send_offer_message(offer_id, current_user_id, message_in.text)

@router.post("/{offer_id}/accept", response_model=OfferResponse)
async def accept_offer(
    offer_id: str,
    action: Optional[OfferAction] = None,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Aceptar el precio actual. Solo puede hacerlo quien no hizo el último movimiento.
    """
    return await service.accept_offer(offer_id, current_user_id, _expected(action))

@router.post("/{offer_id}/counter", response_model=OfferResponse)
async def counter_offer(
    offer_id: str,
    counter_in: OfferCounter,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Contraofertar. El vendedor sube el precio (sin pasar del original), el comprador lo baja.
    """
    return await service.counter_offer(
        offer_id, current_user_id, counter_in.price, counter_in.message, counter_in.expected_version
    )

@router.post("/{offer_id}/decline", response_model=OfferResponse)
async def decline_offer(
    offer_id: str,
    decline_in: Optional[OfferDecline] = None,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    reason = decline_in.reason if decline_in else None
    return await service.decline_offer(offer_id, current_user_id, reason, _expected(decline_in))

@router.post("/{offer_id}/cancel", response_model=OfferResponse)
async def cancel_offer(
    offer_id: str,
    action: Optional[OfferAction] = None,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    """
    Retirar el último movimiento propio que sigue pendiente de respuesta.
    """
    return await service.cancel_offer(offer_id, current_user_id, _expected(action))

@router.post("/{offer_id}/read", response_model=OfferResponse)
async def mark_offer_as_read(
    offer_id: str,
    service: OfferService = Depends(deps.get_offer_service),
    current_user_id: str = Depends(deps.get_current_user_id),
) -> Any:
    return await service.mark_offer_as_read(offer_id, current_user_id)
