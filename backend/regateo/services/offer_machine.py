"""
Reglas de la máquina de estados de ofertas.

Funciones puras sobre una instantánea de la oferta (OfferResponse): validan
la operación y devuelven la Transition que el store aplica dentro de la
misma transacción en la que leyó la oferta. No tocan la base de datos.

Orden de comprobación: parte del registro → versión esperada → estado →
rol/turno → límites de precio.

    PENDING ──accept/decline/cancel──▶ ACCEPTED | DECLINED | CANCELLED
       │
       └──counter──▶ COUNTERED ──counter──▶ COUNTERED
                         └──accept/decline/cancel──▶ terminal
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from regateo.core.errors import AuthorizationError, ConflictError, StateError, ValidationError
from regateo.core.utils import is_expired
from regateo.schemas.offer import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    OfferMessageType,
    OfferResponse,
    OfferStatus,
)

# Actor de las transiciones que no inicia ninguna de las partes (barrido de expiración)
SYSTEM_ACTOR = "system"

ACCEPTED_TEXT = "Offer accepted"
DECLINED_TEXT = "Offer declined"
CANCELLED_TEXT = "Offer cancelled"
EXPIRED_TEXT = "Offer expired"


@dataclass
class Transition:
    actor_id: str
    message_type: OfferMessageType
    status: Optional[OfferStatus] = None  # None: el estado no cambia
    current_price: Optional[float] = None
    price: Optional[float] = None  # precio registrado en la entrada del hilo
    text: Optional[str] = None
    moves_price: bool = False


def role_of(offer: OfferResponse, user_id: str) -> Optional[str]:
    if user_id == offer.buyer_id:
        return "buyer"
    if user_id == offer.seller_id:
        return "seller"
    return None


def ensure_party(offer: OfferResponse, actor_id: str) -> str:
    role = role_of(offer, actor_id)
    if role is None:
        raise AuthorizationError(
            "No tienes permiso para operar sobre esta oferta",
            {"offer_id": offer.id},
        )
    return role


def ensure_expected_version(offer: OfferResponse, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != offer.version:
        raise ConflictError(
            f"La oferta ha sido modificada. Versión actual: {offer.version}. Recarga y vuelve a intentar.",
            current_version=offer.version,
        )


def ensure_open(offer: OfferResponse) -> None:
    if not offer.is_active or offer.status not in OPEN_STATUSES:
        raise StateError(
            f"La oferta ya no admite cambios (estado '{offer.status.value}')",
            {"status": offer.status.value},
        )


def _ensure_price(price) -> float:
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
        raise ValidationError("El precio debe ser un número válido")
    return float(price)


def validate_new_offer(
    price,
    original_price: float,
    buyer_id: str,
    seller_id: str,
    min_price_ratio: float = 0.0,
) -> float:
    if not buyer_id:
        raise ValidationError("Falta el comprador de la oferta")
    if buyer_id == seller_id:
        raise ValidationError("No puedes ofertar por tu propia publicación")

    price = _ensure_price(price)
    if price <= 0:
        raise ValidationError("El precio debe ser mayor que cero")
    if price >= original_price:
        raise ValidationError("La oferta debe ser menor que el precio de la publicación")
    if min_price_ratio and price < original_price * min_price_ratio:
        raise ValidationError(
            f"La oferta debe ser al menos el {int(min_price_ratio * 100)}% del precio de la publicación"
        )
    return price


def plan_accept(offer: OfferResponse, actor_id: str, expected_version: Optional[int] = None) -> Transition:
    """
    Acepta quien no hizo el último movimiento de precio. Los casos habituales
    son (vendedor, PENDING) y (comprador, COUNTERED por el vendedor); si la
    última contraoferta fue del comprador, es el vendedor quien puede aceptar.
    """
    ensure_party(offer, actor_id)
    ensure_expected_version(offer, expected_version)
    ensure_open(offer)
    # Solo acepta quien no hizo el último movimiento de precio
    if actor_id == offer.last_actor_id:
        raise StateError("Solo la otra parte puede aceptar este precio")
    return Transition(
        actor_id=actor_id,
        message_type=OfferMessageType.ACCEPTED,
        status=OfferStatus.ACCEPTED,
        text=ACCEPTED_TEXT,
    )


def plan_counter(
    offer: OfferResponse,
    actor_id: str,
    price,
    message: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Transition:
    role = ensure_party(offer, actor_id)
    ensure_expected_version(offer, expected_version)
    ensure_open(offer)

    price = _ensure_price(price)
    if role == "seller":
        if not offer.current_price < price <= offer.original_price:
            raise ValidationError(
                "La contraoferta del vendedor debe ser mayor que el precio actual "
                "y no superar el precio original"
            )
    else:
        if not 0 < price < offer.current_price:
            raise ValidationError(
                "La contraoferta del comprador debe ser mayor que cero y menor que el precio actual"
            )

    return Transition(
        actor_id=actor_id,
        message_type=OfferMessageType.COUNTER,
        status=OfferStatus.COUNTERED,
        current_price=price,
        price=price,
        text=message or None,
        moves_price=True,
    )


def plan_decline(
    offer: OfferResponse,
    actor_id: str,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Transition:
    ensure_party(offer, actor_id)
    ensure_expected_version(offer, expected_version)
    ensure_open(offer)
    return Transition(
        actor_id=actor_id,
        message_type=OfferMessageType.DECLINED,
        status=OfferStatus.DECLINED,
        text=reason or DECLINED_TEXT,
    )


def plan_cancel(offer: OfferResponse, actor_id: str, expected_version: Optional[int] = None) -> Transition:
    ensure_party(offer, actor_id)
    ensure_expected_version(offer, expected_version)
    ensure_open(offer)
    # Solo se retira el movimiento propio que está pendiente de respuesta
    if actor_id != offer.last_actor_id:
        raise StateError("Solo quien hizo el último movimiento puede cancelarlo")
    return Transition(
        actor_id=actor_id,
        message_type=OfferMessageType.DECLINED,
        status=OfferStatus.CANCELLED,
        text=CANCELLED_TEXT,
    )


def plan_message(
    offer: OfferResponse,
    sender_id: str,
    text: str,
    expected_version: Optional[int] = None,
) -> Transition:
    ensure_party(offer, sender_id)
    if not text or not text.strip():
        raise ValidationError("El mensaje no puede estar vacío")
    ensure_expected_version(offer, expected_version)
    ensure_open(offer)
    return Transition(
        actor_id=sender_id,
        message_type=OfferMessageType.MESSAGE,
        text=text,
    )


def plan_expire(offer: OfferResponse, now: Optional[datetime] = None) -> Transition:
    ensure_open(offer)
    if not is_expired(offer.expires_at, now):
        raise StateError("La oferta todavía no ha expirado")
    return Transition(
        actor_id=SYSTEM_ACTOR,
        message_type=OfferMessageType.DECLINED,
        status=OfferStatus.EXPIRED,
        text=EXPIRED_TEXT,
    )


def available_actions(offer: OfferResponse, user_id: str) -> List[str]:
    """Acciones que `user_id` puede intentar ahora mismo sobre la oferta"""
    if role_of(offer, user_id) is None or offer.status in TERMINAL_STATUSES or not offer.is_active:
        return []

    actions = ["counter", "decline", "message"]
    if user_id == offer.last_actor_id:
        actions.append("cancel")
    else:
        actions.insert(0, "accept")
    return actions
