"""
Servicio de ofertas: punto de entrada de las operaciones de negociación.

Valida con las reglas puras de offer_machine y delega la escritura en
OfferStore, que aplica resumen + entrada del hilo + indicadores en una
sola transacción. Las transiciones no se reintentan automáticamente: un
conflicto de versión llega al llamador para que refresque.
"""
import logging
from datetime import datetime
from typing import List, Optional

from regateo.core.config import settings
from regateo.core.errors import AuthorizationError, NotFoundError, ValidationError
from regateo.schemas.offer import OfferMessageResponse, OfferResponse, OfferStatus
from regateo.services import offer_machine
from regateo.stores.listings import ListingCatalog
from regateo.stores.offers import OfferStore

logger = logging.getLogger(__name__)


class OfferService:
    def __init__(self, store: OfferStore, catalog: ListingCatalog):
        self.store = store
        self.catalog = catalog

    async def _load(self, offer_id: str) -> OfferResponse:
        offer = await self.store.get(offer_id)
        if offer is None:
            raise NotFoundError("Oferta no encontrada", {"offer_id": offer_id})
        return offer

    def _guard(self, offer: OfferResponse, user_id: str) -> None:
        try:
            offer_machine.ensure_party(offer, user_id)
        except AuthorizationError:
            logger.warning(f"Usuario {user_id} intentó acceder a la oferta {offer.id} sin ser parte")
            raise

    async def _transition(self, offer_id: str, actor_id: str, plan) -> OfferResponse:
        # Lectura previa solo para registrar accesos ajenos; la validación real
        # se repite dentro de la transacción sobre la fila leída allí
        self._guard(await self._load(offer_id), actor_id)
        offer, _ = await self.store.apply_transition(offer_id, plan)
        return offer

    async def create_offer(
        self, buyer_id: str, tool_id: str, price, message: Optional[str] = None
    ) -> OfferResponse:
        """
        Crea una oferta PENDING del comprador sobre una publicación activa.
        El título y el precio original se copian del catálogo y no se vuelven a sincronizar.
        """
        if not tool_id:
            raise ValidationError("Falta la publicación de la oferta")

        listing = await self.catalog.get_listing(tool_id)
        if listing is None or not listing.is_available:
            raise NotFoundError("Publicación no encontrada o no disponible", {"tool_id": tool_id})

        price = offer_machine.validate_new_offer(
            price,
            listing.price,
            buyer_id,
            listing.seller_id,
            settings.OFFER_MIN_PRICE_RATIO,
        )

        offer, _ = await self.store.create(listing, buyer_id, price, message)
        self._notify_by_email(offer, message)
        return offer

    async def accept_offer(self, offer_id: str, actor_id: str, expected_version: Optional[int] = None) -> OfferResponse:
        return await self._transition(
            offer_id, actor_id,
            lambda offer: offer_machine.plan_accept(offer, actor_id, expected_version),
        )

    async def counter_offer(
        self,
        offer_id: str,
        actor_id: str,
        price,
        message: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> OfferResponse:
        return await self._transition(
            offer_id, actor_id,
            lambda offer: offer_machine.plan_counter(offer, actor_id, price, message, expected_version),
        )

    async def decline_offer(
        self,
        offer_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> OfferResponse:
        return await self._transition(
            offer_id, actor_id,
            lambda offer: offer_machine.plan_decline(offer, actor_id, reason, expected_version),
        )

    async def cancel_offer(self, offer_id: str, actor_id: str, expected_version: Optional[int] = None) -> OfferResponse:
        return await self._transition(
            offer_id, actor_id,
            lambda offer: offer_machine.plan_cancel(offer, actor_id, expected_version),
        )

    async def send_offer_message(
        self,
        offer_id: str,
        sender_id: str,
        text: str,
        expected_version: Optional[int] = None,
    ) -> OfferMessageResponse:
        self._guard(await self._load(offer_id), sender_id)
        _, entry = await self.store.apply_transition(
            offer_id,
            lambda offer: offer_machine.plan_message(offer, sender_id, text, expected_version),
        )
        return entry

    async def mark_offer_as_read(self, offer_id: str, user_id: str) -> OfferResponse:
        self._guard(await self._load(offer_id), user_id)
        return await self.store.mark_read(offer_id, user_id)

    async def expire_offer(self, offer_id: str, now: Optional[datetime] = None) -> OfferResponse:
        """Transición del sistema usada por el barrido de expiración"""
        offer, _ = await self.store.apply_transition(
            offer_id,
            lambda offer: offer_machine.plan_expire(offer, now),
        )
        return offer

    async def get_offer(self, offer_id: str, viewer_id: str) -> OfferResponse:
        offer = await self._load(offer_id)
        self._guard(offer, viewer_id)
        return offer

    async def get_offer_messages(self, offer_id: str, viewer_id: str) -> List[OfferMessageResponse]:
        self._guard(await self._load(offer_id), viewer_id)
        return await self.store.messages(offer_id)

    async def get_available_actions(self, offer_id: str, viewer_id: str) -> List[str]:
        offer = await self.get_offer(offer_id, viewer_id)
        return offer_machine.available_actions(offer, viewer_id)

    async def list_buyer_offers(
        self,
        user_id: str,
        status: Optional[OfferStatus] = None,
        active: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[OfferResponse]:
        return await self.store.list_for_buyer(user_id, status=status, active=active, limit=limit)

    async def list_seller_offers(
        self,
        user_id: str,
        status: Optional[OfferStatus] = None,
        active: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[OfferResponse]:
        return await self.store.list_for_seller(user_id, status=status, active=active, limit=limit)

    async def list_tool_offers(self, tool_id: str, viewer_id: str) -> List[OfferResponse]:
        """Ofertas recibidas por una publicación; solo las ve su dueño"""
        listing = await self.catalog.get_listing(tool_id)
        if listing is None:
            raise NotFoundError("Publicación no encontrada", {"tool_id": tool_id})
        if listing.seller_id != viewer_id:
            logger.warning(f"Usuario {viewer_id} intentó ver las ofertas de la publicación {tool_id}")
            raise AuthorizationError("Solo el vendedor puede ver las ofertas de su publicación")
        return await self.store.list_for_tool(tool_id)

    def _notify_by_email(self, offer: OfferResponse, message: Optional[str]) -> None:
        if not settings.EMAIL_NOTIFICATIONS_ENABLED:
            return
        # Importación diferida: el worker de Celery importa este módulo
        from regateo.tasks.notifications import send_offer_email_task

        send_offer_email_task.delay(
            offer.seller_id,
            offer.id,
            offer.tool_title,
            offer.current_price,
            offer.currency,
            message,
        )
