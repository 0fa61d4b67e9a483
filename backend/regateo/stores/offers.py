"""
Persistencia de ofertas.

Cada escritura es una sola transacción que modifica el resumen de la
oferta, añade exactamente una entrada al hilo y ajusta los indicadores de
no leído. La columna `version` es el version_id_col de SQLAlchemy: el
UPDATE lleva `WHERE version = <leída>` y una escritura concurrente que ya
la incrementó produce ConflictError. Tras el commit se publica el cambio
en el canal del comprador y del vendedor.
"""
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from regateo.core.config import settings
from regateo.core.errors import AuthorizationError, NotFoundError
from regateo.core.utils import utcnow
from regateo.models.offer import Offer, OfferMessage
from regateo.realtime.feed import ChangeFeed
from regateo.schemas.offer import (
    TERMINAL_STATUSES,
    OfferMessageResponse,
    OfferMessageType,
    OfferResponse,
    OfferStatus,
)
from regateo.schemas.realtime import ChangeEvent, Collection
from regateo.services.offer_machine import SYSTEM_ACTOR, Transition
from regateo.services.thread_log import ThreadLogger
from regateo.stores.base import read_scope, retry_on_conflict, transaction_scope
from regateo.stores.listings import ListingSnapshot

logger = logging.getLogger(__name__)

Planner = Callable[[OfferResponse], Transition]


class OfferStore:
    def __init__(self, session_factory: async_sessionmaker, feed: ChangeFeed, thread_logger: Optional[ThreadLogger] = None):
        self.session_factory = session_factory
        self.feed = feed
        self.thread_logger = thread_logger or ThreadLogger(session_factory)

    async def _publish(self, offer: OfferResponse) -> None:
        await self.feed.publish(ChangeEvent(
            collection=Collection.OFFERS,
            id=offer.id,
            version=offer.version,
            data=offer.model_dump(mode="json"),
            audience=[offer.buyer_id, offer.seller_id],
        ))

    async def create(
        self,
        listing: ListingSnapshot,
        buyer_id: str,
        price: float,
        message: Optional[str] = None,
    ) -> Tuple[OfferResponse, OfferMessageResponse]:
        """Inserta la oferta en PENDING junto con la entrada inicial del hilo"""
        now = utcnow()
        async with transaction_scope(self.session_factory) as session:
            offer = Offer(
                tool_id=listing.id,
                tool_title=listing.title or "Tool",
                currency=listing.currency,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                original_price=listing.price,
                current_price=price,
                status=OfferStatus.PENDING.value,
                is_active=True,
                has_unread_messages_buyer=False,
                has_unread_messages_seller=True,  # La oferta inicial la tiene pendiente el vendedor
                last_actor_id=buyer_id,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=settings.OFFER_EXPIRATION_DAYS),
            )
            session.add(offer)
            await session.flush()

            entry = self.thread_logger.offer_entry(
                offer_id=offer.id,
                sender_id=buyer_id,
                recipient_id=listing.seller_id,
                message_type=OfferMessageType.OFFER,
                sequence=offer.version,
                created_at=now,
                price=price,
                message=message or "",
            )
            session.add(entry)
            await session.flush()

            snapshot = OfferResponse.model_validate(offer)
            entry_snapshot = OfferMessageResponse.model_validate(entry)

        logger.info(f"Oferta {snapshot.id} creada por {buyer_id} sobre {listing.id}")
        await self._publish(snapshot)
        return snapshot, entry_snapshot

    async def apply_transition(self, offer_id: str, plan: Planner) -> Tuple[OfferResponse, OfferMessageResponse]:
        """
        Lee la oferta, valida con `plan` sobre esa misma lectura y escribe
        resumen + entrada del hilo en un único commit.
        """
        now = utcnow()
        async with transaction_scope(self.session_factory) as session:
            offer = await session.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("Oferta no encontrada", {"offer_id": offer_id})

            transition = plan(OfferResponse.model_validate(offer))

            if transition.status is not None:
                offer.status = transition.status.value
                offer.is_active = transition.status not in TERMINAL_STATUSES
            if transition.current_price is not None:
                offer.current_price = transition.current_price
            if transition.moves_price:
                offer.last_actor_id = transition.actor_id

            # No leído para la otra parte, leído para quien actúa
            if transition.actor_id == offer.buyer_id:
                offer.has_unread_messages_seller = True
                offer.has_unread_messages_buyer = False
                recipient_id = offer.seller_id
            elif transition.actor_id == offer.seller_id:
                offer.has_unread_messages_buyer = True
                offer.has_unread_messages_seller = False
                recipient_id = offer.buyer_id
            else:
                # Transición del sistema: ambas partes deben enterarse
                offer.has_unread_messages_buyer = True
                offer.has_unread_messages_seller = True
                recipient_id = offer.buyer_id

            offer.updated_at = now

            # version_id_col incrementa la versión en este flush
            entry = self.thread_logger.offer_entry(
                offer_id=offer.id,
                sender_id=transition.actor_id,
                recipient_id=recipient_id,
                message_type=transition.message_type,
                sequence=offer.version + 1,
                created_at=now,
                price=transition.price,
                message=transition.text,
            )
            session.add(entry)
            await session.flush()

            snapshot = OfferResponse.model_validate(offer)
            entry_snapshot = OfferMessageResponse.model_validate(entry)

        logger.info(
            f"Oferta {offer_id}: {transition.message_type.value} por {transition.actor_id} "
            f"-> {snapshot.status.value} (v{snapshot.version})"
        )
        await self._publish(snapshot)
        return snapshot, entry_snapshot

    async def mark_read(self, offer_id: str, user_id: str) -> OfferResponse:
        """
        Limpia el indicador de no leído de `user_id` y marca como leídas sus entradas.
        Idempotente: si no hay nada pendiente no escribe.
        """
        return await retry_on_conflict(
            lambda: self._mark_read_once(offer_id, user_id),
            settings.CAS_MAX_RETRIES,
            f"lectura de la oferta {offer_id}",
        )

    async def _mark_read_once(self, offer_id: str, user_id: str) -> OfferResponse:
        changed = False
        async with transaction_scope(self.session_factory) as session:
            offer = await session.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("Oferta no encontrada", {"offer_id": offer_id})

            if user_id == offer.buyer_id:
                flag = "has_unread_messages_buyer"
            elif user_id == offer.seller_id:
                flag = "has_unread_messages_seller"
            else:
                raise AuthorizationError("No tienes permiso para ver esta oferta", {"offer_id": offer_id})

            result = await session.execute(
                update(OfferMessage)
                .where(
                    OfferMessage.offer_id == offer_id,
                    OfferMessage.recipient_id == user_id,
                    OfferMessage.is_read == False,  # noqa: E712
                )
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )

            if getattr(offer, flag):
                setattr(offer, flag, False)
                changed = True
                await session.flush()
            elif result.rowcount:
                logger.debug(f"Entradas de la oferta {offer_id} marcadas como leídas para {user_id}")

            snapshot = OfferResponse.model_validate(offer)

        if changed:
            await self._publish(snapshot)
        return snapshot

    async def get(self, offer_id: str) -> Optional[OfferResponse]:
        async with read_scope(self.session_factory) as session:
            offer = await session.get(Offer, offer_id)
            return OfferResponse.model_validate(offer) if offer else None

    async def _list(self, *criteria, status: Optional[OfferStatus] = None,
                    active: Optional[bool] = None, limit: Optional[int] = None) -> List[OfferResponse]:
        query = select(Offer).where(*criteria)
        if status is not None:
            query = query.where(Offer.status == OfferStatus(status).value)
        if active is not None:
            query = query.where(Offer.is_active == active)
        query = query.order_by(Offer.updated_at.desc())
        if limit:
            query = query.limit(limit)

        async with read_scope(self.session_factory) as session:
            result = await session.execute(query)
            return [OfferResponse.model_validate(o) for o in result.scalars().all()]

    async def list_for_buyer(self, user_id: str, **filters) -> List[OfferResponse]:
        return await self._list(Offer.buyer_id == user_id, **filters)

    async def list_for_seller(self, user_id: str, **filters) -> List[OfferResponse]:
        return await self._list(Offer.seller_id == user_id, **filters)

    async def list_for_tool(self, tool_id: str, **filters) -> List[OfferResponse]:
        return await self._list(Offer.tool_id == tool_id, **filters)

    async def list_expired(self, now=None, limit: int = 500) -> List[OfferResponse]:
        """Ofertas abiertas cuyo expires_at ya pasó (para el barrido opcional)"""
        now = now or utcnow()
        return await self._list(
            Offer.expires_at < now,
            active=True,
            limit=limit,
        )

    async def messages(self, offer_id: str) -> List[OfferMessageResponse]:
        return await self.thread_logger.offer_history(offer_id)


__all__ = ["OfferStore", "SYSTEM_ACTOR"]
