# regateo/tasks/offers.py
from celery import shared_task
import asyncio
import logging
from datetime import datetime
from typing import Optional
from regateo.core.config import settings
from regateo.core.errors import ConflictError, StateError, TransientStoreError
from regateo.core.utils import utcnow
from regateo.db.session import create_engine_for, create_session_factory
from regateo.realtime.feed import ChangeFeed, build_change_feed
from regateo.services.offers import OfferService
from regateo.stores.listings import ListingCatalog
from regateo.stores.offers import OfferStore

logger = logging.getLogger(__name__)

async def expire_offers(service: OfferService, now: Optional[datetime] = None) -> int:
    """
    Pasa a EXPIRED las ofertas abiertas cuyo expires_at ya pasó.
    Cada oferta usa la misma transición con entrada en el hilo que el resto de operaciones.
    """
    now = now or utcnow()
    expired = 0
    for offer in await service.store.list_expired(now):
        try:
            await service.expire_offer(offer.id, now)
            expired += 1
        except (StateError, ConflictError) as e:
            # Otra operación la cerró o la modificó entre la lectura y la escritura
            logger.info(f"Oferta {offer.id} no expirada: {e}")
    return expired

async def _run_sweep(feed: Optional[ChangeFeed] = None) -> int:
    engine = create_engine_for(settings.DATABASE_URL)
    feed = feed or build_change_feed()
    try:
        session_factory = create_session_factory(engine)
        service = OfferService(OfferStore(session_factory, feed), ListingCatalog(session_factory))
        return await expire_offers(service)
    finally:
        await feed.close()
        await engine.dispose()

@shared_task(bind=True, max_retries=3, name="regateo.tasks.offers.expire_offers_task")
def expire_offers_task(self):
    """Tarea Celery para marcar ofertas expiradas (desactivada por defecto)"""
    if not settings.OFFER_EXPIRATION_SWEEP_ENABLED:
        logger.debug("Barrido de expiración desactivado")
        return "Barrido desactivado"

    try:
        expired = asyncio.run(_run_sweep())
    except TransientStoreError as e:
        logger.error(f"Error al expirar ofertas: {str(e)}")
        # Reintento con backoff exponencial
        retry_delay = 60 * (2 ** self.request.retries)
        raise self.retry(exc=e, countdown=retry_delay)

    if not expired:
        logger.info("No hay ofertas expiradas para procesar")
        return "No hay ofertas expiradas"

    logger.info(f"Expiradas {expired} ofertas")
    return f"Expiradas {expired} ofertas"
