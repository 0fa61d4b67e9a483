#backend/regateo/api/deps.py
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.requests import HTTPConnection
from regateo.core.config import settings
from regateo.core.security import get_user_id_from_token
from regateo.db.session import get_session_factory
from regateo.realtime.feed import ChangeFeed, LocalChangeFeed
from regateo.services.messaging import ConversationService
from regateo.services.offers import OfferService
from regateo.stores.conversations import ConversationStore
from regateo.stores.listings import ListingCatalog
from regateo.stores.offers import OfferStore
import logging

logger = logging.getLogger(__name__)

# El token lo emite el proveedor de identidad; aquí solo se verifica
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")

def get_db_session_factory() -> async_sessionmaker:
    """
    Dependency para obtener la fábrica de sesiones asíncronas.
    """
    try:
        return get_session_factory()
    except RuntimeError as e:
        logger.error(f"Base de datos no disponible: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Base de datos no inicializada",
            headers={"Retry-After": "5"},
        )

def get_change_feed(connection: HTTPConnection) -> ChangeFeed:
    """Canal de cambios creado en el lifespan de la aplicación"""
    feed = getattr(connection.app.state, "change_feed", None)
    if feed is None:
        logger.warning("Canal de cambios no inicializado, usando canal en memoria")
        feed = LocalChangeFeed()
        connection.app.state.change_feed = feed
    return feed

def get_offer_store(
    session_factory: async_sessionmaker = Depends(get_db_session_factory),
    feed: ChangeFeed = Depends(get_change_feed),
) -> OfferStore:
    return OfferStore(session_factory, feed)

def get_conversation_store(
    session_factory: async_sessionmaker = Depends(get_db_session_factory),
    feed: ChangeFeed = Depends(get_change_feed),
) -> ConversationStore:
    return ConversationStore(session_factory, feed)

def get_offer_service(
    store: OfferStore = Depends(get_offer_store),
    session_factory: async_sessionmaker = Depends(get_db_session_factory),
) -> OfferService:
    return OfferService(store, ListingCatalog(session_factory))

def get_conversation_service(
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationService:
    return ConversationService(store)

async def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """
    Dependency para obtener el id del usuario autenticado (claim "sub").
    """
    user_id = get_user_id_from_token(token)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudo validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
