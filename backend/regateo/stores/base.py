import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from regateo.core.errors import ConflictError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def transaction_scope(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Proporciona un contexto transaccional.
    Todo lo escrito dentro del bloque se confirma en un único commit o se descarta.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except StaleDataError as e:
        # Otra escritura cambió la versión entre la lectura y el UPDATE
        logger.info(f"Conflicto de versión: {e}")
        raise ConflictError("El registro fue modificado por otra operación. Recarga y vuelve a intentar.") from e
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Error de conexión con la base de datos: {e}")
        raise TransientStoreError("Servicio de datos no disponible. Inténtalo de nuevo.") from e


@asynccontextmanager
async def read_scope(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Sesión de solo lectura; no confirma nada"""
    try:
        async with session_factory() as session:
            yield session
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Error de conexión con la base de datos: {e}")
        raise TransientStoreError("Servicio de datos no disponible. Inténtalo de nuevo.") from e


async def retry_on_conflict(operation: Callable[[], Awaitable[T]], max_retries: int, label: str = "") -> T:
    """
    Reintenta `operation` ante ConflictError hasta `max_retries` intentos.
    Solo para escrituras idempotentes: el intento perdedor no escribió nada.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except ConflictError:
            if attempt >= max_retries:
                raise
            logger.debug(f"Conflicto de versión en {label or 'escritura'}, reintento {attempt}/{max_retries}")
