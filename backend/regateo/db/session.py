##backend/regateo/db/session.py
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from regateo.core.config import settings
import logging
import asyncio

logger = logging.getLogger(__name__)

# Convertir URL de PostgreSQL a AsyncPostgreSQL
def get_async_db_url(url):
    """Convierte una URL de PostgreSQL o SQLite a su versión asíncrona."""
    url_str = str(url)
    if url_str.startswith("postgresql://"):
        return url_str.replace("postgresql://", "postgresql+asyncpg://")
    if url_str.startswith("sqlite://"):
        return url_str.replace("sqlite://", "sqlite+aiosqlite://")
    return url_str

def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """
    SQLite: abrir cada transacción con BEGIN IMMEDIATE.
    Así dos escritores concurrentes se serializan en el bloqueo de escritura
    en lugar de fallar con "database is locked" al promover el bloqueo.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Desactivar el BEGIN implícito del driver
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def create_engine_for(url: str, echo: bool = False, poolclass=None) -> AsyncEngine:
    """
    Crea el motor asíncrono con las opciones adecuadas para cada backend.
    `poolclass` permite usar NullPool cuando cada petición corre en su propio event loop.
    """
    async_url = get_async_db_url(url)

    if async_url.startswith("sqlite"):
        options = {"poolclass": poolclass} if poolclass is not None else {}
        engine = create_async_engine(
            async_url,
            echo=echo,
            connect_args={"timeout": 30},
            **options,
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    return create_async_engine(
        async_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_timeout=60,
        pool_recycle=1800,  # Reciclar conexiones cada 30 minutos
        pool_pre_ping=True,  # Verificar conexiones
    )

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

# Inicialización de engine con None
engine = None
AsyncSessionLocal = None

# Control de inicialización
_is_initialized = False
_initialization_lock = asyncio.Lock()

async def init_db_connection(max_retries=5, initial_delay=1):
    """Inicializa la conexión a la base de datos con reintentos."""
    global engine, AsyncSessionLocal, _is_initialized

    if _is_initialized:
        return True

    # Usar lock para evitar inicializaciones concurrentes
    async with _initialization_lock:
        if _is_initialized:
            return True

        retry_count = 0
        last_exception = None

        while retry_count < max_retries:
            try:
                engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)

                # Probar la conexión
                async with engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))

                logger.info(f"Conexión a la base de datos establecida (intento {retry_count + 1})")

                AsyncSessionLocal = create_session_factory(engine)
                _is_initialized = True
                return True

            except Exception as e:
                retry_count += 1
                last_exception = e
                wait_time = initial_delay * (2 ** (retry_count - 1))  # Exponential backoff

                logger.warning(f"Intento {retry_count}/{max_retries} fallido para conectar a la base de datos: {e}")
                if engine is not None:
                    await engine.dispose()
                    engine = None
                if retry_count < max_retries:
                    logger.warning(f"Reintentando en {wait_time} segundos...")
                    await asyncio.sleep(wait_time)

        logger.error(f"No se pudo conectar a la base de datos después de {max_retries} intentos: {last_exception}")
        return False

async def create_tables(target_engine: AsyncEngine) -> None:
    """Crea las tablas que falten. No elimina datos existentes."""
    from regateo.db.base_class import Base
    # Registrar modelos en el metadata
    from regateo.models import listing, offer, conversation  # noqa: F401

    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def close_db_connection():
    global engine, AsyncSessionLocal, _is_initialized
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
    _is_initialized = False

def get_session_factory() -> async_sessionmaker:
    """Devuelve la fábrica de sesiones; falla si la conexión no se ha inicializado"""
    if not _is_initialized or AsyncSessionLocal is None:
        raise RuntimeError("La conexión a la base de datos no está inicializada")
    return AsyncSessionLocal
