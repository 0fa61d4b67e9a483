from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from contextlib import asynccontextmanager

from regateo.api.errors import setup_error_handlers
from regateo.api.v1.api import api_router
from regateo.core.config import settings
from regateo.db import session as db_session
from regateo.realtime.feed import build_change_feed
from regateo.websockets.router import websocket_router

# Configurar logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Iniciando la aplicación en entorno: {settings.ENVIRONMENT}")

    # Asegurarse que la base de datos esté inicializada
    if not await db_session.init_db_connection(max_retries=5, initial_delay=2):
        raise RuntimeError("No se pudo inicializar la conexión a la base de datos")

    # Crear las tablas que falten; nunca se eliminan datos al arrancar
    await db_session.create_tables(db_session.engine)
    logger.info("Tablas de base de datos creadas/verificadas")

    app.state.change_feed = build_change_feed()

    yield

    # Shutdown logic
    logger.info("Deteniendo la aplicación...")
    await app.state.change_feed.close()
    await db_session.close_db_connection()
    logger.info("Conexiones a base de datos cerradas")
    logger.info("Aplicación detenida correctamente")

# Crear la aplicación FastAPI
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="API de negociación de ofertas y mensajería en tiempo real",
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json" if not settings.ENVIRONMENT == "production" else None,
    lifespan=lifespan,
)

if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

setup_error_handlers(app)

# Incluir routers
app.include_router(api_router, prefix=settings.API_V1_STR)
app.include_router(websocket_router)

@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}
