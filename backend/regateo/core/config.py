import secrets
from typing import Any, Dict, List, Optional, Union
from pydantic import AnyHttpUrl, validator, Field
from pydantic_settings import BaseSettings
import logging

logger = logging.getLogger(__name__)

class EnvironmentSettings(BaseSettings):
    """Configuración básica de entorno"""
    # Entorno de ejecución
    ENVIRONMENT: str = "development"

    @validator("ENVIRONMENT")
    def validate_environment(cls, v):
        allowed = ["development", "testing", "staging", "production"]
        if v.lower() not in allowed:
            raise ValueError(f"Entorno debe ser uno de: {', '.join(allowed)}")
        return v.lower()

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

# Cargar el entorno primero
env = EnvironmentSettings().ENVIRONMENT

# Mapeo de archivos de entorno
env_files = {
    "development": [".env.development", ".env"],
    "testing": [".env.testing", ".env"],
    "staging": [".env.staging", ".env"],
    "production": [".env.production", ".env"],
}

class Settings(BaseSettings):
    # API
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Regateo"
    DEBUG: bool = False

    # Entorno
    ENVIRONMENT: str = env

    # JWT emitido por el proveedor de identidad
    SECRET_KEY: str = Field(default="", validate_default=True)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 días

    @validator("SECRET_KEY", pre=True)
    def validate_secret_key(cls, v):
        if not v or len(v) < 32:
            if env == "production":
                raise ValueError("SECRET_KEY debe tener al menos 32 caracteres en producción")
            # En desarrollo, generar una clave automáticamente
            logger.warning("SECRET_KEY no configurada o insegura, generando automáticamente")
            return secrets.token_urlsafe(32)
        return v

    # CORS
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Base de datos
    POSTGRES_SERVER: str = "db"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "regateo"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)

    @validator("DATABASE_URL", pre=True)
    def assemble_db_connection(cls, v: Optional[str], values: Dict[str, Any]) -> Any:
        if isinstance(v, str) and v:
            return v

        password = values.get("POSTGRES_PASSWORD")
        if not password:
            if env == "production":
                raise ValueError("POSTGRES_PASSWORD es obligatoria en producción")
            # En desarrollo, usar SQLite como fallback
            logger.warning("PostgreSQL sin configurar, usando SQLite local")
            return "sqlite+aiosqlite:///./regateo.db"

        return (
            f"postgresql+asyncpg://{values.get('POSTGRES_USER')}:{password}"
            f"@{values.get('POSTGRES_SERVER')}/{values.get('POSTGRES_DB') or ''}"
        )

    # Redis
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_URL: Optional[str] = Field(default=None, validate_default=True)

    @validator("REDIS_URL", pre=True)
    def assemble_redis_connection(cls, v: Optional[str], values: Dict[str, Any]) -> Any:
        if isinstance(v, str) and v:
            return v

        # Construir URL de Redis
        password_part = f":{values.get('REDIS_PASSWORD')}@" if values.get('REDIS_PASSWORD') else ""
        return f"redis://{password_part}{values.get('REDIS_HOST')}:{values.get('REDIS_PORT')}/{values.get('REDIS_DB')}"

    # Canal de cambios: "redis" para varios procesos, "local" para un único proceso
    CHANGE_FEED_BACKEND: str = "redis"

    @validator("CHANGE_FEED_BACKEND")
    def validate_feed_backend(cls, v):
        if v not in ("redis", "local"):
            raise ValueError("CHANGE_FEED_BACKEND debe ser 'redis' o 'local'")
        return v

    # Negociación
    OFFER_EXPIRATION_DAYS: int = 7
    OFFER_MIN_PRICE_RATIO: float = Field(default=0.0, ge=0.0, lt=1.0)  # 0 = sin mínimo
    OFFER_EXPIRATION_SWEEP_ENABLED: bool = False
    CAS_MAX_RETRIES: int = 3

    # Mensajería
    LAST_MESSAGE_PREVIEW_LENGTH: int = 100
    CONVERSATION_LIST_LIMIT: int = 20
    MESSAGE_PAGE_LIMIT: int = 50

    # Tiempo real
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    FEED_RECONNECT_MAX_BACKOFF: float = 60.0
    WS_HEARTBEAT_INTERVAL: int = 30

    # Notificaciones por correo (servicio externo)
    EMAIL_NOTIFICATIONS_ENABLED: bool = False
    EMAIL_SERVICE_URL: Optional[str] = None
    EMAIL_SERVICE_TIMEOUT: int = 10

    # Configuraciones específicas por entorno
    def get_settings_by_environment(self) -> Dict[str, Any]:
        settings_map = {
            "development": {
                "DEBUG": True,
            },
            "testing": {
                "DEBUG": True,
                "CHANGE_FEED_BACKEND": "local",
                "EMAIL_NOTIFICATIONS_ENABLED": False,
            },
            "staging": {
                "DEBUG": False,
            },
            "production": {
                "DEBUG": False,
            },
        }

        return settings_map.get(self.ENVIRONMENT, {})

    # Aplicar configuraciones específicas del entorno
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)

        env_settings = self.get_settings_by_environment()
        for key, value in env_settings.items():
            if hasattr(self, key):
                setattr(self, key, value)

    class Config:
        case_sensitive = True
        env_file = env_files.get(env, [".env"])
        extra = "ignore"

# Crear instancia de configuración
settings = Settings()

logger.info(f"Configuración cargada para entorno: {settings.ENVIRONMENT}")
if settings.DATABASE_URL:
    db_url_safe = str(settings.DATABASE_URL)
    if settings.POSTGRES_PASSWORD:
        db_url_safe = db_url_safe.replace(str(settings.POSTGRES_PASSWORD), '****')
    logger.info(f"Base de datos: {db_url_safe}")
