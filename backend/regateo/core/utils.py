from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Hora del servidor en UTC. Es la única fuente de marcas de tiempo de los hilos."""
    return datetime.now(timezone.utc)


def normalize_datetime_comparison(dt1, dt2):
    """
    Normaliza dos objetos datetime para que ambos sean comparables.
    Si uno tiene zona horaria (aware) y el otro no (naive),
    convierte el naive a aware usando la zona horaria del otro.
    Si ambos son aware pero con diferentes zonas horarias, los convierte a UTC.

    SQLite devuelve fechas naive aunque se guarden con zona horaria, así que
    esta función se usa en todas las comparaciones contra expires_at.

    Args:
        dt1 (datetime): Primer objeto datetime
        dt2 (datetime): Segundo objeto datetime

    Returns:
        tuple: (dt1_normalized, dt2_normalized)
    """
    if dt1.tzinfo is not None and dt2.tzinfo is None:
        return dt1, dt2.replace(tzinfo=dt1.tzinfo)

    if dt2.tzinfo is not None and dt1.tzinfo is None:
        return dt1.replace(tzinfo=dt2.tzinfo), dt2

    if dt1.tzinfo is not None and dt2.tzinfo is not None and dt1.tzinfo != dt2.tzinfo:
        return dt1.astimezone(timezone.utc), dt2.astimezone(timezone.utc)

    return dt1, dt2


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now, expires_at = normalize_datetime_comparison(now or utcnow(), expires_at)
    return expires_at < now


def _escape_key_part(user_id: str) -> str:
    return user_id.replace("\\", "\\\\").replace("_", "\\_")


def conversation_key(user_a: str, user_b: str) -> str:
    """
    Clave determinista de la conversación entre dos usuarios.
    El par se ordena, así que (A, B) y (B, A) producen la misma clave.
    Los "_" (y "\\") de cada id se escapan: ("a_b", "c") y ("a", "b_c")
    dan claves distintas.
    """
    first, second = sorted((user_a, user_b))
    return f"{_escape_key_part(first)}_{_escape_key_part(second)}"


def truncate_preview(text: str, length: int) -> str:
    return text[:length]


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite devuelve fechas naive; se interpretan como UTC"""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    # pydantic serializa UTC con sufijo "Z"
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))
