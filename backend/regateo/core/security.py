from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from jose import jwt, JWTError
from regateo.core.config import settings

# Algoritmo para JWT
ALGORITHM = "HS256"

def create_access_token(data: Dict[str, Any]) -> str:
    """
    Crear un token JWT para un usuario.
    Lo usa el proveedor de identidad y las pruebas; este servicio solo lo verifica.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})

    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def decode_jwt_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decodificar y verificar un token JWT.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None

def get_user_id_from_token(token: str) -> Optional[str]:
    """Devuelve el id del actor autenticado (claim "sub") o None si el token no es válido"""
    payload = decode_jwt_token(token)
    if not payload:
        return None
    return payload.get("sub") or None
