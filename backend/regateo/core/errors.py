"""
Jerarquía de errores del núcleo de negociación.

Cada error lleva un código estable para el cliente, un mensaje que se
muestra tal cual y detalles opcionales. El mapeo a HTTP vive en
regateo.api.errors; aquí no se importa nada de FastAPI.
"""
from typing import Any, Dict, Optional


class NegotiationError(Exception):
    """Base de todos los errores de dominio"""

    code = "negotiation_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(NegotiationError):
    """Datos inválidos (precio fuera de rango, campo faltante). Se rechaza antes de escribir."""

    code = "validation_error"
    status_code = 400


class AuthorizationError(NegotiationError):
    """El actor no es parte del registro"""

    code = "not_authorized"
    status_code = 403


class StateError(NegotiationError):
    """La operación no es válida para el estado actual; el cliente debe refrescar"""

    code = "no_longer_actionable"
    status_code = 409


class ConflictError(NegotiationError):
    """La revisión esperada no coincide con la almacenada"""

    code = "version_conflict"
    status_code = 409

    def __init__(self, message: str, current_version: Optional[int] = None):
        details = {"current_version": current_version} if current_version is not None else None
        super().__init__(message, details)
        self.current_version = current_version


class NotFoundError(NegotiationError):
    code = "not_found"
    status_code = 404


class TransientStoreError(NegotiationError):
    """Fallo de red o del servicio de datos. Las mutaciones no se reintentan aquí."""

    code = "store_unavailable"
    status_code = 503
    retry_after = 5
