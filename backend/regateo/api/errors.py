from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from regateo.core.errors import NegotiationError, TransientStoreError

logger = logging.getLogger(__name__)

async def negotiation_error_handler(request: Request, exc: NegotiationError) -> JSONResponse:
    """Convierte los errores de dominio en respuestas {"detail", "code"}"""
    headers = {}
    if isinstance(exc, TransientStoreError):
        headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

def setup_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NegotiationError, negotiation_error_handler)
