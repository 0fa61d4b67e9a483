from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from regateo.api import deps
from regateo.core.security import get_user_id_from_token
from regateo.realtime.feed import ChangeFeed
from regateo.realtime.subscription import subscribe
from regateo.stores.conversations import ConversationStore
from regateo.stores.offers import OfferStore
from regateo.websockets.connection import manager
import json
import logging

logger = logging.getLogger(__name__)

websocket_router = APIRouter()

@websocket_router.websocket("/ws/{token}")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str,
    offer_store: OfferStore = Depends(deps.get_offer_store),
    conversation_store: ConversationStore = Depends(deps.get_conversation_store),
    feed: ChangeFeed = Depends(deps.get_change_feed),
):
    """Endpoint principal de WebSocket: estado en vivo y avisos del usuario"""
    user_id = get_user_id_from_token(token)
    if not user_id:
        # Error de autenticación
        await websocket.accept()
        await websocket.send_json({
            "type": "error",
            "data": {"message": "No se pudo validar las credenciales"}
        })
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    subscription = subscribe(user_id, offer_store, conversation_store, feed)
    try:
        session = await manager.connect(websocket, user_id, subscription)
    except Exception as e:
        logger.error(f"No se pudo abrir la suscripción de {user_id}: {e}")
        await subscription.close()
        try:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except RuntimeError as close_error:
            logger.warning(f"Error al cerrar el websocket de {user_id}: {close_error}")
        return

    try:
        # Loop principal para recibir mensajes
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.error(f"Mensaje recibido no es JSON válido: {data}")
                continue
            if isinstance(message, dict):
                session.handle_client_message(message)
    except WebSocketDisconnect:
        await manager.disconnect(session, "client_disconnect")
    except Exception as e:
        logger.error(f"Error en websocket de usuario {user_id}: {e}")
        await manager.disconnect(session, "error")
        raise
