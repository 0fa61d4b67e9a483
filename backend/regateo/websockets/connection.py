import uuid
from fastapi import WebSocket
import logging
from typing import Any, Dict, Optional
import asyncio
from datetime import datetime, timezone

from regateo.core.config import settings
from regateo.realtime.notifications import NotificationFanout
from regateo.realtime.subscription import UserSubscription
from regateo.schemas.realtime import Notification

logger = logging.getLogger(__name__)

class RealtimeSession:
    """
    Una conexión WebSocket con su suscripción en vivo y sus avisos.
    Todo lo que se envía al cliente pasa por la cola `outbox`.
    """

    def __init__(self, websocket: WebSocket, user_id: str, subscription: UserSubscription,
                 heartbeat_interval: Optional[float] = None):
        self.websocket = websocket
        self.user_id = user_id
        self.subscription = subscription
        self.session_id = str(uuid.uuid4())
        self.heartbeat_interval = heartbeat_interval or settings.WS_HEARTBEAT_INTERVAL
        self.fanout = NotificationFanout(user_id, on_change=self._on_notification)
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.tasks = []
        self.closed = False

    async def start(self):
        await self.subscription.open()
        self.fanout.attach(self.subscription)

        self.outbox.put_nowait({
            "type": "connection_status",
            "data": {
                "status": "connected",
                "session_id": self.session_id,
                "server_time": datetime.now(timezone.utc).isoformat(),
                "ping_interval": self.heartbeat_interval,
            }
        })
        self.tasks = [
            asyncio.create_task(self._pump_states()),
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._heartbeat()),
        ]

    def _on_notification(self, notification: Optional[Notification]):
        self.outbox.put_nowait({
            "type": "notification",
            "data": notification.model_dump(mode="json") if notification else None,
        })

    async def _pump_states(self):
        async for state in self.subscription:
            self.outbox.put_nowait({"type": "state", "data": state.model_dump(mode="json")})

    async def _send_loop(self):
        while True:
            message = await self.outbox.get()
            try:
                await self.websocket.send_json(message)
            except RuntimeError as e:
                # El socket ya se cerró; el router libera la sesión
                logger.warning(f"No se pudo enviar mensaje a {self.user_id}: {e}")
                return

    async def _heartbeat(self):
        """Envía un heartbeat periódico para mantener la conexión activa"""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.outbox.put_nowait({"type": "heartbeat"})

    def handle_client_message(self, message: Dict[str, Any]):
        """Procesa los mensajes recibidos del cliente"""
        message_type = message.get("type")

        if message_type == "dismiss_notification":
            self.fanout.dismiss()
        elif message_type == "heartbeat_response":
            # Respuesta al heartbeat, no se necesita hacer nada
            pass
        else:
            logger.debug(f"Mensaje de tipo desconocido de {self.user_id}: {message_type}")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.fanout.close()
        await self.subscription.close()

class ConnectionManager:
    def __init__(self):
        self.active_sessions: Dict[str, RealtimeSession] = {}

    async def connect(self, websocket: WebSocket, user_id: str, subscription: UserSubscription) -> RealtimeSession:
        await websocket.accept()

        # Si hay una conexión existente, cerrarla para evitar duplicados
        previous = self.active_sessions.pop(user_id, None)
        if previous is not None:
            await previous.close()
            try:
                await previous.websocket.close(code=1000, reason="new_connection")
                logger.info(f"Cerrada conexión anterior para usuario {user_id}")
            except RuntimeError as e:
                logger.warning(f"Error al cerrar conexión anterior: {e}")

        session = RealtimeSession(websocket, user_id, subscription)
        await session.start()
        self.active_sessions[user_id] = session

        logger.info(f"Usuario {user_id} conectado. Total conexiones: {len(self.active_sessions)}")
        return session

    async def disconnect(self, session: RealtimeSession, reason: str = "unknown"):
        """Libera la suscripción; solo quita el registro si sigue siendo la sesión activa"""
        await session.close()
        if self.active_sessions.get(session.user_id) is session:
            del self.active_sessions[session.user_id]
        logger.info(f"Usuario {session.user_id} desconectado ({reason}). Total conexiones: {len(self.active_sessions)}")

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.active_sessions

# Singleton global para usar en toda la aplicación
manager = ConnectionManager()
