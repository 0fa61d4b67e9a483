"""
Avisos emergentes a partir de la suscripción en vivo.

Solo se avisa cuando un registro entra en la vista de no leídos del
usuario después de la instantánea inicial; al conectar no se dispara
nada aunque haya registros pendientes. Un registro que ya avisó no vuelve
a hacerlo hasta que sale de la vista (se marca como leído o desaparece).
"""
import asyncio
import logging
import uuid
from functools import partial
from typing import Callable, List, Optional, Set

from regateo.core.config import settings
from regateo.realtime.live_query import Doc, ListenerHandle
from regateo.realtime.subscription import CONVERSATIONS, OFFERS_AS_BUYER, OFFERS_AS_SELLER, UserSubscription
from regateo.schemas.realtime import ChangeType, Notification, NotificationKind, QueryUpdate

logger = logging.getLogger(__name__)

TITLES = {
    NotificationKind.BUYER_OFFER: "New seller message",
    NotificationKind.SELLER_OFFER: "New offer or message",
    NotificationKind.CONVERSATION: "New message",
}

QUERY_KINDS = {
    OFFERS_AS_BUYER: NotificationKind.BUYER_OFFER,
    OFFERS_AS_SELLER: NotificationKind.SELLER_OFFER,
    CONVERSATIONS: NotificationKind.CONVERSATION,
}


def is_unread_for(kind: NotificationKind, doc: Optional[Doc], user_id: str) -> bool:
    if doc is None:
        return False
    if kind == NotificationKind.BUYER_OFFER:
        return bool(doc.get("has_unread_messages_buyer"))
    if kind == NotificationKind.SELLER_OFFER:
        return bool(doc.get("has_unread_messages_seller"))
    return user_id in doc.get("unread_by_users", [])


def build_notification(kind: NotificationKind, doc: Doc) -> Notification:
    if kind == NotificationKind.CONVERSATION:
        message = doc.get("last_message_text") or ""
    else:
        message = f"You have a new message regarding {doc.get('tool_title')}"
    return Notification(
        id=str(uuid.uuid4()),
        source_id=doc["id"],
        kind=kind,
        title=TITLES[kind],
        message=message,
        link=f"/messages/{doc['id']}",
    )


class NotificationFanout:
    def __init__(
        self,
        user_id: str,
        timeout: Optional[float] = None,
        on_change: Optional[Callable[[Optional[Notification]], None]] = None,
    ):
        self.user_id = user_id
        self.timeout = settings.NOTIFICATION_TIMEOUT_SECONDS if timeout is None else timeout
        self.on_change = on_change
        self.current: Optional[Notification] = None
        self._notified: Set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._handles: List[ListenerHandle] = []

    def attach(self, subscription: UserSubscription) -> "NotificationFanout":
        for name, kind in QUERY_KINDS.items():
            self._handles.append(subscription.add_listener(name, partial(self.handle_update, kind)))
        return self

    def handle_update(self, kind: NotificationKind, update: QueryUpdate) -> None:
        # La instantánea inicial nunca genera avisos
        if update.is_initial:
            return

        for change in update.changes:
            key = f"{kind.value}:{change.id}"
            if change.type == ChangeType.REMOVED or not is_unread_for(kind, change.doc, self.user_id):
                self._notified.discard(key)
                continue
            if is_unread_for(kind, change.previous, self.user_id) or key in self._notified:
                continue

            self._notified.add(key)
            self._show(build_notification(kind, change.doc))

    def _show(self, notification: Notification) -> None:
        self._cancel_timer()
        self.current = notification
        logger.debug(f"Aviso para {self.user_id}: {notification.title} ({notification.source_id})")
        if self.timeout and self.timeout > 0:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.timeout, self._expire, notification.id)
        self._changed()

    def _expire(self, notification_id: str) -> None:
        if self.current is not None and self.current.id == notification_id:
            self._timer = None
            self.current = None
            self._changed()

    def dismiss(self) -> None:
        self._cancel_timer()
        if self.current is not None:
            self.current = None
            self._changed()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.current)
        except Exception as e:
            logger.error(f"Error al entregar aviso a {self.user_id}: {e}")

    def close(self) -> None:
        self._cancel_timer()
        for handle in self._handles:
            handle.remove()
        self._handles.clear()
        self.current = None
