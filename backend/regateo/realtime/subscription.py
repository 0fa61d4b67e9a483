"""
Suscripción en vivo de un usuario: ofertas como comprador, ofertas como
vendedor y conversaciones en las que participa.

El consumidor es dueño del manejador y lo libera al salir del contexto:

    async with subscribe(user_id, offer_store, conversation_store, feed) as sub:
        async for state in sub:
            ...
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from regateo.realtime.feed import ChangeFeed
from regateo.realtime.live_query import Doc, ListenerHandle, LiveQuery
from regateo.schemas.realtime import Collection, QueryUpdate, SubscriptionState
from regateo.core.utils import parse_timestamp
from regateo.stores.conversations import ConversationStore
from regateo.stores.offers import OfferStore

logger = logging.getLogger(__name__)

OFFERS_AS_BUYER = "offers_as_buyer"
OFFERS_AS_SELLER = "offers_as_seller"
CONVERSATIONS = "conversations"


def count_unread(user_id: str, as_buyer: List[Doc], as_seller: List[Doc], conversations: List[Doc]) -> int:
    return (
        sum(1 for o in as_buyer if o.get("has_unread_messages_buyer"))
        + sum(1 for o in as_seller if o.get("has_unread_messages_seller"))
        + sum(1 for c in conversations if user_id in c.get("unread_by_users", []))
    )


class UserSubscription:
    def __init__(self, user_id: str, queries: Dict[str, LiveQuery]):
        self.user_id = user_id
        self.queries = queries
        self._states: asyncio.Queue = asyncio.Queue()
        self._handles: List[ListenerHandle] = []
        self._settled = set()
        self._closed = False

    async def __aenter__(self) -> "UserSubscription":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        try:
            for query in self.queries.values():
                await query.open()
        except Exception:
            # close() es idempotente: también libera la consulta que falló
            for query in self.queries.values():
                await query.close()
            raise

        for name, query in self.queries.items():
            self._handles.append(query.listen(self._make_listener(name)))
        logger.info(f"Suscripción en vivo abierta para {self.user_id}")

    def _make_listener(self, name: str) -> Callable[[QueryUpdate], None]:
        def listener(update: QueryUpdate) -> None:
            if update.is_initial:
                self._settled.add(name)
            # El primer estado se emite cuando las tres instantáneas están cargadas
            if len(self._settled) == len(self.queries):
                self._states.put_nowait(self.state())
        return listener

    def add_listener(self, name: str, callback: Callable[[QueryUpdate], None]) -> ListenerHandle:
        handle = self.queries[name].listen(callback)
        self._handles.append(handle)
        return handle

    def state(self) -> SubscriptionState:
        as_buyer = self.queries[OFFERS_AS_BUYER].docs
        as_seller = self.queries[OFFERS_AS_SELLER].docs
        conversations = self.queries[CONVERSATIONS].docs

        merged = {o["id"]: o for o in as_buyer + as_seller}
        offers = sorted(merged.values(), key=lambda o: parse_timestamp(o["updated_at"]), reverse=True)

        return SubscriptionState(
            user_id=self.user_id,
            offers_as_buyer=as_buyer,
            offers_as_seller=as_seller,
            offers=offers,
            conversations=conversations,
            unread_count=count_unread(self.user_id, as_buyer, as_seller, conversations),
        )

    async def next_state(self, timeout: Optional[float] = None) -> SubscriptionState:
        if timeout is None:
            return await self._states.get()
        return await asyncio.wait_for(self._states.get(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> SubscriptionState:
        if self._closed:
            raise StopAsyncIteration
        return await self._states.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handle in self._handles:
            handle.remove()
        self._handles.clear()
        for query in self.queries.values():
            await query.close()
        logger.info(f"Suscripción en vivo cerrada para {self.user_id}")


def subscribe(
    user_id: str,
    offer_store: OfferStore,
    conversation_store: ConversationStore,
    feed: ChangeFeed,
) -> UserSubscription:
    queries = {
        OFFERS_AS_BUYER: LiveQuery(
            OFFERS_AS_BUYER,
            user_id,
            Collection.OFFERS,
            lambda: offer_store.list_for_buyer(user_id),
            lambda doc: doc.get("buyer_id") == user_id,
            feed,
        ),
        OFFERS_AS_SELLER: LiveQuery(
            OFFERS_AS_SELLER,
            user_id,
            Collection.OFFERS,
            lambda: offer_store.list_for_seller(user_id),
            lambda doc: doc.get("seller_id") == user_id,
            feed,
        ),
        CONVERSATIONS: LiveQuery(
            CONVERSATIONS,
            user_id,
            Collection.CONVERSATIONS,
            lambda: conversation_store.list_for_participant(user_id, status=None),
            lambda doc: user_id in doc.get("participants", []),
            feed,
            order_by="last_message_at",
        ),
    }
    return UserSubscription(user_id, queries)
