"""
Consultas en vivo sobre el canal de cambios.

Una LiveQuery mantiene el conjunto de documentos que cumplen un criterio
(p. ej. "ofertas donde soy comprador") y entrega a sus oyentes primero una
instantánea inicial y después deltas. Se abre en dos fases:

1. se suscribe al canal del usuario (los eventos se acumulan en la cola);
2. carga la instantánea y aplica los eventos acumulados, descartando los
   que traen una versión que ya conoce.

Cada oyente tiene su propio cerrojo: recibe exactamente una entrega con
is_initial=True, aunque se registre mucho después de abrir la consulta.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from regateo.core.config import settings
from regateo.core.errors import AuthorizationError, TransientStoreError
from regateo.core.utils import parse_timestamp
from regateo.realtime.feed import ChangeFeed, FeedDisconnected, FeedSubscription
from regateo.schemas.realtime import ChangeEvent, ChangeType, Collection, DocChange, QueryUpdate

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]
Loader = Callable[[], Awaitable[List[Any]]]
Matcher = Callable[[Doc], bool]
Listener = Callable[[QueryUpdate], None]


def _as_doc(item) -> Doc:
    if isinstance(item, dict):
        return item
    return item.model_dump(mode="json")


class ListenerHandle:
    def __init__(self, query: "LiveQuery", callback: Listener):
        self.query = query
        self.callback = callback
        self.initialized = False

    def remove(self) -> None:
        self.query._listeners.discard(self)


class LiveQuery:
    def __init__(
        self,
        name: str,
        user_id: str,
        collection: Collection,
        loader: Loader,
        matcher: Matcher,
        feed: ChangeFeed,
        order_by: str = "updated_at",
        max_backoff: Optional[float] = None,
    ):
        self.name = name
        self.user_id = user_id
        self.collection = collection
        self.loader = loader
        self.matcher = matcher
        self.feed = feed
        self.order_by = order_by
        self.max_backoff = max_backoff or settings.FEED_RECONNECT_MAX_BACKOFF

        self._docs: Dict[str, Doc] = {}
        # Última versión vista por id, también de documentos que salieron de la consulta
        self._versions: Dict[str, int] = {}
        self._listeners = set()
        self._subscription: Optional[FeedSubscription] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.ready = asyncio.Event()

    @property
    def docs(self) -> List[Doc]:
        return sorted(
            self._docs.values(),
            key=lambda d: parse_timestamp(d[self.order_by]),
            reverse=True,
        )

    async def open(self) -> "LiveQuery":
        self._subscription = await self.feed.subscribe(self.user_id)
        try:
            snapshot = await self._load_snapshot()
        except Exception:
            await self._release_subscription()
            raise
        for doc in snapshot:
            self._docs[doc["id"]] = doc
            self._versions[doc["id"]] = doc["version"]

        self.ready.set()
        logger.debug(f"Consulta {self.name} de {self.user_id} lista con {len(self._docs)} documentos")
        for handle in list(self._listeners):
            self._deliver_initial(handle)

        self._task = asyncio.create_task(self._consume())
        return self

    async def _load_snapshot(self) -> List[Doc]:
        try:
            return [_as_doc(item) for item in await self.loader()]
        except AuthorizationError:
            # Usuario nuevo sin permisos todavía: resultado vacío
            logger.debug(f"Consulta {self.name}: sin permisos para {self.user_id}, se trata como vacía")
            return []

    def listen(self, callback: Listener) -> ListenerHandle:
        handle = ListenerHandle(self, callback)
        self._listeners.add(handle)
        if self.ready.is_set():
            self._deliver_initial(handle)
        return handle

    def _deliver_initial(self, handle: ListenerHandle) -> None:
        if handle.initialized:
            return
        handle.initialized = True
        docs = self.docs
        changes = [DocChange(type=ChangeType.ADDED, id=d["id"], doc=d) for d in docs]
        self._dispatch(handle, QueryUpdate(query=self.name, docs=docs, changes=changes, is_initial=True))

    def _dispatch(self, handle: ListenerHandle, update: QueryUpdate) -> None:
        try:
            handle.callback(update)
        except Exception as e:
            logger.error(f"Error en oyente de la consulta {self.name}: {e}")

    def _emit(self, changes: List[DocChange]) -> None:
        if not changes or self._closed:
            return
        update = QueryUpdate(query=self.name, docs=self.docs, changes=changes, is_initial=False)
        for handle in list(self._listeners):
            if handle.initialized:
                self._dispatch(handle, update)

    def _apply(self, event: ChangeEvent) -> Optional[DocChange]:
        if event.collection != self.collection:
            return None
        known = self._versions.get(event.id)
        if known is not None and event.version <= known:
            return None
        self._versions[event.id] = event.version

        previous = self._docs.get(event.id)
        if self.matcher(event.data):
            self._docs[event.id] = event.data
            change_type = ChangeType.MODIFIED if previous is not None else ChangeType.ADDED
            return DocChange(type=change_type, id=event.id, doc=event.data, previous=previous)
        if previous is not None:
            del self._docs[event.id]
            return DocChange(type=ChangeType.REMOVED, id=event.id, doc=event.data, previous=previous)
        return None

    async def _consume(self) -> None:
        while not self._closed:
            try:
                event = await self._subscription.get()
            except FeedDisconnected as e:
                logger.warning(f"Consulta {self.name}: canal desconectado ({e}), reconectando")
                await self._reconnect()
                continue

            change = self._apply(event)
            if change is not None:
                self._emit([change])

    async def _reconnect(self) -> None:
        await self._release_subscription()
        delay = min(1.0, self.max_backoff)
        while not self._closed:
            await asyncio.sleep(delay)
            try:
                self._subscription = await self.feed.subscribe(self.user_id)
                snapshot = await self._load_snapshot()
            except (FeedDisconnected, TransientStoreError) as e:
                delay = min(delay * 2, self.max_backoff)
                logger.debug(f"Consulta {self.name}: reconexión fallida ({e}), próximo intento en {delay}s")
                await self._release_subscription()
                continue

            self._emit(self._resync(snapshot))
            logger.info(f"Consulta {self.name} de {self.user_id} resincronizada")
            return

    def _resync(self, snapshot: List[Doc]) -> List[DocChange]:
        """Diferencia entre lo que se conocía y una instantánea nueva"""
        fresh = {doc["id"]: doc for doc in snapshot}
        changes = []
        for doc_id, doc in fresh.items():
            previous = self._docs.get(doc_id)
            if previous is None:
                changes.append(DocChange(type=ChangeType.ADDED, id=doc_id, doc=doc))
            elif previous.get("version") != doc.get("version"):
                changes.append(DocChange(type=ChangeType.MODIFIED, id=doc_id, doc=doc, previous=previous))
            self._versions[doc_id] = max(doc["version"], self._versions.get(doc_id, 0))
        for doc_id, previous in self._docs.items():
            if doc_id not in fresh:
                changes.append(DocChange(type=ChangeType.REMOVED, id=doc_id, doc=previous, previous=previous))
        self._docs = fresh
        return changes

    async def _release_subscription(self) -> None:
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_subscription()
        logger.debug(f"Consulta {self.name} de {self.user_id} cerrada")
