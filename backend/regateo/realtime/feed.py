"""
Canal de cambios por usuario.

Los stores publican un ChangeEvent después de cada commit, una vez por
participante del documento. Las consultas en vivo se suscriben al canal de
su usuario. La entrega es "al menos una vez": los consumidores descartan
eventos con una versión que ya conocen.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from regateo.core.config import settings
from regateo.schemas.realtime import ChangeEvent

logger = logging.getLogger(__name__)


class FeedDisconnected(Exception):
    """Se perdió la conexión con el canal; el consumidor debe reconectar"""


def channel_name(user_id: str) -> str:
    return f"user:{user_id}:changes"


class FeedSubscription:
    async def get(self) -> ChangeEvent:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ChangeFeed:
    async def publish(self, event: ChangeEvent) -> bool:
        raise NotImplementedError

    async def subscribe(self, user_id: str) -> FeedSubscription:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LocalSubscription(FeedSubscription):
    def __init__(self, feed: "LocalChangeFeed", user_id: str):
        self.feed = feed
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    async def close(self) -> None:
        self.feed._detach(self.user_id, self.queue)


class LocalChangeFeed(ChangeFeed):
    """Distribución en memoria para despliegues de un solo proceso"""

    def __init__(self):
        self._queues: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, event: ChangeEvent) -> bool:
        for user_id in set(event.audience):
            for queue in list(self._queues.get(user_id, ())):
                queue.put_nowait(event)
        return True

    async def subscribe(self, user_id: str) -> FeedSubscription:
        subscription = LocalSubscription(self, user_id)
        self._queues[user_id].add(subscription.queue)
        return subscription

    def _detach(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(user_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[user_id]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._queues.get(user_id, ()))


class RedisSubscription(FeedSubscription):
    def __init__(self, pubsub, channel: str):
        self.pubsub = pubsub
        self.channel = channel

    async def get(self) -> ChangeEvent:
        while True:
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                raise FeedDisconnected(str(e)) from e

            if message is None or message.get("type") != "message":
                continue

            try:
                return ChangeEvent.model_validate_json(message["data"])
            except ValueError as e:
                logger.error(f"Evento inválido en canal {self.channel}: {e}")

    async def close(self) -> None:
        try:
            await self.pubsub.unsubscribe(self.channel)
            await self.pubsub.reset()
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning(f"No se pudo cerrar la suscripción a {self.channel}: {e}")


class RedisChangeFeed(ChangeFeed):
    """Canal de cambios sobre Redis pub/sub, compartido entre procesos"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.redis_pool = None

    async def get_redis(self) -> redis.Redis:
        if self.redis_pool is None:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.redis_url, decode_responses=True
            )
        return redis.Redis(connection_pool=self.redis_pool)

    async def publish(self, event: ChangeEvent) -> bool:
        try:
            r = await self.get_redis()
            message_data = event.model_dump_json()
            for user_id in set(event.audience):
                await r.publish(channel_name(user_id), message_data)
            logger.debug(f"Cambio publicado: {event.collection.value}/{event.id} v{event.version}")
            return True
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            # La escritura ya se confirmó; los suscriptores se resincronizan al reconectar
            logger.error(f"Error al publicar cambio de {event.collection.value}/{event.id}: {e}")
            return False

    async def subscribe(self, user_id: str) -> FeedSubscription:
        channel = channel_name(user_id)
        try:
            r = await self.get_redis()
            pubsub = r.pubsub()
            await pubsub.subscribe(channel)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise FeedDisconnected(str(e)) from e
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        if self.redis_pool is not None:
            await self.redis_pool.disconnect()
            self.redis_pool = None


def build_change_feed(backend: Optional[str] = None) -> ChangeFeed:
    backend = backend or settings.CHANGE_FEED_BACKEND
    if backend == "local":
        logger.info("Usando canal de cambios en memoria")
        return LocalChangeFeed()
    logger.info("Usando canal de cambios en Redis")
    return RedisChangeFeed()
