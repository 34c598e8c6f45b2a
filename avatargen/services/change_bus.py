"""
Change Bus
Tells document store watchers that a collection changed.

Notifications carry no payload: a watcher re-reads the collection and emits a
full snapshot, so a dropped or coalesced notification never loses state.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from avatargen.core.exceptions import ChangeFeedError
from avatargen.core.redis import RedisManager

logger = logging.getLogger(__name__)


class ChangeBus(ABC):
    """Publish/subscribe channel per collection."""

    @abstractmethod
    async def publish(self, collection: str) -> None:
        ...

    @abstractmethod
    def listen(self, collection: str) -> "AsyncIterator[asyncio.Queue]":
        """
        Async context manager yielding a queue that receives one item per change.

        A ``ChangeFeedError`` put on the queue means the subscription is gone
        and no further changes will arrive.
        """
        ...

    async def close(self) -> None:
        pass


class LocalChangeBus(ChangeBus):
    """In-process bus built on asyncio queues."""

    def __init__(self):
        self._listeners: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, collection: str) -> None:
        for queue in list(self._listeners.get(collection, ())):
            queue.put_nowait(collection)

    @asynccontextmanager
    async def listen(self, collection: str):
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.setdefault(collection, set()).add(queue)
        try:
            yield queue
        finally:
            self._listeners[collection].discard(queue)


class RedisChangeBus(ChangeBus):
    """Cross-process bus on Redis pub/sub."""

    def __init__(self, manager: RedisManager, prefix: str = "avatargen:changes"):
        self.manager = manager
        self.prefix = prefix

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    async def publish(self, collection: str) -> None:
        await self.manager.get_connection().publish(self._channel(collection), "changed")

    @asynccontextmanager
    async def listen(self, collection: str):
        pubsub = self.manager.get_connection().pubsub()
        await pubsub.subscribe(self._channel(collection))
        queue: asyncio.Queue = asyncio.Queue()

        async def _pump():
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    queue.put_nowait(collection)

        def _pump_done(task: asyncio.Task) -> None:
            if task.cancelled():
                return
            cause = task.exception()
            logger.error(f"[ChangeBus] Redis subscription for {collection} ended: {cause}")
            queue.put_nowait(ChangeFeedError(collection, cause))

        pump = asyncio.create_task(_pump())
        pump.add_done_callback(_pump_done)
        try:
            yield queue
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            try:
                await pubsub.unsubscribe(self._channel(collection))
                await pubsub.aclose()
            except Exception as e:
                logger.warning(f"[ChangeBus] Could not close Redis subscription for {collection}: {e}")

    async def close(self) -> None:
        await self.manager.close()


__all__ = ["ChangeBus", "LocalChangeBus", "RedisChangeBus"]
