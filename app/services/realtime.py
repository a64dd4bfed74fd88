"""
Realtime fan-out for server-sent events.

Subscribers are keyed by "<userId>_<accountType>". Two backends:

- memory: process-local asyncio queues. Fine for a single API instance and tests.
- redis: one pub/sub channel per key, so an event published by any instance
  reaches connections held by every other instance.

Publishing is fire-and-forget: failures are logged, never raised. The
notification row is already committed, clients resync on reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis
from redis.asyncio import Redis as AsyncRedis

from app.core.config import settings

logger = logging.getLogger(__name__)

BROADCAST_KEY = "*"
CHANNEL_PREFIX = "rainbowpaws:sse:"


def connection_key(user_id: int, account_type: str) -> str:
    return f"{user_id}_{account_type}"


class MemoryHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}

    @asynccontextmanager
    async def subscribe(self, key: str) -> AsyncIterator[asyncio.Queue]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers.setdefault(key, {})[token] = (loop, queue)
        logger.debug("[SSE] %s connected (%d open)", key, self.connection_count())
        try:
            yield queue
        finally:
            with self._lock:
                subs = self._subscribers.get(key, {})
                subs.pop(token, None)
                if not subs:
                    self._subscribers.pop(key, None)
            logger.debug("[SSE] %s disconnected", key)

    def publish(self, key: str, event: Dict[str, Any]) -> int:
        with self._lock:
            if key == BROADCAST_KEY:
                targets = [t for subs in self._subscribers.values() for t in subs.values()]
            else:
                targets = list(self._subscribers.get(key, {}).values())
        delivered = 0
        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
                delivered += 1
            except RuntimeError:
                # loop already closed; the subscription is being torn down
                continue
        return delivered

    def connection_count(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._subscribers.get(key, {}))
            return sum(len(s) for s in self._subscribers.values())


class RedisHub:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        self._local = MemoryHub()  # tracks connections held by this instance only

    def _channel(self, key: str) -> str:
        return CHANNEL_PREFIX + ("broadcast" if key == BROADCAST_KEY else key)

    def _sync_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
        return self._client

    def publish(self, key: str, event: Dict[str, Any]) -> int:
        channel = self._channel(key)
        try:
            return int(self._sync_client().publish(channel, json.dumps(event, default=str)))
        except redis.RedisError as e:
            logger.error("[SSE] Failed to publish to %s: %s", channel, e)
            return 0

    @asynccontextmanager
    async def subscribe(self, key: str) -> AsyncIterator[asyncio.Queue]:
        client = AsyncRedis.from_url(self._url, decode_responses=True)
        pubsub = client.pubsub()
        await pubsub.subscribe(self._channel(key), self._channel(BROADCAST_KEY))

        async with self._local.subscribe(key) as queue:
            async def pump() -> None:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        await queue.put(json.loads(message["data"]))
                    except (TypeError, ValueError):
                        logger.warning("[SSE] Dropping malformed message on %s", message.get("channel"))

            task = asyncio.create_task(pump())
            try:
                yield queue
            finally:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                await pubsub.unsubscribe()
                await pubsub.aclose()
                await client.aclose()

    def connection_count(self, key: Optional[str] = None) -> int:
        return self._local.connection_count(key)


_hub = None
_hub_lock = threading.Lock()


def get_hub():
    global _hub
    if _hub is None:
        with _hub_lock:
            if _hub is None:
                if settings.REALTIME_BACKEND.lower() == "redis":
                    _hub = RedisHub(settings.REDIS_URL)
                else:
                    _hub = MemoryHub()
                logger.info("Realtime backend: %s", type(_hub).__name__)
    return _hub


def broadcast_to_user(user_id: int, account_type: str, notification: Dict[str, Any]) -> int:
    event = {
        "type": "notification",
        "notification": notification,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return get_hub().publish(connection_key(user_id, account_type), event)


def broadcast_to_all(notification: Dict[str, Any]) -> int:
    event = {
        "type": "system_notification",
        "notification": notification,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return get_hub().publish(BROADCAST_KEY, event)
