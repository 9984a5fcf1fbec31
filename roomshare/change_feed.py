"""
Per-room publish/subscribe fan-out.

Every subscriber owns a bounded queue. Publishing never waits on a subscriber: when a
queue is full the subscriber is dropped and sees ``SlowConsumerError`` on its next
read, after which it has to re-fetch room state (there is no replay).

With ``REDIS_URL`` configured, publishes go through Redis pub/sub so that all service
instances see every event; each instance fans received events out to its own local
subscribers.
"""
import asyncio
import logging
from typing import Dict, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from pydantic import ValidationError as SchemaError

from .errors import SlowConsumerError
from .metrics import ACTIVE_SUBSCRIPTIONS, EVENTS_PUBLISHED, SLOW_CONSUMERS_DROPPED
from .schemas.events import ChangeEvent

logger = logging.getLogger(__name__)

REDIS_ROOM_CHANNEL = 'room:channel:{code}'
REDIS_ROOM_PATTERN = 'room:channel:*'

_CLOSED = object()


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``; iterate it to receive events"""

    def __init__(self, feed: 'ChangeFeed', room_code: str, maxsize: int):
        self.room_code = room_code
        self.closed = False
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._error: Optional[Exception] = None

    def _offer(self, event: ChangeEvent) -> bool:
        if self.closed:
            return True
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def _close(self, error: Optional[Exception] = None):
        if self.closed:
            return
        self.closed = True
        self._error = error
        if error is not None:
            # pending events are useless to a dropped consumer
            while not self._queue.empty():
                self._queue.get_nowait()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def _finish(self) -> None:
        if self._error is not None:
            raise self._error
        return None

    async def next(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None once the subscription is closed.

        Raises ``SlowConsumerError`` if the subscriber was dropped and
        ``asyncio.TimeoutError`` if ``timeout`` elapses first.
        """
        if self.closed and self._queue.empty():
            return self._finish()
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return self._finish()
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self):
        self._feed.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.cancel()


class ChangeFeed:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self.subscribers: Dict[str, Set[Subscription]] = {}
        self.relay: Optional['RedisRelay'] = None

    def subscribe(self, room_code: str) -> Subscription:
        sub = Subscription(self, room_code, self.queue_size)
        self.subscribers.setdefault(room_code, set()).add(sub)
        ACTIVE_SUBSCRIPTIONS.inc()
        logger.debug(f"Subscribed to room {room_code} ({len(self.subscribers[room_code])} local subscribers)")
        return sub

    def _detach(self, sub: Subscription) -> bool:
        subs = self.subscribers.get(sub.room_code)
        if not subs or sub not in subs:
            return False
        subs.discard(sub)
        if not subs:
            del self.subscribers[sub.room_code]
        ACTIVE_SUBSCRIPTIONS.dec()
        return True

    def unsubscribe(self, sub: Subscription):
        if self._detach(sub):
            logger.debug(f"Unsubscribed from room {sub.room_code}")
        sub._close()

    def subscriber_count(self, room_code: str) -> int:
        return len(self.subscribers.get(room_code, ()))

    def _drop(self, sub: Subscription):
        logger.warning(f"Dropping slow subscriber on room {sub.room_code} (queue size {self.queue_size})")
        SLOW_CONSUMERS_DROPPED.inc()
        self._detach(sub)
        sub._close(SlowConsumerError(f'Subscriber for room {sub.room_code} fell behind'))

    def dispatch(self, event: ChangeEvent) -> int:
        """Deliver to local subscribers of ``event.room_code``; returns how many received it"""
        delivered = 0
        for sub in list(self.subscribers.get(event.room_code, ())):
            if sub._offer(event):
                delivered += 1
            else:
                self._drop(sub)
        return delivered

    async def publish(self, event: ChangeEvent):
        EVENTS_PUBLISHED.labels(entity=event.entity.value, change=event.change.value).inc()
        if self.relay is not None and not self.relay.listening:
            logger.error("Redis listener is not running, detaching relay and delivering locally")
            self.relay = None
        if self.relay is not None:
            try:
                await self.relay.publish(event)
                return
            except (RedisError, OSError) as e:
                logger.error(f"Redis publish failed for room {event.room_code}, delivering locally: {e}")
        self.dispatch(event)

    async def close(self):
        if self.relay is not None:
            await self.relay.stop()
            self.relay = None
        for subs in list(self.subscribers.values()):
            for sub in list(subs):
                self.unsubscribe(sub)


class RedisRelay:
    """Carries change events between service instances over Redis pub/sub"""

    def __init__(self, redis_url: str, feed: ChangeFeed, max_retries: int = 3, retry_delay: float = 3.0):
        self.redis_url = redis_url
        self.feed = feed
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.redis = None
        self.pubsub = None
        self._task: Optional[asyncio.Task] = None

    @property
    def listening(self) -> bool:
        return self._task is not None and not self._task.done()

    @staticmethod
    def channel_for(room_code: str) -> str:
        return REDIS_ROOM_CHANNEL.format(code=room_code)

    async def start(self):
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Attempting to connect to Redis: {self.redis_url} (attempt {attempt + 1}/{self.max_retries})")
                self.redis = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    health_check_interval=30,
                    socket_connect_timeout=5,
                )
                await self.redis.ping()
                logger.info("Redis connected successfully")
                break
            except (RedisError, OSError) as e:
                logger.warning(f'Redis startup attempt {attempt + 1} failed: {e}')
                if self.redis is not None:
                    await self.redis.aclose()
                    self.redis = None
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise
        self.pubsub = self.redis.pubsub()
        await self.pubsub.psubscribe(REDIS_ROOM_PATTERN)
        self._task = asyncio.create_task(self._listen())
        self.feed.relay = self

    async def publish(self, event: ChangeEvent):
        receivers = await self.redis.publish(self.channel_for(event.room_code), event.model_dump_json())
        logger.debug(f"Published {event.entity.value}.{event.change.value} to room {event.room_code}, {receivers} instances")

    def handle_message(self, item: dict) -> Optional[ChangeEvent]:
        if not item or item.get('type') not in ('pmessage', 'message'):
            return None
        try:
            event = ChangeEvent.model_validate_json(item['data'])
        except (SchemaError, KeyError, TypeError) as e:
            logger.error(f"Discarding malformed event on {item.get('channel')}: {e}")
            return None
        self.feed.dispatch(event)
        return event

    async def _listen(self):
        logger.info(f"Starting Redis pub/sub listener on {REDIS_ROOM_PATTERN}")
        try:
            async for item in self.pubsub.listen():
                self.handle_message(item)
        except asyncio.CancelledError:
            logger.info("Redis listener task cancelled")
            raise
        except (RedisError, OSError) as e:
            logger.error(f"Error in Redis listener: {e}", exc_info=True)
        if self.feed.relay is self:
            logger.warning("Redis listener stopped, change feed is local only")
            self.feed.relay = None

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self.pubsub is not None:
            await self.pubsub.aclose()
            self.pubsub = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        if self.feed.relay is self:
            self.feed.relay = None
        logger.info("Redis connection closed")
