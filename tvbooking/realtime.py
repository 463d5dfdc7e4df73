"""
Realtime change feed over Redis pub/sub

Writers publish row changes with ChangePublisher after they commit.
Readers use one SubscriptionManager per (table, row filter): it keeps the
subscription alive with a bounded exponential-backoff reconnect and hands
events to its consumer in short batches.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from .config import REALTIME_BATCH_INTERVAL_MS, REALTIME_MAX_RECONNECT_ATTEMPTS

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "changes:"
REALTIME_TABLES = {"bookings", "worker_service_areas", "sms_logs", "coverage_notifications"}


def channel_for(table: str) -> str:
    return f"{CHANNEL_PREFIX}{table}"


def coalesce(events: list) -> list:
    """Keep the latest event per record id, in order of first appearance"""
    latest: dict = {}
    order = []
    for event in events:
        record = event.get("record") or {}
        key = record.get("id") or id(event)
        if key not in latest:
            order.append(key)
        latest[key] = event
    return [latest[k] for k in order]


class ChangePublisher:
    """Publishes {table, type, record} events; failures are logged, never raised"""

    def __init__(self, redis_factory: Optional[Callable[[], Any]] = None):
        self._factory = redis_factory
        self._client = None

    def is_available(self) -> bool:
        return self._factory is not None

    async def publish(self, table: str, change_type: str, record: dict) -> bool:
        if self._factory is None:
            return False
        payload = json.dumps({"table": table, "type": change_type, "record": record}, default=str)
        try:
            if self._client is None:
                self._client = self._factory()
            await self._client.publish(channel_for(table), payload)
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️ Could not publish {change_type} on {table}: {e}")
            self._client = None
            return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SubscriptionManager:
    """
    One reusable subscription to a table's change feed.

    Args:
        table: Table name, mapped to its pub/sub channel
        on_batch: Async callback receiving a list of coalesced events
        row_filter: Predicate on the changed record; non-matching events are dropped
        redis_factory: Returns a redis.asyncio client
        batch_interval_ms: Flush window
        max_reconnect_attempts: Reconnect attempts before giving up
    """

    def __init__(
        self,
        table: str,
        on_batch: Callable[[list], Awaitable[None]],
        redis_factory: Callable[[], Any],
        row_filter: Optional[Callable[[dict], bool]] = None,
        batch_interval_ms: int = REALTIME_BATCH_INTERVAL_MS,
        max_reconnect_attempts: int = REALTIME_MAX_RECONNECT_ATTEMPTS,
        reconnect_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.table = table
        self.channel = channel_for(table)
        self.on_batch = on_batch
        self.row_filter = row_filter
        self.batch_interval = batch_interval_ms / 1000
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self._factory = redis_factory
        self._sleep = sleep

        self.state = "idle"  # idle, connected, reconnecting, failed, disposed
        self.reconnect_count = 0
        self._client = None
        self._pubsub = None
        self._buffer: list = []
        self._tasks: list = []

    async def _open(self):
        self._client = self._factory()
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _close(self):
        pubsub, client = self._pubsub, self._client
        self._pubsub = self._client = None
        try:
            if pubsub is not None:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            if client is not None:
                await client.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Ignoring error while closing {self.channel}: {e}")

    async def connect(self):
        """Subscribe and start the listener and flusher"""
        await self._open()
        self.state = "connected"
        self._tasks = [
            asyncio.ensure_future(self._listen()),
            asyncio.ensure_future(self._flush_loop()),
        ]
        logger.info(f"📡 Subscribed to {self.channel}")

    async def reconnect(self) -> bool:
        """Re-subscribe with exponential backoff; False once attempts are exhausted"""
        self.state = "reconnecting"
        await self._close()
        for attempt in range(self.max_reconnect_attempts):
            delay = self.reconnect_base_delay * (2**attempt)
            logger.info(f"🔄 Reconnecting {self.channel} in {delay:.1f}s (attempt {attempt + 1}/{self.max_reconnect_attempts})")
            await self._sleep(delay)
            try:
                await self._open()
            except (RedisError, OSError) as e:
                logger.warning(f"⚠️ Reconnect to {self.channel} failed: {e}")
                await self._close()
                continue
            self.reconnect_count += 1
            self.state = "connected"
            logger.info(f"✅ Reconnected to {self.channel}")
            return True
        self.state = "failed"
        logger.error(f"❌ Giving up on {self.channel} after {self.max_reconnect_attempts} attempts")
        return False

    def handle_message(self, data) -> bool:
        """Buffer one raw pub/sub payload. Returns True if it was kept"""
        try:
            event = json.loads(data)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Dropping malformed event on {self.channel}")
            return False
        record = event.get("record") or {}
        if self.row_filter is not None and not self.row_filter(record):
            return False
        self._buffer.append(event)
        return True

    async def flush(self) -> int:
        if not self._buffer:
            return 0
        batch, self._buffer = coalesce(self._buffer), []
        await self.on_batch(batch)
        return len(batch)

    async def _listen(self):
        while self.state == "connected":
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as e:
                logger.warning(f"⚠️ Lost subscription to {self.channel}: {e}")
                if not await self.reconnect():
                    return
                continue
            if message and message.get("type") == "message":
                self.handle_message(message.get("data"))

    async def _flush_loop(self):
        while self.state in ("connected", "reconnecting"):
            await self._sleep(self.batch_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"❌ Batch consumer for {self.channel} failed: {e}")

    async def dispose(self):
        """Stop tasks, deliver what is buffered and release the connection"""
        self.state = "disposed"
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []
        await self.flush()
        await self._close()
        logger.info(f"👋 Unsubscribed from {self.channel}")


def build_row_filter(filters: dict) -> Optional[Callable[[dict], bool]]:
    """Equality filter on record fields, e.g. {"worker_id": "..."}"""
    if not filters:
        return None

    def _matches(record: dict) -> bool:
        return all(str(record.get(key)) == str(value) for key, value in filters.items())

    return _matches
