"""Real-time fan-out of request state changes to creator rooms.

Publishers call `NotificationHub.publish`, which never blocks: events go
through a bounded in-process queue and a pump task forwards them to Redis
pub/sub. Delivery is best effort; clients that miss an event poll the status
endpoint instead.
"""

import asyncio
import json
from collections.abc import AsyncIterator

from loguru import logger
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from voicetip.contracts import NotificationEvent, get_creator_room
from voicetip.gateway.domain_models import TTSRequest


def event_for(request: TTSRequest, *, error: str | None = None) -> NotificationEvent:
    assert request.id is not None
    return NotificationEvent(
        request_id=request.id,
        status=str(request.status),
        audio_url=request.audio_url,
        message=request.message,
        voice=request.voice,
        creator_id=request.creator_id,
        requester_id=request.requester_id,
        error=error if error is not None else request.error,
    )


class NotificationHub:
    def __init__(self, redis: Redis, max_pending: int = 1000):
        self._redis = redis
        self._pending: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=max_pending)
        self._pump_task: asyncio.Task[None] | None = None
        self.dropped = 0

    async def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def stop(self, drain_timeout_s: float = 5.0) -> None:
        """Flush what is buffered (bounded by `drain_timeout_s`), then stop the pump."""
        if self._pump_task is None:
            return
        try:
            await asyncio.wait_for(self._pending.join(), timeout=drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self._pending.qsize()} undelivered notifications on shutdown")
        self._pump_task.cancel()
        try:
            await self._pump_task
        except asyncio.CancelledError:
            pass
        self._pump_task = None

    def publish(self, event: NotificationEvent) -> bool:
        """Buffer an event for delivery. Returns False if it was dropped because the buffer is full."""
        try:
            self._pending.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.bind(request_id=event.request_id).warning(
                f"Notification buffer full, dropped {event.status} event for {event.channel}"
            )
            return False
        return True

    async def _pump(self) -> None:
        while True:
            event = await self._pending.get()
            try:
                await self._redis.publish(event.channel, event.model_dump_json())
            except (RedisError, OSError) as e:
                logger.bind(request_id=event.request_id).warning(f"Failed to publish to {event.channel}: {e}")
            finally:
                self._pending.task_done()

    def subscribe(self) -> "RoomSubscription":
        return RoomSubscription(self._redis.pubsub())


class RoomSubscription:
    """One connection's view of the hub: the set of creator rooms it has joined."""

    def __init__(self, pubsub: PubSub):
        self._pubsub = pubsub
        self.joined: set[int] = set()

    async def join(self, creator_id: int) -> None:
        if creator_id in self.joined:
            return
        await self._pubsub.subscribe(get_creator_room(creator_id))
        self.joined.add(creator_id)

    async def leave(self, creator_id: int) -> None:
        if creator_id not in self.joined:
            return
        await self._pubsub.unsubscribe(get_creator_room(creator_id))
        self.joined.discard(creator_id)

    async def get_event(self, timeout: float = 1.0) -> NotificationEvent | None:
        """Next event from a joined room, or None if nothing arrived within `timeout`."""
        if not self.joined:
            await asyncio.sleep(timeout)
            return None
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if message is None or message["type"] != "message":
            return None
        try:
            return NotificationEvent.model_validate_json(message["data"])
        except (ValidationError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring malformed notification on {message['channel']!r}: {e}")
            return None

    async def listen(self) -> AsyncIterator[NotificationEvent]:
        while True:
            event = await self.get_event()
            if event is not None:
                yield event

    async def close(self) -> None:
        if self.joined:
            await self._pubsub.unsubscribe()
            self.joined.clear()
        await self._pubsub.aclose()
