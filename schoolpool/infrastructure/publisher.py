"""
Change-notification publisher.

After a unit of work commits, each ``TransitionEvent`` is published as a
JSON snapshot on Redis pub/sub:

* ``<prefix>:events``             -- every transition
* ``<prefix>:trip:<trip_id>``     -- transitions touching one trip
* ``<prefix>:profile:<profile>``  -- transitions a given user is party to

A failed publish is logged and dropped; it never undoes the committed
transition. Subscribers re-read state on reconnect.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

import redis.asyncio as aioredis

from schoolpool.domain.events import TransitionEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    async def publish(self, event: TransitionEvent) -> None:
        raise NotImplementedError

    async def publish_all(self, events: Iterable[TransitionEvent]) -> None:
        for event in events:
            try:
                await self.publish(event)
            except Exception:
                logger.exception(
                    "Failed to publish %s %s",
                    event.entity_type.value,
                    event.entity_id,
                )


class RedisEventPublisher(EventPublisher):
    def __init__(self, client: aioredis.Redis, prefix: str = "schoolpool"):
        self.redis = client
        self.prefix = prefix

    def channels_for(self, event: TransitionEvent) -> list[str]:
        channels = [f"{self.prefix}:events"]
        if event.trip_id is not None:
            channels.append(f"{self.prefix}:trip:{event.trip_id}")
        for owner in dict.fromkeys(event.owner_ids):
            channels.append(f"{self.prefix}:profile:{owner}")
        return channels

    async def publish(self, event: TransitionEvent) -> None:
        message = json.dumps(event.to_payload())
        for channel in self.channels_for(event):
            await self.redis.publish(channel, message)


class LoggingEventPublisher(EventPublisher):
    """Writes events to the log instead of Redis (seeding, local runs)."""

    async def publish(self, event: TransitionEvent) -> None:
        logger.info("event %s", json.dumps(event.to_payload()))
