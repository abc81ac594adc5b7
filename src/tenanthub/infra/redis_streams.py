"""Provisioning work queue on a Redis Stream with a consumer group.

Stream entries carry one field, ``instance_id``. A message stays in the
group's pending list until acked, so a crashed consumer's messages are
picked up again through XAUTOCLAIM.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import ResponseError

from tenanthub.core.interfaces.queue import ProvisioningQueue, QueueMessage

logger = logging.getLogger(__name__)


def _decode(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisProvisioningQueue(ProvisioningQueue):
    """ProvisioningQueue over XADD / XREADGROUP / XACK / XAUTOCLAIM."""

    FIELD = "instance_id"

    def __init__(
        self,
        client: redis.Redis,
        stream_key: str,
        group: str,
        consumer: str,
        maxlen: int = 10000,
    ) -> None:
        self._client = client
        self._stream_key = stream_key
        self._group = group
        self._consumer = consumer
        self._maxlen = maxlen

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        try:
            await self._client.xgroup_create(
                self._stream_key, self._group, id="0", mkstream=True
            )
            logger.info("Created consumer group %s on %s", self._group, self._stream_key)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def enqueue(self, instance_id: int) -> str:
        msg_id = await self._client.xadd(
            self._stream_key,
            {self.FIELD: str(instance_id)},
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug("XADD %s instance=%s (msg_id=%s)", self._stream_key, instance_id, msg_id)
        return _decode(msg_id)

    async def read(self, count: int, block_ms: int) -> list[QueueMessage]:
        response = await self._client.xreadgroup(
            self._group,
            self._consumer,
            {self._stream_key: ">"},
            count=count,
            block=block_ms,
        )
        messages: list[QueueMessage] = []
        for _stream, entries in response or []:
            messages.extend(await self._parse_entries(entries))
        return messages

    async def ack(self, message_id: str) -> None:
        await self._client.xack(self._stream_key, self._group, message_id)

    async def claim_stale(self, min_idle_ms: int, count: int) -> list[QueueMessage]:
        response = await self._client.xautoclaim(
            self._stream_key,
            self._group,
            self._consumer,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=count,
        )
        # [next_start_id, entries, (deleted ids on Redis >= 7)]
        entries = response[1] if response else []
        return await self._parse_entries(entries)

    async def _parse_entries(self, entries) -> list[QueueMessage]:
        messages = []
        for msg_id, fields in entries:
            msg_id = _decode(msg_id)
            if not fields:
                # Entry trimmed by MAXLEN while pending
                await self.ack(msg_id)
                continue
            raw = fields.get(self.FIELD) or fields.get(self.FIELD.encode())
            try:
                instance_id = int(_decode(raw))
            except (TypeError, ValueError):
                logger.warning("Dropping malformed queue entry %s: %r", msg_id, fields)
                await self.ack(msg_id)
                continue
            messages.append(QueueMessage(message_id=msg_id, instance_id=instance_id))
        return messages
