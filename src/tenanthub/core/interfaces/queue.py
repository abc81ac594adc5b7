"""Provisioning queue interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    instance_id: int


class ProvisioningQueue(ABC):
    """Work queue of instance ids awaiting provisioning.

    Delivery is at-least-once: a message is redelivered until acked, and
    the same instance id may be enqueued more than once.

    Implementations: RedisProvisioningQueue
    """

    @abstractmethod
    async def enqueue(self, instance_id: int) -> str:
        """Returns the message id."""
        ...

    @abstractmethod
    async def read(self, count: int, block_ms: int) -> list[QueueMessage]:
        """Read new messages for this consumer, blocking up to block_ms."""
        ...

    @abstractmethod
    async def ack(self, message_id: str) -> None:
        ...

    @abstractmethod
    async def claim_stale(self, min_idle_ms: int, count: int) -> list[QueueMessage]:
        """Take over messages delivered to another consumer but never acked."""
        ...
