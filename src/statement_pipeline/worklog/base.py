"""
Work log contract.

A work log is a set of named append-only streams with consumer groups:
each entry is delivered to one consumer of a group at a time and stays
pending until that consumer acknowledges it. Entries left pending longer
than the reclaim idle time are delivered again (to any consumer of the
group) with a higher delivery count.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

from pydantic import BaseModel


@dataclass(frozen=True)
class StreamEntry:
    """One delivery of one stream entry."""

    message_id: str
    value: bytes
    delivery_count: int = 1

    @property
    def lease_token(self) -> str:
        """Identifies this delivery; two deliveries of one entry never share it."""
        return f"{self.message_id}#{self.delivery_count}"


class WorkLog(ABC):
    """Durable append-only log with consumer-group semantics."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Safe to call more than once."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections. Safe to call more than once."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Check broker reachability. Never raises."""

    @abstractmethod
    async def append(self, stream: str, message: BaseModel) -> str:
        """
        Append a message and return its stream-unique id.

        Raises:
            WorkLogError: Broker unreachable (fails fast, never blocks forever)
        """

    @abstractmethod
    async def create_consumer_group(self, stream: str, group: str) -> None:
        """Create the stream and the group if missing. Idempotent."""

    @abstractmethod
    async def read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        batch_size: int = 1,
        block_timeout_ms: int = 5000,
    ) -> List[StreamEntry]:
        """
        Deliver up to batch_size entries to consumer.

        Waits at most block_timeout_ms for work and returns an empty list
        when none arrived.
        """

    @abstractmethod
    async def ack(self, stream: str, group: str, message_id: str) -> None:
        """Mark an entry processed. Call only after all side effects are done."""

    @abstractmethod
    async def length(self, stream: str) -> int:
        """Approximate number of entries in the stream."""
