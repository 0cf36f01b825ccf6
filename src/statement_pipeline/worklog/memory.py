"""
In-process work log.

Implements the full consumer-group model (pending entries, delivery counts,
idle reclaim) in memory. Suitable for single-process mode and tests; it
cannot be shared between OS processes.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from core.logging import get_logger, log_with_context
from statement_pipeline.exceptions import WorkLogError
from statement_pipeline.schemas.jobs import encode_job
from statement_pipeline.worklog.base import StreamEntry, WorkLog

logger = get_logger(__name__)


@dataclass
class _PendingEntry:
    consumer: str
    delivered_at: float
    delivery_count: int


@dataclass
class _Group:
    # Index into the stream of the next never-delivered entry
    cursor: int = 0
    pending: "OrderedDict[str, _PendingEntry]" = field(default_factory=OrderedDict)


@dataclass
class _Stream:
    ids: List[str] = field(default_factory=list)
    values: Dict[str, bytes] = field(default_factory=dict)
    groups: Dict[str, _Group] = field(default_factory=dict)


class InMemoryWorkLog(WorkLog):
    """
    Work log held in process memory.

    Message ids follow the ``<milliseconds>-<sequence>`` form and are
    strictly increasing per stream.

    Args:
        reclaim_idle_ms: Pending entries idle longer than this are redelivered
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        reclaim_idle_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reclaim_idle_ms = reclaim_idle_ms
        self._clock = clock
        self._streams: Dict[str, _Stream] = {}
        self._connected = False
        self._condition: Optional[asyncio.Condition] = None
        self._last_ms = 0
        self._seq = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _cond(self) -> asyncio.Condition:
        # Created lazily so the condition binds to the running loop
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False
        if self._condition is not None:
            async with self._condition:
                self._condition.notify_all()

    async def ping(self) -> bool:
        return self._connected

    def _require_connected(self) -> None:
        if not self._connected:
            raise WorkLogError("Work log is not connected")

    def _next_id(self) -> str:
        now_ms = int(time.time() * 1000)
        if now_ms > self._last_ms:
            self._last_ms = now_ms
            self._seq = 0
        else:
            self._seq += 1
        return f"{self._last_ms}-{self._seq}"

    def _stream(self, name: str) -> _Stream:
        stream = self._streams.get(name)
        if stream is None:
            stream = _Stream()
            self._streams[name] = stream
        return stream

    async def append(self, stream: str, message: BaseModel) -> str:
        self._require_connected()
        value = encode_job(message)
        s = self._stream(stream)
        message_id = self._next_id()
        s.ids.append(message_id)
        s.values[message_id] = value
        cond = self._cond()
        async with cond:
            cond.notify_all()
        log_with_context(
            logger,
            logging.DEBUG,
            "Appended message",
            stream=stream,
            message_id=message_id,
        )
        return message_id

    async def create_consumer_group(self, stream: str, group: str) -> None:
        self._require_connected()
        s = self._stream(stream)
        if group in s.groups:
            logger.debug(
                "Consumer group already exists",
                extra={"stream": stream, "group": group},
            )
            return
        # New groups start at the beginning so jobs appended before the
        # workers came up are not lost
        s.groups[group] = _Group()
        log_with_context(
            logger, logging.INFO, "Created consumer group", stream=stream, group=group
        )

    def _take(self, stream: str, group: str, consumer: str, batch_size: int) -> List[StreamEntry]:
        s = self._streams.get(stream)
        if s is None or group not in s.groups:
            raise WorkLogError(f"No consumer group {group} on stream {stream}")
        g = s.groups[group]
        now = self._clock()
        idle_s = self.reclaim_idle_ms / 1000.0
        entries: List[StreamEntry] = []

        # Reclaim entries whose consumer went quiet
        for message_id, pending in g.pending.items():
            if len(entries) >= batch_size:
                break
            if now - pending.delivered_at < idle_s:
                continue
            pending.consumer = consumer
            pending.delivered_at = now
            pending.delivery_count += 1
            entries.append(
                StreamEntry(message_id, s.values[message_id], pending.delivery_count)
            )
            log_with_context(
                logger,
                logging.INFO,
                "Reclaimed idle pending entry",
                stream=stream,
                group=group,
                consumer=consumer,
                message_id=message_id,
                delivery_count=pending.delivery_count,
            )

        while len(entries) < batch_size and g.cursor < len(s.ids):
            message_id = s.ids[g.cursor]
            g.cursor += 1
            g.pending[message_id] = _PendingEntry(consumer, now, 1)
            entries.append(StreamEntry(message_id, s.values[message_id], 1))

        return entries

    async def read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        batch_size: int = 1,
        block_timeout_ms: int = 5000,
    ) -> List[StreamEntry]:
        self._require_connected()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + block_timeout_ms / 1000.0
        cond = self._cond()
        async with cond:
            while True:
                entries = self._take(stream, group, consumer, batch_size)
                if entries or not self._connected:
                    return entries
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return []
                # Wake on append, or periodically to pick up reclaimable entries
                wait_for = min(remaining, max(self.reclaim_idle_ms / 1000.0, 0.01))
                try:
                    await asyncio.wait_for(cond.wait(), timeout=wait_for)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        self._require_connected()
        s = self._streams.get(stream)
        if s is None or group not in s.groups:
            return
        s.groups[group].pending.pop(message_id, None)

    async def length(self, stream: str) -> int:
        self._require_connected()
        s = self._streams.get(stream)
        return len(s.ids) if s else 0

    # Inspection helpers, used by monitoring and tests

    def pending_count(self, stream: str, group: str) -> int:
        s = self._streams.get(stream)
        if s is None or group not in s.groups:
            return 0
        return len(s.groups[group].pending)

    def pending_consumer(self, stream: str, group: str, message_id: str) -> Optional[str]:
        s = self._streams.get(stream)
        if s is None or group not in s.groups:
            return None
        pending = s.groups[group].pending.get(message_id)
        return pending.consumer if pending else None

    def entries(self, stream: str) -> List[StreamEntry]:
        """All entries ever appended to a stream, in order."""
        s = self._streams.get(stream)
        if s is None:
            return []
        return [StreamEntry(mid, s.values[mid]) for mid in s.ids]
