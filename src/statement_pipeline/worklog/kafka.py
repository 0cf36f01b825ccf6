"""
Kafka-backed work log.

Streams map to topics and consumer groups map to Kafka consumer groups.
Provides:
- Appends acknowledged by the broker (send_and_wait) before returning
- Manual offset commits: a partition's committed offset only advances past
  entries that have all been acknowledged, so anything unacknowledged is
  read again after a crash or rebalance
- Local redelivery of entries left unacknowledged past the reclaim idle time

Delivery counts are tracked per consumer process. An entry re-read by a new
process after a rebalance starts counting from 1 again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from aiokafka.structs import TopicPartition
from pydantic import BaseModel

from core.logging import get_logger, log_exception, log_with_context
from statement_pipeline.config import WorkLogConfig
from statement_pipeline.exceptions import WorkLogError
from statement_pipeline.metrics import record_append, update_connection_status
from statement_pipeline.schemas.jobs import encode_job
from statement_pipeline.worklog.base import StreamEntry, WorkLog

logger = get_logger(__name__)


def _message_id(partition: int, offset: int) -> str:
    return f"{partition}-{offset}"


def _parse_message_id(message_id: str) -> Tuple[int, int]:
    try:
        partition, offset = message_id.split("-", 1)
        return int(partition), int(offset)
    except ValueError:
        raise WorkLogError(f"Malformed message id '{message_id}'")


@dataclass
class _Pending:
    partition: int
    offset: int
    value: bytes
    delivered_at: float
    delivery_count: int = 1


@dataclass
class _PartitionProgress:
    # Lowest offset not yet acknowledged; committed offset follows it
    next_commit: int
    acked: Set[int] = field(default_factory=set)


@dataclass
class _ConsumerState:
    stream: str
    group: str
    consumer_name: str
    consumer: AIOKafkaConsumer
    pending: Dict[str, _Pending] = field(default_factory=dict)
    progress: Dict[int, _PartitionProgress] = field(default_factory=dict)


class _RevokeListener(ConsumerRebalanceListener):
    """Forget in-flight bookkeeping for partitions this consumer loses."""

    def __init__(self, state_ref: Callable[[], Optional[_ConsumerState]]):
        self._state_ref = state_ref

    async def on_partitions_revoked(self, revoked):
        state = self._state_ref()
        if state is None:
            return
        lost = {tp.partition for tp in revoked if tp.topic == state.stream}
        if not lost:
            return
        for message_id in [m for m, p in state.pending.items() if p.partition in lost]:
            del state.pending[message_id]
        for partition in lost:
            state.progress.pop(partition, None)
        log_with_context(
            logger,
            logging.INFO,
            "Partitions revoked, in-flight entries will be redelivered",
            stream=state.stream,
            group=state.group,
            consumer=state.consumer_name,
            partitions=sorted(lost),
        )

    async def on_partitions_assigned(self, assigned):
        state = self._state_ref()
        if state is not None:
            log_with_context(
                logger,
                logging.INFO,
                "Partitions assigned",
                stream=state.stream,
                group=state.group,
                consumer=state.consumer_name,
                partitions=sorted(tp.partition for tp in assigned),
            )


class KafkaWorkLog(WorkLog):
    """
    Work log on Kafka topics via aiokafka.

    Usage:
        >>> work_log = KafkaWorkLog(PipelineConfig.from_env().work_log)
        >>> await work_log.connect()
        >>> await work_log.create_consumer_group("statement-processing", "statement-workers")
        >>> entries = await work_log.read_group(
        ...     "statement-processing", "statement-workers", "statement-processor-1-0"
        ... )
    """

    def __init__(
        self,
        config: WorkLogConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self._producer: Optional[AIOKafkaProducer] = None
        self._admin: Optional[AIOKafkaAdminClient] = None
        self._meta: Optional[AIOKafkaConsumer] = None
        self._consumers: Dict[Tuple[str, str, str], _ConsumerState] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _common_config(self) -> Dict[str, Any]:
        common: Dict[str, Any] = {
            "bootstrap_servers": self.config.bootstrap_servers,
            "request_timeout_ms": self.config.request_timeout_ms,
        }
        if self.config.security_protocol != "PLAINTEXT":
            common["security_protocol"] = self.config.security_protocol
            common["sasl_mechanism"] = self.config.sasl_mechanism
            if self.config.sasl_mechanism == "PLAIN":
                common["sasl_plain_username"] = self.config.sasl_plain_username
                common["sasl_plain_password"] = self.config.sasl_plain_password
        return common

    async def connect(self) -> None:
        if self._connected:
            logger.debug("Work log already connected")
            return

        common = self._common_config()
        try:
            self._producer = AIOKafkaProducer(acks="all", **common)
            await self._producer.start()
            self._admin = AIOKafkaAdminClient(**common)
            await self._admin.start()
            # Group-less consumer used only for offsets and metadata
            self._meta = AIOKafkaConsumer(enable_auto_commit=False, **common)
            await self._meta.start()
        except KafkaError as e:
            await self.close()
            raise WorkLogError("Failed to connect to Kafka", cause=e)

        self._connected = True
        update_connection_status(True)
        log_with_context(
            logger,
            logging.INFO,
            "Connected to Kafka",
            bootstrap_servers=self.config.bootstrap_servers,
        )

    async def close(self) -> None:
        for state in list(self._consumers.values()):
            await self._stop_quietly(state.consumer, "consumer", consumer=state.consumer_name)
        self._consumers.clear()
        if self._meta is not None:
            await self._stop_quietly(self._meta, "metadata consumer")
            self._meta = None
        if self._admin is not None:
            try:
                await self._admin.close()
            except Exception as e:
                log_exception(logger, e, "Error closing Kafka admin client", level=logging.WARNING)
            self._admin = None
        if self._producer is not None:
            await self._stop_quietly(self._producer, "producer")
            self._producer = None
        if self._connected:
            logger.info("Disconnected from Kafka")
        self._connected = False
        update_connection_status(False)

    async def _stop_quietly(self, client: Any, component: str, **context: Any) -> None:
        try:
            await client.stop()
        except Exception as e:
            log_exception(
                logger,
                e,
                f"Error stopping Kafka {component}",
                level=logging.WARNING,
                include_traceback=False,
                **context,
            )

    async def ping(self) -> bool:
        if not self._connected or self._meta is None:
            return False
        try:
            await asyncio.wait_for(
                self._meta.topics(), timeout=self.config.request_timeout_ms / 1000.0
            )
            return True
        except (KafkaError, asyncio.TimeoutError) as e:
            log_with_context(logger, logging.WARNING, "Kafka ping failed", error=str(e))
            return False

    def _require_connected(self) -> None:
        if not self._connected or self._producer is None:
            raise WorkLogError("Work log is not connected")

    async def append(self, stream: str, message: BaseModel) -> str:
        self._require_connected()
        value = encode_job(message)
        # Keep one statement's jobs on one partition
        correlation_id = getattr(message, "correlation_id", None)
        key = correlation_id.encode("utf-8") if correlation_id else None
        try:
            metadata = await asyncio.wait_for(
                self._producer.send_and_wait(stream, value=value, key=key),
                timeout=self.config.request_timeout_ms / 1000.0,
            )
        except (KafkaError, asyncio.TimeoutError) as e:
            record_append(stream, success=False)
            raise WorkLogError(f"Failed to append to {stream}", cause=e)

        record_append(stream)
        message_id = _message_id(metadata.partition, metadata.offset)
        log_with_context(
            logger, logging.DEBUG, "Appended message", stream=stream, message_id=message_id
        )
        return message_id

    async def create_consumer_group(self, stream: str, group: str) -> None:
        self._require_connected()
        try:
            existing = await self._admin.list_topics()
            if stream not in existing:
                response = await self._admin.create_topics(
                    [
                        NewTopic(
                            name=stream,
                            num_partitions=self.config.num_partitions,
                            replication_factor=self.config.replication_factor,
                        )
                    ]
                )
                for topic_error in getattr(response, "topic_errors", []):
                    error_code = topic_error[1]
                    if error_code not in (0, TopicAlreadyExistsError.errno):
                        raise WorkLogError(
                            f"Failed to create topic {stream} (error code {error_code})"
                        )
                log_with_context(logger, logging.INFO, "Created topic", stream=stream)
        except TopicAlreadyExistsError:
            pass
        except KafkaError as e:
            raise WorkLogError(f"Failed to create stream {stream}", cause=e)

        # Kafka creates the group itself when the first member joins;
        # auto_offset_reset=earliest makes it start at the beginning
        log_with_context(
            logger, logging.DEBUG, "Consumer group ready", stream=stream, group=group
        )

    async def _consumer_for(self, stream: str, group: str, consumer: str) -> _ConsumerState:
        key = (stream, group, consumer)
        state = self._consumers.get(key)
        if state is not None:
            return state

        kafka_consumer = AIOKafkaConsumer(
            group_id=group,
            client_id=consumer,
            enable_auto_commit=False,
            auto_offset_reset=self.config.auto_offset_reset,
            session_timeout_ms=self.config.session_timeout_ms,
            max_poll_interval_ms=self.config.max_poll_interval_ms,
            **self._common_config(),
        )
        state = _ConsumerState(stream, group, consumer, kafka_consumer)
        kafka_consumer.subscribe(
            [stream], listener=_RevokeListener(lambda: self._consumers.get(key))
        )
        try:
            await kafka_consumer.start()
        except KafkaError as e:
            raise WorkLogError(f"Failed to join group {group} on {stream}", cause=e)
        self._consumers[key] = state
        log_with_context(
            logger,
            logging.INFO,
            "Joined consumer group",
            stream=stream,
            group=group,
            consumer=consumer,
        )
        return state

    def _reclaim(self, state: _ConsumerState, limit: int) -> List[StreamEntry]:
        now = self._clock()
        idle_s = self.config.reclaim_idle_ms / 1000.0
        entries: List[StreamEntry] = []
        for message_id, pending in state.pending.items():
            if len(entries) >= limit:
                break
            if now - pending.delivered_at < idle_s:
                continue
            pending.delivered_at = now
            pending.delivery_count += 1
            entries.append(StreamEntry(message_id, pending.value, pending.delivery_count))
            log_with_context(
                logger,
                logging.INFO,
                "Redelivering idle pending entry",
                stream=state.stream,
                group=state.group,
                consumer=state.consumer_name,
                message_id=message_id,
                delivery_count=pending.delivery_count,
            )
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
        state = await self._consumer_for(stream, group, consumer)

        entries = self._reclaim(state, batch_size)
        if entries:
            return entries

        # getmany() can block past its timeout while a rebalance is in progress
        if not state.consumer.assignment():
            await asyncio.sleep(min(0.5, block_timeout_ms / 1000.0))
            return []

        try:
            data = await state.consumer.getmany(
                timeout_ms=block_timeout_ms, max_records=batch_size
            )
        except KafkaError as e:
            raise WorkLogError(f"Failed to read from {stream}", cause=e)

        now = self._clock()
        for tp, records in data.items():
            for record in records:
                message_id = _message_id(tp.partition, record.offset)
                if message_id in state.pending:
                    continue
                state.pending[message_id] = _Pending(
                    tp.partition, record.offset, record.value, now
                )
                if tp.partition not in state.progress:
                    state.progress[tp.partition] = _PartitionProgress(record.offset)
                entries.append(StreamEntry(message_id, record.value, 1))
        return entries

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        self._require_connected()
        partition, offset = _parse_message_id(message_id)
        for (s, g, _), state in self._consumers.items():
            if s != stream or g != group or message_id not in state.pending:
                continue
            del state.pending[message_id]
            progress = state.progress.get(partition)
            if progress is None:
                return
            progress.acked.add(offset)
            advanced = False
            while progress.next_commit in progress.acked:
                progress.acked.remove(progress.next_commit)
                progress.next_commit += 1
                advanced = True
            if advanced:
                try:
                    await state.consumer.commit(
                        {TopicPartition(stream, partition): progress.next_commit}
                    )
                except KafkaError as e:
                    raise WorkLogError(f"Failed to commit offset on {stream}", cause=e)
            return

    async def length(self, stream: str) -> int:
        self._require_connected()
        partitions = self._meta.partitions_for_topic(stream)
        if not partitions:
            return 0
        tps = [TopicPartition(stream, p) for p in partitions]
        try:
            beginning = await self._meta.beginning_offsets(tps)
            end = await self._meta.end_offsets(tps)
        except KafkaError as e:
            raise WorkLogError(f"Failed to read offsets for {stream}", cause=e)
        return sum(end[tp] - beginning[tp] for tp in tps)
