# src/consumer.py
"""
Consumer runtime

Reads envelopes from Kafka and dispatches them by event name to the handlers
of one derived store. Partitions are processed concurrently, records within a
partition strictly in order. Offsets are committed manually and only after
every record up to them has been handled.
"""

import asyncio
import logging
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from aiokafka import AIOKafkaConsumer

from src.config import Settings
from src.exceptions import EnvelopeDecodeError, StoreUnavailableError
from src.models import ConsumerStats, Envelope, EventName, EventPayload, KafkaTopic

logger = logging.getLogger(__name__)

Handler = Callable[[EventPayload, Envelope], Awaitable[None]]

FETCH_RETRY_SECONDS = 1.0


class ConsumerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    DRAINING = "draining"


class DedupWindow:
    """Remembers the last `size` event ids so redelivered records are dropped."""

    def __init__(self, size: int):
        self.size = size
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, event_id: str) -> bool:
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        self._seen[event_id] = None
        if len(self._seen) > self.size:
            self._seen.popitem(last=False)
        return False

    def __len__(self):
        return len(self._seen)


class ConsumerRuntime:
    def __init__(
        self,
        name: str,
        topics: Iterable[KafkaTopic],
        handlers: Mapping[EventName, Handler],
        settings: Settings,
        group_id: str,
        consumer_factory: Callable[..., Any] = AIOKafkaConsumer,
        store_health: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.name = name
        self.topics: List[str] = [KafkaTopic(t).value for t in topics]
        self.handlers: Dict[EventName, Handler] = dict(handlers)
        self.settings = settings
        self.group_id = group_id
        self.consumer_factory = consumer_factory
        self.store_health = store_health

        self.state = ConsumerState.STOPPED
        self.consumer = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._broker_ok = True
        self._store_ok = True

        self.dedup = DedupWindow(settings.dedup_window_size)
        self.received_count = 0
        self.processed_count = 0
        self.duplicate_count = 0
        self.ignored_count = 0
        self.error_count = 0

    # --- lifecycle ---

    async def start(self):
        if self.state is not ConsumerState.STOPPED:
            logger.warning(f"{self.name} consumer is already {self.state.value}")
            return

        self.state = ConsumerState.STARTING
        try:
            self.consumer = self.consumer_factory(
                bootstrap_servers=self.settings.kafka_bootstrap_servers,
                client_id=f"{self.settings.kafka_client_id}-{self.name}",
                group_id=self.group_id,
                auto_offset_reset=self.settings.kafka_auto_offset_reset,
                enable_auto_commit=False,
                request_timeout_ms=self.settings.kafka_request_timeout_ms,
            )
            self.consumer.subscribe(topics=self.topics)
            await self.consumer.start()
        except Exception as e:
            logger.error(f"Failed to start {self.name} consumer: {e}")
            await self._close_client()
            self.state = ConsumerState.STOPPED
            raise

        self._stopping = False
        self._broker_ok = True
        self._store_ok = True
        self.state = ConsumerState.RUNNING
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.name} consumer started, subscribed to {self.topics}")

    async def stop(self):
        if self.state in (ConsumerState.STOPPED, ConsumerState.DRAINING):
            return

        self.state = ConsumerState.DRAINING
        self._stopping = True
        logger.info(f"Draining {self.name} consumer...")

        # The loop finishes its current batch and commits before returning.
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.error(f"{self.name} consumer loop ended with error: {e}")
            self._task = None

        await self._close_client()
        self.state = ConsumerState.STOPPED
        logger.info(f"{self.name} consumer stopped")

    async def _close_client(self):
        if self.consumer is not None:
            try:
                await self.consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping {self.name} Kafka client: {e}")
            self.consumer = None

    def is_healthy(self) -> bool:
        return self.state is ConsumerState.RUNNING

    def broker_connected(self) -> bool:
        """Broker reachable, whatever the state of the derived store."""
        return self.state in (ConsumerState.RUNNING, ConsumerState.DEGRADED) and self._broker_ok

    def stats(self) -> ConsumerStats:
        return ConsumerStats(
            state=self.state.value,
            received=self.received_count,
            processed=self.processed_count,
            duplicates=self.duplicate_count,
            ignored=self.ignored_count,
            errors=self.error_count,
        )

    # --- health transitions ---

    def _refresh_state(self):
        if self.state not in (ConsumerState.RUNNING, ConsumerState.DEGRADED):
            return
        healthy = self._broker_ok and self._store_ok
        new_state = ConsumerState.RUNNING if healthy else ConsumerState.DEGRADED
        if new_state is not self.state:
            logger.warning(f"{self.name} consumer {self.state.value} -> {new_state.value}")
            self.state = new_state

    def _set_broker_ok(self, ok: bool):
        self._broker_ok = ok
        self._refresh_state()

    def _set_store_ok(self, ok: bool):
        self._store_ok = ok
        self._refresh_state()

    # --- processing loop ---

    async def _run(self):
        while not self._stopping:
            try:
                batch = await self.consumer.getmany(
                    timeout_ms=self.settings.kafka_poll_timeout_ms,
                    max_records=self.settings.kafka_max_poll_records,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} consumer fetch failed: {e}")
                self._set_broker_ok(False)
                await asyncio.sleep(FETCH_RETRY_SECONDS)
                continue

            self._set_broker_ok(True)
            if not self._store_ok:
                await self._recheck_store()
            if not batch:
                continue

            offsets = dict(await asyncio.gather(
                *(self._process_partition(tp, records) for tp, records in batch.items())
            ))
            await self._commit(offsets)

    async def _recheck_store(self):
        # Without traffic no handler succeeds, so ask the store directly.
        if self.store_health is None:
            return
        try:
            healthy = await self.store_health()
        except Exception as e:
            logger.debug(f"{self.name} store health check failed: {e}")
            return
        if healthy:
            logger.info(f"{self.name} store reachable again")
            self._set_store_ok(True)

    async def _process_partition(self, tp, records):
        next_offset = None
        for record in records:
            await self.handle_record(record)
            next_offset = record.offset + 1
        return tp, next_offset

    async def _commit(self, offsets):
        offsets = {tp: offset for tp, offset in offsets.items() if offset is not None}
        if not offsets:
            return
        try:
            await self.consumer.commit(offsets)
        except Exception as e:
            # Uncommitted records are redelivered and dropped by the dedup window.
            logger.error(f"{self.name} consumer commit failed: {e}")
            self._set_broker_ok(False)

    # --- per-record processing ---

    async def handle_record(self, record) -> bool:
        logger.debug(f"{self.name} record {record.topic}[{record.partition}]@{record.offset}")
        return await self.process_value(record.value)

    async def process_value(self, raw: Optional[bytes]) -> bool:
        """Decode and dispatch one raw record value. Never raises."""
        self.received_count += 1
        if not raw:
            logger.warning(f"{self.name} consumer received an empty record")
            self.ignored_count += 1
            return False
        try:
            envelope = Envelope.decode(raw)
        except EnvelopeDecodeError as e:
            logger.error(f"{self.name} consumer dropped undecodable record: {e}")
            self.error_count += 1
            return False
        return await self.dispatch(envelope)

    async def dispatch(self, envelope: Envelope) -> bool:
        if envelope.event_id and self.dedup.seen(envelope.event_id):
            self.duplicate_count += 1
            logger.warning(f"DUPLICATE DROPPED: {envelope.event_name} | {envelope.event_id}")
            return False

        kind = envelope.kind
        handler = self.handlers.get(kind) if kind is not None else None
        if handler is None:
            self.ignored_count += 1
            logger.debug(f"{self.name} consumer ignoring event {envelope.event_name}")
            return False

        try:
            await handler(envelope.typed_payload(), envelope)
        except StoreUnavailableError as e:
            self.error_count += 1
            self._set_store_ok(False)
            logger.error(f"{self.name} store unavailable while handling {envelope.event_name} | {envelope.event_id}: {e}")
            return False
        except Exception as e:
            self.error_count += 1
            logger.error(f"Error processing event {envelope.event_name} | {envelope.event_id}: {e}")
            return False

        self.processed_count += 1
        self._set_store_ok(True)
        logger.info(f"PROCESSED: {envelope.event_name} | {envelope.event_id}")
        return True
