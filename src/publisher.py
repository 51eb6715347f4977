# src/publisher.py
"""
Event publisher

Wraps the outcome of a committed forum mutation in an Envelope and sends it to
Kafka. Publishing is fire-and-forget: the caller never waits on the broker and
nothing raised here reaches the mutation path.
"""

import asyncio
import datetime
import functools
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel

from src.config import Settings
from src.models import ContentType, Envelope, EventName

logger = logging.getLogger(__name__)

Payload = Union[BaseModel, Dict[str, Any]]

ENTITY_KEY_FIELDS = {"user": "userId", "topic": "topicId", "post": "postId"}


def payload_to_dict(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(payload)


def partition_key(envelope: Envelope) -> str:
    """All events for one entity share a key, so Kafka keeps them in order.

    The entity is the one the event is named after: every post.* event is keyed
    by postId whether or not it also carries a topicId.
    """
    payload = envelope.payload
    if payload.get("contentId") is not None:
        return f"content:{payload.get('contentType')}:{payload['contentId']}"
    kind = envelope.kind
    field = ENTITY_KEY_FIELDS.get(kind.entity) if kind is not None else None
    if field is not None and payload.get(field) is not None:
        return f"{kind.entity}:{payload[field]}"
    for field, prefix in (("userId", "user"), ("topicId", "topic"), ("postId", "post")):
        if payload.get(field) is not None:
            return f"{prefix}:{payload[field]}"
    return envelope.event_id or str(uuid.uuid4())


def derived_content_events(event_name: EventName, payload: Dict[str, Any]) -> List[Tuple[EventName, Dict[str, Any]]]:
    """Content events the search index needs for a given domain event."""
    if event_name is EventName.USER_REGISTERED:
        return [(EventName.CONTENT_CREATED, {
            "contentType": ContentType.USER.value,
            "contentId": payload["userId"],
            "title": payload.get("username"),
            "body": payload.get("username"),
            "metadata": {"email": payload.get("email")},
        })]
    if event_name is EventName.USER_UPDATED:
        update = {"contentType": ContentType.USER.value, "contentId": payload["userId"],
                  "metadata": {"changes": payload.get("changes", [])}}
        if payload.get("username") is not None:
            update["title"] = payload["username"]
            update["body"] = payload["username"]
        return [(EventName.CONTENT_UPDATED, update)]
    if event_name is EventName.TOPIC_CREATED:
        return [(EventName.CONTENT_CREATED, {
            "contentType": ContentType.TOPIC.value,
            "contentId": payload["topicId"],
            "forumId": payload.get("forumId"),
            "authorId": payload.get("authorId"),
            "title": payload.get("title"),
            "body": payload.get("body") or payload.get("bodyPreview"),
        })]
    if event_name is EventName.TOPIC_UPDATED:
        update = {"contentType": ContentType.TOPIC.value, "contentId": payload["topicId"],
                  "metadata": {"changes": payload.get("changes", [])}}
        for field in ("title", "body"):
            if payload.get(field) is not None:
                update[field] = payload[field]
        return [(EventName.CONTENT_UPDATED, update)]
    if event_name is EventName.TOPIC_DELETED:
        return [(EventName.CONTENT_DELETED, {"contentType": ContentType.TOPIC.value,
                                             "contentId": payload["topicId"]})]
    if event_name is EventName.POST_CREATED:
        return [(EventName.CONTENT_CREATED, {
            "contentType": ContentType.POST.value,
            "contentId": payload["postId"],
            "forumId": payload.get("forumId"),
            "authorId": payload.get("authorId"),
            "body": payload.get("body") or payload.get("bodyPreview"),
            "metadata": {"topicId": payload.get("topicId")},
        })]
    if event_name is EventName.POST_UPDATED:
        update = {"contentType": ContentType.POST.value, "contentId": payload["postId"],
                  "metadata": {"topicId": payload.get("topicId"), "changes": payload.get("changes", [])}}
        if payload.get("body") is not None:
            update["body"] = payload["body"]
        return [(EventName.CONTENT_UPDATED, update)]
    if event_name is EventName.POST_DELETED:
        return [(EventName.CONTENT_DELETED, {"contentType": ContentType.POST.value,
                                             "contentId": payload["postId"]})]
    if event_name is EventName.CONTENT_MODERATED and payload.get("action") == "deleted":
        return [(EventName.CONTENT_DELETED, {"contentType": payload["contentType"],
                                             "contentId": payload["contentId"]})]
    return []


class EventPublisher:
    def __init__(self, settings: Settings, producer_factory: Callable[..., Any] = AIOKafkaProducer):
        self.settings = settings
        self.producer_factory = producer_factory
        self.producer = None
        self.connected = False
        self.published_count = 0
        self.failed_count = 0
        self._pending: Set[asyncio.Task] = set()

    async def start(self):
        if self.connected:
            return
        logger.info("Starting Kafka Producer...")
        self.producer = self.producer_factory(
            bootstrap_servers=self.settings.kafka_bootstrap_servers,
            client_id=self.settings.kafka_client_id,
            request_timeout_ms=self.settings.kafka_request_timeout_ms,
        )
        try:
            await self.producer.start()
        except Exception as e:
            logger.warning(f"Failed to start Kafka producer - events will be logged only: {e}")
            self.producer = None
            return
        self.connected = True
        logger.info("Kafka Producer started.")

    async def flush(self):
        """Wait (bounded) for scheduled sends to finish."""
        if self._pending:
            logger.info(f"Waiting for {len(self._pending)} pending publishes...")
            await asyncio.wait(set(self._pending), timeout=self.settings.publish_timeout_seconds)

    async def stop(self):
        await self.flush()
        if self.producer is not None:
            logger.info("Stopping Kafka Producer...")
            await self.producer.stop()
            self.producer = None
            logger.info("Kafka Producer stopped.")
        self.connected = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def is_connected(self) -> bool:
        return self.connected and self.producer is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def build_envelope(self, event_name: EventName, payload: Payload, correlation_id: Optional[str] = None) -> Envelope:
        return Envelope(
            event_name=EventName(event_name).value,
            emitted_at=datetime.datetime.now(datetime.timezone.utc),
            payload=payload_to_dict(payload),
            event_id=str(uuid.uuid4()),
            source=self.settings.kafka_client_id,
            correlation_id=correlation_id,
        )

    def publish(self, event_name: EventName, payload: Payload, correlation_id: Optional[str] = None) -> None:
        """Schedule one event for delivery. Never raises."""
        try:
            envelope = self.build_envelope(event_name, payload, correlation_id)
        except Exception as e:
            logger.error(f"Failed to build envelope for '{event_name}': {e}")
            self.failed_count += 1
            return

        if not self.is_connected():
            logger.debug(f"Kafka not available, event logged only: {envelope.event_name} | {envelope.event_id}")
            return

        try:
            task = asyncio.get_running_loop().create_task(self.send(envelope))
        except RuntimeError:
            logger.error(f"No running event loop, dropping event {envelope.event_name} | {envelope.event_id}")
            self.failed_count += 1
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def publish_domain_event(self, event_name: EventName, payload: Payload, correlation_id: Optional[str] = None) -> None:
        """Publish a domain event followed by the content events derived from it."""
        try:
            event_name = EventName(event_name)
            data = payload_to_dict(payload)
        except Exception as e:
            logger.error(f"Failed to serialize payload for '{event_name}': {e}")
            self.failed_count += 1
            return
        self.publish(event_name, data, correlation_id)
        try:
            derived = derived_content_events(event_name, data)
        except KeyError as e:
            logger.error(f"Cannot derive content event from '{event_name.value}', missing {e}")
            self.failed_count += 1
            return
        for derived_name, derived_payload in derived:
            self.publish(derived_name, derived_payload, correlation_id)

    async def send(self, envelope: Envelope) -> bool:
        kind = EventName(envelope.event_name)
        topic = kind.topic.value
        try:
            value_bytes = envelope.encode()
            key_bytes = partition_key(envelope).encode('utf-8')
            await asyncio.wait_for(
                self.producer.send_and_wait(topic, value_bytes, key=key_bytes),
                timeout=self.settings.publish_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.failed_count += 1
            logger.error(f"Timed out publishing to topic '{topic}': {envelope.event_name} | {envelope.event_id}")
            return False
        except Exception as e:
            self.failed_count += 1
            logger.error(f"Failed to publish to topic '{topic}': {envelope.event_name} | {envelope.event_id}: {e}")
            return False
        self.published_count += 1
        logger.debug(f"PUBLISHED: {topic} | {envelope.event_name} | {envelope.event_id}")
        return True


def publishes(event_name: EventName):
    """
    Publish the return value of an async mutation handler once it has committed.

    The decorated method's owner must expose the EventPublisher as `publisher`.
    If the handler raises, nothing is published and the error propagates.
    """

    def decorator(func: Callable[..., Awaitable[Payload]]):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            result = await func(self, *args, **kwargs)
            publisher: Optional[EventPublisher] = getattr(self, "publisher", None)
            if publisher is None:
                logger.warning(f"No publisher attached to {type(self).__name__}, '{event_name}' not published")
            else:
                publisher.publish_domain_event(event_name, result)
            return result

        return wrapper

    return decorator
