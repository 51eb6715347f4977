# src/models.py
import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from src.exceptions import EnvelopeDecodeError


def _id_to_str(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# Ids arrive as numbers from the forum API and as strings from the read APIs.
EntityId = Annotated[str, BeforeValidator(_id_to_str)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContentType(str, Enum):
    TOPIC = "topic"
    POST = "post"
    USER = "user"


class KafkaTopic(str, Enum):
    USER_EVENTS = "forum.user.events"
    TOPIC_EVENTS = "forum.topic.events"
    POST_EVENTS = "forum.post.events"
    SEARCH_EVENTS = "forum.search.events"
    CONTENT_EVENTS = "forum.content.events"
    MODERATION_EVENTS = "forum.moderation.events"


class EventName(str, Enum):
    USER_REGISTERED = "user.registered"
    USER_LOGIN = "user.login"
    USER_UPDATED = "user.updated"
    TOPIC_CREATED = "topic.created"
    TOPIC_UPDATED = "topic.updated"
    TOPIC_DELETED = "topic.deleted"
    TOPIC_VIEWED = "topic.viewed"
    POST_CREATED = "post.created"
    POST_UPDATED = "post.updated"
    POST_DELETED = "post.deleted"
    SEARCH_PERFORMED = "search.performed"
    CONTENT_CREATED = "content.created"
    CONTENT_UPDATED = "content.updated"
    CONTENT_DELETED = "content.deleted"
    CONTENT_MODERATED = "content.moderated"

    @property
    def entity(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def topic(self) -> KafkaTopic:
        if self is EventName.CONTENT_MODERATED:
            return KafkaTopic.MODERATION_EVENTS
        return {
            "user": KafkaTopic.USER_EVENTS,
            "topic": KafkaTopic.TOPIC_EVENTS,
            "post": KafkaTopic.POST_EVENTS,
            "search": KafkaTopic.SEARCH_EVENTS,
            "content": KafkaTopic.CONTENT_EVENTS,
        }[self.entity]


# --- Payloads ---

class EventPayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class UserRegisteredPayload(EventPayload):
    user_id: EntityId
    username: str
    email: Optional[str] = None


class UserLoginPayload(EventPayload):
    user_id: EntityId
    username: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class UserUpdatedPayload(EventPayload):
    user_id: EntityId
    username: Optional[str] = None
    changes: List[str] = Field(default_factory=list)


class TopicCreatedPayload(EventPayload):
    topic_id: EntityId
    forum_id: EntityId
    author_id: Optional[EntityId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    body_preview: Optional[str] = None


class TopicUpdatedPayload(EventPayload):
    topic_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    changes: List[str] = Field(default_factory=list)


class TopicDeletedPayload(EventPayload):
    topic_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None


class TopicViewedPayload(EventPayload):
    topic_id: EntityId
    forum_id: Optional[EntityId] = None
    viewer_id: Optional[EntityId] = None
    session_id: Optional[str] = None


class PostCreatedPayload(EventPayload):
    post_id: EntityId
    topic_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    body: Optional[str] = None
    body_preview: Optional[str] = None


class PostUpdatedPayload(EventPayload):
    post_id: EntityId
    topic_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    body: Optional[str] = None
    changes: List[str] = Field(default_factory=list)


class PostDeletedPayload(EventPayload):
    post_id: EntityId
    topic_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None


class SearchPerformedPayload(EventPayload):
    query: str
    user_id: Optional[EntityId] = None
    results_count: int = 0
    search_type: Literal["topics", "posts", "users", "all"] = "all"
    filters: Optional[Dict[str, Any]] = None


class ContentCreatedPayload(EventPayload):
    content_type: ContentType
    content_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class ContentUpdatedPayload(EventPayload):
    content_type: ContentType
    content_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class ContentDeletedPayload(EventPayload):
    content_type: ContentType
    content_id: EntityId


class ContentModeratedPayload(EventPayload):
    content_type: ContentType
    content_id: EntityId
    action: Literal["approved", "flagged", "hidden", "deleted"]
    reason: Optional[str] = None
    moderator_id: Optional[EntityId] = None


PAYLOAD_MODELS: Dict[EventName, Type[EventPayload]] = {
    EventName.USER_REGISTERED: UserRegisteredPayload,
    EventName.USER_LOGIN: UserLoginPayload,
    EventName.USER_UPDATED: UserUpdatedPayload,
    EventName.TOPIC_CREATED: TopicCreatedPayload,
    EventName.TOPIC_UPDATED: TopicUpdatedPayload,
    EventName.TOPIC_DELETED: TopicDeletedPayload,
    EventName.TOPIC_VIEWED: TopicViewedPayload,
    EventName.POST_CREATED: PostCreatedPayload,
    EventName.POST_UPDATED: PostUpdatedPayload,
    EventName.POST_DELETED: PostDeletedPayload,
    EventName.SEARCH_PERFORMED: SearchPerformedPayload,
    EventName.CONTENT_CREATED: ContentCreatedPayload,
    EventName.CONTENT_UPDATED: ContentUpdatedPayload,
    EventName.CONTENT_DELETED: ContentDeletedPayload,
    EventName.CONTENT_MODERATED: ContentModeratedPayload,
}


# --- Envelope ---

class Envelope(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_name: str = Field(..., description="Dotted <entity>.<verb> pair (e.g., content.created)")
    emitted_at: datetime.datetime = Field(..., description="ISO8601 format.")
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = Field(None, description="Unique id used to drop redeliveries")
    source: Optional[str] = Field(None, description="Client id of the publishing service")
    correlation_id: Optional[str] = None

    @property
    def kind(self) -> Optional[EventName]:
        """The closed event kind, or None for names this build does not know."""
        try:
            return EventName(self.event_name)
        except ValueError:
            return None

    def typed_payload(self) -> EventPayload:
        kind = self.kind
        if kind is None:
            raise EnvelopeDecodeError(f"Unknown event name: {self.event_name}")
        try:
            return PAYLOAD_MODELS[kind].model_validate(self.payload)
        except ValidationError as e:
            raise EnvelopeDecodeError(f"Invalid payload for {self.event_name}: {e}") from e

    @classmethod
    def decode(cls, raw: bytes) -> "Envelope":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise EnvelopeDecodeError(f"Undecodable envelope: {e}") from e

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


# --- Search documents ---

def document_id(content_type: str, content_id: str) -> str:
    if isinstance(content_type, ContentType):
        content_type = content_type.value
    return f"{content_type}:{content_id}"


class IndexedContent(CamelModel):
    content_type: ContentType
    content_id: EntityId
    forum_id: Optional[EntityId] = None
    author_id: Optional[EntityId] = None
    title: Optional[str] = None
    body: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    @property
    def doc_id(self) -> str:
        return document_id(self.content_type, self.content_id)


class SearchHit(CamelModel):
    id: str
    score: float
    content: IndexedContent
    highlights: Optional[Dict[str, List[str]]] = None


class SearchResults(CamelModel):
    results: List[SearchHit]
    total: int
    took: int = 0


class SearchResponse(SearchResults):
    query: str


class SuggestionsResponse(CamelModel):
    suggestions: List[str]


class ContentLookup(CamelModel):
    found: bool
    content: Optional[IndexedContent] = None


# --- Analytics ---

class Counter(CamelModel):
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    count: int = 0


class TimeSeriesPoint(CamelModel):
    metric: str
    timestamp: datetime.datetime
    value: float


class TimeSeriesResponse(CamelModel):
    name: str
    data: List[TimeSeriesPoint]


class CountersResponse(CamelModel):
    counters: List[Counter]


class RecentEvents(CamelModel):
    events: List[Envelope]
    count: int


class MetricsSummary(CamelModel):
    total_counters: int
    total_time_series: int
    total_events: int


class DashboardOverview(CamelModel):
    total_users: int
    total_logins: int
    total_topics: int
    total_posts: int
    total_searches: int


class DashboardActivity(CamelModel):
    topic_views: int
    topics_updated: int
    posts_updated: int
    content_moderated: int


class DashboardMeta(CamelModel):
    total_counters: int
    total_events: int
    timestamp: datetime.datetime


class Dashboard(CamelModel):
    overview: DashboardOverview
    activity: DashboardActivity
    trends: Dict[str, List[TimeSeriesPoint]]
    meta: DashboardMeta


class ForumMetrics(CamelModel):
    forum_id: str
    topics_created: int
    topic_views: int
    posts_created: int


class TopicMetrics(CamelModel):
    topic_id: str
    views: int
    posts: int


# --- Health ---

class ConsumerStats(CamelModel):
    state: str
    received: int
    processed: int
    duplicates: int
    ignored: int
    errors: int


class SearchHealth(CamelModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    elasticsearch: Literal["connected", "disconnected"]
    kafka: Literal["connected", "disconnected"]
    timestamp: datetime.datetime
    consumer: Optional[ConsumerStats] = None


class AnalyticsHealth(CamelModel):
    status: Literal["healthy", "degraded"]
    kafka: Literal["connected", "disconnected"]
    timestamp: datetime.datetime
    consumer: Optional[ConsumerStats] = None
