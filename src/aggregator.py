# src/aggregator.py
"""
Analytics aggregator

Turns forum events into counters and time series, keeps the recent-event log,
and builds the rollups served by the analytics API.
"""

import datetime
import logging
from typing import Dict

from src.consumer import Handler
from src.metrics_store import MetricsStore
from src.models import (
    ContentModeratedPayload,
    Dashboard,
    DashboardActivity,
    DashboardMeta,
    DashboardOverview,
    Envelope,
    EventName,
    EventPayload,
    ForumMetrics,
    KafkaTopic,
    MetricsSummary,
    PostCreatedPayload,
    SearchPerformedPayload,
    TopicCreatedPayload,
    TopicMetrics,
    TopicViewedPayload,
    UserLoginPayload,
    UserRegisteredPayload,
)

logger = logging.getLogger(__name__)

ANALYTICS_TOPICS = [
    KafkaTopic.USER_EVENTS,
    KafkaTopic.TOPIC_EVENTS,
    KafkaTopic.POST_EVENTS,
    KafkaTopic.SEARCH_EVENTS,
    KafkaTopic.CONTENT_EVENTS,
    KafkaTopic.MODERATION_EVENTS,
]

DASHBOARD_TREND_LIMIT = 24

# Events that only bump one total.
SIMPLE_COUNTERS = {
    EventName.USER_UPDATED: "users_updated_total",
    EventName.TOPIC_UPDATED: "topics_updated_total",
    EventName.TOPIC_DELETED: "topics_deleted_total",
    EventName.POST_UPDATED: "posts_updated_total",
    EventName.POST_DELETED: "posts_deleted_total",
    EventName.CONTENT_CREATED: "content_created_total",
    EventName.CONTENT_UPDATED: "content_updated_total",
    EventName.CONTENT_DELETED: "content_deleted_total",
}


class AnalyticsAggregator:
    def __init__(self, store: MetricsStore):
        self.store = store

    def handlers(self) -> Dict[EventName, Handler]:
        table: Dict[EventName, Handler] = {
            EventName.USER_REGISTERED: self.on_user_registered,
            EventName.USER_LOGIN: self.on_user_login,
            EventName.TOPIC_CREATED: self.on_topic_created,
            EventName.TOPIC_VIEWED: self.on_topic_viewed,
            EventName.POST_CREATED: self.on_post_created,
            EventName.SEARCH_PERFORMED: self.on_search_performed,
            EventName.CONTENT_MODERATED: self.on_content_moderated,
        }
        for event_name in SIMPLE_COUNTERS:
            table[event_name] = self.on_simple_event
        missing = set(EventName) - set(table)
        if missing:
            raise RuntimeError(f"analytics handlers missing for {sorted(name.value for name in missing)}")
        return table

    # --- event handlers ---

    async def on_user_registered(self, payload: UserRegisteredPayload, envelope: Envelope):
        self.store.increment("users_registered_total")
        self.store.record("users_registered", 1, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.info(f"User registered event processed: {payload.user_id}")

    async def on_user_login(self, payload: UserLoginPayload, envelope: Envelope):
        self.store.increment("users_login_total")
        self.store.record("user_logins", 1, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.debug(f"User login event processed: {payload.user_id}")

    async def on_topic_created(self, payload: TopicCreatedPayload, envelope: Envelope):
        self.store.increment("topics_created_total")
        self.store.increment("topics_created_by_forum", {"forumId": payload.forum_id})
        self.store.record("topics_created", 1, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.info(f"Topic created event processed: {payload.topic_id}")

    async def on_topic_viewed(self, payload: TopicViewedPayload, envelope: Envelope):
        self.store.increment("topics_viewed_total")
        self.store.increment("topic_views", {"topicId": payload.topic_id})
        if payload.forum_id is not None:
            self.store.increment("topic_views_by_forum", {"forumId": payload.forum_id})
        self.store.record("topic_views", 1, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.debug(f"Topic viewed event processed: {payload.topic_id}")

    async def on_post_created(self, payload: PostCreatedPayload, envelope: Envelope):
        self.store.increment("posts_created_total")
        self.store.increment("posts_created_by_topic", {"topicId": payload.topic_id})
        if payload.forum_id is not None:
            self.store.increment("posts_created_by_forum", {"forumId": payload.forum_id})
        self.store.record("posts_created", 1, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.info(f"Post created event processed: {payload.post_id}")

    async def on_search_performed(self, payload: SearchPerformedPayload, envelope: Envelope):
        self.store.increment("searches_total")
        self.store.increment("searches_by_type", {"searchType": payload.search_type})
        self.store.record("searches", 1, envelope.emitted_at)
        self.store.record("search_results_count", payload.results_count, envelope.emitted_at)
        self.store.log_event(envelope)
        logger.debug(f"Search event processed: '{payload.query}' ({payload.results_count} results)")

    async def on_content_moderated(self, payload: ContentModeratedPayload, envelope: Envelope):
        self.store.increment("content_moderated_total")
        self.store.increment("content_moderated_by_action", {"action": payload.action})
        self.store.log_event(envelope)

    async def on_simple_event(self, payload: EventPayload, envelope: Envelope):
        self.store.increment(SIMPLE_COUNTERS[EventName(envelope.event_name)])
        self.store.log_event(envelope)

    # --- rollups ---

    def summary(self) -> MetricsSummary:
        return MetricsSummary(
            total_counters=self.store.total_counters,
            total_time_series=self.store.total_time_series,
            total_events=self.store.total_events,
        )

    def dashboard(self, limit: int = DASHBOARD_TREND_LIMIT) -> Dashboard:
        count = self.store.count
        series = self.store.get_time_series
        return Dashboard(
            overview=DashboardOverview(
                total_users=count("users_registered_total"),
                total_logins=count("users_login_total"),
                total_topics=count("topics_created_total"),
                total_posts=count("posts_created_total"),
                total_searches=count("searches_total"),
            ),
            activity=DashboardActivity(
                topic_views=count("topics_viewed_total"),
                topics_updated=count("topics_updated_total"),
                posts_updated=count("posts_updated_total"),
                content_moderated=count("content_moderated_total"),
            ),
            trends={
                "topicsCreated": series("topics_created", limit=limit),
                "postsCreated": series("posts_created", limit=limit),
                "userLogins": series("user_logins", limit=limit),
                "searches": series("searches", limit=limit),
            },
            meta=DashboardMeta(
                total_counters=self.store.total_counters,
                total_events=self.store.total_events,
                timestamp=datetime.datetime.now(datetime.timezone.utc),
            ),
        )

    def forum_metrics(self, forum_id: str) -> ForumMetrics:
        labels = {"forumId": forum_id}
        return ForumMetrics(
            forum_id=forum_id,
            topics_created=self.store.count("topics_created_by_forum", labels),
            topic_views=self.store.count("topic_views_by_forum", labels),
            posts_created=self.store.count("posts_created_by_forum", labels),
        )

    def topic_metrics(self, topic_id: str) -> TopicMetrics:
        labels = {"topicId": topic_id}
        return TopicMetrics(
            topic_id=topic_id,
            views=self.store.count("topic_views", labels),
            posts=self.store.count("posts_created_by_topic", labels),
        )
