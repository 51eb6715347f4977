# src/analytics_routes.py
import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.aggregator import DASHBOARD_TREND_LIMIT, AnalyticsAggregator
from src.consumer import ConsumerRuntime
from src.exceptions import InvalidLimitError
from src.models import (
    AnalyticsHealth,
    Counter,
    CountersResponse,
    Dashboard,
    ForumMetrics,
    MetricsSummary,
    RecentEvents,
    TimeSeriesResponse,
    TopicMetrics,
)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def get_aggregator(request: Request) -> AnalyticsAggregator:
    return request.app.state.aggregator


def get_analytics_consumer(request: Request) -> Optional[ConsumerRuntime]:
    return getattr(request.app.state, "consumer", None)


def _check_limit(limit: Optional[int]) -> Optional[int]:
    if limit is not None and limit < 0:
        raise InvalidLimitError('Parameter "limit" must not be negative')
    return limit


@router.get("/health", response_model=AnalyticsHealth)
async def analytics_health(consumer: Optional[ConsumerRuntime] = Depends(get_analytics_consumer)):
    healthy = consumer is not None and consumer.is_healthy()
    return AnalyticsHealth(
        status="healthy" if healthy else "degraded",
        kafka="connected" if consumer is not None and consumer.broker_connected() else "disconnected",
        timestamp=datetime.datetime.now(datetime.timezone.utc),
        consumer=consumer.stats() if consumer is not None else None,
    )


@router.get("/metrics", response_model=MetricsSummary)
async def get_metrics(agg: AnalyticsAggregator = Depends(get_aggregator)):
    return agg.summary()


@router.get("/counters", response_model=CountersResponse)
async def get_counters(prefix: Optional[str] = None, agg: AnalyticsAggregator = Depends(get_aggregator)):
    return CountersResponse(counters=agg.store.list_counters(prefix))


@router.get("/counter/{name}", response_model=Counter)
async def get_counter(name: str, request: Request, agg: AnalyticsAggregator = Depends(get_aggregator)):
    # Every query parameter is a label, e.g. ?forumId=1
    labels = dict(request.query_params)
    return agg.store.get_counter(name, labels)


@router.get("/timeseries/{name}", response_model=TimeSeriesResponse)
async def get_time_series(name: str,
                          limit: Optional[int] = None,
                          start_time: Optional[datetime.datetime] = Query(None, alias="startTime"),
                          end_time: Optional[datetime.datetime] = Query(None, alias="endTime"),
                          agg: AnalyticsAggregator = Depends(get_aggregator)):
    data = agg.store.get_time_series(name, start_time=start_time, end_time=end_time, limit=_check_limit(limit))
    return TimeSeriesResponse(name=name, data=data)


@router.get("/events", response_model=RecentEvents)
async def get_recent_events(limit: int = 100, agg: AnalyticsAggregator = Depends(get_aggregator)):
    events = agg.store.recent_events(_check_limit(limit))
    return RecentEvents(events=events, count=len(events))


@router.get("/dashboard", response_model=Dashboard)
async def get_dashboard(limit: int = DASHBOARD_TREND_LIMIT, agg: AnalyticsAggregator = Depends(get_aggregator)):
    return agg.dashboard(limit=_check_limit(limit))


@router.get("/forum/{forum_id}/metrics", response_model=ForumMetrics)
async def get_forum_metrics(forum_id: str, agg: AnalyticsAggregator = Depends(get_aggregator)):
    return agg.forum_metrics(forum_id)


@router.get("/topic/{topic_id}/metrics", response_model=TopicMetrics)
async def get_topic_metrics(topic_id: str, agg: AnalyticsAggregator = Depends(get_aggregator)):
    return agg.topic_metrics(topic_id)
