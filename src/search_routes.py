# src/search_routes.py
import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.consumer import ConsumerRuntime
from src.exceptions import ContentNotFoundError, UpstreamUnavailableError
from src.indexer import SearchIndexer
from src.models import ContentLookup, SearchHealth, SearchResponse, SuggestionsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


def get_indexer(request: Request) -> SearchIndexer:
    return request.app.state.indexer


def get_search_consumer(request: Request) -> Optional[ConsumerRuntime]:
    return getattr(request.app.state, "consumer", None)


async def _search(indexer: SearchIndexer, failure: str, q: Optional[str], **kwargs) -> SearchResponse:
    try:
        results = await indexer.search(q, **kwargs)
    except UpstreamUnavailableError as e:
        logger.error(f"{failure}: {e}")
        raise UpstreamUnavailableError(failure) from e
    return SearchResponse(query=q, results=results.results, total=results.total, took=results.took)


@router.get("/health", response_model=SearchHealth)
async def search_health(indexer: SearchIndexer = Depends(get_indexer),
                        consumer: Optional[ConsumerRuntime] = Depends(get_search_consumer)):
    es_healthy = await indexer.is_healthy()
    kafka_connected = consumer is not None and consumer.broker_connected()

    if es_healthy and kafka_connected:
        status = "healthy"
    elif es_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return SearchHealth(
        status=status,
        elasticsearch="connected" if es_healthy else "disconnected",
        kafka="connected" if kafka_connected else "disconnected",
        timestamp=datetime.datetime.now(datetime.timezone.utc),
        consumer=consumer.stats() if consumer is not None else None,
    )


@router.get("", response_model=SearchResponse)
async def search_content(q: Optional[str] = None,
                         type: Optional[str] = None,
                         forum_id: Optional[str] = Query(None, alias="forumId"),
                         author_id: Optional[str] = Query(None, alias="authorId"),
                         limit: Optional[int] = None,
                         offset: Optional[int] = None,
                         indexer: SearchIndexer = Depends(get_indexer)):
    return await _search(indexer, "Search failed", q, content_type=type, forum_id=forum_id,
                         author_id=author_id, limit=limit, offset=offset)


@router.get("/suggestions", response_model=SuggestionsResponse)
async def search_suggestions(q: Optional[str] = None,
                             type: Optional[str] = None,
                             limit: Optional[int] = None,
                             indexer: SearchIndexer = Depends(get_indexer)):
    try:
        suggestions = await indexer.suggest(q, content_type=type, limit=limit)
    except UpstreamUnavailableError as e:
        logger.error(f"Suggestions failed: {e}")
        raise UpstreamUnavailableError("Suggestions failed") from e
    return SuggestionsResponse(suggestions=suggestions)


@router.get("/content/{content_type}/{content_id}", response_model=ContentLookup)
async def get_content(content_type: str, content_id: str, indexer: SearchIndexer = Depends(get_indexer)):
    try:
        lookup = await indexer.get_by_id(content_type, content_id)
    except UpstreamUnavailableError as e:
        logger.error(f"Failed to get content {content_type}:{content_id}: {e}")
        raise UpstreamUnavailableError("Failed to get content") from e
    if not lookup.found:
        raise ContentNotFoundError()
    return lookup


@router.get("/topics", response_model=SearchResponse)
async def search_topics(q: Optional[str] = None,
                        forum_id: Optional[str] = Query(None, alias="forumId"),
                        limit: Optional[int] = None,
                        offset: Optional[int] = None,
                        indexer: SearchIndexer = Depends(get_indexer)):
    return await _search(indexer, "Topic search failed", q, content_type="topic", forum_id=forum_id,
                         limit=limit, offset=offset)


@router.get("/posts", response_model=SearchResponse)
async def search_posts(q: Optional[str] = None,
                       forum_id: Optional[str] = Query(None, alias="forumId"),
                       author_id: Optional[str] = Query(None, alias="authorId"),
                       limit: Optional[int] = None,
                       offset: Optional[int] = None,
                       indexer: SearchIndexer = Depends(get_indexer)):
    return await _search(indexer, "Post search failed", q, content_type="post", forum_id=forum_id,
                         author_id=author_id, limit=limit, offset=offset)
