# src/indexer.py
"""
Search indexer

Keeps the content index in step with content.* events and answers the read
API's queries. Every write is idempotent: created replaces, updated merges
only the fields it carries, deleted tolerates a missing document.
"""

import logging
from typing import Dict, Optional

from src.consumer import Handler
from src.exceptions import InvalidContentTypeError, InvalidLimitError, InvalidQueryError
from src.models import (
    ContentCreatedPayload,
    ContentDeletedPayload,
    ContentLookup,
    ContentType,
    ContentUpdatedPayload,
    Envelope,
    EventName,
    IndexedContent,
    KafkaTopic,
    SearchHit,
    SearchResults,
    document_id,
)
from src.search_index import SearchIndex

logger = logging.getLogger(__name__)

SEARCH_DEFAULT_LIMIT = 20
SEARCH_MAX_LIMIT = 100
SUGGEST_DEFAULT_LIMIT = 10
SUGGEST_MAX_LIMIT = 20

SEARCH_TOPICS = [KafkaTopic.CONTENT_EVENTS]

# Fields a content.updated event may overwrite.
MERGEABLE_FIELDS = ("forumId", "authorId", "title", "body", "tags")


def parse_content_type(value: Optional[str]) -> Optional[ContentType]:
    if value is None or value == "":
        return None
    try:
        return ContentType(value)
    except ValueError:
        raise InvalidContentTypeError()


def _require_text(value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise InvalidQueryError()
    return value.strip()


def _clamp(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        return default
    if limit < 1:
        raise InvalidLimitError('Parameter "limit" must be a positive integer')
    return min(limit, maximum)


class SearchIndexer:
    def __init__(self, index: SearchIndex):
        self.index = index

    def handlers(self) -> Dict[EventName, Handler]:
        return {
            EventName.CONTENT_CREATED: self.on_content_created,
            EventName.CONTENT_UPDATED: self.on_content_updated,
            EventName.CONTENT_DELETED: self.on_content_deleted,
        }

    # --- event handlers ---

    async def on_content_created(self, payload: ContentCreatedPayload, envelope: Envelope):
        doc = IndexedContent(
            content_type=payload.content_type,
            content_id=payload.content_id,
            forum_id=payload.forum_id,
            author_id=payload.author_id,
            title=payload.title,
            body=payload.body,
            tags=payload.tags or [],
            created_at=envelope.emitted_at,
            updated_at=envelope.emitted_at,
        )
        await self.index.upsert(doc.doc_id, doc.model_dump(mode="json", by_alias=True))
        logger.info(f"Content indexed: {doc.doc_id}")

    async def on_content_updated(self, payload: ContentUpdatedPayload, envelope: Envelope):
        given = payload.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True)
        fields = {k: given[k] for k in MERGEABLE_FIELDS if k in given}
        fields["contentType"] = payload.content_type.value
        fields["contentId"] = payload.content_id
        fields["updatedAt"] = envelope.emitted_at.isoformat()

        doc_id = document_id(payload.content_type, payload.content_id)
        await self.index.merge(doc_id, fields)
        logger.info(f"Content updated: {doc_id} ({', '.join(sorted(fields))})")

    async def on_content_deleted(self, payload: ContentDeletedPayload, envelope: Envelope):
        doc_id = document_id(payload.content_type, payload.content_id)
        existed = await self.index.delete(doc_id)
        if existed:
            logger.info(f"Content deleted: {doc_id}")
        else:
            logger.debug(f"Content not in index, delete is a no-op: {doc_id}")

    # --- queries ---

    async def search(
        self,
        query: Optional[str],
        content_type: Optional[str] = None,
        forum_id: Optional[str] = None,
        author_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> SearchResults:
        text = _require_text(query)
        ctype = parse_content_type(content_type)
        size = _clamp(limit, SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT)
        offset = offset or 0
        if offset < 0:
            raise InvalidLimitError('Parameter "offset" must not be negative')

        filters = {}
        if ctype is not None:
            filters["contentType"] = ctype.value
        if forum_id:
            filters["forumId"] = forum_id
        if author_id:
            filters["authorId"] = author_id

        page = await self.index.search(text, filters, offset=offset, limit=size)
        results = [
            SearchHit(
                id=hit.id,
                score=hit.score,
                content=IndexedContent.model_validate(hit.source),
                highlights=hit.highlight,
            )
            for hit in page.hits
        ]
        logger.debug(f"Search '{text}' matched {page.total}, returning {len(results)}")
        return SearchResults(results=results, total=page.total, took=page.took_ms)

    async def suggest(
        self,
        prefix: Optional[str],
        content_type: Optional[str] = None,
        limit: Optional[int] = None,
    ):
        text = _require_text(prefix)
        ctype = parse_content_type(content_type)
        size = _clamp(limit, SUGGEST_DEFAULT_LIMIT, SUGGEST_MAX_LIMIT)
        filters = {"contentType": ctype.value} if ctype is not None else {}
        return await self.index.suggest(text, filters, limit=size)

    async def get_by_id(self, content_type: str, content_id: str) -> ContentLookup:
        ctype = parse_content_type(content_type)
        if ctype is None:
            raise InvalidContentTypeError()
        source = await self.index.get(document_id(ctype, content_id))
        if source is None:
            return ContentLookup(found=False)
        return ContentLookup(found=True, content=IndexedContent.model_validate(source))

    async def is_healthy(self) -> bool:
        return await self.index.is_healthy()
