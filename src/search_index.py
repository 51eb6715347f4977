# src/search_index.py
"""Search index backends.

Provides an Elasticsearch index and an in-memory index with the same contract.
Documents are addressed by the deterministic id "<contentType>:<contentId>".
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, AsyncElasticsearch, BadRequestError, NotFoundError, TransportError

from src.exceptions import DocumentRejectedError, InvalidSearchRequestError, StoreUnavailableError

logger = logging.getLogger(__name__)

CONTENT_MAPPING = {
    "properties": {
        "contentType": {"type": "keyword"},
        "contentId": {"type": "keyword"},
        "forumId": {"type": "keyword"},
        "authorId": {"type": "keyword"},
        "title": {
            "type": "text",
            "analyzer": "standard",
            "fields": {"keyword": {"type": "keyword"}},
        },
        "body": {"type": "text", "analyzer": "standard"},
        "tags": {"type": "keyword"},
        "createdAt": {"type": "date"},
        "updatedAt": {"type": "date"},
    }
}


@dataclass
class IndexHit:
    """A search result hit."""
    id: str
    score: float
    source: Dict[str, Any]
    highlight: Optional[Dict[str, List[str]]] = None


@dataclass
class IndexPage:
    """One page of search hits plus the total match count."""
    hits: List[IndexHit]
    total: int
    took_ms: int = 0


class SearchIndex(ABC):
    """Abstract base class for content indexes."""

    @abstractmethod
    async def ensure_index(self) -> None:
        """Create the index with its mapping if it does not exist."""

    @abstractmethod
    async def upsert(self, doc_id: str, document: Dict[str, Any]) -> None:
        """Create or replace a whole document."""

    @abstractmethod
    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into a document, creating it from `fields` if absent."""

    @abstractmethod
    async def delete(self, doc_id: str) -> bool:
        """Remove a document.

        Returns:
            True if it existed. A missing document is not an error.
        """

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document source by id, or None."""

    @abstractmethod
    async def search(
        self,
        text: str,
        filters: Dict[str, str],
        offset: int = 0,
        limit: int = 20,
    ) -> IndexPage:
        """Full-text search over title and body with exact-match filters."""

    @abstractmethod
    async def suggest(self, prefix: str, filters: Dict[str, str], limit: int = 10) -> List[str]:
        """Distinct titles starting with `prefix`, case-insensitively."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """True unless the cluster is red or unreachable."""

    @abstractmethod
    async def close(self) -> None:
        pass


class ElasticsearchIndex(SearchIndex):
    """Elasticsearch implementation."""

    def __init__(self, url: str, index: str, client: Optional[Any] = None):
        self.url = url
        self.index = index
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AsyncElasticsearch(hosts=[self.url])
            logger.info(f"Elasticsearch client created for {self.url}")
        return self._client

    async def ensure_index(self) -> None:
        try:
            exists = await self.client.indices.exists(index=self.index)
            if exists:
                logger.debug(f"Elasticsearch index {self.index} already exists")
                return
            await self.client.indices.create(
                index=self.index,
                settings={"number_of_shards": 1, "number_of_replicas": 0},
                mappings=CONTENT_MAPPING,
            )
            logger.info(f"Created Elasticsearch index {self.index}")
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Failed to initialize index {self.index}: {e}") from e

    async def upsert(self, doc_id: str, document: Dict[str, Any]) -> None:
        try:
            await self.client.index(index=self.index, id=doc_id, document=document)
        except BadRequestError as e:
            raise DocumentRejectedError(f"Index rejected {doc_id}: {e}") from e
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Index error for {doc_id}: {e}") from e

    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        try:
            await self.client.update(index=self.index, id=doc_id, doc=fields, doc_as_upsert=True)
        except BadRequestError as e:
            raise DocumentRejectedError(f"Index rejected update of {doc_id}: {e}") from e
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Update error for {doc_id}: {e}") from e

    async def delete(self, doc_id: str) -> bool:
        try:
            await self.client.delete(index=self.index, id=doc_id)
            return True
        except NotFoundError:
            logger.debug(f"{doc_id} not found in index (already deleted)")
            return False
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Delete error for {doc_id}: {e}") from e

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.get(index=self.index, id=doc_id)
            return response["_source"]
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Get error for {doc_id}: {e}") from e

    async def search(
        self,
        text: str,
        filters: Dict[str, str],
        offset: int = 0,
        limit: int = 20,
    ) -> IndexPage:
        query = {
            "bool": {
                "must": [{
                    "multi_match": {
                        "query": text,
                        "fields": ["title^2", "body"],
                        "type": "best_fields",
                        "fuzziness": "AUTO",
                    }
                }],
                "filter": [{"term": {k: v}} for k, v in filters.items()],
            }
        }
        highlight = {
            "fields": {
                "title": {},
                "body": {"fragment_size": 150, "number_of_fragments": 3},
            }
        }
        try:
            response = await self.client.search(
                index=self.index, query=query, from_=offset, size=limit, highlight=highlight,
            )
        except BadRequestError as e:
            logger.warning(f"Search rejected by index: {e}")
            raise InvalidSearchRequestError("Invalid search request") from e
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Search error: {e}") from e

        hits = [
            IndexHit(
                id=hit["_id"],
                score=hit.get("_score") or 0.0,
                source=hit["_source"],
                highlight=hit.get("highlight"),
            )
            for hit in response["hits"]["hits"]
        ]
        total = response["hits"]["total"]
        if isinstance(total, dict):
            total = total["value"]
        return IndexPage(hits=hits, total=total, took_ms=response.get("took", 0))

    async def suggest(self, prefix: str, filters: Dict[str, str], limit: int = 10) -> List[str]:
        query = {
            "bool": {
                "must": [{"prefix": {"title.keyword": {"value": prefix, "case_insensitive": True}}}],
                "filter": [{"term": {k: v}} for k, v in filters.items()],
            }
        }
        try:
            response = await self.client.search(
                index=self.index, query=query, size=limit, source_includes=["title"],
            )
        except BadRequestError as e:
            logger.warning(f"Suggestion query rejected by index: {e}")
            raise InvalidSearchRequestError("Invalid suggestion request") from e
        except (ApiError, TransportError) as e:
            raise StoreUnavailableError(f"Suggestion error: {e}") from e

        titles = [hit["_source"].get("title") for hit in response["hits"]["hits"]]
        return list(dict.fromkeys(t for t in titles if t))

    async def is_healthy(self) -> bool:
        try:
            health = await self.client.cluster.health()
            return health["status"] != "red"
        except Exception as e:
            logger.error(f"Elasticsearch health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("Elasticsearch client closed")


class InMemorySearchIndex(SearchIndex):
    """In-memory index for tests and single-process deployments.

    Documents are replaced wholesale on every write, so a reader holding a
    document never observes a half-applied merge.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self.healthy = True

    async def ensure_index(self) -> None:
        pass

    async def upsert(self, doc_id: str, document: Dict[str, Any]) -> None:
        self._check()
        self._docs[doc_id] = dict(document)

    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self._check()
        self._docs[doc_id] = {**self._docs.get(doc_id, {}), **fields}

    async def delete(self, doc_id: str) -> bool:
        self._check()
        return self._docs.pop(doc_id, None) is not None

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        doc = self._docs.get(doc_id)
        return dict(doc) if doc is not None else None

    async def search(
        self,
        text: str,
        filters: Dict[str, str],
        offset: int = 0,
        limit: int = 20,
    ) -> IndexPage:
        self._check()
        started = time.monotonic()
        terms = re.findall(r"\w+", text.lower())

        scored = []
        for doc_id, doc in self._docs.items():
            if not self._passes(doc, filters):
                continue
            title = str(doc.get("title") or "").lower()
            body = str(doc.get("body") or "").lower()
            # title^2, body^1
            score = sum(2.0 for t in terms if t in title) + sum(1.0 for t in terms if t in body)
            if score > 0:
                scored.append(IndexHit(id=doc_id, score=score, source=dict(doc)))

        scored.sort(key=lambda h: (-h.score, h.id))
        took = int((time.monotonic() - started) * 1000)
        return IndexPage(hits=scored[offset:offset + limit], total=len(scored), took_ms=took)

    async def suggest(self, prefix: str, filters: Dict[str, str], limit: int = 10) -> List[str]:
        self._check()
        prefix = prefix.lower()
        titles = []
        for doc in self._docs.values():
            title = doc.get("title")
            if title and title.lower().startswith(prefix) and self._passes(doc, filters):
                titles.append(title)
        return list(dict.fromkeys(sorted(titles)))[:limit]

    async def is_healthy(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self._docs.clear()

    def __len__(self):
        return len(self._docs)

    def _check(self):
        if not self.healthy:
            raise StoreUnavailableError("In-memory index marked unavailable")

    @staticmethod
    def _passes(doc: Dict[str, Any], filters: Dict[str, str]) -> bool:
        return all(str(doc.get(k)) == str(v) for k, v in filters.items())
