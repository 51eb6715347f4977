import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.consumer import ConsumerRuntime, ConsumerState
from src.indexer import SEARCH_TOPICS, SearchIndexer
from src.main import create_search_app
from src.models import EventName
from src.search_index import InMemorySearchIndex
from src.search_routes import get_indexer, get_search_consumer

DOCS = [
    ("topic", "1", {"forumId": "999", "authorId": "5", "title": "Welcome to the forum", "body": "Introduce yourself"}),
    ("topic", "2", {"forumId": "999", "authorId": "6", "title": "Forum rules", "body": "Be kind"}),
    ("post", "3", {"forumId": "999", "authorId": "5", "body": "Glad to join the forum"}),
    ("user", "4", {"title": "forumfan", "body": "forumfan"}),
]


@pytest_asyncio.fixture
async def index():
    idx = InMemorySearchIndex()
    for content_type, content_id, fields in DOCS:
        await idx.upsert(f"{content_type}:{content_id}",
                         {"contentType": content_type, "contentId": content_id, **fields})
    return idx


@pytest_asyncio.fixture
async def consumer(index, test_settings):
    return ConsumerRuntime("search", SEARCH_TOPICS, SearchIndexer(index).handlers(), test_settings, group_id="g")


@pytest_asyncio.fixture
async def client(index, consumer, test_settings):
    app = create_search_app(test_settings)
    app.dependency_overrides[get_indexer] = lambda: SearchIndexer(index)
    app.dependency_overrides[get_search_consumer] = lambda: consumer
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_search_returns_ranked_hits(client):
    response = await client.get("/api/search", params={"q": "forum"})
    assert response.status_code == 200
    data = response.json()

    assert data["query"] == "forum"
    assert data["total"] == 4
    assert data["results"][0]["content"]["contentType"] in ("topic", "user")
    assert {"id", "score", "content"} <= set(data["results"][0])
    assert "took" in data


@pytest.mark.asyncio
async def test_missing_query_is_rejected(client):
    response = await client.get("/api/search")
    assert response.status_code == 400
    assert response.json() == {"error": 'Query parameter "q" is required'}

    response = await client.get("/api/search", params={"q": "  "})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_search_filters(client):
    response = await client.get("/api/search", params={"q": "forum", "type": "topic", "authorId": "5"})
    assert [hit["id"] for hit in response.json()["results"]] == ["topic:1"]

    response = await client.get("/api/search", params={"q": "forum", "type": "forum"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid content type"


@pytest.mark.asyncio
async def test_search_limit_and_offset(client):
    response = await client.get("/api/search", params={"q": "forum", "limit": 1, "offset": 1})
    data = response.json()
    assert data["total"] == 4
    assert len(data["results"]) == 1

    response = await client.get("/api/search", params={"q": "forum", "limit": 0})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_topic_and_post_shortcuts(client):
    topics = (await client.get("/api/search/topics", params={"q": "forum", "forumId": "999"})).json()
    posts = (await client.get("/api/search/posts", params={"q": "forum"})).json()

    assert {hit["content"]["contentType"] for hit in topics["results"]} == {"topic"}
    assert [hit["id"] for hit in posts["results"]] == ["post:3"]

    response = await client.get("/api/search/posts")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_suggestions(client):
    response = await client.get("/api/search/suggestions", params={"q": "for"})
    assert response.status_code == 200
    assert response.json() == {"suggestions": ["Forum rules", "forumfan"]}

    response = await client.get("/api/search/suggestions", params={"q": "for", "type": "topic"})
    assert response.json()["suggestions"] == ["Forum rules"]

    response = await client.get("/api/search/suggestions")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_get_content_by_id(client):
    response = await client.get("/api/search/content/topic/1")
    assert response.status_code == 200
    data = response.json()
    assert data["found"] is True
    assert data["content"]["title"] == "Welcome to the forum"


@pytest.mark.asyncio
async def test_get_content_errors(client):
    response = await client.get("/api/search/content/invalid/1")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid content type"}

    response = await client.get("/api/search/content/topic/999999")
    assert response.status_code == 404
    assert response.json() == {"error": "Content not found"}


@pytest.mark.asyncio
async def test_index_outage_returns_500(client, index):
    index.healthy = False
    response = await client.get("/api/search", params={"q": "forum"})
    assert response.status_code == 500
    assert response.json() == {"error": "Search failed"}

    response = await client.get("/api/search/suggestions", params={"q": "for"})
    assert response.json() == {"error": "Suggestions failed"}

    response = await client.get("/api/search/content/topic/1")
    assert response.json() == {"error": "Failed to get content"}


@pytest.mark.asyncio
async def test_health_reflects_index_and_consumer(client, index, consumer):
    response = await client.get("/api/search/health")
    data = response.json()
    assert response.status_code == 200
    assert data["status"] == "degraded"
    assert data["elasticsearch"] == "connected"
    assert data["kafka"] == "disconnected"
    assert data["consumer"]["state"] == "stopped"

    consumer.state = ConsumerState.RUNNING
    assert (await client.get("/api/search/health")).json()["status"] == "healthy"

    index.healthy = False
    data = (await client.get("/api/search/health")).json()
    assert data["status"] == "unhealthy"
    assert data["elasticsearch"] == "disconnected"


@pytest.mark.asyncio
async def test_service_info(client):
    response = await client.get("/")
    assert response.json()["name"] == "Search API"
    assert response.json()["status"] == "running"


class IdleKafkaConsumer:
    """Broker that is reachable but has nothing to deliver."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs

    def subscribe(self, topics):
        pass

    async def start(self):
        pass

    async def stop(self):
        pass

    async def getmany(self, timeout_ms=0, max_records=None):
        await asyncio.sleep(timeout_ms / 1000)
        return {}

    async def commit(self, offsets):
        pass


@pytest.mark.asyncio
async def test_health_recovers_after_index_outage_without_traffic(index, test_settings, make_envelope, wait_until):
    indexer = SearchIndexer(index)
    consumer = ConsumerRuntime("search", SEARCH_TOPICS, indexer.handlers(), test_settings, group_id="g",
                               consumer_factory=IdleKafkaConsumer, store_health=indexer.is_healthy)
    app = create_search_app(test_settings)
    app.dependency_overrides[get_indexer] = lambda: indexer
    app.dependency_overrides[get_search_consumer] = lambda: consumer

    await consumer.start()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            index.healthy = False
            envelope = make_envelope(EventName.CONTENT_CREATED, {"contentType": "post", "contentId": 9, "body": "x"})
            await consumer.process_value(envelope.encode())
            data = (await ac.get("/api/search/health")).json()
            assert (data["status"], data["elasticsearch"], data["kafka"]) == ("unhealthy", "disconnected", "connected")

            index.healthy = True
            await wait_until(lambda: consumer.is_healthy())
            data = (await ac.get("/api/search/health")).json()
            assert (data["status"], data["elasticsearch"], data["kafka"]) == ("healthy", "connected", "connected")
            assert data["consumer"]["state"] == "running"
    finally:
        await consumer.stop()


@pytest.mark.asyncio
async def test_malformed_parameters_use_the_error_body(client):
    response = await client.get("/api/search", params={"q": "forum", "limit": "ten"})
    assert response.status_code == 400
    assert response.json()["error"].startswith('Invalid parameter "limit"')

    response = await client.get("/api/search/topics", params={"q": "forum", "offset": "1.5"})
    assert response.status_code == 400
    assert set(response.json()) == {"error"}
