# src/main.py
import datetime
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src import analytics_routes, search_routes
from src.aggregator import ANALYTICS_TOPICS, AnalyticsAggregator
from src.config import Settings, configure_logging, get_settings
from src.consumer import ConsumerRuntime
from src.exceptions import PipelineError, StoreUnavailableError
from src.indexer import SEARCH_TOPICS, SearchIndexer
from src.metrics_store import MetricsStore
from src.search_index import ElasticsearchIndex, InMemorySearchIndex, SearchIndex

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    name = first.get("loc", ("", "request"))[-1]
    message = f"Invalid parameter \"{name}\": {first.get('msg', 'invalid value')}"
    return JSONResponse(status_code=400, content={"error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def build_search_index(settings: Settings) -> SearchIndex:
    if settings.search_backend == "memory":
        return InMemorySearchIndex()
    return ElasticsearchIndex(settings.elasticsearch_url, settings.content_index)


async def start_consumer(consumer: ConsumerRuntime, settings: Settings) -> None:
    if not settings.kafka_enabled:
        logger.info(f"Kafka consumer disabled - {consumer.name} running in API-only mode")
        return
    try:
        await consumer.start()
    except Exception as e:
        logger.warning(f"Kafka consumer failed to start - {consumer.name} running in API-only mode: {e}")


@asynccontextmanager
async def search_lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    index = build_search_index(settings)
    try:
        await index.ensure_index()
        logger.info("Search index initialized")
    except StoreUnavailableError as e:
        logger.warning(f"Search index initialization failed - search may not work: {e}")

    indexer = SearchIndexer(index)
    consumer = ConsumerRuntime("search", SEARCH_TOPICS, indexer.handlers(), settings,
                               group_id=settings.kafka_search_group_id,
                               store_health=indexer.is_healthy)
    app.state.indexer = indexer
    app.state.consumer = consumer
    await start_consumer(consumer, settings)
    try:
        yield
    finally:
        logger.info("Shutting down Search API")
        await consumer.stop()
        await index.close()


@asynccontextmanager
async def analytics_lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    store = MetricsStore(max_events=settings.metrics_max_events,
                         max_points=settings.metrics_max_time_series_points,
                         retention_days=settings.metrics_retention_days)
    aggregator = AnalyticsAggregator(store)
    consumer = ConsumerRuntime("analytics", ANALYTICS_TOPICS, aggregator.handlers(), settings,
                               group_id=settings.kafka_analytics_group_id)
    app.state.aggregator = aggregator
    app.state.consumer = consumer
    await start_consumer(consumer, settings)
    try:
        yield
    finally:
        logger.info("Shutting down Analytics API")
        await consumer.stop()


def _build_app(title: str, lifespan, router, settings: Optional[Settings]) -> FastAPI:
    app = FastAPI(title=title, version=VERSION, lifespan=lifespan)
    app.state.settings = settings or get_settings()
    app.include_router(router)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/")
    async def service_info():
        return {
            "name": title,
            "version": VERSION,
            "status": "running",
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    return app


def create_search_app(settings: Optional[Settings] = None) -> FastAPI:
    return _build_app("Search API", search_lifespan, search_routes.router, settings)


def create_analytics_app(settings: Optional[Settings] = None) -> FastAPI:
    return _build_app("Analytics API", analytics_lifespan, analytics_routes.router, settings)


search_app = create_search_app()
analytics_app = create_analytics_app()


def run_search_api():
    settings = get_settings()
    uvicorn.run(search_app, host=settings.host, port=settings.search_port)


def run_analytics_api():
    settings = get_settings()
    uvicorn.run(analytics_app, host=settings.host, port=settings.analytics_port)
