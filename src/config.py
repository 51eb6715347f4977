# src/config.py
import logging
from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


class Settings(BaseSettings):
    """Settings shared by the publisher and both consumer services."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "forum-event-pipeline"
    environment: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    # HTTP
    host: str = "0.0.0.0"
    search_port: int = 3002
    analytics_port: int = 3003

    # Kafka
    kafka_enabled: bool = True
    kafka_brokers: str = "localhost:9092"
    kafka_client_id: str = "forum-api"
    kafka_search_group_id: str = "search-api-group"
    kafka_analytics_group_id: str = "analytics-api-group"
    kafka_auto_offset_reset: Literal["earliest", "latest"] = "latest"
    kafka_poll_timeout_ms: int = 1000
    kafka_max_poll_records: int = 500
    kafka_request_timeout_ms: int = 30000
    publish_timeout_seconds: float = 5.0

    # Elasticsearch
    elasticsearch_url: str = "http://localhost:9200"
    es_index_prefix: str = "forum"
    search_backend: Literal["elasticsearch", "memory"] = "elasticsearch"

    # Analytics store
    metrics_max_events: int = 10000
    metrics_max_time_series_points: int = 1000
    metrics_retention_days: int = 30

    dedup_window_size: int = 10000

    @property
    def kafka_bootstrap_servers(self) -> List[str]:
        return [b.strip() for b in self.kafka_brokers.split(",") if b.strip()]

    @property
    def content_index(self) -> str:
        return f"{self.es_index_prefix}-content"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT,
                        datefmt=LOG_DATEFMT)
