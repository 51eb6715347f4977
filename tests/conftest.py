import asyncio
import datetime
import uuid

import pytest

from src.config import Settings
from src.models import Envelope


def create_mock_envelope(event_name, payload, event_id=None, emitted_at=None):
    return Envelope(
        event_name=getattr(event_name, "value", event_name),
        emitted_at=emitted_at or datetime.datetime.now(datetime.timezone.utc),
        payload=payload,
        event_id=event_id if event_id else str(uuid.uuid4()),
        source="test-suite",
    )


async def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="test",
        kafka_enabled=False,
        search_backend="memory",
        kafka_poll_timeout_ms=10,
        publish_timeout_seconds=0.2,
        dedup_window_size=100,
    )


@pytest.fixture
def make_envelope():
    return create_mock_envelope


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
