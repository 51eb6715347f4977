import asyncio
from collections import namedtuple

import pytest
import pytest_asyncio
from aiokafka.structs import TopicPartition

from src.consumer import ConsumerRuntime, ConsumerState, DedupWindow
from src.exceptions import StoreUnavailableError
from src.models import EventName, KafkaTopic

Record = namedtuple("Record", "topic partition offset key value")

TOPIC = KafkaTopic.USER_EVENTS.value


class FakeKafkaConsumer:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.batches = []
        self.commits = []
        self.subscribed = []
        self.started = False
        self.fetch_errors = 0

    def subscribe(self, topics):
        self.subscribed = list(topics)

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def getmany(self, timeout_ms=0, max_records=None):
        if self.fetch_errors:
            self.fetch_errors -= 1
            raise ConnectionError("broker unreachable")
        if self.batches:
            return self.batches.pop(0)
        await asyncio.sleep(timeout_ms / 1000)
        return {}

    async def commit(self, offsets):
        self.commits.append(dict(offsets))


class RefusingKafkaConsumer(FakeKafkaConsumer):
    async def start(self):
        raise ConnectionError("no brokers available")


def factory_for(fake):
    """Consumer factory that hands out `fake` and keeps the client kwargs on it."""
    def factory(**kwargs):
        fake.kwargs = kwargs
        return fake
    return factory


def make_batch(*partitions):
    """partitions: (partition_number, [envelope, ...]) pairs."""
    batch = {}
    for number, envelopes in partitions:
        tp = TopicPartition(TOPIC, number)
        batch[tp] = [Record(TOPIC, number, offset, None, env.encode()) for offset, env in enumerate(envelopes)]
    return batch


class Recorder:
    def __init__(self):
        self.seen = []
        self.fail_on = set()
        self.store_down = False

    async def __call__(self, payload, envelope):
        if self.store_down:
            raise StoreUnavailableError("index unreachable")
        if envelope.event_id in self.fail_on:
            raise ValueError("handler bug")
        self.seen.append((envelope.event_name, envelope.event_id))


@pytest_asyncio.fixture
async def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def kafka():
    return FakeKafkaConsumer()


@pytest_asyncio.fixture
async def runtime(test_settings, recorder, kafka):
    rt = ConsumerRuntime(
        "test",
        [KafkaTopic.USER_EVENTS],
        {EventName.USER_REGISTERED: recorder, EventName.USER_LOGIN: recorder},
        test_settings,
        group_id="test-group",
        consumer_factory=factory_for(kafka),
    )
    yield rt
    await rt.stop()


def test_dedup_window_forgets_oldest():
    window = DedupWindow(2)
    assert not window.seen("a")
    assert not window.seen("b")
    assert window.seen("a")
    assert not window.seen("c")  # evicts b
    assert not window.seen("b")


@pytest.mark.asyncio
async def test_process_value_dispatches_by_event_name(runtime, recorder, make_envelope):
    env = make_envelope(EventName.USER_REGISTERED, {"userId": 1, "username": "ana"})
    assert await runtime.process_value(env.encode())
    assert recorder.seen == [("user.registered", env.event_id)]
    assert runtime.processed_count == 1


@pytest.mark.asyncio
async def test_duplicate_event_id_is_dropped(runtime, recorder, make_envelope):
    env = make_envelope(EventName.USER_LOGIN, {"userId": 1})
    await runtime.process_value(env.encode())
    await runtime.process_value(env.encode())

    stats = runtime.stats()
    assert stats.received == 2
    assert stats.processed == 1
    assert stats.duplicates == 1
    assert len(recorder.seen) == 1


@pytest.mark.asyncio
async def test_unknown_and_unhandled_events_are_ignored(runtime, recorder, make_envelope):
    await runtime.process_value(make_envelope("badge.awarded", {"userId": 1}).encode())
    await runtime.process_value(make_envelope(EventName.POST_CREATED, {"postId": 1, "topicId": 2}).encode())

    assert recorder.seen == []
    assert runtime.ignored_count == 2
    assert runtime.error_count == 0


@pytest.mark.asyncio
async def test_undecodable_record_counts_as_error(runtime):
    assert not await runtime.process_value(b"{not json")
    assert runtime.error_count == 1


@pytest.mark.asyncio
async def test_handler_error_is_counted_and_processing_continues(runtime, recorder, make_envelope):
    bad = make_envelope(EventName.USER_LOGIN, {"userId": 1})
    good = make_envelope(EventName.USER_LOGIN, {"userId": 2})
    recorder.fail_on.add(bad.event_id)

    assert not await runtime.process_value(bad.encode())
    assert await runtime.process_value(good.encode())
    assert runtime.error_count == 1
    assert recorder.seen == [("user.login", good.event_id)]


@pytest.mark.asyncio
async def test_start_subscribes_and_runs(runtime, kafka):
    await runtime.start()

    assert runtime.state is ConsumerState.RUNNING
    assert runtime.is_healthy()
    assert kafka.started
    assert kafka.subscribed == [TOPIC]
    assert kafka.kwargs["enable_auto_commit"] is False
    assert kafka.kwargs["group_id"] == "test-group"


@pytest.mark.asyncio
async def test_start_failure_returns_to_stopped(test_settings, recorder):
    rt = ConsumerRuntime("test", [KafkaTopic.USER_EVENTS], {EventName.USER_LOGIN: recorder},
                         test_settings, group_id="g", consumer_factory=RefusingKafkaConsumer)
    with pytest.raises(ConnectionError):
        await rt.start()
    assert rt.state is ConsumerState.STOPPED
    assert not rt.is_healthy()


@pytest.mark.asyncio
async def test_loop_processes_partitions_in_order_and_commits(runtime, recorder, kafka, make_envelope, wait_until):
    p0 = [make_envelope(EventName.USER_LOGIN, {"userId": 1}) for _ in range(3)]
    p1 = [make_envelope(EventName.USER_REGISTERED, {"userId": 2, "username": "bo"}) for _ in range(2)]
    kafka.batches.append(make_batch((0, p0), (1, p1)))

    await runtime.start()
    await wait_until(lambda: kafka.commits)

    assert [eid for name, eid in recorder.seen if name == "user.login"] == [e.event_id for e in p0]
    assert [eid for name, eid in recorder.seen if name == "user.registered"] == [e.event_id for e in p1]
    assert kafka.commits[0] == {TopicPartition(TOPIC, 0): 3, TopicPartition(TOPIC, 1): 2}


@pytest.mark.asyncio
async def test_failed_handler_still_advances_offset(runtime, recorder, kafka, make_envelope, wait_until):
    envs = [make_envelope(EventName.USER_LOGIN, {"userId": i}) for i in range(2)]
    recorder.fail_on.add(envs[0].event_id)
    kafka.batches.append(make_batch((0, envs)))

    await runtime.start()
    await wait_until(lambda: kafka.commits)

    assert kafka.commits[0] == {TopicPartition(TOPIC, 0): 2}
    assert runtime.error_count == 1


@pytest.mark.asyncio
async def test_stop_drains_in_flight_record_before_commit(test_settings, kafka, make_envelope):
    started = asyncio.Event()
    finished = []

    async def slow_handler(payload, envelope):
        started.set()
        await asyncio.sleep(0.1)
        finished.append(envelope.event_id)

    rt = ConsumerRuntime("test", [KafkaTopic.USER_EVENTS], {EventName.USER_LOGIN: slow_handler},
                         test_settings, group_id="g", consumer_factory=factory_for(kafka))
    env = make_envelope(EventName.USER_LOGIN, {"userId": 1})
    kafka.batches.append(make_batch((0, [env])))

    await rt.start()
    await started.wait()
    stopping = asyncio.create_task(rt.stop())
    await asyncio.sleep(0)
    assert rt.state is ConsumerState.DRAINING
    assert kafka.commits == []

    await stopping
    assert finished == [env.event_id]
    assert kafka.commits == [{TopicPartition(TOPIC, 0): 1}]
    assert rt.state is ConsumerState.STOPPED
    assert not kafka.started


@pytest.mark.asyncio
async def test_broker_outage_degrades_then_recovers(runtime, kafka, wait_until):
    kafka.fetch_errors = 1
    await runtime.start()
    await wait_until(lambda: runtime.state is ConsumerState.DEGRADED)
    assert not runtime.is_healthy()

    await wait_until(lambda: runtime.state is ConsumerState.RUNNING, timeout=3.0)
    assert runtime.is_healthy()


@pytest.mark.asyncio
async def test_store_outage_degrades_until_a_handler_succeeds(runtime, recorder, make_envelope):
    await runtime.start()

    recorder.store_down = True
    await runtime.process_value(make_envelope(EventName.USER_LOGIN, {"userId": 1}).encode())
    assert runtime.state is ConsumerState.DEGRADED
    assert runtime.error_count == 1

    recorder.store_down = False
    await runtime.process_value(make_envelope(EventName.USER_LOGIN, {"userId": 2}).encode())
    assert runtime.state is ConsumerState.RUNNING


@pytest.mark.asyncio
async def test_idle_consumer_recovers_when_store_comes_back(test_settings, recorder, kafka, make_envelope, wait_until):
    async def store_health():
        return not recorder.store_down

    rt = ConsumerRuntime("test", [KafkaTopic.USER_EVENTS], {EventName.USER_LOGIN: recorder},
                         test_settings, group_id="g", consumer_factory=factory_for(kafka),
                         store_health=store_health)
    await rt.start()
    try:
        recorder.store_down = True
        await rt.process_value(make_envelope(EventName.USER_LOGIN, {"userId": 1}).encode())
        assert rt.state is ConsumerState.DEGRADED
        assert rt.broker_connected()

        # No further records arrive; the poll loop notices the store is back.
        recorder.store_down = False
        await wait_until(lambda: rt.state is ConsumerState.RUNNING)
        assert rt.is_healthy()
    finally:
        await rt.stop()
    assert not rt.broker_connected()
