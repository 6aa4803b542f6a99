import pytest

from signal_engine.cache.flow_store import PriorityFlowStore
from signal_engine.cache.redis_client import StoreClient
from signal_engine.cache.timeframe_store import TimeframeCacheStore
from signal_engine.orchestrator.refresh_schedule import RefreshScheduler
from tests.fakes import FakeClock, FakeRedis, utc


@pytest.fixture
def clock():
    # Mid-block, outside any due window
    return FakeClock(utc(2024, 3, 14, 9, 30))


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def client(fake_redis):
    return StoreClient(redis=fake_redis)


@pytest.fixture
def scheduler(clock):
    return RefreshScheduler(clock)


@pytest.fixture
def flow_store(client, clock):
    return PriorityFlowStore(client, clock=clock)


@pytest.fixture
def timeframe_store(client, scheduler):
    return TimeframeCacheStore(client, scheduler)
