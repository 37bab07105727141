import os

os.environ["STORE_BACKEND"] = "memory"

import fakeredis
import pytest
from fastapi.testclient import TestClient

from backend import MemoryBackend, RedisBackend, store
from fakes import FakeClock, RecordingSleep
from room_manager import RoomManager


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def redis_store():
    return RedisBackend(client=fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def manager(memory_store):
    return RoomManager(memory_store)


@pytest.fixture
def app_store():
    store.flush()
    yield store
    store.flush()


@pytest.fixture
def client(app_store):
    from app import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
