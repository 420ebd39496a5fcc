"""
Test configuration and fixtures
"""
import pytest

from fakes import FakeChain
from txwatch.engine import SyncEngine
from txwatch.store import InMemorySubscriberStore


@pytest.fixture
def chain():
    return FakeChain(head=1000)


@pytest.fixture
def store():
    return InMemorySubscriberStore()


@pytest.fixture
def engine(chain, store):
    return SyncEngine(chain, store)
