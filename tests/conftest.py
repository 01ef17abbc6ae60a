import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from queue_api.engine import QueueEngine
from queue_api.main import create_app
from queue_api.ordering import FlatWaitEstimator
from queue_api.store import InMemoryCheckInStore

# Cardiology 25 min per consult, everything else 20
SERVICE_MINUTES = {"Cardiology": 25, "ENT": 15}


class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, start=datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, minutes=0, seconds=0):
        self.now += timedelta(minutes=minutes, seconds=seconds)


# --- 1. SETUP FIXTURES ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryCheckInStore()


@pytest.fixture
def estimator():
    return FlatWaitEstimator(service_minutes=SERVICE_MINUTES, default_minutes=20)


@pytest.fixture
def queue_engine(store, estimator, clock):
    counter = itertools.count(1)
    return QueueEngine(store, estimator=estimator, clock=clock,
                       id_factory=lambda: f"c{next(counter):03d}")


@pytest.fixture
def client():
    app = create_app(store=InMemoryCheckInStore(), follow_changes=False)
    with TestClient(app) as c:
        yield c
