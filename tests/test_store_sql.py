import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from queue_api.database import build_engine
from queue_api.engine import QueueEngine
from queue_api.errors import NotFoundError, StoreUnavailableError
from queue_api.models import CheckInStatus
from queue_api.ordering import FlatWaitEstimator
from queue_api.schemas import CheckInRecord
from queue_api.store import SqlCheckInStore

T0 = datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def sql_store():
    engine = build_engine("sqlite://")
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    store = SqlCheckInStore(session_factory=TestingSessionLocal, bind=engine, watch_interval=0.01)
    store.create_tables()
    yield store
    engine.dispose()


def make_record(id, minutes=0, department="Cardiology", appointment_type="WalkIn"):
    return CheckInRecord(id=id, patient_id=f"P-{id}", patient_name=f"Patient {id}", department=department,
                         appointment_type=appointment_type, checked_in_at=T0 + timedelta(minutes=minutes))


def test_create_and_get_round_trip(sql_store):
    created = sql_store.create(make_record("a"))

    fetched = sql_store.get("a")
    assert fetched == created
    assert fetched.status == CheckInStatus.WAITING
    assert fetched.checked_in_at == T0
    assert sql_store.get("missing") is None


def test_query_filters_and_orders_by_arrival(sql_store):
    sql_store.create(make_record("late", minutes=5))
    sql_store.create(make_record("early", minutes=0))
    sql_store.create(make_record("other", department="ENT"))
    sql_store.update_fields("late", status=CheckInStatus.IN_PROGRESS)

    assert [r.id for r in sql_store.query("Cardiology")] == ["early", "late"]
    assert [r.id for r in sql_store.query("Cardiology", [CheckInStatus.WAITING])] == ["early"]
    assert [r.id for r in sql_store.query("Cardiology", patient_id="P-late")] == ["late"]


def test_update_fields_rules(sql_store):
    sql_store.create(make_record("a"))

    updated = sql_store.update_fields("a", status="cancelled", cancelled_at=T0)
    assert updated.status == CheckInStatus.CANCELLED
    assert updated.cancelled_at == T0

    with pytest.raises(ValueError):
        sql_store.update_fields("a", department="ENT")
    with pytest.raises(NotFoundError):
        sql_store.update_fields("missing", notes="x")


def test_update_many_is_applied_together(sql_store):
    sql_store.create(make_record("a"))
    sql_store.create(make_record("b", minutes=1))

    sql_store.update_many({
        "a": {"queue_position": 1, "estimated_wait": 0},
        "b": {"queue_position": 2, "estimated_wait": 25},
    })

    assert [(r.queue_position, r.estimated_wait) for r in sql_store.query("Cardiology")] == [(1, 0), (2, 25)]


def test_update_many_inserts_with_shifted_positions(sql_store):
    sql_store.create(make_record("a"))

    sql_store.update_many({"a": {"queue_position": 2}},
                          create=make_record("b", minutes=1, appointment_type="Emergency"))

    assert sql_store.get("a").queue_position == 2
    assert sql_store.get("b").status == CheckInStatus.WAITING


def test_update_many_rolls_back_on_missing_record(sql_store):
    sql_store.create(make_record("a"))

    with pytest.raises(NotFoundError):
        sql_store.update_many({"a": {"queue_position": 2}, "missing": {"queue_position": 3}},
                              create=make_record("b", minutes=1))

    assert sql_store.get("b") is None
    assert sql_store.get("a").queue_position is None


def test_list_between_bounds(sql_store):
    sql_store.create(make_record("yesterday", minutes=-60 * 24))
    sql_store.create(make_record("today", minutes=30))

    found = sql_store.list_between(T0 - timedelta(hours=8), T0 + timedelta(hours=16))

    assert [r.id for r in found] == ["today"]


def test_database_errors_become_store_unavailable(sql_store):
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    sql_store.session_factory = broken_session
    with pytest.raises(StoreUnavailableError):
        sql_store.get("a")
    with pytest.raises(StoreUnavailableError):
        sql_store.query("Cardiology")


@pytest.mark.asyncio
async def test_watch_emits_changed_snapshots(sql_store):
    snapshots = sql_store.watch("Cardiology")

    first = await asyncio.wait_for(snapshots.__anext__(), timeout=1)
    sql_store.create(make_record("a"))
    second = await asyncio.wait_for(snapshots.__anext__(), timeout=1)
    await snapshots.aclose()

    assert first == []
    assert [r.id for r in second] == ["a"]


@pytest.mark.asyncio
async def test_engine_on_sql_store(sql_store):
    engine = QueueEngine(sql_store, estimator=FlatWaitEstimator(service_minutes={"Cardiology": 25}),
                         clock=lambda: T0)
    a = await engine.check_in("Cardiology", "P-1", "Sarah Smith", "WalkIn")
    b = await engine.check_in("Cardiology", "P-2", "John Doe", "Emergency")

    assert sql_store.get(b.id).queue_position == 1
    assert sql_store.get(a.id).queue_position == 2
    assert sql_store.get(a.id).estimated_wait == 25

    await engine.update_status(b.id, CheckInStatus.CANCELLED)
    assert sql_store.get(a.id).queue_position == 1
    assert sql_store.get(b.id).queue_position is None
