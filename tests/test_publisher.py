import asyncio

import pytest

from queue_api.models import CheckInStatus
from queue_api.publisher import ViewPublisher
from queue_api.schemas import QueueEntryView


def entry(id, position, wait=0, patient_id=None):
    return QueueEntryView(id=id, patient_id=patient_id or f"P-{id}", patient_name=f"Patient {id}",
                          appointment_type="WalkIn", position=position, estimated_wait=wait,
                          status=CheckInStatus.WAITING)


@pytest.mark.asyncio
async def test_first_value_is_empty_view_before_any_publish():
    publisher = ViewPublisher()
    subscription = publisher.subscribe("Cardiology")

    view = await subscription.get()

    assert view.department == "Cardiology"
    assert view.version == 0
    assert view.entries == []


@pytest.mark.asyncio
async def test_subscriber_sees_every_version_in_order():
    publisher = ViewPublisher()
    subscription = publisher.subscribe("Cardiology")
    publisher.publish("Cardiology", [entry("a", 1)])
    publisher.publish("Cardiology", [entry("a", 1), entry("b", 2, 25)])
    publisher.publish("Cardiology", [entry("b", 1)])

    versions = [(await subscription.get()).version for _ in range(4)]

    assert versions == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_unchanged_view_is_not_rebroadcast():
    publisher = ViewPublisher()
    assert publisher.publish("Cardiology", [entry("a", 1)]) is not None
    subscription = publisher.subscribe("Cardiology")

    assert publisher.publish("Cardiology", [entry("a", 1)]) is None
    assert subscription.delivered == 1
    assert publisher.current("Cardiology").version == 1


@pytest.mark.asyncio
async def test_departments_are_isolated():
    publisher = ViewPublisher()
    cardiology = publisher.subscribe("Cardiology")
    ent = publisher.subscribe("ENT")
    publisher.publish("Cardiology", [entry("a", 1)])

    assert cardiology.delivered == 2
    assert ent.delivered == 1


@pytest.mark.asyncio
async def test_patient_subscription_gets_patient_view():
    publisher = ViewPublisher()
    subscription = publisher.subscribe("Cardiology", patient_id="P-b")
    publisher.publish("Cardiology", [entry("a", 1), entry("b", 2, 25)])

    first = await subscription.get()
    second = await subscription.get()

    assert first.in_queue is False and first.entry is None
    assert second.in_queue is True
    assert second.entry.position == 2
    assert second.entry.estimated_wait == 25


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    publisher = ViewPublisher()
    subscription = publisher.subscribe("Cardiology")
    await subscription.get()

    assert publisher.unsubscribe(subscription.handle) is True
    publisher.publish("Cardiology", [entry("a", 1)])

    assert await subscription.get() is None
    assert publisher.subscriber_count("Cardiology") == 0
    assert publisher.unsubscribe(subscription) is False


@pytest.mark.asyncio
async def test_iteration_ends_on_unsubscribe():
    publisher = ViewPublisher()
    subscription = publisher.subscribe("Cardiology")
    seen = []

    async def consume():
        async for view in subscription:
            seen.append(view.version)

    task = asyncio.create_task(consume())
    publisher.publish("Cardiology", [entry("a", 1)])
    await subscription.join()
    publisher.unsubscribe(subscription)
    await asyncio.wait_for(task, timeout=1)

    assert seen == [0, 1]


@pytest.mark.asyncio
async def test_sink_receives_views():
    publisher = ViewPublisher()
    received = []

    async def sink(view):
        received.append(view.version)

    subscription = publisher.subscribe("Cardiology", sink=sink)
    publisher.publish("Cardiology", [entry("a", 1)])
    await subscription.join()

    assert received == [0, 1]
    await publisher.close()


@pytest.mark.asyncio
async def test_failing_sink_only_drops_itself():
    publisher = ViewPublisher()
    received = []

    async def broken(view):
        raise ConnectionError("socket closed")

    async def healthy(view):
        received.append(view.version)

    bad = publisher.subscribe("Cardiology", sink=broken)
    good = publisher.subscribe("Cardiology", sink=healthy)
    await bad.join()

    publisher.publish("Cardiology", [entry("a", 1)])
    await good.join()

    assert bad.closed is True
    assert received == [0, 1]
    assert publisher.subscriber_count("Cardiology") == 1
    await publisher.close()
