"""
Live view publisher.

Keeps the materialized queue view of every department and fans it out to
subscribers. Each subscriber owns an unbounded FIFO queue, so publishing
never waits on a slow reader and no reader skips or reorders a view.

A subscriber either iterates its subscription:

    async for view in publisher.subscribe("Cardiology"):
        ...

or hands over a `sink` coroutine that a per-subscriber task awaits for
every view.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .schemas import PatientQueueView, QueueEntryView, QueueView

logger = logging.getLogger(__name__)

View = Union[QueueView, PatientQueueView]
Sink = Callable[[View], Awaitable[None]]

_CLOSED = object()


class Subscription:

    def __init__(self, department: str, patient_id: Optional[str] = None):
        self.handle = uuid.uuid4().hex
        self.department = department
        self.patient_id = patient_id
        self.closed = False
        self.delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    @property
    def is_patient_view(self) -> bool:
        return self.patient_id is not None

    def deliver(self, view: QueueView):
        if self.closed:
            return
        payload = view.for_patient(self.patient_id) if self.is_patient_view else view
        self._queue.put_nowait(payload)
        self.delivered += 1

    def close(self):
        if self.closed:
            return
        self.closed = True
        # Drop undelivered views; the sentinel ends iteration and the pump
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[View]:
        """Next view, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        self._queue.task_done()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> View:
        view = await self.get()
        if view is None:
            raise StopAsyncIteration
        return view

    async def join(self):
        """Wait until every view queued so far has been taken (or sunk)."""
        await self._queue.join()


class ViewPublisher:

    def __init__(self):
        self._views: Dict[str, QueueView] = {}
        self._subscribers: Dict[str, Dict[str, Subscription]] = {}

    def current(self, department: str) -> Optional[QueueView]:
        return self._views.get(department)

    def publish(self, department: str, entries: List[QueueEntryView],
                serving: Optional[QueueEntryView] = None) -> Optional[QueueView]:
        """
        Replace the department's view and broadcast it.

        Returns the new view, or None when nothing changed (nothing is sent).
        """
        previous = self._views.get(department)
        candidate = QueueView(department=department, entries=entries, serving=serving,
                              version=previous.version + 1 if previous else 1)
        if candidate.same_content(previous):
            return None
        self._views[department] = candidate

        subscribers = list(self._subscribers.get(department, {}).values())
        for subscription in subscribers:
            subscription.deliver(candidate)
        logger.debug("Published %s v%d to %d subscribers", department, candidate.version, len(subscribers))
        return candidate

    def subscribe(self, department: str, patient_id: Optional[str] = None,
                  sink: Optional[Sink] = None) -> Subscription:
        """Register a subscriber; the current view is queued for it straight away."""
        subscription = Subscription(department, patient_id)
        self._subscribers.setdefault(department, {})[subscription.handle] = subscription

        view = self._views.get(department)
        if view is None:
            view = QueueView(department=department, version=0)
        subscription.deliver(view)

        if sink is not None:
            subscription._pump = asyncio.create_task(self._pump(subscription, sink))
        logger.info("Subscriber %s joined %s%s (total: %d)", subscription.handle, department,
                    f" for patient {patient_id}" if patient_id else "",
                    len(self._subscribers[department]))
        return subscription

    def unsubscribe(self, subscription: Union[Subscription, str]) -> bool:
        handle = subscription.handle if isinstance(subscription, Subscription) else subscription
        for department, subscribers in self._subscribers.items():
            found = subscribers.pop(handle, None)
            if found is not None:
                found.close()
                logger.info("Subscriber %s left %s (total: %d)", handle, department, len(subscribers))
                return True
        return False

    def subscriber_count(self, department: Optional[str] = None) -> int:
        if department is not None:
            return len(self._subscribers.get(department, {}))
        return sum(len(s) for s in self._subscribers.values())

    async def close(self):
        pumps = []
        for subscribers in self._subscribers.values():
            for subscription in subscribers.values():
                subscription.close()
                if subscription._pump is not None:
                    pumps.append(subscription._pump)
        self._subscribers.clear()
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

    async def _pump(self, subscription: Subscription, sink: Sink):
        queue = subscription._queue
        while True:
            item = await queue.get()
            try:
                if item is _CLOSED:
                    return
                await sink(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A broken sink only loses its own subscription
                logger.warning("Dropping subscriber %s after failed delivery: %s", subscription.handle, e)
                self.unsubscribe(subscription)
            finally:
                queue.task_done()
