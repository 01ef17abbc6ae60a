"""
Queue engine: the single entry point for every queue mutation.

Each department has its own asyncio.Lock. Under that lock a mutation, the
recomputation of the department's waiting set and the hand-off of the new
view to the publisher happen as one unit, so no reader sees a status
without the positions that go with it, and no subscriber sees views out of
order. Departments never wait on each other: store calls run in worker
threads, so a slow query in one department does not hold up the loop.

A mutation is planned in memory and written with a single store call; if
that call fails nothing has changed and nothing is published.
"""
import asyncio
import logging
import uuid
from contextlib import aclosing
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import config
from .errors import ConflictError, NotFoundError, StoreUnavailableError
from .lifecycle import transition_fields, validate_transition
from .models import AppointmentType, CheckInStatus
from .ordering import FlatWaitEstimator, build_estimator, compute_placements, order_waiting, placement_updates, utcnow
from .priority import normalize_appointment_type
from .publisher import Sink, Subscription, ViewPublisher
from .schemas import CheckInRecord, PatientQueueView, QueueEntryView, QueueStatistics, QueueView
from .statistics import summarize
from .store import CheckInStore

logger = logging.getLogger(__name__)

WAITING = CheckInStatus.WAITING
IN_PROGRESS = CheckInStatus.IN_PROGRESS
ACTIVE = (WAITING, IN_PROGRESS)


class DepartmentLocks:
    """Lazily created, never evicted; the set of departments is small."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, department: str) -> asyncio.Lock:
        lock = self._locks.get(department)
        if lock is None:
            lock = self._locks[department] = asyncio.Lock()
        return lock

    def __contains__(self, department: str) -> bool:
        return department in self._locks

    def __len__(self) -> int:
        return len(self._locks)


def entry_view(record: CheckInRecord, position: Optional[int] = None,
               estimated_wait: Optional[int] = None) -> QueueEntryView:
    return QueueEntryView(
        id=record.id,
        patient_id=record.patient_id,
        patient_name=record.patient_name,
        appointment_type=record.appointment_type,
        position=position,
        estimated_wait=estimated_wait,
        status=record.status,
    )


class QueueEngine:

    def __init__(
        self,
        store: CheckInStore,
        estimator: Optional[FlatWaitEstimator] = None,
        publisher: Optional[ViewPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        follow_changes: bool = False,
    ):
        self.store = store
        self.estimator = estimator or build_estimator(config.WAIT_ESTIMATOR)
        self.publisher = publisher or ViewPublisher()
        self.clock = clock
        self.id_factory = id_factory
        self.follow_changes = follow_changes
        self.locks = DepartmentLocks()
        self._followers: Dict[str, asyncio.Task] = {}

    # --- INGRESS ---

    async def check_in(self, department: str, patient_id: str, patient_name: str,
                       appointment_type: Union[AppointmentType, str]) -> CheckInRecord:
        """Add a patient to the department's waiting line; the returned record carries its position."""
        if isinstance(appointment_type, AppointmentType):
            appointment_type = appointment_type.value
        record = CheckInRecord(
            id=self.id_factory(),
            patient_id=patient_id,
            patient_name=patient_name,
            department=department,
            appointment_type=appointment_type,
            status=WAITING,
            checked_in_at=self.clock(),
        )
        async with self.locks.get(department):
            active = await asyncio.to_thread(self.store.query, department, ACTIVE)
            if any(r.patient_id == patient_id for r in active):
                raise ConflictError(f"Patient {patient_id} is already in the {department} queue.")
            created = await self._commit(department, active, record, {}, create=True)
        logger.info("Checked in %s (%s) to %s at position %s",
                    patient_id, appointment_type, department, created.queue_position)
        return created

    async def update_status(self, check_in_id: str, new_status: Union[CheckInStatus, str],
                            notes: Optional[str] = None, reason: Optional[str] = None) -> CheckInRecord:
        new_status = CheckInStatus(new_status)
        department = (await self._require(check_in_id)).department
        async with self.locks.get(department):
            # Re-read: another transition may have landed while we waited for the lock
            record = await self._require(check_in_id)
            active = await asyncio.to_thread(self.store.query, department, ACTIVE)
            return await self._transition(record, active, new_status, notes=notes, reason=reason)

    async def call_next(self, department: str) -> Optional[CheckInRecord]:
        """Start the consult of whoever heads the queue; None if nobody is waiting."""
        async with self.locks.get(department):
            active = await asyncio.to_thread(self.store.query, department, ACTIVE)
            ordered = order_waiting(active)
            if not ordered:
                return None
            return await self._transition(ordered[0], active, IN_PROGRESS)

    async def correct_priority(self, check_in_id: str,
                               appointment_type: Union[AppointmentType, str]) -> CheckInRecord:
        """Staff correction of a waiting patient's tier; the booked appointment type is kept."""
        override = normalize_appointment_type(appointment_type)
        if override is None:
            raise ValueError(f"Unknown appointment type: {appointment_type!r}")
        department = (await self._require(check_in_id)).department
        async with self.locks.get(department):
            record = await self._require(check_in_id)
            if record.status != WAITING:
                raise NotFoundError(f"Check-in {check_in_id} is not in the waiting queue.")
            active = await asyncio.to_thread(self.store.query, department, ACTIVE)
            updated = await self._commit(department, active, record, {"priority_override": override})
        logger.info("Priority of %s in %s corrected to %s", check_in_id, department, override)
        return updated

    # --- READS ---

    def get(self, check_in_id: str) -> CheckInRecord:
        """Blocking read, for callers already off the event loop."""
        record = self.store.get(check_in_id)
        if record is None:
            raise NotFoundError(f"Check-in {check_in_id} not found.")
        return record

    async def refresh(self, department: str) -> Optional[QueueView]:
        """Recompute from the store; returns the new view if it changed."""
        async with self.locks.get(department):
            return await self._recompute(department)

    async def department_view(self, department: str) -> QueueView:
        await self.refresh(department)
        return self.publisher.current(department)

    async def patient_view(self, department: str, patient_id: str) -> PatientQueueView:
        view = await self.department_view(department)
        return view.for_patient(patient_id)

    async def statistics(self, day: Optional[date] = None, department: Optional[str] = None) -> QueueStatistics:
        day = day or self.clock().date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        records = await asyncio.to_thread(self.store.list_between, start, start + timedelta(days=1), department)
        return summarize(records, day, department)

    # --- SUBSCRIPTIONS ---

    async def subscribe(self, department: str, patient_id: Optional[str] = None,
                        sink: Optional[Sink] = None) -> Subscription:
        async with self.locks.get(department):
            if self.publisher.current(department) is None:
                await self._recompute(department)
            subscription = self.publisher.subscribe(department, patient_id=patient_id, sink=sink)
        if self.follow_changes:
            self.follow(department)
        return subscription

    def unsubscribe(self, subscription: Union[Subscription, str]) -> bool:
        return self.publisher.unsubscribe(subscription)

    def follow(self, department: str) -> asyncio.Task:
        """Recompute whenever the store reports a change made outside this engine."""
        task = self._followers.get(department)
        if task is None or task.done():
            task = self._followers[department] = asyncio.create_task(self._follow(department))
        return task

    async def _follow(self, department: str):
        async with aclosing(self.store.watch(department, WAITING)) as snapshots:
            async for _snapshot in snapshots:
                try:
                    await self.refresh(department)
                except StoreUnavailableError as e:
                    logger.warning("Could not refresh %s after store change: %s", department, e)

    async def close(self):
        followers = list(self._followers.values())
        self._followers.clear()
        for task in followers:
            task.cancel()
        await asyncio.gather(*followers, return_exceptions=True)
        await self.publisher.close()

    # --- INTERNALS (caller holds the department lock) ---

    async def _require(self, check_in_id: str) -> CheckInRecord:
        record = await asyncio.to_thread(self.store.get, check_in_id)
        if record is None:
            raise NotFoundError(f"Check-in {check_in_id} not found.")
        return record

    async def _transition(self, record: CheckInRecord, active: List[CheckInRecord], new_status: CheckInStatus,
                          notes: Optional[str] = None, reason: Optional[str] = None) -> CheckInRecord:
        in_progress = [r for r in active if r.status == IN_PROGRESS]
        validate_transition(record, new_status, in_progress)
        fields = transition_fields(record, new_status, self.clock(), notes=notes, reason=reason)
        updated = await self._commit(record.department, active, record, fields)
        logger.info("Check-in %s in %s: %s -> %s", record.id, record.department,
                    record.status.value, new_status.value)
        return updated

    def _plan(self, department: str, active: List[CheckInRecord]) -> Tuple[Dict[str, dict], List[QueueEntryView],
                                                                          Optional[QueueEntryView]]:
        """Derived-field updates for the active records, plus the view they add up to."""
        waiting = [r for r in active if r.status == WAITING]
        serving = next((r for r in active if r.status == IN_PROGRESS), None)

        placements = compute_placements(department, waiting, self.estimator, serving, self.clock())
        updates = placement_updates(active, placements)

        entries = []
        for record in order_waiting(waiting):
            placement = placements[record.id]
            entries.append(entry_view(record, placement.position, placement.estimated_wait))
        serving_entry = entry_view(serving) if serving else None
        return updates, entries, serving_entry

    async def _commit(self, department: str, active: List[CheckInRecord], record: CheckInRecord,
                      fields: dict, create: bool = False) -> CheckInRecord:
        """Write `record` with `fields`, and every position it shifts, in one store call; then publish."""
        changed = record.model_copy(update=fields)
        after = [r for r in active if r.id != record.id]
        if changed.status in ACTIVE:
            after.append(changed)
        updates, entries, serving = self._plan(department, after)

        placement = updates.pop(record.id, {})
        result = changed.model_copy(update=placement)
        if create:
            await asyncio.to_thread(self.store.update_many, updates, create=result)
        else:
            updates[record.id] = {**fields, **placement}
            await asyncio.to_thread(self.store.update_many, updates)

        self.publisher.publish(department, entries, serving)
        return result

    async def _recompute(self, department: str) -> Optional[QueueView]:
        active = await asyncio.to_thread(self.store.query, department, ACTIVE)
        updates, entries, serving = self._plan(department, active)
        if updates:
            await asyncio.to_thread(self.store.update_many, updates)
        return self.publisher.publish(department, entries, serving)
