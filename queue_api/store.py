"""
Check-in store adapters.

The queue engine only needs a keyed collection of check-ins that can be
created, updated field by field, queried per department and status, and
watched for changes. `SqlCheckInStore` keeps them in a SQL database through
SQLAlchemy; `InMemoryCheckInStore` keeps them in process memory and pushes
changes to watchers directly.
"""
import asyncio
import logging
import threading
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import config
from .database import Base, SessionLocal, engine as default_engine
from .errors import NotFoundError, StoreUnavailableError
from .models import CheckIn, CheckInStatus
from .schemas import CheckInRecord

logger = logging.getLogger(__name__)

Snapshot = List[CheckInRecord]

IMMUTABLE_FIELDS = {"id", "patient_id", "patient_name", "department", "appointment_type", "checked_in_at"}


def _status_values(statuses: Optional[Iterable[CheckInStatus]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [CheckInStatus(s).value for s in statuses]


def _check_mutable(fields: dict) -> dict:
    frozen = IMMUTABLE_FIELDS.intersection(fields)
    if frozen:
        raise ValueError(f"Check-in fields are immutable: {', '.join(sorted(frozen))}")
    if "status" in fields:
        fields = dict(fields, status=CheckInStatus(fields["status"]))
    return fields


class CheckInStore:
    """Interface every store adapter implements."""

    def create(self, record: CheckInRecord) -> CheckInRecord:
        raise NotImplementedError

    def get(self, check_in_id: str) -> Optional[CheckInRecord]:
        raise NotImplementedError

    def update_fields(self, check_in_id: str, **fields) -> CheckInRecord:
        raise NotImplementedError

    def update_many(self, updates: Dict[str, dict], create: Optional[CheckInRecord] = None) -> None:
        """
        Apply several field updates, and optionally insert `create`, as one write.

        Either everything is written or nothing is.
        """
        raise NotImplementedError

    def query(self, department: str, statuses: Optional[Iterable[CheckInStatus]] = None,
              patient_id: Optional[str] = None) -> Snapshot:
        """Records of a department, oldest check-in first."""
        raise NotImplementedError

    def list_between(self, start: datetime, end: datetime, department: Optional[str] = None) -> Snapshot:
        raise NotImplementedError

    def watch(self, department: str, status: CheckInStatus = CheckInStatus.WAITING) -> AsyncIterator[Snapshot]:
        """Full snapshot now, then a new one after every change."""
        raise NotImplementedError


# =================================================================
# SQL store
# =================================================================

class SqlCheckInStore(CheckInStore):

    def __init__(self, session_factory=SessionLocal, bind=default_engine,
                 watch_interval: float = config.WATCH_INTERVAL):
        self.session_factory = session_factory
        self.bind = bind
        self.watch_interval = watch_interval

    def create_tables(self):
        Base.metadata.create_all(bind=self.bind)

    def create(self, record: CheckInRecord) -> CheckInRecord:
        try:
            with self.session_factory() as db:
                row = CheckIn(**record.model_dump())
                row.status = record.status.value
                db.add(row)
                db.commit()
                db.refresh(row)
                return CheckInRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.exception("Failed to create check-in %s", record.id)
            raise StoreUnavailableError(f"Could not save check-in: {e.__class__.__name__}") from e

    def get(self, check_in_id: str) -> Optional[CheckInRecord]:
        try:
            with self.session_factory() as db:
                row = db.get(CheckIn, check_in_id)
                return CheckInRecord.model_validate(row) if row else None
        except SQLAlchemyError as e:
            logger.exception("Failed to read check-in %s", check_in_id)
            raise StoreUnavailableError(f"Could not read check-in: {e.__class__.__name__}") from e

    def update_fields(self, check_in_id: str, **fields) -> CheckInRecord:
        fields = _check_mutable(fields)
        try:
            with self.session_factory() as db:
                row = db.get(CheckIn, check_in_id)
                if row is None:
                    raise NotFoundError(f"Check-in {check_in_id} not found.")
                for name, value in fields.items():
                    if name == "status":
                        value = value.value
                    setattr(row, name, value)
                db.commit()
                db.refresh(row)
                return CheckInRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.exception("Failed to update check-in %s", check_in_id)
            raise StoreUnavailableError(f"Could not update check-in: {e.__class__.__name__}") from e

    def update_many(self, updates: Dict[str, dict], create: Optional[CheckInRecord] = None) -> None:
        if not updates and create is None:
            return
        updates = {i: _check_mutable(f) for i, f in updates.items()}
        try:
            # Leaving the session without commit rolls everything back
            with self.session_factory() as db:
                if create is not None:
                    row = CheckIn(**create.model_dump())
                    row.status = create.status.value
                    db.add(row)
                for check_in_id, fields in updates.items():
                    if "status" in fields:
                        fields = dict(fields, status=fields["status"].value)
                    matched = db.query(CheckIn).filter(CheckIn.id == check_in_id).update(
                        fields, synchronize_session=False)
                    if not matched:
                        raise NotFoundError(f"Check-in {check_in_id} not found.")
                db.commit()
        except SQLAlchemyError as e:
            logger.exception("Failed to apply %d check-in updates", len(updates))
            raise StoreUnavailableError(f"Could not update check-ins: {e.__class__.__name__}") from e

    def query(self, department: str, statuses: Optional[Iterable[CheckInStatus]] = None,
              patient_id: Optional[str] = None) -> Snapshot:
        try:
            with self.session_factory() as db:
                q = db.query(CheckIn).filter(CheckIn.department == department)
                values = _status_values(statuses)
                if values is not None:
                    q = q.filter(CheckIn.status.in_(values))
                if patient_id is not None:
                    q = q.filter(CheckIn.patient_id == patient_id)
                rows = q.order_by(CheckIn.checked_in_at, CheckIn.id).all()
                return [CheckInRecord.model_validate(r) for r in rows]
        except SQLAlchemyError as e:
            logger.exception("Failed to query check-ins for %s", department)
            raise StoreUnavailableError(f"Could not query check-ins: {e.__class__.__name__}") from e

    def list_between(self, start: datetime, end: datetime, department: Optional[str] = None) -> Snapshot:
        try:
            with self.session_factory() as db:
                q = db.query(CheckIn).filter(CheckIn.checked_in_at >= start, CheckIn.checked_in_at < end)
                if department is not None:
                    q = q.filter(CheckIn.department == department)
                rows = q.order_by(CheckIn.checked_in_at, CheckIn.id).all()
                return [CheckInRecord.model_validate(r) for r in rows]
        except SQLAlchemyError as e:
            logger.exception("Failed to list check-ins")
            raise StoreUnavailableError(f"Could not list check-ins: {e.__class__.__name__}") from e

    async def watch(self, department: str, status: CheckInStatus = CheckInStatus.WAITING) -> AsyncIterator[Snapshot]:
        # Polling: emit whenever the filtered snapshot differs from the last one
        last = None
        while True:
            try:
                snapshot = await asyncio.to_thread(self.query, department, (status,))
            except StoreUnavailableError:
                logger.warning("Watch on %s skipped a poll, store unavailable", department)
            else:
                if snapshot != last:
                    last = snapshot
                    yield snapshot
            await asyncio.sleep(self.watch_interval)


# =================================================================
# In-memory store
# =================================================================

class _Watcher:
    def __init__(self, department: str, status: CheckInStatus):
        self.department = department
        self.status = status
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue()


class InMemoryCheckInStore(CheckInStore):

    def __init__(self):
        self._records: Dict[str, CheckInRecord] = {}
        self._lock = threading.Lock()
        self._watchers: List[_Watcher] = []

    def reset(self):
        with self._lock:
            self._records.clear()

    def create(self, record: CheckInRecord) -> CheckInRecord:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Check-in {record.id} already exists")
            self._records[record.id] = record.model_copy()
        self._notify({record.department})
        return record.model_copy()

    def get(self, check_in_id: str) -> Optional[CheckInRecord]:
        with self._lock:
            record = self._records.get(check_in_id)
            return record.model_copy() if record else None

    def update_fields(self, check_in_id: str, **fields) -> CheckInRecord:
        fields = _check_mutable(fields)
        with self._lock:
            record = self._records.get(check_in_id)
            if record is None:
                raise NotFoundError(f"Check-in {check_in_id} not found.")
            updated = record.model_copy(update=fields)
            self._records[check_in_id] = updated
        self._notify({updated.department})
        return updated.model_copy()

    def update_many(self, updates: Dict[str, dict], create: Optional[CheckInRecord] = None) -> None:
        if not updates and create is None:
            return
        updates = {i: _check_mutable(f) for i, f in updates.items()}
        departments = set()
        with self._lock:
            # Check everything before touching anything
            if create is not None and create.id in self._records:
                raise ValueError(f"Check-in {create.id} already exists")
            missing = [i for i in updates if i not in self._records]
            if missing:
                raise NotFoundError(f"Check-in {missing[0]} not found.")
            if create is not None:
                self._records[create.id] = create.model_copy()
                departments.add(create.department)
            for check_in_id, fields in updates.items():
                updated = self._records[check_in_id].model_copy(update=fields)
                self._records[check_in_id] = updated
                departments.add(updated.department)
        self._notify(departments)

    def query(self, department: str, statuses: Optional[Iterable[CheckInStatus]] = None,
              patient_id: Optional[str] = None) -> Snapshot:
        wanted = set(_status_values(statuses) or []) if statuses is not None else None
        with self._lock:
            found = [
                r.model_copy() for r in self._records.values()
                if r.department == department
                and (wanted is None or r.status.value in wanted)
                and (patient_id is None or r.patient_id == patient_id)
            ]
        return sorted(found, key=lambda r: (r.checked_in_at, r.id))

    def list_between(self, start: datetime, end: datetime, department: Optional[str] = None) -> Snapshot:
        with self._lock:
            found = [
                r.model_copy() for r in self._records.values()
                if start <= r.checked_in_at < end
                and (department is None or r.department == department)
            ]
        return sorted(found, key=lambda r: (r.checked_in_at, r.id))

    def _notify(self, departments):
        for watcher in list(self._watchers):
            if watcher.department in departments:
                snapshot = self.query(watcher.department, (watcher.status,))
                watcher.loop.call_soon_threadsafe(watcher.queue.put_nowait, snapshot)

    async def watch(self, department: str, status: CheckInStatus = CheckInStatus.WAITING) -> AsyncIterator[Snapshot]:
        watcher = _Watcher(department, status)
        self._watchers.append(watcher)
        try:
            yield self.query(department, (status,))
            while True:
                yield await watcher.queue.get()
        finally:
            self._watchers.remove(watcher)
