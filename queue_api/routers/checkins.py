# queue_api/routers/checkins.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status

from .. import schemas
from ..engine import QueueEngine

router = APIRouter(
    tags=["Queue"],
    responses={404: {"description": "Not found"}},
)


def get_engine(request: Request) -> QueueEngine:
    return request.app.state.engine


# --- CHECK-INS ---

@router.post("/checkins", response_model=schemas.CheckInRecord, status_code=status.HTTP_201_CREATED)
async def check_in(payload: schemas.CheckInCreate, engine: QueueEngine = Depends(get_engine)):
    return await engine.check_in(
        department=payload.department,
        patient_id=payload.patient_id,
        patient_name=payload.patient_name,
        appointment_type=payload.appointment_type,
    )


@router.get("/checkins/{check_in_id}", response_model=schemas.CheckInRecord)
def read_check_in(check_in_id: str, engine: QueueEngine = Depends(get_engine)):
    return engine.get(check_in_id)


@router.patch("/checkins/{check_in_id}/status", response_model=schemas.CheckInRecord)
async def update_status(check_in_id: str, update: schemas.StatusUpdate,
                        engine: QueueEngine = Depends(get_engine)):
    return await engine.update_status(check_in_id, update.status, notes=update.notes, reason=update.reason)


@router.patch("/checkins/{check_in_id}/priority", response_model=schemas.CheckInRecord)
async def correct_priority(check_in_id: str, correction: schemas.PriorityCorrection,
                           engine: QueueEngine = Depends(get_engine)):
    return await engine.correct_priority(check_in_id, correction.appointment_type)


# --- DEPARTMENTS ---

@router.post("/departments/{department}/call-next", response_model=schemas.CheckInRecord,
             responses={204: {"description": "Nobody is waiting"}})
async def call_next(department: str, engine: QueueEngine = Depends(get_engine)):
    called = await engine.call_next(department)
    if called is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return called


@router.get("/departments/{department}/queue", response_model=schemas.QueueView)
async def read_queue(department: str, engine: QueueEngine = Depends(get_engine)):
    return await engine.department_view(department)


@router.get("/departments/{department}/patients/{patient_id}", response_model=schemas.PatientQueueView)
async def read_patient_view(department: str, patient_id: str, engine: QueueEngine = Depends(get_engine)):
    return await engine.patient_view(department, patient_id)


# --- STATISTICS ---

@router.get("/statistics", response_model=schemas.QueueStatistics)
async def read_statistics(day: Optional[date] = None, department: Optional[str] = None,
                          engine: QueueEngine = Depends(get_engine)):
    return await engine.statistics(day=day, department=department)
