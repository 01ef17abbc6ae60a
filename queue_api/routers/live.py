"""
WebSocket endpoints for live queue views.

/ws/departments/{department}
    Staff screen: the whole department's queue, every time it changes.

/ws/departments/{department}/patients/{patient_id}
    Patient screen: position and wait of one patient, or in_queue=false.

The current view is sent as soon as the socket is accepted. Clients may
send {"type": "ping"} and get {"type": "pong"} back; anything else is
ignored.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..engine import QueueEngine
from ..errors import QueueError
from ..publisher import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _send_loop(websocket: WebSocket, subscription: Subscription):
    async for view in subscription:
        await websocket.send_json(view.model_dump(mode="json"))


async def _receive_loop(websocket: WebSocket):
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError as e:
                logger.warning("Invalid JSON received: %s", e)
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass


async def _stream(websocket: WebSocket, department: str, patient_id: Optional[str] = None):
    engine: QueueEngine = websocket.app.state.engine
    await websocket.accept()
    try:
        subscription = await engine.subscribe(department, patient_id=patient_id)
    except QueueError as e:
        logger.error("Could not open live stream for %s: %s", department, e.message)
        # Close reasons are capped at 123 bytes
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason=e.message[:120])
        return

    send_task = asyncio.create_task(_send_loop(websocket, subscription))
    receive_task = asyncio.create_task(_receive_loop(websocket))
    try:
        # Either side finishing means the connection is over
        done, pending = await asyncio.wait([send_task, receive_task], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("Live stream for %s ended: %s", department, task.exception())
    finally:
        engine.unsubscribe(subscription)
        for task in (send_task, receive_task):
            task.cancel()
        await asyncio.gather(send_task, receive_task, return_exceptions=True)


@router.websocket("/ws/departments/{department}")
async def department_stream(websocket: WebSocket, department: str):
    await _stream(websocket, department)


@router.websocket("/ws/departments/{department}/patients/{patient_id}")
async def patient_stream(websocket: WebSocket, department: str, patient_id: str):
    await _stream(websocket, department, patient_id)
