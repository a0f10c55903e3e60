"""
Campus Bus Presence Service (FastAPI)

Purpose
=======
Keep the shared live state of a campus bus fleet in sync for three roles:
students (attendance and online presence, arrival notices), drivers (live
bus location) and admins (CRUD plus live dashboards).

Key features
------------
- Student login/logout with once-per-day attendance.
- Driver trips that publish the bus location from a synthetic or real
  position source.
- Admin CRUD for students, drivers and buses.
- Server-Sent Events (SSE) streams for a single bus (with arrival notices)
  and for the admin dashboard.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, AsyncIterator, Dict, Optional
import asyncio, json, os
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from arrival_notifier import ArrivalNotifier
from attendance_tracker import LOGIN_FAILED_MESSAGE, AttendanceTracker
from clock import Clock, LoopClock
from document_store import DocumentStore
from position_sources import position_source_from_env
from presence_store import (
    ConnectivityError,
    NotFoundError,
    PresenceStore,
    SubscriptionGroup,
)
from sessions import AdminSession, DriverSession

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
PRIMARY_DATA_DIR = DATA_DIRS[0]
_store_path_env = os.getenv("PRESENCE_STORE_PATH")
if _store_path_env is None:
    PRESENCE_STORE_PATH: Optional[Path] = PRIMARY_DATA_DIR / "presence.json"
else:
    PRESENCE_STORE_PATH = Path(_store_path_env) if _store_path_env.strip() else None

SSE_QUEUE_SIZE = int(os.getenv("SSE_QUEUE_SIZE", "10"))

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Campus Bus Presence")

CLOCK: Clock = LoopClock()
presence_store: Optional[PresenceStore] = None
attendance_tracker: Optional[AttendanceTracker] = None
DRIVER_SESSIONS: Dict[str, DriverSession] = {}


def _get_store() -> PresenceStore:
    global presence_store
    if presence_store is None:
        presence_store = PresenceStore(DocumentStore(PRESENCE_STORE_PATH, clock=CLOCK))
    return presence_store


def _get_tracker() -> AttendanceTracker:
    global attendance_tracker
    store = _get_store()
    if attendance_tracker is None or attendance_tracker.store is not store:
        attendance_tracker = AttendanceTracker(store, CLOCK)
    return attendance_tracker


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _bus_number(value: Any) -> str:
    return _clean(value).upper()


@app.on_event("shutdown")
async def shutdown_sessions() -> None:
    for bus_number, session in list(DRIVER_SESSIONS.items()):
        try:
            await session.close()
        except Exception as exc:
            print(f"[shutdown] failed to stop trip for {bus_number}: {exc}")
    DRIVER_SESSIONS.clear()
    if presence_store is not None and isinstance(presence_store.backend, DocumentStore):
        presence_store.backend.close()


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    ok = await _get_store().test_connection()
    return {"ok": ok}


# ---------------------------
# Students
# ---------------------------
@app.post("/api/students/login")
async def login_student(payload: Dict[str, Any] = Body(...)):
    name = _clean(payload.get("name"))
    bus_number = _bus_number(payload.get("busNumber"))
    if not name or not bus_number:
        raise HTTPException(status_code=400, detail="Please fill in all fields")
    try:
        student_id = await _get_tracker().login(name, bus_number)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except NotFoundError as exc:
        # Student removed by an admin while the login was in flight
        print(f"[students] login for {name!r} on {bus_number} lost its student: {exc}")
        raise HTTPException(status_code=409, detail=LOGIN_FAILED_MESSAGE) from exc
    return {"studentId": student_id, "name": name, "busNumber": bus_number}


@app.post("/api/students/{student_id}/logout")
async def logout_student(student_id: str):
    ok = await _get_tracker().logout(student_id)
    return {"ok": ok}


@app.get("/api/students")
async def list_students():
    try:
        students = await _get_store().list_students()
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"students": [s.to_dict() for s in students]}


@app.get("/api/students/online")
async def list_online_students():
    try:
        students = await _get_store().list_students()
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"students": [s.to_dict() for s in students if s.is_online]}


@app.post("/api/students")
async def create_student(payload: Dict[str, Any] = Body(...)):
    name = _clean(payload.get("name"))
    bus_number = _bus_number(payload.get("busNumber"))
    if not name or not bus_number:
        raise HTTPException(status_code=400, detail="name and busNumber required")
    store = _get_store()
    try:
        student_id = await store.create_student(
            name,
            bus_number,
            stop_name=_clean(payload.get("stopName")),
            email=_clean(payload.get("email")) or None,
            is_online=False,
        )
        student = await store.get_student(student_id)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"student": student.to_dict() if student else {"id": student_id}}


_STUDENT_FIELDS = ("name", "email", "busNumber", "stopName")


@app.put("/api/students/{student_id}")
async def update_student(student_id: str, payload: Dict[str, Any] = Body(...)):
    fields = {key: payload[key] for key in _STUDENT_FIELDS if key in payload}
    if "busNumber" in fields:
        fields["busNumber"] = _bus_number(fields["busNumber"])
    store = _get_store()
    try:
        await store.update_student(student_id, fields)
        student = await store.get_student(student_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="student not found") from exc
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"student": student.to_dict() if student else None}


@app.delete("/api/students/{student_id}")
async def delete_student(student_id: str):
    try:
        await _get_store().delete_student(student_id)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"ok": True}


# ---------------------------
# Drivers
# ---------------------------
_DRIVER_FIELDS = ("name", "email", "phone", "busNumber", "isActive")


def _driver_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    fields = {key: payload[key] for key in _DRIVER_FIELDS if key in payload}
    if "busNumber" in fields:
        fields["busNumber"] = _bus_number(fields["busNumber"])
    if "isActive" in fields:
        fields["isActive"] = bool(fields["isActive"])
    return fields


@app.get("/api/drivers")
async def list_drivers():
    try:
        drivers = await _get_store().list_drivers()
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"drivers": [d.to_dict() for d in drivers]}


@app.post("/api/drivers")
async def create_driver(payload: Dict[str, Any] = Body(...)):
    fields = _driver_fields(payload)
    if not _clean(fields.get("name")):
        raise HTTPException(status_code=400, detail="name required")
    store = _get_store()
    try:
        driver_id = await store.create_driver(fields)
        driver = await store.get_driver(driver_id)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"driver": driver.to_dict() if driver else {"id": driver_id}}


@app.put("/api/drivers/{driver_id}")
async def update_driver(driver_id: str, payload: Dict[str, Any] = Body(...)):
    store = _get_store()
    try:
        await store.update_driver(driver_id, _driver_fields(payload))
        driver = await store.get_driver(driver_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="driver not found") from exc
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"driver": driver.to_dict() if driver else None}


@app.delete("/api/drivers/{driver_id}")
async def delete_driver(driver_id: str):
    try:
        await _get_store().delete_driver(driver_id)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"ok": True}


# ---------------------------
# Buses
# ---------------------------
async def _bus_fields(store: PresenceStore, payload: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if "busNumber" in payload:
        fields["busNumber"] = _bus_number(payload.get("busNumber"))
    if "isActive" in payload:
        fields["isActive"] = bool(payload.get("isActive"))
    if "route" in payload:
        route = payload.get("route")
        if not isinstance(route, list):
            raise ValueError("route must be a list of stops")
        fields["route"] = route
    if "driverId" in payload:
        driver_id = _clean(payload.get("driverId"))
        driver = await store.get_driver(driver_id) if driver_id else None
        # Cached for readers that only see the bus document
        fields["driverId"] = driver_id or None
        fields["driverName"] = driver.name if driver else ""
    return fields


@app.get("/api/buses")
async def list_buses():
    try:
        buses = await _get_store().list_buses()
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"buses": [b.to_dict() for b in buses]}


@app.get("/api/buses/{bus_number}")
async def get_bus(bus_number: str):
    try:
        bus = await _get_store().find_bus(_bus_number(bus_number))
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if bus is None:
        raise HTTPException(status_code=404, detail="bus not found")
    return {"bus": bus.to_dict()}


@app.post("/api/buses")
async def create_bus(payload: Dict[str, Any] = Body(...)):
    store = _get_store()
    try:
        fields = await _bus_fields(store, payload)
        if not fields.get("busNumber"):
            raise ValueError("busNumber required")
        bus_id = await store.create_bus(fields)
        bus = await store.get_bus(bus_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"bus": bus.to_dict() if bus else {"id": bus_id}}


@app.put("/api/buses/{bus_id}")
async def update_bus(bus_id: str, payload: Dict[str, Any] = Body(...)):
    store = _get_store()
    try:
        fields = await _bus_fields(store, payload)
        await store.update_bus(bus_id, fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="bus not found") from exc
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"ok": True, "id": bus_id}


@app.delete("/api/buses/{bus_id}")
async def delete_bus(bus_id: str):
    try:
        await _get_store().delete_bus(bus_id)
    except ConnectivityError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"ok": True}


# ---------------------------
# Driver trips
# ---------------------------
@app.post("/api/driver/trips/start")
async def start_trip(payload: Dict[str, Any] = Body(...)):
    bus_number = _bus_number(payload.get("busNumber"))
    if not bus_number:
        raise HTTPException(status_code=400, detail="busNumber required")
    session = DRIVER_SESSIONS.get(bus_number)
    if session is not None and session.is_tracking:
        raise HTTPException(status_code=409, detail="trip already in progress")
    try:
        source = position_source_from_env(CLOCK, _clean(payload.get("source")) or None)
    except (ValueError, RuntimeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session = DriverSession(_get_store(), CLOCK, bus_number)
    await session.start(source)
    DRIVER_SESSIONS[bus_number] = session
    return {"trip": session.status()}


@app.post("/api/driver/trips/stop")
async def stop_trip(payload: Dict[str, Any] = Body(...)):
    bus_number = _bus_number(payload.get("busNumber"))
    session = DRIVER_SESSIONS.pop(bus_number, None)
    if session is None:
        raise HTTPException(status_code=404, detail="no trip in progress")
    await session.close()
    return {"trip": session.status()}


@app.get("/api/driver/trips")
async def list_trips():
    return {"trips": [session.status() for session in DRIVER_SESSIONS.values()]}


# ---------------------------
# SSE: bus location + arrival notices
# ---------------------------
def _encode(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _offer(q: asyncio.Queue, encoded: str) -> None:
    """Queue an event for a slow client, dropping the oldest one when full."""
    while True:
        try:
            q.put_nowait(encoded)
            return
        except asyncio.QueueFull:
            try:
                q.get_nowait()
            except asyncio.QueueEmpty:
                pass


async def bus_event_stream(store: PresenceStore, clock: Clock, bus_number: str) -> AsyncIterator[str]:
    q: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)

    notifier = ArrivalNotifier(store, clock)
    notifier.add_bus_listener(
        lambda bus: _offer(q, _encode("bus", bus.to_dict() if bus else None))
    )
    notifier.add_listener(
        lambda notice: _offer(q, _encode("arrival", notice.to_dict() if notice else None))
    )
    group = SubscriptionGroup(f"stream:{bus_number}")
    group.add(notifier.start(bus_number))
    try:
        while True:
            yield await q.get()
    finally:
        group.close()
        notifier.stop()


@app.get("/v1/stream/buses/{bus_number}")
async def stream_bus(bus_number: str):
    gen = bus_event_stream(_get_store(), CLOCK, _bus_number(bus_number))
    return StreamingResponse(gen, media_type="text/event-stream")


# ---------------------------
# SSE: admin dashboard
# ---------------------------
_ADMIN_EVENT_NAMES = {
    "students": "students",
    "online_students": "onlineStudents",
    "drivers": "drivers",
    "buses": "buses",
}


async def admin_event_stream(store: PresenceStore) -> AsyncIterator[str]:
    q: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE * 4)

    def _on_update(kind: str, items: list) -> None:
        _offer(q, _encode(_ADMIN_EVENT_NAMES[kind], [item.to_dict() for item in items]))

    session = AdminSession(store, on_update=_on_update).open()
    try:
        while True:
            yield await q.get()
    finally:
        session.close()


@app.get("/v1/stream/admin")
async def stream_admin():
    return StreamingResponse(admin_event_stream(_get_store()), media_type="text/event-stream")
