import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from attendance_tracker import LOGIN_FAILED_MESSAGE, AttendanceTracker  # noqa: E402
from clock import ManualClock  # noqa: E402
from document_store import DocumentStore  # noqa: E402
from presence_store import BusLocation, NotFoundError, PresenceStore  # noqa: E402


START = datetime(2026, 10, 18, 3, 30, tzinfo=timezone.utc).timestamp()


@pytest.fixture()
def presence_client(tmp_path, monkeypatch):
    backend = DocumentStore(tmp_path / "presence.json")
    store = PresenceStore(backend)
    monkeypatch.setattr(app_module, "presence_store", store, raising=False)
    monkeypatch.setattr(app_module, "attendance_tracker", None, raising=False)
    monkeypatch.setattr(app_module, "DRIVER_SESSIONS", {}, raising=False)
    with TestClient(app_module.app) as client:
        yield client, backend


def test_health_reports_backend_state(presence_client):
    client, backend = presence_client
    assert client.get("/v1/health").json() == {"ok": True}
    backend.set_online(False)
    assert client.get("/v1/health").json() == {"ok": False}


def test_student_login_marks_attendance_once(presence_client):
    client, backend = presence_client
    first = client.post("/api/students/login", json={"name": " Alice ", "busNumber": "vsb-001"})
    assert first.status_code == 200
    body = first.json()
    assert body["name"] == "Alice"
    assert body["busNumber"] == "VSB-001"

    second = client.post("/api/students/login", json={"name": "Alice", "busNumber": "VSB-001"})
    assert second.json()["studentId"] == body["studentId"]

    students = client.get("/api/students").json()["students"]
    assert len(students) == 1
    assert students[0]["stopName"] == "Main Gate"
    assert students[0]["email"] == "alice@vsb.edu.in"
    assert len(students[0]["attendance"]) == 1

    online = client.get("/api/students/online").json()["students"]
    assert [s["id"] for s in online] == [body["studentId"]]

    resp = client.post(f"/api/students/{body['studentId']}/logout")
    assert resp.json() == {"ok": True}
    assert client.get("/api/students/online").json()["students"] == []


def test_student_login_validation_and_connectivity(presence_client):
    client, backend = presence_client
    resp = client.post("/api/students/login", json={"name": "  ", "busNumber": "VSB-001"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Please fill in all fields"

    backend.set_online(False)
    resp = client.post("/api/students/login", json={"name": "Alice", "busNumber": "VSB-001"})
    assert resp.status_code == 503
    assert resp.json()["detail"] == LOGIN_FAILED_MESSAGE


def test_admin_student_crud(presence_client):
    client, backend = presence_client
    created = client.post(
        "/api/students", json={"name": "Bob", "busNumber": "vsb-002", "stopName": "Library"}
    ).json()["student"]
    assert created["isOnline"] is False
    assert created["stopName"] == "Library"

    updated = client.put(f"/api/students/{created['id']}", json={"stopName": "Hostel"})
    assert updated.json()["student"]["stopName"] == "Hostel"
    assert client.put("/api/students/missing", json={"stopName": "x"}).status_code == 404

    assert client.delete(f"/api/students/{created['id']}").json() == {"ok": True}
    assert client.get("/api/students").json()["students"] == []


def test_bus_crud_caches_driver_name(presence_client):
    client, backend = presence_client
    assert client.post("/api/drivers", json={"phone": "123"}).status_code == 400
    driver = client.post(
        "/api/drivers", json={"name": "Ravi", "phone": "98450", "busNumber": "vsb-001"}
    ).json()["driver"]
    assert driver["busNumber"] == "VSB-001"
    assert driver["isActive"] is True

    route = [{"name": "Main Gate", "lat": 11.0168, "lng": 76.9558, "order": 1}]
    bus = client.post(
        "/api/buses", json={"busNumber": "vsb-001", "driverId": driver["id"], "route": route}
    ).json()["bus"]
    assert bus["busNumber"] == "VSB-001"
    assert bus["driverName"] == "Ravi"
    assert bus["currentLocation"] is None
    assert bus["isActive"] is True

    assert client.get("/api/buses/vsb-001").json()["bus"]["id"] == bus["id"]
    assert client.get("/api/buses/VSB-999").status_code == 404
    assert client.post("/api/buses", json={"busNumber": "VSB-002", "route": "north"}).status_code == 400
    assert client.post("/api/buses", json={"driverId": driver["id"]}).status_code == 400

    resp = client.put(f"/api/buses/{bus['id']}", json={"driverId": ""})
    assert resp.json() == {"ok": True, "id": bus["id"]}
    assert client.get("/api/buses/VSB-001").json()["bus"]["driverName"] is None
    assert client.put("/api/buses/missing", json={"isActive": False}).status_code == 404

    assert client.delete(f"/api/buses/{bus['id']}").json() == {"ok": True}
    assert client.get("/api/buses").json()["buses"] == []
    assert client.delete(f"/api/drivers/{driver['id']}").json() == {"ok": True}


def test_driver_trip_publishes_and_stops(presence_client):
    client, backend = presence_client
    client.post("/api/buses", json={"busNumber": "VSB-001"})

    started = client.post("/api/driver/trips/start", json={"busNumber": "vsb-001", "source": "synthetic"})
    assert started.status_code == 200
    trip = started.json()["trip"]
    assert trip["state"] == "tracking"
    assert trip["published"] == 1

    location = client.get("/api/buses/VSB-001").json()["bus"]["currentLocation"]
    assert (location["lat"], location["lng"]) == (11.0168, 76.9558)
    assert 10 <= location["speed"] < 50

    again = client.post("/api/driver/trips/start", json={"busNumber": "VSB-001"})
    assert again.status_code == 409
    assert len(client.get("/api/driver/trips").json()["trips"]) == 1

    stopped = client.post("/api/driver/trips/stop", json={"busNumber": "VSB-001"}).json()["trip"]
    assert stopped["state"] == "idle"
    assert client.get("/api/driver/trips").json()["trips"] == []
    # Last known position stays on the bus
    assert client.get("/api/buses/VSB-001").json()["bus"]["currentLocation"] == stopped["latest"]
    assert client.post("/api/driver/trips/stop", json={"busNumber": "VSB-001"}).status_code == 404


def test_driver_trip_rejects_unknown_source(presence_client):
    client, backend = presence_client
    resp = client.post("/api/driver/trips/start", json={"busNumber": "VSB-001", "source": "sonar"})
    assert resp.status_code == 400
    assert client.post("/api/driver/trips/start", json={"source": "synthetic"}).status_code == 400


def test_bus_stream_emits_location_then_arrival():
    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        await store.create_bus({"busNumber": "VSB-001"})
        stream = app_module.bus_event_stream(store, clock, "VSB-001")
        first = await asyncio.wait_for(stream.__anext__(), 1)
        await store.update_bus_location("VSB-001", BusLocation(11.0, 76.0, clock.now_ms(), 5.0))
        second = await asyncio.wait_for(stream.__anext__(), 1)
        third = await asyncio.wait_for(stream.__anext__(), 1)
        await clock.advance(5.0)
        fourth = await asyncio.wait_for(stream.__anext__(), 1)
        await stream.aclose()
        return [first, second, third, fourth], backend

    events, backend = asyncio.run(scenario())
    assert events[0].startswith("event: bus\n")
    assert '"currentLocation": null' in events[0]
    assert events[1].startswith("event: bus\n")
    assert '"speed": 5.0' in events[1]
    assert events[2].startswith("event: arrival\n")
    assert "arriving soon" in events[2]
    assert events[3] == "event: arrival\ndata: null\n\n"
    assert backend.subscription_count() == 0


def test_admin_stream_pushes_every_collection():
    async def scenario():
        backend = DocumentStore()
        store = PresenceStore(backend)
        await store.create_student("Alice", "VSB-001")
        stream = app_module.admin_event_stream(store)
        events = [await asyncio.wait_for(stream.__anext__(), 1) for _ in range(4)]
        await stream.aclose()
        return events, backend

    events, backend = asyncio.run(scenario())
    names = sorted(e.split("\n", 1)[0] for e in events)
    assert names == [
        "event: buses",
        "event: drivers",
        "event: onlineStudents",
        "event: students",
    ]
    assert backend.subscription_count() == 0


def test_student_removed_during_login_gets_plain_error(presence_client, monkeypatch):
    client, backend = presence_client

    async def student_gone(self, student_id, bus_number):
        raise NotFoundError(f"student {student_id} not found")

    monkeypatch.setattr(AttendanceTracker, "mark_attendance", student_gone)
    resp = client.post("/api/students/login", json={"name": "Alice", "busNumber": "VSB-001"})
    assert resp.status_code == 409
    assert resp.json()["detail"] == LOGIN_FAILED_MESSAGE


def test_full_bus_stream_keeps_latest_events(monkeypatch):
    monkeypatch.setattr(app_module, "SSE_QUEUE_SIZE", 1)

    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        await store.create_bus({"busNumber": "VSB-001"})
        stream = app_module.bus_event_stream(store, clock, "VSB-001")
        await asyncio.wait_for(stream.__anext__(), 1)
        # Client falls behind: bus, arrival and the clear all queue up
        await store.update_bus_location("VSB-001", BusLocation(11.0, 76.0, clock.now_ms(), 5.0))
        await backend.drain()
        await clock.advance(5.0)
        latest = await asyncio.wait_for(stream.__anext__(), 1)
        await stream.aclose()
        return latest

    assert asyncio.run(scenario()) == "event: arrival\ndata: null\n\n"


def test_offer_drops_oldest_event_when_full():
    async def scenario():
        q = asyncio.Queue(maxsize=2)
        for item in ("a", "b", "c"):
            app_module._offer(q, item)
        return [q.get_nowait() for _ in range(q.qsize())]

    assert asyncio.run(scenario()) == ["b", "c"]
