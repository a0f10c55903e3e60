"""
Presence Store

Typed access to the ``students``, ``drivers`` and ``buses`` collections of a
document store with real-time push subscriptions.

The concrete backend is anything implementing ``Store``. A single
``PresenceStore`` is constructed at startup and passed to every component
that needs it:

    store = PresenceStore(DocumentStore(path))
    tracker = AttendanceTracker(store, clock)
    sub = store.subscribe_bus("VSB-001", on_bus)
    ...
    sub.unsubscribe()

Delivery semantics of the backend: at-least-once, full result set on every
change (never a diff), no ordering across documents, last write wins per
document.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional
import os


STUDENTS = "students"
DRIVERS = "drivers"
BUSES = "buses"

DEFAULT_STOP_NAME = os.getenv("DEFAULT_STOP_NAME", "Main Gate")


# ---------------------------
# Errors
# ---------------------------
class PresenceError(Exception):
    """Base class for presence engine failures."""


class ConnectivityError(PresenceError):
    """The document store could not be reached."""


class NotFoundError(PresenceError):
    """A lookup by id or business key found nothing."""


class WriteRaceWarning(UserWarning):
    """A non-atomic read-then-write or a missed logout may have left
    inconsistent state. Logged, never raised."""


class _ServerTimestamp:
    _instance: Optional["_ServerTimestamp"] = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Field value replaced by the backend with its own clock reading on write
SERVER_TIMESTAMP = _ServerTimestamp()


# ---------------------------
# Entities
# ---------------------------
@dataclass
class AttendanceRecord:
    date: str  # calendar-day key, e.g. "Sun Oct 18 2026"
    timestamp: int  # milliseconds
    bus_number: str

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "timestamp": self.timestamp, "busNumber": self.bus_number}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttendanceRecord":
        return cls(
            date=str(data.get("date") or ""),
            timestamp=int(data.get("timestamp") or 0),
            bus_number=str(data.get("busNumber") or ""),
        )


@dataclass
class BusStop:
    name: str
    lat: float
    lng: float
    order: int = 0
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "lat": self.lat,
            "lng": self.lng,
            "order": self.order,
        }
        if self.id is not None:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BusStop":
        return cls(
            name=str(data.get("name") or ""),
            lat=float(data.get("lat") or 0.0),
            lng=float(data.get("lng") or 0.0),
            order=int(data.get("order") or 0),
            id=data.get("id"),
        )


@dataclass
class BusLocation:
    lat: float
    lng: float
    timestamp: int  # milliseconds, publisher clock
    speed_kmh: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"lat": self.lat, "lng": self.lng, "timestamp": self.timestamp}
        if self.speed_kmh is not None:
            data["speed"] = self.speed_kmh
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BusLocation":
        speed = data.get("speed")
        return cls(
            lat=float(data.get("lat") or 0.0),
            lng=float(data.get("lng") or 0.0),
            timestamp=int(data.get("timestamp") or 0),
            speed_kmh=None if speed is None else float(speed),
        )


@dataclass
class Student:
    id: str
    name: str
    bus_number: str
    stop_name: str = DEFAULT_STOP_NAME
    email: str = ""
    attendance: List[AttendanceRecord] = field(default_factory=list)
    is_online: bool = False
    last_login: Any = None
    last_logout: Any = None
    last_attendance: Any = None

    def attendance_on(self, day: str) -> List[AttendanceRecord]:
        return [record for record in self.attendance if record.date == day]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "busNumber": self.bus_number,
            "stopName": self.stop_name,
            "attendance": [record.to_dict() for record in self.attendance],
            "isOnline": self.is_online,
            "lastLogin": self.last_login,
            "lastLogout": self.last_logout,
            "lastAttendance": self.last_attendance,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "Student":
        return cls(
            id=doc_id,
            name=str(data.get("name") or ""),
            bus_number=str(data.get("busNumber") or ""),
            stop_name=str(data.get("stopName") or DEFAULT_STOP_NAME),
            email=str(data.get("email") or ""),
            attendance=[
                AttendanceRecord.from_dict(r)
                for r in (data.get("attendance") or [])
                if isinstance(r, Mapping)
            ],
            is_online=bool(data.get("isOnline")),
            last_login=data.get("lastLogin"),
            last_logout=data.get("lastLogout"),
            last_attendance=data.get("lastAttendance"),
        )


@dataclass
class Driver:
    id: str
    name: str
    bus_number: str = ""
    phone: str = ""
    email: str = ""
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "busNumber": self.bus_number,
            "isActive": self.is_active,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "Driver":
        return cls(
            id=doc_id,
            name=str(data.get("name") or ""),
            bus_number=str(data.get("busNumber") or ""),
            phone=str(data.get("phone") or ""),
            email=str(data.get("email") or ""),
            is_active=bool(data.get("isActive", True)),
        )


@dataclass
class Bus:
    id: str
    bus_number: str
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    current_location: Optional[BusLocation] = None
    route: List[BusStop] = field(default_factory=list)
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "busNumber": self.bus_number,
            "driverId": self.driver_id,
            "driverName": self.driver_name,
            "currentLocation": (
                self.current_location.to_dict() if self.current_location else None
            ),
            "route": [stop.to_dict() for stop in self.route],
            "isActive": self.is_active,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "Bus":
        location = data.get("currentLocation")
        route = sorted(
            (BusStop.from_dict(s) for s in (data.get("route") or []) if isinstance(s, Mapping)),
            key=lambda s: s.order,
        )
        return cls(
            id=doc_id,
            bus_number=str(data.get("busNumber") or ""),
            driver_id=data.get("driverId") or None,
            driver_name=data.get("driverName") or None,
            current_location=(
                BusLocation.from_dict(location) if isinstance(location, Mapping) else None
            ),
            route=route,
            is_active=bool(data.get("isActive", True)),
        )


# ---------------------------
# Backend contract
# ---------------------------
@dataclass
class Document:
    id: str
    data: Dict[str, Any]


SnapshotCallback = Callable[[List[Document]], None]


class Subscription:
    """Handle for one live query. Releasing it is the only way to stop
    receiving callbacks; ``unsubscribe`` may be called any number of times."""

    def __init__(
        self,
        collection: str,
        callback: SnapshotCallback,
        filters: Optional[Mapping[str, Any]] = None,
        release: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.collection = collection
        self.filters: Dict[str, Any] = dict(filters or {})
        self._callback = callback
        self._release = release
        self.active = True
        self.deliveries = 0

    def matches(self, data: Mapping[str, Any]) -> bool:
        return all(data.get(key) == value for key, value in self.filters.items())

    def deliver(self, docs: List[Document]) -> None:
        if not self.active:
            return
        self.deliveries += 1
        try:
            self._callback(docs)
        except Exception as exc:
            print(f"[store] subscriber callback failed for {self.collection}: {exc}")

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        release, self._release = self._release, None
        if release is not None:
            try:
                release(self)
            except Exception as exc:
                print(f"[store] release after close ignored: {exc}")

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class SubscriptionGroup:
    """The set of live subscriptions owned by one dashboard or session."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subs: List[Subscription] = []
        self.closed = False

    def add(self, sub: Subscription) -> Subscription:
        if self.closed:
            sub.unsubscribe()
            return sub
        self._subs.append(sub)
        return sub

    def __len__(self) -> int:
        return sum(1 for sub in self._subs if sub.active)

    def close(self) -> None:
        self.closed = True
        subs, self._subs = self._subs, []
        for sub in subs:
            sub.unsubscribe()
        if subs:
            print(f"[store] released {len(subs)} subscription(s) for {self.name or 'group'}")

    def __enter__(self) -> "SubscriptionGroup":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Store(ABC):
    """Document store with live queries. All round trips raise
    ``ConnectivityError`` when the backend is unreachable."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def query(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Document]:
        """Equality-filtered documents in creation order."""
        pass

    @abstractmethod
    async def create(self, collection: str, fields: Mapping[str, Any]) -> str:
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into an existing document; ``NotFoundError`` if absent."""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        pass

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        """Push the full matching result set now and after every change.
        Delivery happens on the event loop, never inside this call."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


# ---------------------------
# Typed facade
# ---------------------------
def _email_for(name: str) -> str:
    return f"{'.'.join(name.lower().split())}@vsb.edu.in"


class PresenceStore:
    def __init__(self, backend: Store):
        self.backend = backend

    # -- lookup by business key --------------------------------------------
    async def _first_match(self, collection: str, filters: Mapping[str, Any]) -> Optional[Document]:
        # No uniqueness is enforced on business keys; the earliest document wins.
        docs = await self.backend.query(collection, filters)
        if not docs:
            return None
        if len(docs) > 1:
            print(
                f"[store] WriteRaceWarning: {len(docs)} {collection} match {dict(filters)}; "
                f"using {docs[0].id}"
            )
        return docs[0]

    async def get_by_key(self, collection: str, field_name: str, value: Any) -> Optional[Document]:
        return await self._first_match(collection, {field_name: value})

    async def test_connection(self) -> bool:
        try:
            return await self.backend.ping()
        except ConnectivityError as exc:
            print(f"[store] connection test failed: {exc}")
            return False

    # -- students ------------------------------------------------------------
    async def find_student(self, name: str, bus_number: str) -> Optional[Student]:
        doc = await self._first_match(STUDENTS, {"name": name, "busNumber": bus_number})
        return Student.from_document(doc.id, doc.data) if doc else None

    async def get_student(self, student_id: str) -> Optional[Student]:
        doc = await self.backend.get(STUDENTS, student_id)
        return Student.from_document(doc.id, doc.data) if doc else None

    async def create_student(
        self,
        name: str,
        bus_number: str,
        *,
        stop_name: str = DEFAULT_STOP_NAME,
        email: Optional[str] = None,
        is_online: bool = True,
    ) -> str:
        fields: Dict[str, Any] = {
            "name": name,
            "email": email or _email_for(name),
            "busNumber": bus_number,
            "stopName": stop_name or DEFAULT_STOP_NAME,
            "attendance": [],
            "isOnline": is_online,
            "createdAt": SERVER_TIMESTAMP,
        }
        if is_online:
            fields["lastLogin"] = SERVER_TIMESTAMP
        return await self.backend.create(STUDENTS, fields)

    async def update_student(self, student_id: str, fields: Mapping[str, Any]) -> None:
        await self.backend.update(STUDENTS, student_id, fields)

    async def delete_student(self, student_id: str) -> None:
        await self.backend.delete(STUDENTS, student_id)

    async def list_students(self) -> List[Student]:
        return [Student.from_document(d.id, d.data) for d in await self.backend.query(STUDENTS)]

    def subscribe_students(self, callback: Callable[[List[Student]], None]) -> Subscription:
        return self.backend.subscribe(
            STUDENTS, lambda docs: callback([Student.from_document(d.id, d.data) for d in docs])
        )

    def subscribe_online_students(self, callback: Callable[[List[Student]], None]) -> Subscription:
        return self.backend.subscribe(
            STUDENTS,
            lambda docs: callback([Student.from_document(d.id, d.data) for d in docs]),
            {"isOnline": True},
        )

    # -- drivers -------------------------------------------------------------
    async def create_driver(self, fields: Mapping[str, Any]) -> str:
        data = {**fields, "createdAt": SERVER_TIMESTAMP}
        data["isActive"] = bool(fields.get("isActive", True))
        data.pop("id", None)
        return await self.backend.create(DRIVERS, data)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        doc = await self.backend.get(DRIVERS, driver_id)
        return Driver.from_document(doc.id, doc.data) if doc else None

    async def update_driver(self, driver_id: str, fields: Mapping[str, Any]) -> None:
        data = {**fields, "lastUpdated": SERVER_TIMESTAMP}
        data.pop("id", None)
        await self.backend.update(DRIVERS, driver_id, data)

    async def delete_driver(self, driver_id: str) -> None:
        await self.backend.delete(DRIVERS, driver_id)

    async def list_drivers(self) -> List[Driver]:
        return [Driver.from_document(d.id, d.data) for d in await self.backend.query(DRIVERS)]

    def subscribe_drivers(self, callback: Callable[[List[Driver]], None]) -> Subscription:
        return self.backend.subscribe(
            DRIVERS, lambda docs: callback([Driver.from_document(d.id, d.data) for d in docs])
        )

    # -- buses ---------------------------------------------------------------
    async def find_bus(self, bus_number: str) -> Optional[Bus]:
        doc = await self.get_by_key(BUSES, "busNumber", bus_number)
        return Bus.from_document(doc.id, doc.data) if doc else None

    async def get_bus(self, bus_id: str) -> Optional[Bus]:
        doc = await self.backend.get(BUSES, bus_id)
        return Bus.from_document(doc.id, doc.data) if doc else None

    async def create_bus(self, fields: Mapping[str, Any]) -> str:
        data = {
            **fields,
            "createdAt": SERVER_TIMESTAMP,
            "currentLocation": None,
            "route": list(fields.get("route") or []),
            "isActive": bool(fields.get("isActive", True)),
        }
        data.pop("id", None)
        return await self.backend.create(BUSES, data)

    async def update_bus(self, bus_id: str, fields: Mapping[str, Any]) -> None:
        data = {**fields, "lastUpdated": SERVER_TIMESTAMP}
        data.pop("id", None)
        await self.backend.update(BUSES, bus_id, data)

    async def delete_bus(self, bus_id: str) -> None:
        await self.backend.delete(BUSES, bus_id)

    async def list_buses(self) -> List[Bus]:
        return [Bus.from_document(d.id, d.data) for d in await self.backend.query(BUSES)]

    async def update_bus_location(self, bus_number: str, location: BusLocation) -> str:
        """Overwrite ``currentLocation`` of the bus with this number. Returns the bus id."""
        doc = await self.get_by_key(BUSES, "busNumber", bus_number)
        if doc is None:
            raise NotFoundError(f"bus {bus_number} not found")
        await self.backend.update(
            BUSES,
            doc.id,
            {"currentLocation": location.to_dict(), "lastUpdated": SERVER_TIMESTAMP},
        )
        return doc.id

    def subscribe_buses(self, callback: Callable[[List[Bus]], None]) -> Subscription:
        return self.backend.subscribe(
            BUSES, lambda docs: callback([Bus.from_document(d.id, d.data) for d in docs])
        )

    def subscribe_bus(self, bus_number: str, callback: Callable[[Optional[Bus]], None]) -> Subscription:
        def _on_snapshot(docs: List[Document]) -> None:
            if not docs:
                callback(None)
                return
            callback(Bus.from_document(docs[0].id, docs[0].data))

        return self.backend.subscribe(BUSES, _on_snapshot, {"busNumber": bus_number})


__all__ = [
    "STUDENTS",
    "DRIVERS",
    "BUSES",
    "DEFAULT_STOP_NAME",
    "SERVER_TIMESTAMP",
    "PresenceError",
    "ConnectivityError",
    "NotFoundError",
    "WriteRaceWarning",
    "AttendanceRecord",
    "BusStop",
    "BusLocation",
    "Student",
    "Driver",
    "Bus",
    "Document",
    "Subscription",
    "SubscriptionGroup",
    "Store",
    "PresenceStore",
]
