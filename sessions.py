"""Owning contexts for subscriptions, timers and presence.

Each dashboard in the portal maps to one session object. Closing a session
releases everything it acquired and is safe to repeat, so it can sit in a
``finally`` or an ``async with`` block on every exit path.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from arrival_notifier import ArrivalNotifier
from attendance_tracker import AttendanceTracker
from clock import Clock
from location_broadcaster import LocationBroadcaster
from position_sources import PositionSource
from presence_store import Bus, Driver, PresenceStore, Student, SubscriptionGroup


class StudentSession:
    def __init__(self, store: PresenceStore, clock: Clock, tracker: Optional[AttendanceTracker] = None):
        self.store = store
        self.clock = clock
        self.tracker = tracker or AttendanceTracker(store, clock)
        self.notifier = ArrivalNotifier(store, clock)
        self.subscriptions = SubscriptionGroup("student")
        self.student_id: Optional[str] = None
        self.name: Optional[str] = None
        self.bus_number: Optional[str] = None
        self._logged_out = False

    async def open(self, name: str, bus_number: str) -> str:
        self.student_id = await self.tracker.login(name, bus_number)
        self.name = name
        self.bus_number = bus_number
        self.subscriptions.add(self.notifier.start(bus_number))
        return self.student_id

    async def close(self) -> None:
        self.subscriptions.close()
        self.notifier.stop()
        if self.student_id is None or self._logged_out:
            return
        self._logged_out = True
        await self.tracker.logout(self.student_id)

    async def __aenter__(self) -> "StudentSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class DriverSession:
    def __init__(
        self,
        store: PresenceStore,
        clock: Clock,
        bus_number: str,
        broadcaster: Optional[LocationBroadcaster] = None,
    ):
        self.store = store
        self.clock = clock
        self.bus_number = bus_number
        self.broadcaster = broadcaster or LocationBroadcaster(store, clock)
        self.trip_started_at: Optional[datetime] = None

    @property
    def is_tracking(self) -> bool:
        return self.broadcaster.is_tracking

    async def start(self, source: PositionSource) -> None:
        await self.broadcaster.start_tracking(self.bus_number, source)
        self.trip_started_at = self.clock.now()

    async def stop(self) -> None:
        await self.broadcaster.stop_tracking()
        self.trip_started_at = None

    async def close(self) -> None:
        await self.stop()

    def status(self) -> Dict[str, Any]:
        data = self.broadcaster.status()
        data["busNumber"] = self.bus_number
        data["tripStartedAt"] = (
            self.trip_started_at.isoformat().replace("+00:00", "Z") if self.trip_started_at else None
        )
        return data

    async def __aenter__(self) -> "DriverSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class AdminSession:
    """Live view of every collection for the admin dashboard."""

    def __init__(
        self,
        store: PresenceStore,
        on_update: Optional[Callable[[str, list], None]] = None,
    ):
        self.store = store
        self.on_update = on_update
        self.subscriptions = SubscriptionGroup("admin")
        self.students: List[Student] = []
        self.online_students: List[Student] = []
        self.drivers: List[Driver] = []
        self.buses: List[Bus] = []
        self.updates = 0

    def _set(self, attr: str, value: list) -> None:
        setattr(self, attr, value)
        self.updates += 1
        if self.on_update is not None:
            self.on_update(attr, value)

    def open(self) -> "AdminSession":
        self.subscriptions.add(self.store.subscribe_students(lambda v: self._set("students", v)))
        self.subscriptions.add(self.store.subscribe_drivers(lambda v: self._set("drivers", v)))
        self.subscriptions.add(self.store.subscribe_buses(lambda v: self._set("buses", v)))
        self.subscriptions.add(
            self.store.subscribe_online_students(lambda v: self._set("online_students", v))
        )
        return self

    def close(self) -> None:
        self.subscriptions.close()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "students": [s.to_dict() for s in self.students],
            "onlineStudents": [s.to_dict() for s in self.online_students],
            "drivers": [d.to_dict() for d in self.drivers],
            "buses": [b.to_dict() for b in self.buses],
        }

    def __enter__(self) -> "AdminSession":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


__all__ = ["AdminSession", "DriverSession", "StudentSession"]
