from __future__ import annotations

from collections import deque
from datetime import datetime
from zoneinfo import ZoneInfo
import os

from clock import Clock
from presence_store import (
    AttendanceRecord,
    ConnectivityError,
    NotFoundError,
    PresenceStore,
    SERVER_TIMESTAMP,
    WriteRaceWarning,
)


CAMPUS_TZ = ZoneInfo(os.getenv("CAMPUS_TZ", "Asia/Kolkata"))

LOGIN_FAILED_MESSAGE = "Failed to login student. Please check your connection."


def day_key(dt: datetime, tz: ZoneInfo = CAMPUS_TZ) -> str:
    """Calendar-day key for attendance, e.g. ``"Sun Oct 18 2026"``."""
    return dt.astimezone(tz).strftime("%a %b %d %Y")


class AttendanceTracker:
    """
    Student identity resolution, daily attendance and online presence.

    - ``login`` finds or creates the student by (name, bus number), marks them
      online and records today's attendance.
    - ``mark_attendance`` appends at most one record per calendar day.
    - ``logout`` marks the student offline.

    ``mark_attendance`` is read-then-write without compare-and-swap, and a
    session that ends without ``logout`` leaves the student online until the
    next login. Both cases are logged as ``WriteRaceWarning`` and kept in
    ``recent_race_warnings``; neither is raised.
    """

    def __init__(self, store: PresenceStore, clock: Clock, *, tz: ZoneInfo = CAMPUS_TZ):
        self.store = store
        self.clock = clock
        self.tz = tz
        self.recent_race_warnings: deque = deque(maxlen=50)

    def today(self) -> str:
        return day_key(self.clock.now(), self.tz)

    def _warn(self, message: str) -> None:
        warning = WriteRaceWarning(message)
        self.recent_race_warnings.append(warning)
        print(f"[attendance] WriteRaceWarning: {message}")

    async def login(self, name: str, bus_number: str) -> str:
        try:
            student = await self.store.find_student(name, bus_number)
            if student is not None:
                if student.is_online:
                    self._warn(
                        f"student {student.id} was still online; previous session ended without logout"
                    )
                await self.store.update_student(
                    student.id, {"isOnline": True, "lastLogin": SERVER_TIMESTAMP}
                )
                student_id = student.id
                await self.mark_attendance(student_id, bus_number)
                print(f"[attendance] existing student logged in: {student_id}")
            else:
                student_id = await self.store.create_student(name, bus_number)
                await self.mark_attendance(student_id, bus_number)
                print(f"[attendance] new student created and logged in: {student_id}")
        except ConnectivityError as exc:
            print(f"[attendance] login failed for {name!r} on {bus_number}: {exc}")
            raise ConnectivityError(LOGIN_FAILED_MESSAGE) from exc
        return student_id

    async def mark_attendance(self, student_id: str, bus_number: str) -> bool:
        """Record today's attendance. Returns False if already marked today."""
        today = self.today()
        student = await self.store.get_student(student_id)
        if student is None:
            raise NotFoundError(f"student {student_id} not found")

        existing = student.attendance_on(today)
        if existing:
            if len(existing) > 1:
                self._warn(f"student {student_id} has {len(existing)} attendance records for {today}")
            print(f"[attendance] already marked today for student {student_id}")
            return False

        record = AttendanceRecord(date=today, timestamp=self.clock.now_ms(), bus_number=bus_number)
        await self.store.update_student(
            student_id,
            {
                "attendance": [r.to_dict() for r in student.attendance] + [record.to_dict()],
                "lastAttendance": SERVER_TIMESTAMP,
            },
        )
        print(f"[attendance] marked for student {student_id} on {today}")
        return True

    async def logout(self, student_id: str) -> bool:
        try:
            await self.store.update_student(
                student_id, {"isOnline": False, "lastLogout": SERVER_TIMESTAMP}
            )
        except (ConnectivityError, NotFoundError) as exc:
            self._warn(f"logout for {student_id} not recorded, student may remain online: {exc}")
            return False
        print(f"[attendance] student logged out: {student_id}")
        return True


__all__ = ["AttendanceTracker", "CAMPUS_TZ", "LOGIN_FAILED_MESSAGE", "day_key"]
