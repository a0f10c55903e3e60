from __future__ import annotations

import asyncio
import random
from enum import Enum
from typing import Optional, Set

from clock import Clock
from position_sources import PositionFix, PositionSource
from presence_store import BusLocation, ConnectivityError, NotFoundError, PresenceStore


MPS_TO_KMH = 3.6

# Placeholder speed range (km/h, upper bound exclusive) for simulated sources
SIMULATED_SPEED_MIN_KMH = 10
SIMULATED_SPEED_MAX_KMH = 50


class BroadcasterState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"


class LocationBroadcaster:
    """
    Driver-side publisher of a bus's live location.

    State machine:
    1. IDLE -> ``start_tracking`` -> TRACKING: the position source is started
       and every fix it produces is written to the bus's ``currentLocation``.
    2. TRACKING -> ``stop_tracking`` -> IDLE: the source is stopped and any
       in-flight write is awaited, so nothing lands after stop returns.
       ``currentLocation`` is left as the last known position.

    A failed write is logged and counted; the next fix simply tries again.
    """

    def __init__(
        self,
        store: PresenceStore,
        clock: Clock,
        *,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.state = BroadcasterState.IDLE
        self.bus_number: Optional[str] = None
        self.source: Optional[PositionSource] = None
        self.latest: Optional[BusLocation] = None
        self.published = 0
        self.failed = 0
        self._inflight: Set[asyncio.Future] = set()

    @property
    def is_tracking(self) -> bool:
        return self.state is BroadcasterState.TRACKING

    def speed_for(self, fix: PositionFix, source: PositionSource) -> Optional[float]:
        if fix.speed_mps is not None:
            return float(round(fix.speed_mps * MPS_TO_KMH))
        if source.simulated:
            return float(self.rng.randrange(SIMULATED_SPEED_MIN_KMH, SIMULATED_SPEED_MAX_KMH))
        return None

    async def start_tracking(self, bus_number: str, source: PositionSource) -> None:
        if self.is_tracking:
            raise RuntimeError(f"already tracking bus {self.bus_number}")
        self.state = BroadcasterState.TRACKING
        self.bus_number = bus_number
        self.source = source
        print(f"[broadcast] start tracking bus={bus_number} source={source.describe()}")
        try:
            await source.start(self._on_fix)
        except Exception:
            self.state = BroadcasterState.IDLE
            self.source = None
            raise

    async def _on_fix(self, fix: PositionFix) -> None:
        if not self.is_tracking or self.source is None or self.bus_number is None:
            return
        task = asyncio.ensure_future(self._publish(self.bus_number, fix, self.source))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        await task

    async def _publish(self, bus_number: str, fix: PositionFix, source: PositionSource) -> None:
        location = BusLocation(
            lat=fix.lat,
            lng=fix.lng,
            timestamp=self.clock.now_ms(),
            speed_kmh=self.speed_for(fix, source),
        )
        try:
            await self.store.update_bus_location(bus_number, location)
        except (ConnectivityError, NotFoundError) as exc:
            self.failed += 1
            print(f"[broadcast] location update failed for bus={bus_number}: {exc}")
            return
        self.latest = location
        self.published += 1

    async def stop_tracking(self) -> None:
        if not self.is_tracking:
            return
        self.state = BroadcasterState.IDLE
        source, self.source = self.source, None
        if source is not None:
            await source.stop()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        print(
            f"[broadcast] stop tracking bus={self.bus_number} "
            f"published={self.published} failed={self.failed}"
        )

    def status(self) -> dict:
        return {
            "busNumber": self.bus_number,
            "state": self.state.value,
            "published": self.published,
            "failed": self.failed,
            "latest": self.latest.to_dict() if self.latest else None,
        }


__all__ = ["BroadcasterState", "LocationBroadcaster", "MPS_TO_KMH"]
