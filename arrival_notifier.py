from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import os

from clock import Clock, TimerHandle
from geo_math import nearest_stop
from presence_store import Bus, PresenceStore, Subscription


NOT_ASSIGNED = "Not Assigned"
ARRIVING_MESSAGE = "Bus is arriving soon at your stop!"

# A bus moving slower than this (but not stopped) is treated as approaching
ARRIVAL_SLOW_SPEED_KMH = float(os.getenv("ARRIVAL_SLOW_SPEED_KMH", "10"))
ARRIVAL_CLEAR_AFTER_S = float(os.getenv("ARRIVAL_CLEAR_AFTER_S", "5"))


@dataclass
class ArrivalNotification:
    bus_number: str
    message: str
    raised_at_ms: int
    speed_kmh: float
    nearest_stop: Optional[str] = None
    nearest_stop_km: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "busNumber": self.bus_number,
            "message": self.message,
            "raisedAt": self.raised_at_ms,
            "speed": self.speed_kmh,
            "nearestStop": self.nearest_stop,
            "nearestStopKm": self.nearest_stop_km,
        }


NotificationListener = Callable[[Optional[ArrivalNotification]], None]


class ArrivalNotifier:
    """Watches one bus and raises a short-lived "arriving soon" notice.

    The trigger is a speed heuristic only: a present, nonzero speed below
    ``slow_speed_kmh``. Stop geometry is reported alongside the notice but
    never decides it. The notice clears ``clear_after_s`` after it was raised
    regardless of later pushes.
    """

    def __init__(
        self,
        store: PresenceStore,
        clock: Clock,
        *,
        slow_speed_kmh: float = ARRIVAL_SLOW_SPEED_KMH,
        clear_after_s: float = ARRIVAL_CLEAR_AFTER_S,
    ):
        self.store = store
        self.clock = clock
        self.slow_speed_kmh = slow_speed_kmh
        self.clear_after_s = clear_after_s
        self.bus_number: Optional[str] = None
        self.bus: Optional[Bus] = None
        self.bus_known = False
        self.driver_name: Optional[str] = None
        self.notification: Optional[ArrivalNotification] = None
        self.raised_count = 0
        self._clear_timer: Optional[TimerHandle] = None
        self._subscription: Optional[Subscription] = None
        self._listeners: List[NotificationListener] = []
        self._bus_listeners: List[Callable[[Optional[Bus]], None]] = []

    def add_listener(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def add_bus_listener(self, listener: Callable[[Optional[Bus]], None]) -> None:
        self._bus_listeners.append(listener)

    def start(self, bus_number: str) -> Subscription:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        self.bus_number = bus_number
        self._subscription = self.store.subscribe_bus(bus_number, self.handle_bus)
        return self._subscription

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._clear_timer is not None:
            self._clear_timer.cancel()
            self._clear_timer = None

    def _emit(self, notification: Optional[ArrivalNotification]) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as exc:
                print(f"[arrival] listener failed: {exc}")

    def handle_bus(self, bus: Optional[Bus]) -> None:
        self.bus = bus
        for listener in list(self._bus_listeners):
            try:
                listener(bus)
            except Exception as exc:
                print(f"[arrival] bus listener failed: {exc}")
        if bus is None:
            self.bus_known = False
            self.driver_name = NOT_ASSIGNED
            return
        self.bus_known = True
        self.driver_name = bus.driver_name or NOT_ASSIGNED

        location = bus.current_location
        if location is None or location.speed_kmh is None:
            return
        speed = location.speed_kmh
        if not (0 < speed < self.slow_speed_kmh):
            return
        self._raise(bus, speed)

    def _raise(self, bus: Bus, speed: float) -> None:
        location = bus.current_location
        stop_name = None
        stop_km = None
        if location is not None:
            closest = nearest_stop(bus.route, location.lat, location.lng)
            if closest is not None:
                stop_name = closest[0].name
                stop_km = round(closest[1], 3)
        self.notification = ArrivalNotification(
            bus_number=bus.bus_number,
            message=ARRIVING_MESSAGE,
            raised_at_ms=self.clock.now_ms(),
            speed_kmh=speed,
            nearest_stop=stop_name,
            nearest_stop_km=stop_km,
        )
        self.raised_count += 1
        print(f"[arrival] bus={bus.bus_number} speed={speed:g}km/h stop={stop_name or '-'}")
        if self._clear_timer is None:
            self._clear_timer = self.clock.call_later(self.clear_after_s, self._clear)
        self._emit(self.notification)

    def _clear(self) -> None:
        self._clear_timer = None
        if self.notification is None:
            return
        self.notification = None
        self._emit(None)


__all__ = [
    "ARRIVING_MESSAGE",
    "NOT_ASSIGNED",
    "ArrivalNotification",
    "ArrivalNotifier",
]
