import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from arrival_notifier import ARRIVING_MESSAGE, NOT_ASSIGNED, ArrivalNotifier  # noqa: E402
from clock import ManualClock  # noqa: E402
from document_store import DocumentStore  # noqa: E402
from presence_store import BusLocation, PresenceStore  # noqa: E402


START = datetime(2026, 10, 18, 3, 30, tzinfo=timezone.utc).timestamp()

ROUTE = [
    {"name": "Library", "lat": 11.0200, "lng": 76.9600, "order": 2},
    {"name": "Main Gate", "lat": 11.0168, "lng": 76.9558, "order": 1},
]


def _run_speed(speed):
    events = []

    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        await store.create_bus({"busNumber": "VSB-001", "driverName": "Ravi", "route": ROUTE})
        notifier = ArrivalNotifier(store, clock)
        notifier.add_listener(events.append)
        notifier.start("VSB-001")
        await backend.drain()
        await store.update_bus_location(
            "VSB-001", BusLocation(lat=11.0169, lng=76.9559, timestamp=clock.now_ms(), speed_kmh=speed)
        )
        await backend.drain()
        raised = notifier.notification
        await clock.advance(4.5)
        still = notifier.notification
        await clock.advance(1.0)
        cleared = notifier.notification
        notifier.stop()
        return notifier, raised, still, cleared

    notifier, raised, still, cleared = asyncio.run(scenario())
    return notifier, events, raised, still, cleared


def test_slow_bus_raises_notice_that_clears_after_five_seconds():
    notifier, events, raised, still, cleared = _run_speed(5.0)
    assert raised is not None
    assert raised.message == ARRIVING_MESSAGE
    assert raised.nearest_stop == "Main Gate"
    assert raised.nearest_stop_km < 0.05
    assert still is raised
    assert cleared is None
    assert events == [raised, None]
    assert notifier.driver_name == "Ravi"


@pytest.mark.parametrize("speed", [0.0, 40.0, 10.0, None])
def test_stopped_fast_or_unknown_speed_raises_nothing(speed):
    notifier, events, raised, still, cleared = _run_speed(speed)
    assert raised is None
    assert events == []
    assert notifier.raised_count == 0


def test_repeated_slow_pushes_do_not_extend_the_notice():
    events = []

    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        await store.create_bus({"busNumber": "VSB-001"})
        notifier = ArrivalNotifier(store, clock)
        notifier.add_listener(events.append)
        notifier.start("VSB-001")
        await backend.drain()
        for _ in range(3):
            await store.update_bus_location("VSB-001", BusLocation(11.0, 76.0, clock.now_ms(), 4.0))
            await backend.drain()
            await clock.advance(2.0)
        # raised at t=0, cleared at t=5 even though the last push was at t=4
        cleared_at_six = notifier.notification
        notifier.stop()
        return notifier, cleared_at_six

    notifier, cleared_at_six = asyncio.run(scenario())
    assert notifier.raised_count == 3
    assert cleared_at_six is None
    assert events[-1] is None
    assert events.count(None) == 1


def test_missing_bus_and_unassigned_driver():
    seen = []

    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        notifier = ArrivalNotifier(store, clock)
        notifier.add_bus_listener(seen.append)
        notifier.start("VSB-404")
        await backend.drain()
        missing = (notifier.bus_known, notifier.driver_name)

        await store.create_bus({"busNumber": "VSB-404"})
        await backend.drain()
        unassigned = (notifier.bus_known, notifier.driver_name, notifier.bus.current_location)
        notifier.stop()
        return missing, unassigned

    missing, unassigned = asyncio.run(scenario())
    assert missing == (False, NOT_ASSIGNED)
    assert unassigned == (True, NOT_ASSIGNED, None)
    assert seen[0] is None


def test_stop_cancels_pending_clear_and_subscription():
    events = []

    async def scenario():
        clock = ManualClock(START)
        backend = DocumentStore(clock=clock)
        store = PresenceStore(backend)
        await store.create_bus({"busNumber": "VSB-001"})
        notifier = ArrivalNotifier(store, clock)
        notifier.add_listener(events.append)
        notifier.start("VSB-001")
        await backend.drain()
        await store.update_bus_location("VSB-001", BusLocation(11.0, 76.0, clock.now_ms(), 3.0))
        await backend.drain()
        notifier.stop()
        await clock.advance(10.0)
        await store.update_bus_location("VSB-001", BusLocation(11.0, 76.0, clock.now_ms(), 3.0))
        await backend.drain()
        return clock, backend

    clock, backend = asyncio.run(scenario())
    assert len(events) == 1
    assert clock.pending() == 0
    assert backend.subscription_count() == 0
