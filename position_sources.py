"""
Position Sources

A ``PositionSource`` produces timestamped coordinates for a driver's bus.
Two interchangeable variants exist and are chosen by configuration, never by
guessing from a missing sensor:

- ``SyntheticPositionSource``: a local timer that walks a jittered position
  around a start point. For environments without a real sensor.
- ``FeedPositionSource``: polls a device or AVL endpoint over HTTP and
  forwards fresh fixes only.

Example usage:
    source = position_source_from_env(clock)
    await source.start(on_fix)
    ...
    await source.stop()
"""

from __future__ import annotations

import os
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from clock import Clock, TimerHandle


# Campus main gate
DEFAULT_ORIGIN: Tuple[float, float] = (11.0168, 76.9558)

LOCATION_SOURCE = (os.getenv("LOCATION_SOURCE") or "synthetic").strip().lower()
LOCATION_FEED_URL = (os.getenv("LOCATION_FEED_URL") or "").strip()
LOCATION_PUBLISH_INTERVAL_S = float(os.getenv("LOCATION_PUBLISH_INTERVAL_S", "2.0"))
LOCATION_FEED_TIMEOUT_S = float(os.getenv("LOCATION_FEED_TIMEOUT_S", "10"))
LOCATION_MAX_AGE_S = float(os.getenv("LOCATION_MAX_AGE_S", "5"))

# Half-width of the uniform jitter applied per synthetic tick (degrees)
SYNTHETIC_JITTER_DEG = 0.0005


@dataclass
class PositionFix:
    """A single position report."""
    lat: float
    lng: float
    timestamp_ms: int
    speed_mps: Optional[float] = None  # None when the source does not report speed
    accuracy_m: Optional[float] = None


FixCallback = Callable[[PositionFix], Awaitable[None]]


class PositionSource(ABC):
    # True only for sources that fabricate motion; gates placeholder speeds
    simulated: bool = False

    @abstractmethod
    async def start(self, on_fix: FixCallback) -> None:
        """Begin producing fixes, delivering each one to ``on_fix``."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop producing fixes. Safe to call more than once."""
        pass

    def describe(self) -> str:
        return type(self).__name__


class SyntheticPositionSource(PositionSource):
    simulated = True

    def __init__(
        self,
        clock: Clock,
        origin: Tuple[float, float] = DEFAULT_ORIGIN,
        *,
        interval_s: float = LOCATION_PUBLISH_INTERVAL_S,
        rng: Optional[random.Random] = None,
    ):
        self.clock = clock
        self.origin = origin
        self.interval_s = interval_s
        self.rng = rng or random.Random()
        self.last_fix: Optional[PositionFix] = None
        self._on_fix: Optional[FixCallback] = None
        self._timer: Optional[TimerHandle] = None
        self._running = False

    def _jitter(self) -> float:
        return self.rng.uniform(-SYNTHETIC_JITTER_DEG, SYNTHETIC_JITTER_DEG)

    def next_fix(self) -> PositionFix:
        if self.last_fix is None:
            lat, lng = self.origin
        else:
            lat = self.last_fix.lat + self._jitter()
            lng = self.last_fix.lng + self._jitter()
        self.last_fix = PositionFix(lat=lat, lng=lng, timestamp_ms=self.clock.now_ms())
        return self.last_fix

    async def start(self, on_fix: FixCallback) -> None:
        if self._running:
            return
        self._running = True
        self._on_fix = on_fix
        self.last_fix = None
        self._arm()
        await on_fix(self.next_fix())

    def _arm(self) -> None:
        self._timer = self.clock.call_later(self.interval_s, self._tick)

    async def _tick(self) -> None:
        if not self._running or self._on_fix is None:
            return
        self._arm()
        await self._on_fix(self.next_fix())

    async def stop(self) -> None:
        self._running = False
        self._on_fix = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def describe(self) -> str:
        return f"synthetic every {self.interval_s:g}s from {self.origin[0]:.4f},{self.origin[1]:.4f}"


def _parse_timestamp_ms(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # Seconds vs milliseconds
        return int(value * 1000) if value < 1e11 else int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def parse_fix(payload: Any) -> Optional[PositionFix]:
    """Build a fix from a device payload. Accepts ``lat``/``lng`` or
    ``latitude``/``longitude``, optionally nested under ``coords``."""
    if not isinstance(payload, dict):
        return None
    coords: Dict[str, Any] = payload.get("coords") if isinstance(payload.get("coords"), dict) else payload
    lat = coords.get("lat", coords.get("latitude"))
    lng = coords.get("lng", coords.get("lon", coords.get("longitude")))
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return None
    ts = _parse_timestamp_ms(payload.get("timestamp", coords.get("timestamp")))
    if ts is None:
        return None
    speed = coords.get("speed")
    accuracy = coords.get("accuracy")
    try:
        speed_f = None if speed is None else float(speed)
    except (TypeError, ValueError):
        speed_f = None
    try:
        accuracy_f = None if accuracy is None else float(accuracy)
    except (TypeError, ValueError):
        accuracy_f = None
    return PositionFix(lat=lat_f, lng=lng_f, timestamp_ms=ts, speed_mps=speed_f, accuracy_m=accuracy_f)


class FeedPositionSource(PositionSource):
    """Real sensor: polls ``url`` for the device's latest fix.

    Each request waits at most ``timeout_s``; fixes older than ``max_age_s``
    or repeating the previous timestamp are skipped.
    """

    def __init__(
        self,
        url: str,
        clock: Clock,
        *,
        poll_interval_s: float = LOCATION_PUBLISH_INTERVAL_S,
        timeout_s: float = LOCATION_FEED_TIMEOUT_S,
        max_age_s: float = LOCATION_MAX_AGE_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not url:
            raise RuntimeError("Missing required location feed URL")
        self.url = url
        self.clock = clock
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self.max_age_s = max_age_s
        self._client = client
        self._owns_client = client is None
        self._on_fix: Optional[FixCallback] = None
        self._timer: Optional[TimerHandle] = None
        self._running = False
        self.last_fix: Optional[PositionFix] = None
        self.skipped = 0
        self.errors = 0

    @classmethod
    def from_env(cls, clock: Clock) -> "FeedPositionSource":
        if not LOCATION_FEED_URL:
            raise RuntimeError("Missing required environment variables: LOCATION_FEED_URL")
        return cls(LOCATION_FEED_URL, clock)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def fetch_fix(self) -> Optional[PositionFix]:
        client = await self._ensure_client()
        response = await client.get(
            self.url, headers={"Accept": "application/json"}, timeout=self.timeout_s
        )
        response.raise_for_status()
        return parse_fix(response.json())

    async def start(self, on_fix: FixCallback) -> None:
        if self._running:
            return
        self._running = True
        self._on_fix = on_fix
        self._timer = self.clock.call_later(0, self._poll)

    async def _poll(self) -> None:
        if not self._running:
            return
        self._timer = self.clock.call_later(self.poll_interval_s, self._poll)
        try:
            fix = await self.fetch_fix()
        except (httpx.HTTPError, ValueError) as exc:
            self.errors += 1
            print(f"[location_feed] poll failed: {exc}")
            return
        if fix is None:
            self.skipped += 1
            return
        age_s = (self.clock.now_ms() - fix.timestamp_ms) / 1000.0
        if age_s > self.max_age_s:
            self.skipped += 1
            return
        if self.last_fix is not None and fix.timestamp_ms <= self.last_fix.timestamp_ms:
            return
        self.last_fix = fix
        if self._running and self._on_fix is not None:
            await self._on_fix(fix)

    async def stop(self) -> None:
        self._running = False
        self._on_fix = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def describe(self) -> str:
        return f"feed {self.url}"


def position_source_from_env(
    clock: Clock,
    kind: Optional[str] = None,
    origin: Tuple[float, float] = DEFAULT_ORIGIN,
) -> PositionSource:
    selected = (kind or LOCATION_SOURCE).strip().lower()
    if selected == "synthetic":
        return SyntheticPositionSource(clock, origin)
    if selected == "feed":
        return FeedPositionSource.from_env(clock)
    raise ValueError(f"unknown location source {selected!r}")


__all__ = [
    "DEFAULT_ORIGIN",
    "PositionFix",
    "PositionSource",
    "SyntheticPositionSource",
    "FeedPositionSource",
    "parse_fix",
    "position_source_from_env",
]
