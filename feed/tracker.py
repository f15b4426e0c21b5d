"""
Live vehicle polling for one route.

AdaptiveInterval is the pure rate policy: polls that keep returning the same
non-zero vehicle count shorten the interval toward a floor, and repeated
failures lengthen it toward a ceiling.  While a vehicle is followed the
interval is fixed and short.

VehicleTracker drives FeedClient.fetch_vehicles_for_route on that policy:

  IDLE ──start()──▶ POLLING ──follow(id)──▶ FOLLOWING
    ▲                  │  ◀──unfollow()──      │
    └──────stop()──────┴───────────────────────┘

stop() wakes the sleeping loop, lets a fetch already in flight finish, and
returns once the task has exited, so no timer is left behind.  A failed poll
(including a raising on_update callback) is logged and counted as an error;
only a missing API key ends the loop.

The HTTP API serves one-shot vehicle snapshots and does not run a tracker.
Long-lived callers, such as a websocket handler following one route, own a
VehicleTracker per route and call stop() when they are done with it.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from config import (
    POLL_CEILING_SECONDS, POLL_ERROR_THRESHOLD, POLL_FLOOR_SECONDS,
    POLL_FOLLOWING_SECONDS, POLL_INITIAL_SECONDS, POLL_STEP_DOWN_SECONDS,
    POLL_STEP_UP_SECONDS,
)
from feed.client import FeedClient
from feed.models import FeedConfigurationError, FeedResult, FetchStatus, VehiclePosition
from schedule.models import Stop

logger = logging.getLogger(__name__)


@dataclass
class AdaptiveInterval:
    interval: float = POLL_INITIAL_SECONDS
    floor: float = POLL_FLOOR_SECONDS
    step_down: float = POLL_STEP_DOWN_SECONDS
    ceiling: float = POLL_CEILING_SECONDS
    step_up: float = POLL_STEP_UP_SECONDS
    error_threshold: int = POLL_ERROR_THRESHOLD
    following_interval: float = POLL_FOLLOWING_SECONDS
    consecutive_errors: int = 0
    last_count: int = 0

    def record_success(self, vehicle_count: int) -> float:
        """An OK poll.  Empty polls leave the interval and error count alone."""
        if vehicle_count > 0:
            self.consecutive_errors = 0
            if vehicle_count == self.last_count and self.interval > self.floor:
                self.interval = max(self.floor, self.interval - self.step_down)
            self.last_count = vehicle_count
        return self.interval

    def record_error(self) -> float:
        self.consecutive_errors += 1
        if self.consecutive_errors >= self.error_threshold:
            self.interval = min(self.ceiling, self.interval + self.step_up)
        return self.interval

    def record(self, result: FeedResult[list[VehiclePosition]]) -> float:
        if result.ok:
            return self.record_success(len(result.data or []))
        return self.record_error()

    def current(self, following: bool = False) -> float:
        return self.following_interval if following else self.interval


class TrackerState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    FOLLOWING = "following"


class VehicleTracker:
    """Polls one route's vehicles until stopped."""

    def __init__(
        self,
        client: FeedClient,
        route_id: str,
        sample_stops: Iterable[str | Stop],
        on_update: Callable[[list[VehiclePosition]], None] | None = None,
        interval: AdaptiveInterval | None = None,
    ) -> None:
        self.client = client
        self.route_id = route_id
        self.sample_stops = list(sample_stops)
        self.on_update = on_update
        self.interval = interval or AdaptiveInterval()
        self.vehicles: list[VehiclePosition] = []
        self.followed_vehicle_id: str | None = None
        # Last known position of the followed vehicle, kept when a poll misses it
        self.followed_vehicle: VehiclePosition | None = None
        self.last_status: FetchStatus | None = None
        self.last_error: Exception | None = None
        self._state = TrackerState.IDLE
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopping = False

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_interval(self) -> float:
        return self.interval.current(following=self.followed_vehicle_id is not None)

    # -- transitions --------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._wake = asyncio.Event()
        self._state = TrackerState.FOLLOWING if self.followed_vehicle_id else TrackerState.POLLING
        self._task = asyncio.create_task(self._run(), name=f"vehicle-tracker-{self.route_id}")
        logger.info("Started vehicle tracking for route %s", self.route_id)

    def follow(self, vehicle_id: str) -> None:
        self.followed_vehicle_id = vehicle_id
        self.followed_vehicle = next((v for v in self.vehicles if v.vehicle_id == vehicle_id), None)
        if self.is_running:
            self._state = TrackerState.FOLLOWING
            self._wake.set()

    def unfollow(self) -> None:
        self.followed_vehicle_id = None
        self.followed_vehicle = None
        if self.is_running:
            self._state = TrackerState.POLLING
            self._wake.set()

    async def stop(self) -> None:
        task = self._task
        self._stopping = True
        self._wake.set()
        if task is not None:
            await task
        self._task = None
        self._state = TrackerState.IDLE
        logger.info("Stopped vehicle tracking for route %s", self.route_id)

    # -- polling ------------------------------------------------------------

    async def poll_once(self) -> FeedResult[list[VehiclePosition]]:
        result = await self.client.fetch_vehicles_for_route(
            self.route_id, self.sample_stops, priority_vehicle_id=self.followed_vehicle_id
        )
        self.last_status = result.status
        self.interval.record(result)

        if result.ok:
            self.vehicles = result.data or []
            if self.followed_vehicle_id:
                found = next((v for v in self.vehicles if v.vehicle_id == self.followed_vehicle_id), None)
                if found is not None:
                    self.followed_vehicle = found
            if self.on_update is not None:
                self.on_update(self.vehicles)
        else:
            logger.info(
                "Vehicle poll for route %s returned %s; next poll in %.1fs",
                self.route_id, result.status.value, self.current_interval(),
            )
        return result

    async def _run(self) -> None:
        while not self._stopping:
            self._wake.clear()
            try:
                await self.poll_once()
            except FeedConfigurationError as exc:
                logger.error("Vehicle tracking for route %s cannot run: %s", self.route_id, exc)
                self.last_error = exc
                self._state = TrackerState.IDLE
                return
            except Exception as exc:
                logger.error("Vehicle poll for route %s failed: %s", self.route_id, exc, exc_info=True)
                self.last_error = exc
                self.interval.record_error()
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.current_interval())
            except asyncio.TimeoutError:
                pass
