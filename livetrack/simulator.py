"""
Utility helpers for moving simulated agents along a loaded route path.
"""
from __future__ import annotations

import bisect
import logging
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from shapely.geometry import LineString, Point

from . import conf
from .errors import InputError, TransportError
from .events import TelemetryEvent
from .geodesy import LatLng, bearing_deg, haversine_m, jitter_point
from .scheduler import CoalescingScheduler

LOGGER = logging.getLogger(__name__)

BOUNCE = "bounce"
LOOP = "loop"
MAX_AGENTS = 20
MIN_INTERVAL_SECONDS = 0.2
MIN_SPEED_KMH = 1.0


def build_cumulative_table(points: Sequence[LatLng]) -> List[float]:
    cumulative: List[float] = [0.0]
    for start, end in zip(points[:-1], points[1:]):
        cumulative.append(cumulative[-1] + haversine_m(start, end))
    return cumulative


class PathTrack:
    """An immutable route polyline with its cumulative distance table."""

    def __init__(self, points: Sequence[LatLng]):
        self.points: Tuple[LatLng, ...] = tuple((float(lat), float(lng)) for lat, lng in points)
        if not self.points:
            raise InputError("A path needs at least one point.")
        self.cumulative = build_cumulative_table(self.points)
        self.total_length = self.cumulative[-1]

    def __len__(self) -> int:
        return len(self.points)

    @property
    def geometry(self):
        # shapely works in (x, y) = (lng, lat)
        coords = [(lng, lat) for lat, lng in self.points]
        if len(coords) == 1:
            return Point(coords[0])
        return LineString(coords)

    def bounds(self) -> Tuple[float, float, float, float]:
        """(min_lat, min_lng, max_lat, max_lng) of the path."""
        min_lng, min_lat, max_lng, max_lat = self.geometry.bounds
        return min_lat, min_lng, max_lat, max_lng

    def segment_index(self, distance: float) -> int:
        if len(self.points) < 2 or distance <= 0:
            return 0
        if distance >= self.total_length:
            return len(self.points) - 2
        # cumulative[i] <= distance < cumulative[i + 1]
        return bisect.bisect_right(self.cumulative, distance) - 1

    def interpolate_at_distance(self, distance: float) -> LatLng:
        points = self.points
        if len(points) == 1 or distance <= 0:
            return points[0]
        if distance >= self.total_length:
            return points[-1]

        idx = self.segment_index(distance)
        start_lat, start_lng = points[idx]
        end_lat, end_lng = points[idx + 1]
        segment_distance = self.cumulative[idx + 1] - self.cumulative[idx]
        if segment_distance <= 0:
            return start_lat, start_lng

        ratio = (distance - self.cumulative[idx]) / segment_distance
        lat = start_lat + (end_lat - start_lat) * ratio
        lng = start_lng + (end_lng - start_lng) * ratio
        return lat, lng

    def heading_at(self, distance: float) -> float:
        if len(self.points) < 2:
            return 0.0
        idx = self.segment_index(distance)
        return bearing_deg(self.points[idx], self.points[idx + 1])


@dataclass
class SimulatedAgent:
    agent_id: str
    distance: float = 0.0
    forward: bool = True


def advance_agent(agent: SimulatedAgent, step_m: float, mode: str, total: float) -> SimulatedAgent:
    if total <= 0:
        agent.distance = 0.0
        return agent

    if mode == LOOP:
        agent.distance = (agent.distance + step_m) % total
        return agent

    if agent.forward:
        agent.distance += step_m
        if agent.distance >= total:
            agent.distance = total
            agent.forward = False
    else:
        agent.distance -= step_m
        if agent.distance <= 0:
            agent.distance = 0.0
            agent.forward = True
    return agent


def step_meters(speed_kmh: float, interval_seconds: float) -> float:
    return speed_kmh * 1000.0 / 3600.0 * interval_seconds


def initial_offsets(count: int, total: float) -> List[float]:
    return [index / count * total for index in range(count)]


class PathSimulator:
    """
    Advances N agents along a route on every tick and hands their positions
    to ``sink`` as one batch of location events.
    """

    def __init__(
        self,
        scheduler: CoalescingScheduler,
        sink: Callable[[List[TelemetryEvent]], object],
        rng: Optional[random.Random] = None,
        name: str = "simulation",
    ):
        self.scheduler = scheduler
        self._tick_key = f"{name}:tick"
        self.sink = sink
        self.rng = rng or random.Random()
        self.agents: List[SimulatedAgent] = []
        self.track: Optional[PathTrack] = None
        self.route_id: Optional[str] = None
        self.mode = BOUNCE
        self.speed_kmh = 0.0
        self.interval_seconds = 0.0
        self.jitter_m = 0.0
        self.message = ""

    @property
    def running(self) -> bool:
        return self.scheduler.pending(self._tick_key)

    @property
    def step_meters(self) -> float:
        return step_meters(self.speed_kmh, self.interval_seconds)

    def start(
        self,
        route_id: Optional[str],
        track: Optional[PathTrack],
        speed_kmh: Optional[float] = None,
        interval_seconds: Optional[float] = None,
        agent_count: Optional[int] = None,
        mode: Optional[str] = None,
        jitter_m: Optional[float] = None,
    ) -> bool:
        config = conf.get_config()
        try:
            if not route_id:
                raise InputError("Subscribe to a route first.")
            if track is None or track.total_length <= 0:
                raise InputError("No path available to simulate.")
        except InputError as error:
            self.message = str(error)
            LOGGER.info("Simulation not started: %s", error)
            return False

        self.stop()
        self.message = ""
        self.route_id = route_id
        self.track = track
        self.interval_seconds = max(
            MIN_INTERVAL_SECONDS, float(interval_seconds or config["sim_interval_seconds"])
        )
        self.speed_kmh = max(MIN_SPEED_KMH, float(speed_kmh or config["sim_speed_kmh"]))
        self.mode = LOOP if (mode or config["sim_mode"]) == LOOP else BOUNCE
        self.jitter_m = max(0.0, float(jitter_m if jitter_m is not None else config["sim_jitter_m"]))
        count = max(1, min(MAX_AGENTS, int(agent_count or config["sim_agents"])))

        self.agents = [
            SimulatedAgent(agent_id=f"drv_sim_{index + 1}", distance=offset)
            for index, offset in enumerate(initial_offsets(count, track.total_length))
        ]
        self.scheduler.every(self._tick_key, self.interval_seconds, self.tick)
        LOGGER.info(
            "Simulating %d agent(s) on %s at %.1f km/h (%s)",
            count,
            route_id,
            self.speed_kmh,
            self.mode,
        )
        return True

    def tick(self) -> List[TelemetryEvent]:
        if self.track is None or not self.agents:
            return []
        step = self.step_meters
        events: List[TelemetryEvent] = []
        for agent in self.agents:
            advance_agent(agent, step, self.mode, self.track.total_length)
            lat, lng = self.track.interpolate_at_distance(agent.distance)
            if self.jitter_m > 0:
                lat, lng = jitter_point(lat, lng, self.jitter_m, self.rng)
            events.append(TelemetryEvent.location(agent.agent_id, self.route_id, lat, lng))
        try:
            self.sink(events)
        except TransportError as error:
            LOGGER.debug("Simulation batch not delivered: %s", error)
        return events

    def stop(self) -> None:
        self.scheduler.cancel(self._tick_key)
        self.agents = []
