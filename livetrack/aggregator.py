"""
Turns the shared position cache into what a map should draw: visible
markers, grid clusters and decayed heat discs.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from shapely import affinity
from shapely.geometry import Point, box

from . import conf
from .geodesy import degrees_lat_for_meters
from .scheduler import CoalescingScheduler

LOGGER = logging.getLogger(__name__)

HEAT_MAX_OPACITY = 0.8
HEAT_MIN_OPACITY = 0.15

# Deterministic colour palette for agent markers.
PALETTE = [
    "#e6194B", "#3cb44b", "#0082c8", "#f58231", "#911eb4", "#46f0f0", "#f032e6",
    "#d2f53c", "#fabebe", "#008080", "#e6beff", "#aa6e28", "#fffac8", "#800000",
    "#aaffc3", "#808000", "#ffd8b1", "#000080", "#808080", "#000000",
]


def color_for_agent(agent_id: str) -> str:
    value = 0
    for char in agent_id or "driver":
        value = (value * 33 + ord(char)) & 0xFFFFFFFF
    return PALETTE[value % len(PALETTE)]


@dataclass
class MarkerState:
    agent_id: str
    lat: float
    lng: float
    last_seen_at: float


class MarkerCache:
    """Last known position of every agent observed by one view."""

    def __init__(self):
        self._markers: Dict[str, MarkerState] = {}

    def __len__(self) -> int:
        return len(self._markers)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._markers

    def get(self, agent_id: str) -> Optional[MarkerState]:
        return self._markers.get(agent_id)

    def observe(self, agent_id: str, lat: float, lng: float, at: float) -> MarkerState:
        marker = self._markers.get(agent_id)
        if marker is None:
            marker = MarkerState(agent_id=agent_id, lat=lat, lng=lng, last_seen_at=at)
            self._markers[agent_id] = marker
        else:
            marker.lat, marker.lng, marker.last_seen_at = lat, lng, at
        return marker

    def snapshot(self) -> Tuple[MarkerState, ...]:
        """Copies of every marker, safe to read while the cache keeps changing."""
        return tuple(
            MarkerState(m.agent_id, m.lat, m.lng, m.last_seen_at) for m in self._markers.values()
        )

    def clear(self) -> None:
        self._markers.clear()


@dataclass
class ViewState:
    """
    Everything one map view knows about what the operator is looking at.

    Owned by the hosting surface and handed to the components that need it.
    """

    route_id: Optional[str] = None
    route_agents: Set[str] = field(default_factory=set)
    only_route: bool = False
    clustering: bool = False
    heat: bool = False
    recency_window: float = 60.0
    zoom: int = 12
    viewport: Optional[Tuple[float, float, float, float]] = None  # min_lat, min_lng, max_lat, max_lng
    follow: bool = False
    follow_agent: Optional[str] = None  # None follows any agent
    center: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class ClusterCell:
    key: Tuple[int, int]
    count: int
    lat: float
    lng: float


@dataclass(frozen=True)
class HeatDisc:
    agent_id: str
    lat: float
    lng: float
    opacity: float
    radius_m: float

    def polygon(self, resolution: int = 16):
        """Approximate the disc as a lng/lat polygon."""
        radius_deg = degrees_lat_for_meters(self.radius_m)
        circle = Point(self.lng, self.lat).buffer(radius_deg, resolution)
        stretch = 1.0 / max(math.cos(math.radians(self.lat)), 1e-6)
        return affinity.scale(circle, xfact=stretch, yfact=1.0, origin=(self.lng, self.lat))


@dataclass(frozen=True)
class RenderState:
    markers: Tuple[MarkerState, ...] = ()
    clusters: Tuple[ClusterCell, ...] = ()
    heat: Tuple[HeatDisc, ...] = ()
    computed_at: Optional[float] = None

    def as_dict(self) -> Dict:
        return {
            "computed_at": self.computed_at,
            "markers": [
                {
                    "agentId": marker.agent_id,
                    "lat": marker.lat,
                    "lng": marker.lng,
                    "lastSeenAt": marker.last_seen_at,
                    "color": color_for_agent(marker.agent_id),
                }
                for marker in self.markers
            ],
            "clusters": [
                {"count": cell.count, "lat": cell.lat, "lng": cell.lng} for cell in self.clusters
            ],
            "heat": [
                {
                    "agentId": disc.agent_id,
                    "lat": disc.lat,
                    "lng": disc.lng,
                    "opacity": round(disc.opacity, 4),
                    "radiusM": disc.radius_m,
                }
                for disc in self.heat
            ],
        }


def is_recent(marker: MarkerState, now: float, window: float) -> bool:
    return (now - marker.last_seen_at) <= window


def is_visible(marker: MarkerState, view: ViewState, now: float) -> bool:
    route_ok = not view.only_route or marker.agent_id in view.route_agents
    return is_recent(marker, now, view.recency_window) and route_ok


def cell_size(zoom: float, min_cell: float = 0.002, base_cell: float = 0.5) -> float:
    return max(min_cell, base_cell / math.pow(2, zoom))


def cluster_markers(
    markers, zoom: float, min_cell: float = 0.002, base_cell: float = 0.5
) -> List[ClusterCell]:
    size = cell_size(zoom, min_cell, base_cell)
    buckets: Dict[Tuple[int, int], List[float]] = {}
    for marker in markers:
        key = (math.floor(marker.lat / size), math.floor(marker.lng / size))
        bucket = buckets.setdefault(key, [0, 0.0, 0.0])
        bucket[0] += 1
        bucket[1] += marker.lat
        bucket[2] += marker.lng
    return [
        ClusterCell(key=key, count=count, lat=lat_sum / count, lng=lng_sum / count)
        for key, (count, lat_sum, lng_sum) in buckets.items()
    ]


def heat_opacity(age: float, window: float) -> float:
    if window <= 0:
        return HEAT_MIN_OPACITY
    return max(HEAT_MIN_OPACITY, HEAT_MAX_OPACITY * (1 - age / window))


def heat_discs(markers, now: float, window: float, radius_m: float = 120.0) -> List[HeatDisc]:
    discs: List[HeatDisc] = []
    for marker in markers:
        age = now - marker.last_seen_at
        if age > window:
            continue
        discs.append(
            HeatDisc(
                agent_id=marker.agent_id,
                lat=marker.lat,
                lng=marker.lng,
                opacity=heat_opacity(age, window),
                radius_m=radius_m,
            )
        )
    return discs


class SpatialAggregator:
    def __init__(
        self,
        cache: MarkerCache,
        view: ViewState,
        scheduler: CoalescingScheduler,
        on_render: Optional[Callable[[RenderState], None]] = None,
        name: str = "aggregate",
    ):
        config = conf.get_config()
        self._recompute_key = f"{name}:recompute"
        self._refresh_key = f"{name}:refresh"
        self.cache = cache
        self.view = view
        self.scheduler = scheduler
        self.on_render = on_render
        self.delay = float(config["recompute_delay_seconds"])
        self.busy_delay = float(config["recompute_busy_delay_seconds"])
        self.busy_threshold = int(config["recompute_busy_threshold"])
        self.refresh_seconds = float(config["refresh_seconds"])
        self.min_cell = float(config["cluster_min_cell_deg"])
        self.base_cell = float(config["cluster_base_cell_deg"])
        self.heat_radius_m = float(config["heat_radius_m"])
        self.render_state = RenderState()
        self.recompute_count = 0

    def start(self) -> None:
        """Periodically re-evaluate recency even when no positions arrive."""
        self.scheduler.every(self._refresh_key, self.refresh_seconds, self.schedule_recompute)

    def stop(self) -> None:
        self.scheduler.cancel(self._recompute_key)
        self.scheduler.cancel(self._refresh_key)

    def recompute_delay(self) -> float:
        return self.busy_delay if len(self.cache) > self.busy_threshold else self.delay

    def schedule_recompute(self) -> None:
        self.scheduler.schedule(self._recompute_key, self.recompute_delay(), self.recompute)

    def record_position(self, agent_id: str, lat: float, lng: float) -> MarkerState:
        marker = self.cache.observe(agent_id, lat, lng, self.scheduler.now())
        self.schedule_recompute()
        return marker

    def set_zoom(self, zoom: int) -> None:
        self.view.zoom = zoom
        self.schedule_recompute()

    def pan(self, viewport: Optional[Tuple[float, float, float, float]]) -> None:
        self.view.viewport = viewport
        self.schedule_recompute()

    def set_filters(self, **toggles) -> None:
        for name, value in toggles.items():
            if not hasattr(self.view, name):
                raise AttributeError(f"Unknown view toggle: {name}")
            setattr(self.view, name, value)
        self.schedule_recompute()

    def visible_markers(self, now: Optional[float] = None) -> List[MarkerState]:
        now = self.scheduler.now() if now is None else now
        markers = [m for m in self.cache.snapshot() if is_visible(m, self.view, now)]
        if self.view.viewport is not None:
            min_lat, min_lng, max_lat, max_lng = self.view.viewport
            area = box(min_lng, min_lat, max_lng, max_lat)
            markers = [m for m in markers if area.intersects(Point(m.lng, m.lat))]
        return markers

    def recompute(self) -> RenderState:
        now = self.scheduler.now()
        markers = self.visible_markers(now)
        clusters: List[ClusterCell] = []
        if self.view.clustering:
            clusters = cluster_markers(markers, self.view.zoom, self.min_cell, self.base_cell)
        heat: List[HeatDisc] = []
        if self.view.heat:
            heat = heat_discs(markers, now, self.view.recency_window, self.heat_radius_m)
        self.render_state = RenderState(
            markers=tuple(markers),
            clusters=tuple(clusters),
            heat=tuple(heat),
            computed_at=now,
        )
        self.recompute_count += 1
        LOGGER.debug(
            "Recomputed view: %d marker(s), %d cluster(s), %d heat disc(s)",
            len(markers),
            len(clusters),
            len(heat),
        )
        if self.on_render is not None:
            self.on_render(self.render_state)
        return self.render_state
