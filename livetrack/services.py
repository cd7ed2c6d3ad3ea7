"""
The two operator surfaces that host the live tracking pipeline.

``DispatchConsole`` watches a route's fleet and can inject simulated traffic;
``FieldSession`` is the driver's handheld view that reports its own position.
Each surface owns its scheduler, view state and position cache and passes them
explicitly into the components it wires together.
"""
from __future__ import annotations

import logging
import random
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from . import conf
from .aggregator import MarkerCache, SpatialAggregator, ViewState
from .errors import InputError, ParseError, TransportError
from .events import (
    DRIVER_LOCATION,
    STOP_ADVANCED,
    DriverLocation,
    StopAdvanced,
    StreamFrame,
    TelemetryEvent,
)
from .geodesy import is_valid_coordinate
from .outbox import Delivery, OutboxQueue, connectivity_restored
from .scheduler import CoalescingScheduler
from .simulator import PathSimulator, PathTrack
from .storage import LocalStateStore
from .stream import StreamConsumer
from .transport import HttpTransport

LOGGER = logging.getLogger(__name__)

DEFAULT_CENTER = (37.7749, -122.4194)
DEMO_AGENT_ID = "drv_demo"


def _load_track(transport, route_id: str) -> Optional[PathTrack]:
    try:
        return PathTrack(transport.fetch_path(route_id))
    except (TransportError, ParseError, InputError) as error:
        LOGGER.warning("No path loaded for route %s: %s", route_id, error)
        return None


class DispatchConsole:
    def __init__(
        self,
        transport=None,
        scheduler: Optional[CoalescingScheduler] = None,
        outbox: Optional[OutboxQueue] = None,
        view: Optional[ViewState] = None,
        rng: Optional[random.Random] = None,
    ):
        config = conf.get_config()
        self.scheduler = scheduler or CoalescingScheduler()
        self.transport = transport or HttpTransport()
        self.view = view or ViewState(recency_window=float(config["recency_window_seconds"]))
        self.cache = MarkerCache()
        self.aggregator = SpatialAggregator(self.cache, self.view, self.scheduler, name="console-map")
        self.stream = StreamConsumer(self.transport, self.scheduler, name="console")
        self.stream.on(DRIVER_LOCATION, self._on_driver_location)
        self.outbox = outbox or OutboxQueue(
            self.transport, scheduler=self.scheduler, name="console-outbox"
        )
        self.rng = rng or random.Random()
        self.simulator = PathSimulator(
            self.scheduler, self.outbox.enqueue_many, self.rng, name="console-sim"
        )
        self.track: Optional[PathTrack] = None
        self.message = ""
        # Held by request threads that share one console.
        self.lock = threading.RLock()

    def start(self) -> None:
        self.aggregator.start()
        self.outbox.start()

    def close(self) -> None:
        self.stream.stop()
        self.simulator.stop()
        self.aggregator.stop()
        self.outbox.stop()

    def subscribe_route(self, route_id: Optional[str]) -> bool:
        if not route_id:
            self.message = "Select a route first."
            return False
        LOGGER.info("Subscribing route %s", route_id)
        self.message = ""
        self.stream.stop()
        self.simulator.stop()
        self.view.route_id = route_id
        self.track = _load_track(self.transport, route_id)

        try:
            latest = self.transport.fetch_latest_positions(route_id)
        except (TransportError, ParseError) as error:
            LOGGER.warning("Latest positions for %s unavailable: %s", route_id, error)
            latest = []
        self.view.route_agents = set()
        now = self.scheduler.now()
        for item in latest:
            try:
                agent_id = str(item["driverId"])
                lat, lng = float(item["lat"]), float(item["lng"])
                if not is_valid_coordinate(lat, lng):
                    raise ValueError("coordinates out of range")
                self.cache.observe(agent_id, lat, lng, now)
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping malformed latest position: %s", item)
                continue
            self.view.route_agents.add(agent_id)

        self.stream.start(route_id)
        self.aggregator.schedule_recompute()
        return True

    def _on_driver_location(self, frame: StreamFrame) -> None:
        location = DriverLocation.from_frame(frame)
        self.aggregator.record_position(location.agent_id, location.lat, location.lng)
        self.view.route_agents.add(location.agent_id)
        if self.view.follow and self.view.follow_agent in (None, location.agent_id):
            self.view.center = (location.lat, location.lng)

    def known_agents(self) -> List[str]:
        return sorted(marker.agent_id for marker in self.cache.snapshot())

    def follow(self, agent_id: Optional[str] = None, enabled: bool = True) -> None:
        self.view.follow = enabled
        self.view.follow_agent = agent_id

    def set_zoom(self, zoom: int) -> None:
        self.aggregator.set_zoom(zoom)

    def pan(self, viewport) -> None:
        self.aggregator.pan(viewport)

    def set_filters(self, **toggles) -> None:
        self.aggregator.set_filters(**toggles)

    def send_test_location(self) -> Optional[Delivery]:
        route_id = self.view.route_id
        if not route_id:
            self.message = "Subscribe to a route first."
            return None
        if self.track is not None:
            lat, lng = self.track.points[self.rng.randrange(len(self.track.points))]
        else:
            lat, lng = self.view.center or DEFAULT_CENTER
        event = TelemetryEvent.location(DEMO_AGENT_ID, route_id, lat, lng)
        delivery = self.outbox.enqueue(event)
        LOGGER.info("Test location %.5f,%.5f %s", lat, lng, delivery.value)
        return delivery

    def start_simulation(self, **options) -> bool:
        started = self.simulator.start(self.view.route_id, self.track, **options)
        self.message = self.simulator.message
        return started

    def stop_simulation(self) -> None:
        self.simulator.stop()

    def toggle_simulation(self, **options) -> bool:
        if self.simulator.running:
            self.stop_simulation()
            return False
        return self.start_simulation(**options)

    def clear_agents(self) -> None:
        self.simulator.stop()
        self.cache.clear()
        self.view.route_agents.clear()
        self.aggregator.schedule_recompute()

    def status(self) -> Dict[str, Any]:
        return {
            "routeId": self.view.route_id,
            "stream": self.stream.state.value,
            "reconnectIn": self.stream.reconnect_in(),
            "simulating": self.simulator.running,
            "outboxPending": self.outbox.pending_count(),
            "agents": self.known_agents(),
            "message": self.message or self.stream.message,
        }


class FieldSession:
    PREFERENCES = {
        "follow_me": False,
        "share_location": False,
        "auto_refresh": True,
    }

    def __init__(
        self,
        driver_id: str,
        transport=None,
        scheduler: Optional[CoalescingScheduler] = None,
        outbox: Optional[OutboxQueue] = None,
        state_store: Optional[LocalStateStore] = None,
    ):
        config = conf.get_config()
        self.driver_id = driver_id
        self.scheduler = scheduler or CoalescingScheduler()
        self.transport = transport or HttpTransport()
        self.state_store = state_store or LocalStateStore()
        self.outbox = outbox or OutboxQueue(
            self.transport, scheduler=self.scheduler, name="field-outbox"
        )
        self.share_interval = float(
            self.state_store.get("pref:share_interval", config["share_interval_seconds"])
        )
        self.preferences = {
            name: self.state_store.get(f"pref:{name}", default)
            for name, default in self.PREFERENCES.items()
        }
        self.stream = StreamConsumer(
            self.transport,
            self.scheduler,
            auto_reconnect=bool(self.preferences["auto_refresh"]),
            name="field",
        )
        self.stream.on(DRIVER_LOCATION, self._on_driver_location)
        self.stream.on(STOP_ADVANCED, self._on_stop_advanced)
        self.notifications: Deque[str] = deque(maxlen=int(config["event_log_size"]))
        self.route_id: Optional[str] = None
        self.route: Optional[Dict] = None
        self.track: Optional[PathTrack] = None
        self.next_destination: Optional[Dict] = None
        self.position = None
        self.center = None
        self.message = ""
        self._last_sent: Optional[float] = None

    def start(self) -> None:
        self.outbox.start()

    def close(self) -> None:
        self.stream.stop()
        self.outbox.stop()

    def set_preference(self, name: str, value) -> None:
        if name == "share_interval":
            self.share_interval = float(value)
        elif name in self.PREFERENCES:
            self.preferences[name] = value
            if name == "auto_refresh":
                self.stream.auto_reconnect = bool(value)
        else:
            raise KeyError(name)
        self.state_store.put(f"pref:{name}", value)

    def load_route(self, route_id: Optional[str]) -> bool:
        if not route_id:
            self.message = "Enter a route id."
            return False
        try:
            route = self.transport.fetch_route(route_id)
        except (TransportError, ParseError) as error:
            self.message = f"Route {route_id} unavailable."
            LOGGER.warning("Loading route %s failed: %s", route_id, error)
            return False
        self.message = ""
        self.route_id = route_id
        self.route = route
        self.state_store.put("lastRouteId", route_id)
        self.state_store.put(f"route:{route_id}", route)
        self._load_geometry()
        return True

    def restore_cached_route(self) -> bool:
        """Redisplay the last loaded route before the stream reconnects."""
        route_id = self.state_store.get("lastRouteId")
        if not route_id:
            return False
        route = self.state_store.get(f"route:{route_id}")
        if route is None:
            return False
        self.route_id = route_id
        self.route = route
        LOGGER.info("Restored cached route %s", route_id)
        return True

    def _load_geometry(self) -> None:
        self.track = _load_track(self.transport, self.route_id)
        try:
            self.next_destination = self.transport.fetch_next_destination(self.route_id)
        except (TransportError, ParseError) as error:
            LOGGER.info("Next destination for %s unavailable: %s", self.route_id, error)
            self.next_destination = None

    def connect(self) -> bool:
        started = self.stream.start(self.route_id)
        if not started:
            self.message = self.stream.message
        return started

    def _on_driver_location(self, frame: StreamFrame) -> None:
        location = DriverLocation.from_frame(frame)
        self.position = (location.lat, location.lng)
        if self.preferences["follow_me"]:
            self.center = self.position

    def _on_stop_advanced(self, frame: StreamFrame) -> None:
        self.notifications.append(StopAdvanced.from_frame(frame).describe())

    def report_position(self, lat: float, lng: float) -> Optional[Delivery]:
        """Share a device fix, at most once per share interval."""
        if not self.preferences["share_location"]:
            return None
        now = self.scheduler.now()
        if self._last_sent is not None and now - self._last_sent < self.share_interval:
            return None
        self._last_sent = now
        event = TelemetryEvent.location(self.driver_id, self.route_id or "", lat, lng)
        return self.outbox.enqueue(event)

    def connectivity_restored(self) -> None:
        connectivity_restored.send(sender=self.__class__)
