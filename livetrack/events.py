"""
Typed telemetry and stream events.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .errors import ParseError
from .geodesy import is_valid_coordinate

LOCATION = "location"
HEARTBEAT = "heartbeat"
DRIVER_LOCATION = "driver.location"
STOP_ADVANCED = "stop.advanced"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).isoformat()


@dataclass(frozen=True)
class TelemetryEvent:
    type: str
    agent_id: str
    route_id: str
    timestamp: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def location(
        cls,
        agent_id: str,
        route_id: str,
        lat: float,
        lng: float,
        timestamp: Optional[str] = None,
    ) -> "TelemetryEvent":
        return cls(
            type=LOCATION,
            agent_id=agent_id,
            route_id=route_id,
            timestamp=timestamp or utc_timestamp(),
            payload={"lat": lat, "lng": lng},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "driverId": self.agent_id,
            "routeId": self.route_id,
            "ts": self.timestamp,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TelemetryEvent":
        try:
            return cls(
                type=data["type"],
                agent_id=data.get("driverId", ""),
                route_id=data.get("routeId", ""),
                timestamp=data["ts"],
                payload=dict(data.get("payload") or {}),
            )
        except (KeyError, TypeError, AttributeError) as error:
            raise ParseError(f"Invalid telemetry record: {error}") from error


@dataclass(frozen=True)
class StreamFrame:
    """One blank-line terminated block from the live event stream."""

    event_name: str
    data: Any
    raw: str = ""

    @property
    def is_heartbeat(self) -> bool:
        return self.event_name == HEARTBEAT


@dataclass(frozen=True)
class DriverLocation:
    agent_id: str
    lat: float
    lng: float

    @classmethod
    def from_frame(cls, frame: StreamFrame) -> "DriverLocation":
        data = frame.data
        if not isinstance(data, dict):
            raise ParseError(f"{frame.event_name} payload is not an object")
        try:
            lat = float(data["lat"])
            lng = float(data["lng"])
        except (KeyError, TypeError, ValueError) as error:
            raise ParseError(f"{frame.event_name} payload lacks coordinates") from error
        if not is_valid_coordinate(lat, lng):
            raise ParseError(f"{frame.event_name} coordinates out of range: {lat!r}, {lng!r}")
        return cls(agent_id=str(data.get("driverId") or "driver"), lat=lat, lng=lng)


@dataclass(frozen=True)
class StopAdvanced:
    from_stop_id: str
    to_stop_id: str

    @classmethod
    def from_frame(cls, frame: StreamFrame) -> "StopAdvanced":
        data = frame.data if isinstance(frame.data, dict) else {}
        return cls(
            from_stop_id=str(data.get("fromStopId") or ""),
            to_stop_id=str(data.get("toStopId") or ""),
        )

    def describe(self) -> str:
        return f"{STOP_ADVANCED} {self.from_stop_id} → {self.to_stop_id}"
