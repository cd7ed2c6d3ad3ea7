"""
HTTP access to the tracking backend.

Every network failure is raised as ``TransportError`` so callers can route it
into the outbox or the reconnect path without knowing about ``requests``.
"""
from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence
from urllib.parse import quote

import requests

from . import conf
from .errors import ParseError, TransportError
from .events import TelemetryEvent
from .geodesy import LatLng, is_valid_coordinate

LOGGER = logging.getLogger(__name__)

HeaderProvider = Callable[[], Dict[str, str]]


def tenant_headers(
    tenant_id: str,
    role: str = "admin",
    driver_id: str = "",
    dev_token: bool = False,
) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Tenant-Id": tenant_id or "t_demo",
        "X-Role": role,
    }
    if driver_id:
        headers["X-Driver-Id"] = driver_id
    if dev_token:
        headers["Authorization"] = f"Bearer {tenant_id}:{role}"
    return headers


class StreamHandle:
    """
    An open streaming response.

    A daemon reader thread moves chunks off the socket into a queue, so
    ``read_chunk`` returns immediately and the scheduler never waits on the
    network.
    """

    def __init__(self, response: requests.Response):
        self._response = response
        self._chunks: "queue.Queue" = queue.Queue()
        self._closed = threading.Event()
        self._reader = threading.Thread(target=self._read, name="livetrack-stream", daemon=True)
        self._reader.start()

    def _read(self) -> None:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    self._chunks.put(chunk)
        except (requests.exceptions.RequestException, OSError, ValueError, AttributeError) as error:
            if not self._closed.is_set():
                self._chunks.put(TransportError(f"Stream read failed: {error}"))
            return
        self._chunks.put(None)

    def read_chunk(self) -> Optional[bytes]:
        """
        Return the next received chunk, ``b""`` when nothing has arrived yet,
        or ``None`` once the server has closed the stream.
        """
        try:
            item = self._chunks.get_nowait()
        except queue.Empty:
            return b""
        if isinstance(item, TransportError):
            raise item
        return item

    def close(self) -> None:
        self._closed.set()
        self._response.close()


class HttpTransport:
    def __init__(
        self,
        base_url: Optional[str] = None,
        tenant_id: Optional[str] = None,
        headers: Optional[HeaderProvider] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        config = conf.get_config()
        self.base_url = (base_url or config["base_url"]).rstrip("/")
        self.tenant_id = tenant_id or config["tenant_id"]
        self.timeout = timeout if timeout is not None else config["timeout_seconds"]
        self.session = session or requests.Session()
        self._headers = headers or (
            lambda: tenant_headers(
                self.tenant_id,
                role=config["role"],
                driver_id=config["driver_id"],
                dev_token=config["dev_token"],
            )
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _route_path(self, route_id: str, suffix: str) -> str:
        return f"/v1/routes/{quote(route_id, safe='')}{suffix}"

    def send_events(self, events: Sequence[TelemetryEvent]) -> None:
        body = {
            "tenantId": self.tenant_id,
            "events": [event.to_dict() for event in events],
        }
        try:
            response = self.session.post(
                self._url("/v1/driver-events"),
                data=json.dumps(body),
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as error:
            raise TransportError(f"Sending {len(events)} event(s) failed: {error}") from error
        LOGGER.debug("Delivered %d telemetry event(s)", len(events))

    def open_stream(self, route_id: str) -> StreamHandle:
        url = self._url(self._route_path(route_id, "/events/stream"))
        try:
            response = self.session.get(
                url,
                headers=self._headers(),
                stream=True,
                timeout=(self.timeout, None),
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as error:
            raise TransportError(f"Opening stream for {route_id} failed: {error}") from error
        return StreamHandle(response)

    def _get_json(self, path: str) -> Dict:
        try:
            response = self.session.get(
                self._url(path), headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as error:
            raise TransportError(f"GET {path} failed: {error}") from error
        except ValueError as error:
            raise ParseError(f"GET {path} returned invalid JSON: {error}") from error

    def fetch_path(self, route_id: str) -> List[LatLng]:
        payload = self._get_json(self._route_path(route_id, "/path")) or {}
        return list(_points(payload.get("points") or []))

    def fetch_latest_positions(self, route_id: str) -> List[Dict]:
        payload = self._get_json(self._route_path(route_id, "/drivers/latest")) or {}
        return list(payload.get("items") or [])

    def fetch_next_destination(self, route_id: str) -> Optional[Dict]:
        payload = self._get_json(self._route_path(route_id, "/next-destination"))
        if not payload or payload.get("lat") is None or payload.get("lng") is None:
            return None
        return payload

    def fetch_route(self, route_id: str) -> Dict:
        return self._get_json(self._route_path(route_id, "?includeBreaks=true"))


def _points(items: Iterable[Dict]) -> Iterator[LatLng]:
    for item in items:
        try:
            lat, lng = float(item["lat"]), float(item["lng"])
        except (KeyError, TypeError, ValueError):
            lat = lng = None
        if lat is None or not is_valid_coordinate(lat, lng):
            LOGGER.warning("Skipping malformed path point: %s", item)
            continue
        yield lat, lng
