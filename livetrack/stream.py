"""
Live event-stream consumer with reconnect backoff.

One ``StreamConsumer`` owns one subscription. The transport buffers incoming
chunks off the scheduler thread; each pump turn consumes a bounded number of
the chunks already received and re-arms after ``stream_poll_seconds``, so
debounce, flush and simulation timers run between turns.
"""
from __future__ import annotations

import codecs
import enum
import json
import logging
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional

from . import conf
from .errors import InputError, ParseError, TransportError
from .events import StreamFrame
from .scheduler import CoalescingScheduler

LOGGER = logging.getLogger(__name__)

WILDCARD = "*"
DEFAULT_EVENT = "message"

Listener = Callable[[StreamFrame], None]


class StreamState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def delay_sequence(count: int, base: float = 2.0, cap: float = 30.0) -> List[float]:
    """The reconnect delays used for ``count`` consecutive failures."""
    delays: List[float] = []
    delay = base
    for _ in range(count):
        delays.append(delay)
        delay = min(delay * 2, cap)
    return delays


class FrameParser:
    """
    Incremental parser for blank-line delimited ``event:``/``data:`` blocks.

    Partial blocks are buffered until their delimiter arrives.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._carry = ""

    @property
    def remainder(self) -> str:
        return self._buffer

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""
        self._carry = ""

    def feed(self, chunk) -> List[StreamFrame]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        chunk = self._carry + chunk
        # A trailing CR may be the first half of a CRLF split across reads.
        self._carry = "\r" if chunk.endswith("\r") else ""
        if self._carry:
            chunk = chunk[:-1]
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        *blocks, self._buffer = self._buffer.split("\n\n")
        frames: List[StreamFrame] = []
        for block in blocks:
            if not block.strip():
                continue
            try:
                frames.append(parse_block(block))
            except ParseError as error:
                LOGGER.warning("Dropping malformed stream frame: %s", error)
        return frames


def parse_block(block: str) -> StreamFrame:
    event_name = DEFAULT_EVENT
    data_lines: List[str] = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip() or DEFAULT_EVENT
        elif name == "data":
            data_lines.append(value)
    if not data_lines:
        raise ParseError(f"{event_name} frame has no data line")
    text = "\n".join(data_lines)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as error:
        raise ParseError(f"{event_name} frame has undecodable data: {error}") from error
    return StreamFrame(event_name=event_name, data=data, raw=block)


class StreamConsumer:
    def __init__(
        self,
        transport,
        scheduler: CoalescingScheduler,
        auto_reconnect: Optional[bool] = None,
        name: str = "stream",
    ):
        config = conf.get_config()
        self.transport = transport
        self.scheduler = scheduler
        self.auto_reconnect = (
            config["auto_reconnect"] if auto_reconnect is None else auto_reconnect
        )
        self.base_delay = float(config["reconnect_base_seconds"])
        self.max_delay = float(config["reconnect_max_seconds"])
        self.delay = self.base_delay
        self.log: Deque[StreamFrame] = deque(maxlen=int(config["event_log_size"]))
        self.poll_seconds = float(config["stream_poll_seconds"])
        self.chunks_per_pump = max(1, int(config["stream_chunks_per_pump"]))
        self.state = StreamState.IDLE
        self.route_id: Optional[str] = None
        self.last_activity: Optional[float] = None
        self.message = ""
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._parser = FrameParser()
        self._handle = None
        self._connect_key = f"{name}:connect"
        self._pump_key = f"{name}:pump"
        self._key_prefix = f"{name}:"

    def on(self, event_name: str, listener: Listener) -> None:
        self._listeners[event_name].append(listener)

    def off(self, event_name: str, listener: Listener) -> None:
        if listener in self._listeners.get(event_name, []):
            self._listeners[event_name].remove(listener)

    def start(self, route_id: Optional[str]) -> bool:
        if not route_id:
            self.message = str(InputError("Select a route before connecting."))
            LOGGER.info("Stream not started: no route selected")
            return False
        if self.state not in (StreamState.IDLE, StreamState.CLOSED):
            self.stop()
        self.message = ""
        self.route_id = route_id
        self.delay = self.base_delay
        self._connect()
        return True

    def retry_now(self) -> None:
        """Skip the pending backoff and reconnect immediately."""
        if self.route_id is None:
            return
        self.scheduler.cancel(self._connect_key)
        self._release()
        self.delay = self.base_delay
        self._connect()

    def stop(self) -> None:
        self.scheduler.cancel_prefix(self._key_prefix)
        self._release()
        if self.state is not StreamState.CLOSED:
            LOGGER.info("Stream for %s closed", self.route_id)
        self.state = StreamState.CLOSED

    def reconnect_in(self) -> Optional[float]:
        return self.scheduler.due_in(self._connect_key)

    def visible_log(self) -> List[StreamFrame]:
        return list(self.log)

    def clear_log(self) -> None:
        self.log.clear()

    def _connect(self) -> None:
        self.state = StreamState.CONNECTING
        self._parser.reset()
        try:
            self._handle = self.transport.open_stream(self.route_id)
        except TransportError as error:
            LOGGER.warning("Stream connect for %s failed: %s", self.route_id, error)
            self._on_terminated()
            return
        self.state = StreamState.STREAMING
        self.delay = self.base_delay
        LOGGER.info("Streaming events for route %s", self.route_id)
        self.scheduler.schedule(self._pump_key, 0, self._pump)

    def _pump(self) -> None:
        """Consume what has already arrived, up to ``chunks_per_pump`` chunks."""
        handle = self._handle
        if handle is None:
            return
        for _ in range(self.chunks_per_pump):
            try:
                chunk = handle.read_chunk()
            except TransportError as error:
                LOGGER.warning("Stream for %s interrupted: %s", self.route_id, error)
                self._on_terminated()
                return
            if chunk is None:
                LOGGER.info("Stream for %s ended by server", self.route_id)
                self._on_terminated()
                return
            if not chunk:
                break
            for frame in self._parser.feed(chunk):
                self._dispatch(frame)
            if self._handle is not handle:
                # A listener stopped or restarted the subscription.
                return
        self.scheduler.schedule(self._pump_key, self.poll_seconds, self._pump)

    def _dispatch(self, frame: StreamFrame) -> None:
        self.last_activity = self.scheduler.now()
        if not frame.is_heartbeat:
            self.log.append(frame)
        for listener in self._listeners.get(frame.event_name, []) + self._listeners.get(WILDCARD, []):
            try:
                listener(frame)
            except ParseError as error:
                LOGGER.warning("Dropping %s frame: %s", frame.event_name, error)
            except Exception:
                LOGGER.exception("Listener for %s frame failed, frame dropped", frame.event_name)

    def _on_terminated(self) -> None:
        self._release()
        if not self.auto_reconnect:
            self.state = StreamState.CLOSED
            return
        self.state = StreamState.RECONNECTING
        LOGGER.info("Reconnecting %s in %.0fs", self.route_id, self.delay)
        self.scheduler.schedule(self._connect_key, self.delay, self._connect)
        self.delay = min(self.delay * 2, self.max_delay)

    def _release(self) -> None:
        self.scheduler.cancel(self._pump_key)
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
