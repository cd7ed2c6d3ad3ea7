from livetrack.errors import TransportError
from livetrack.scheduler import CoalescingScheduler


class ManualClock:
    """A clock that only moves when the scheduler sleeps."""

    def __init__(self, start=1000.0):
        self.now = start

    def time(self):
        return self.now

    def sleep(self, seconds):
        if seconds > 0:
            self.now += seconds


def manual_scheduler(start=1000.0):
    return CoalescingScheduler(ManualClock(start))


def frame(event, data):
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


class FakeStreamHandle:
    """
    Replays ``chunks``, then raises ``error``, repeats ``repeat`` forever,
    reports an idle open stream (``b""``) when ``open_ended``, or ends.
    """

    def __init__(self, chunks=(), error=None, open_ended=False, repeat=None):
        self.chunks = list(chunks)
        self.error = error
        self.open_ended = open_ended
        self.repeat = repeat
        self.reads = 0
        self.closed = False

    def read_chunk(self):
        self.reads += 1
        if self.chunks:
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        if self.repeat is not None:
            return self.repeat
        if self.open_ended:
            return b""
        return None

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self):
        self.online = True
        self.sent = []
        self.streams = []
        self.opened = []
        self.paths = {}
        self.latest = {}
        self.routes = {}
        self.destinations = {}

    @property
    def sent_events(self):
        return [event for batch in self.sent for event in batch]

    def send_events(self, events):
        if not self.online:
            raise TransportError("network unreachable")
        self.sent.append(list(events))

    def open_stream(self, route_id):
        self.opened.append(route_id)
        if not self.streams:
            raise TransportError("connection refused")
        stream = self.streams.pop(0)
        if isinstance(stream, Exception):
            raise stream
        return stream

    def fetch_path(self, route_id):
        if route_id not in self.paths:
            raise TransportError("404")
        return self.paths[route_id]

    def fetch_latest_positions(self, route_id):
        return list(self.latest.get(route_id, []))

    def fetch_next_destination(self, route_id):
        return self.destinations.get(route_id)

    def fetch_route(self, route_id):
        if route_id not in self.routes:
            raise TransportError("404")
        return self.routes[route_id]
