"""
Error taxonomy for the live tracking layer.

None of these are fatal to the client: transport failures fall back to the
outbox or the reconnect path, parse failures drop a single frame, storage
failures select the fallback tier and input errors become operator messages.
"""


class LiveTrackError(Exception):
    pass


class TransportError(LiveTrackError):
    """A send, connect or stream read failed."""


class ParseError(LiveTrackError):
    """A frame or record could not be decoded."""


class StorageUnavailable(LiveTrackError):
    """The primary durable store cannot be used."""


class InputError(LiveTrackError):
    """A required identifier (route, path, agent) is missing."""
