"""
Durable outbox for telemetry that could not be delivered immediately.

Delivery is best-effort: once a batch has been drained it is sent exactly once.
If that send fails the drained events are logged and dropped, not re-queued.
The backend is expected to consume telemetry idempotently.
"""
from __future__ import annotations

import enum
import logging
from typing import List, Optional, Sequence

from django.dispatch import Signal

from . import conf
from .errors import StorageUnavailable, TransportError
from .events import TelemetryEvent
from .scheduler import CoalescingScheduler
from .storage import DatabaseOutboxStore, FlatFileOutboxStore, OutboxStore

LOGGER = logging.getLogger(__name__)

# Sent by the hosting surface when the network comes back.
connectivity_restored = Signal()


class Delivery(enum.Enum):
    SENT = "sent"
    QUEUED = "queued"


class OutboxQueue:
    def __init__(
        self,
        transport,
        primary: Optional[OutboxStore] = None,
        fallback: Optional[OutboxStore] = None,
        scheduler: Optional[CoalescingScheduler] = None,
        flush_seconds: Optional[float] = None,
        name: str = "outbox",
    ):
        config = conf.get_config()
        self.name = name
        self._flush_key = f"{name}:flush"
        self.transport = transport
        self.scheduler = scheduler
        self.flush_seconds = (
            flush_seconds if flush_seconds is not None else config["outbox_flush_seconds"]
        )
        primary = primary if primary is not None else DatabaseOutboxStore()
        fallback = (
            fallback
            if fallback is not None
            else FlatFileOutboxStore(config["outbox_fallback_path"])
        )
        self.tiers: List[OutboxStore] = self._select_tiers(primary, fallback)
        self._started = False

    @staticmethod
    def _select_tiers(primary: OutboxStore, fallback: OutboxStore) -> List[OutboxStore]:
        try:
            primary.check_available()
        except StorageUnavailable as error:
            LOGGER.warning("Primary outbox unavailable, using %s tier: %s", fallback.tier, error)
            return [fallback]
        try:
            fallback.check_available()
        except StorageUnavailable:
            return [primary]
        # The fallback may still hold events from an earlier degraded session.
        return [primary, fallback]

    @property
    def active(self) -> OutboxStore:
        return self.tiers[0]

    def enqueue(self, event: TelemetryEvent) -> Delivery:
        return self.enqueue_many([event])

    def enqueue_many(self, events: Sequence[TelemetryEvent]) -> Delivery:
        """
        Send ``events`` now, or persist them for a later flush.

        Either way the events are accepted; ``Delivery`` only tells the caller
        which path was taken.
        """
        events = list(events)
        if not events:
            return Delivery.SENT
        try:
            self.transport.send_events(events)
        except TransportError as error:
            self.active.append(events)
            LOGGER.info(
                "Queued %d event(s) in %s outbox: %s", len(events), self.active.tier, error
            )
            return Delivery.QUEUED
        return Delivery.SENT

    def drain(self) -> List[TelemetryEvent]:
        drained: List[TelemetryEvent] = []
        for store in self.tiers:
            drained.extend(store.drain())
        return drained

    def pending_count(self) -> int:
        return sum(store.count() for store in self.tiers)

    def flush(self) -> int:
        """Drain every tier and deliver the result as one batch."""
        events = self.drain()
        if not events:
            return 0
        try:
            self.transport.send_events(events)
        except TransportError as error:
            LOGGER.warning(
                "Outbox flush failed, %d drained event(s) were not re-queued: %s",
                len(events),
                error,
            )
            return 0
        LOGGER.info("Flushed %d outbox event(s)", len(events))
        return len(events)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.scheduler is not None:
            self.scheduler.every(self._flush_key, self.flush_seconds, self.flush)
        connectivity_restored.connect(self._on_connectivity_restored, weak=False, dispatch_uid=id(self))

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(self._flush_key)
        connectivity_restored.disconnect(dispatch_uid=id(self))
        self._started = False

    def _on_connectivity_restored(self, sender, **kwargs) -> None:
        LOGGER.info("Connectivity restored, flushing outbox")
        self.flush()
