"""
Storage tiers behind a single capability interface.

``DatabaseOutboxStore`` is the structured, durable primary tier backed by the
Django ORM. ``FlatFileOutboxStore`` keeps a flat JSON list on disk (or in
memory when no path is configured) and is used when the database cannot be
reached. Callers choose a tier once, by probing, and never branch per call.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from django.db import DatabaseError, transaction

from .errors import ParseError, StorageUnavailable
from .events import TelemetryEvent
from .models import LocalState, OutboxRecord

LOGGER = logging.getLogger(__name__)


class OutboxStore(ABC):
    tier = "primary"

    @abstractmethod
    def check_available(self) -> None:
        """Raise ``StorageUnavailable`` when the store cannot be used."""

    @abstractmethod
    def append(self, events: Sequence[TelemetryEvent]) -> None:
        pass

    @abstractmethod
    def drain(self) -> List[TelemetryEvent]:
        """Return every stored event in FIFO order and clear the store atomically."""

    @abstractmethod
    def count(self) -> int:
        pass


def _decode_records(records: Sequence[Dict[str, Any]], tier: str) -> List[TelemetryEvent]:
    events: List[TelemetryEvent] = []
    for record in records:
        try:
            events.append(TelemetryEvent.from_dict(record))
        except ParseError as error:
            LOGGER.warning("Dropping unreadable %s outbox record: %s", tier, error)
    return events


class DatabaseOutboxStore(OutboxStore):
    tier = "primary"

    def check_available(self) -> None:
        try:
            OutboxRecord.objects.filter(tier=self.tier).exists()
        except DatabaseError as error:
            raise StorageUnavailable(f"Outbox table unavailable: {error}") from error

    def append(self, events: Sequence[TelemetryEvent]) -> None:
        OutboxRecord.objects.bulk_create(
            [OutboxRecord(tier=self.tier, event=event.to_dict()) for event in events]
        )

    def drain(self) -> List[TelemetryEvent]:
        with transaction.atomic():
            rows = list(
                OutboxRecord.objects.filter(tier=self.tier).order_by("id").values("id", "event")
            )
            if not rows:
                return []
            OutboxRecord.objects.filter(tier=self.tier, id__lte=rows[-1]["id"]).delete()
        return _decode_records([row["event"] for row in rows], self.tier)

    def count(self) -> int:
        return OutboxRecord.objects.filter(tier=self.tier).count()


class FlatFileOutboxStore(OutboxStore):
    tier = "fallback"

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._memory: List[Dict[str, Any]] = []

    def check_available(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        if not os.access(directory, os.W_OK):
            raise StorageUnavailable(f"Cannot write outbox file in {directory}")

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path:
            return list(self._memory)
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                entries = json.load(handle)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Outbox file %s unreadable, starting empty: %s", self.path, error)
            return []
        return entries if isinstance(entries, list) else []

    def _save(self, entries: List[Dict[str, Any]]) -> None:
        if not self.path:
            self._memory = list(entries)
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        descriptor, temp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump(entries, handle)
        os.replace(temp_path, self.path)

    def append(self, events: Sequence[TelemetryEvent]) -> None:
        entries = self._load()
        entries.extend({"tier": self.tier, "event": event.to_dict()} for event in events)
        self._save(entries)

    def drain(self) -> List[TelemetryEvent]:
        entries = self._load()
        if not entries:
            return []
        self._save([])
        return _decode_records([entry.get("event") or {} for entry in entries], self.tier)

    def count(self) -> int:
        return len(self._load())


class LocalStateStore:
    """
    Keyed opaque payloads: last route id, route snapshots, toggle preferences.

    Falls back to process memory when the database cannot be used.
    """

    def __init__(self):
        self._memory: Dict[str, Any] = {}
        try:
            LocalState.objects.exists()
            self._durable = True
        except DatabaseError as error:
            LOGGER.warning("Local state table unavailable, keeping state in memory: %s", error)
            self._durable = False

    @property
    def durable(self) -> bool:
        return self._durable

    def get(self, key: str, default: Any = None) -> Any:
        if not self._durable:
            return self._memory.get(key, default)
        entry = LocalState.objects.filter(key=key).first()
        return default if entry is None else entry.payload

    def put(self, key: str, payload: Any) -> None:
        if not self._durable:
            self._memory[key] = payload
            return
        LocalState.objects.update_or_create(key=key, defaults={"payload": payload})

    def delete(self, key: str) -> None:
        if not self._durable:
            self._memory.pop(key, None)
            return
        LocalState.objects.filter(key=key).delete()
