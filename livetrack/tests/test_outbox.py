import os
import tempfile

from django.test import TestCase

from livetrack.errors import StorageUnavailable
from livetrack.events import TelemetryEvent
from livetrack.models import OutboxRecord
from livetrack.outbox import Delivery, OutboxQueue, connectivity_restored
from livetrack.storage import DatabaseOutboxStore, FlatFileOutboxStore, OutboxStore

from .helpers import FakeTransport, manual_scheduler


def location(agent="drv1", lat=23.81, lng=90.41, ts="2024-05-01T10:00:00+00:00"):
    return TelemetryEvent.location(agent, "route-1", lat, lng, timestamp=ts)


class UnavailableStore(OutboxStore):
    def check_available(self):
        raise StorageUnavailable("database is locked")

    def append(self, events):
        raise AssertionError("unavailable store used")

    def drain(self):
        raise AssertionError("unavailable store used")

    def count(self):
        raise AssertionError("unavailable store used")


class OutboxQueueTests(TestCase):
    def setUp(self):
        self.transport = FakeTransport()
        self.scheduler = manual_scheduler()
        self.outbox = OutboxQueue(
            self.transport,
            fallback=FlatFileOutboxStore(),
            scheduler=self.scheduler,
        )

    def tearDown(self):
        self.outbox.stop()

    def test_online_enqueue_sends_directly(self):
        event = location()
        self.assertEqual(self.outbox.enqueue(event), Delivery.SENT)
        self.assertEqual(self.transport.sent, [[event]])
        self.assertEqual(self.outbox.pending_count(), 0)

    def test_offline_enqueue_then_drain_returns_exactly_the_event(self):
        self.transport.online = False
        event = location()
        self.assertTrue(self.outbox.enqueue(event))
        self.assertEqual(OutboxRecord.objects.count(), 1)
        self.assertEqual(self.outbox.drain(), [event])
        self.assertEqual(self.outbox.drain(), [])
        self.assertEqual(OutboxRecord.objects.count(), 0)

    def test_drain_is_fifo_within_the_tier(self):
        self.transport.online = False
        events = [location(agent=f"drv{n}") for n in range(5)]
        for event in events:
            self.outbox.enqueue(event)
        self.assertEqual(self.outbox.drain(), events)

    def test_flush_delivers_one_batch_when_back_online(self):
        self.transport.online = False
        first, second = location(agent="a"), location(agent="b")
        self.outbox.enqueue(first)
        self.outbox.enqueue_many([second])
        self.transport.online = True
        self.assertEqual(self.outbox.flush(), 2)
        self.assertEqual(self.transport.sent, [[first, second]])
        self.assertEqual(self.outbox.pending_count(), 0)

    def test_failed_flush_does_not_requeue_drained_events(self):
        self.transport.online = False
        self.outbox.enqueue(location())
        with self.assertLogs("livetrack.outbox", level="WARNING") as logs:
            self.assertEqual(self.outbox.flush(), 0)
        self.assertIn("not re-queued", logs.output[0])
        self.assertEqual(self.outbox.pending_count(), 0)

    def test_periodic_flush(self):
        self.outbox.start()
        self.transport.online = False
        self.outbox.enqueue(location())
        self.transport.online = True
        self.scheduler.advance(29)
        self.assertEqual(self.transport.sent, [])
        self.scheduler.advance(1)
        self.assertEqual(len(self.transport.sent_events), 1)

    def test_outboxes_sharing_a_scheduler_flush_independently(self):
        transports = [FakeTransport(), FakeTransport()]
        with self.assertLogs("livetrack.outbox", level="WARNING"):
            queues = [
                OutboxQueue(
                    transport,
                    primary=UnavailableStore(),
                    fallback=FlatFileOutboxStore(),
                    scheduler=self.scheduler,
                    name=name,
                )
                for transport, name in zip(transports, ["console-outbox", "field-outbox"])
            ]
        for transport, outbox in zip(transports, queues):
            transport.online = False
            outbox.enqueue(location(agent=outbox.name))
            transport.online = True
            outbox.start()
        self.assertTrue(self.scheduler.pending("console-outbox:flush"))
        self.assertTrue(self.scheduler.pending("field-outbox:flush"))

        self.scheduler.advance(30)
        self.assertEqual([t.sent_events[0].agent_id for t in transports], ["console-outbox", "field-outbox"])

        queues[0].stop()
        self.assertFalse(self.scheduler.pending("console-outbox:flush"))
        self.assertTrue(self.scheduler.pending("field-outbox:flush"))
        queues[1].stop()

    def test_connectivity_restored_signal_triggers_flush(self):
        self.outbox.start()
        self.transport.online = False
        self.outbox.enqueue(location())
        self.transport.online = True
        connectivity_restored.send(sender=None)
        self.assertEqual(len(self.transport.sent_events), 1)

    def test_stopped_outbox_ignores_connectivity_signal(self):
        self.outbox.start()
        self.outbox.stop()
        self.transport.online = False
        self.outbox.enqueue(location())
        self.transport.online = True
        connectivity_restored.send(sender=None)
        self.assertEqual(self.transport.sent, [])
        self.assertEqual(self.outbox.pending_count(), 1)

    def test_unavailable_primary_falls_back_transparently(self):
        fallback = FlatFileOutboxStore()
        with self.assertLogs("livetrack.outbox", level="WARNING"):
            outbox = OutboxQueue(self.transport, primary=UnavailableStore(), fallback=fallback)
        self.assertIs(outbox.active, fallback)
        self.transport.online = False
        event = location()
        self.assertEqual(outbox.enqueue(event), Delivery.QUEUED)
        self.assertEqual(fallback.count(), 1)
        self.assertEqual(outbox.drain(), [event])
        self.assertEqual(fallback.count(), 0)

    def test_leftover_fallback_records_are_drained_with_the_primary(self):
        fallback = FlatFileOutboxStore()
        old = location(agent="old")
        fallback.append([old])
        outbox = OutboxQueue(self.transport, fallback=fallback)
        self.transport.online = False
        new = location(agent="new")
        outbox.enqueue(new)
        self.assertEqual(outbox.drain(), [new, old])


class FlatFileOutboxStoreTests(TestCase):
    def test_records_survive_a_new_store_instance(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "outbox.json")
            event = location()
            FlatFileOutboxStore(path).append([event])
            store = FlatFileOutboxStore(path)
            self.assertEqual(store.count(), 1)
            self.assertEqual(store.drain(), [event])
            self.assertEqual(FlatFileOutboxStore(path).count(), 0)

    def test_corrupt_file_starts_empty(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "outbox.json")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write("{broken")
            with self.assertLogs("livetrack.storage", level="WARNING"):
                self.assertEqual(FlatFileOutboxStore(path).drain(), [])

    def test_unreadable_records_are_dropped(self):
        store = DatabaseOutboxStore()
        OutboxRecord.objects.create(event={"driverId": "x"})
        store.append([location()])
        with self.assertLogs("livetrack.storage", level="WARNING"):
            drained = store.drain()
        self.assertEqual(len(drained), 1)
        self.assertEqual(store.count(), 0)
