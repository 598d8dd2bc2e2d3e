import asyncio
import sys
import time
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dispatch_errors import TransientNetworkError  # noqa: E402
from dispatch_models import RequestStatus, TransportRequest  # noqa: E402
from notifications import Notifier  # noqa: E402
from queue_watcher import ChangeKind, DispatchQueueWatcher, QueueChange, classify_changes  # noqa: E402


def _req(request_id, status):
    return TransportRequest(
        id=request_id,
        patient=f"Patient {request_id}",
        origin="Clinica del Norte",
        destination="Hospital General",
        requested_at="2024-03-01T10:00:00Z",
        status=status,
    )


P, IP, C, X = RequestStatus.PENDING, RequestStatus.IN_PROCESS, RequestStatus.COMPLETED, RequestStatus.CANCELLED


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class QueueClient:
    def __init__(self, *lists):
        self.lists = list(lists)
        self.calls = 0

    async def list_requests(self):
        self.calls += 1
        result = self.lists[min(self.calls - 1, len(self.lists) - 1)]
        if isinstance(result, Exception):
            raise result
        return result


def test_classification_example():
    previous = {"1": P, "2": IP}
    current = [_req("1", IP), _req("2", IP), _req("3", P)]
    kinds = [(c.request_id, c.kind) for c in classify_changes(previous, current)]
    assert kinds == [
        ("1", ChangeKind.TRANSITIONED),
        ("2", ChangeKind.UNCHANGED),
        ("3", ChangeKind.CREATED),
    ]


def test_removed_requests_are_appended():
    changes = classify_changes({"1": P, "9": C}, [_req("1", P)])
    assert [(c.request_id, c.kind) for c in changes] == [
        ("1", ChangeKind.UNCHANGED),
        ("9", ChangeKind.REMOVED),
    ]


def test_first_poll_primes_without_events():
    client = QueueClient([_req("1", P), _req("2", IP)])
    notifier = Notifier()
    watcher = DispatchQueueWatcher(client, notifier, clock=FakeClock())
    events = []
    watcher.on_change(events.append)

    changes = asyncio.run(watcher.poll())

    assert changes == []
    assert events == []
    assert watcher.primed
    assert watcher.status_of("2") is IP
    assert notifier.recent() == []


def test_events_follow_list_order_once_each():
    client = QueueClient(
        [_req("1", P), _req("2", IP)],
        [_req("1", IP), _req("2", IP), _req("3", P)],
        [_req("1", IP), _req("2", IP), _req("3", P)],
    )
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), clock=clock)
    events = []
    watcher.on_change(events.append)

    async def scenario():
        await watcher.poll()
        clock.now += 15
        await watcher.poll()
        clock.now += 15
        await watcher.poll()

    asyncio.run(scenario())
    assert [(e.request_id, e.kind) for e in events] == [
        ("1", ChangeKind.TRANSITIONED),
        ("3", ChangeKind.CREATED),
    ]
    assert events[0].previous_status is P
    assert events[0].current_status is IP


def test_notifications_describe_new_and_updated_requests():
    client = QueueClient([_req("1", P)], [_req("1", X), _req("2", P)])
    clock = FakeClock()
    notifier = Notifier()
    watcher = DispatchQueueWatcher(client, notifier, clock=clock)

    async def scenario():
        await watcher.poll()
        clock.now += 15
        await watcher.poll()

    asyncio.run(scenario())
    titles = [n.title for n in notifier.recent()]
    assert titles == ["Transport request updated", "New transport request"]
    assert "from pending to cancelled" in notifier.recent()[0].message


def test_failed_poll_keeps_snapshot_and_reports_once():
    client = QueueClient(
        [_req("1", P)],
        TransientNetworkError("down"),
        TransientNetworkError("down"),
        [_req("1", IP)],
    )
    clock = FakeClock()
    notifier = Notifier()
    watcher = DispatchQueueWatcher(client, notifier, clock=clock)
    events = []
    watcher.on_change(events.append)

    async def scenario():
        for _ in range(4):
            await watcher.poll()
            if client.calls in (2, 3):
                assert watcher.status_of("1") is P
            clock.now += 15

    asyncio.run(scenario())
    assert watcher.failed_polls == 2
    assert len([n for n in notifier.recent() if n.level == "error"]) == 1
    # The transition is detected against the last good snapshot.
    assert [(e.request_id, e.kind) for e in events] == [("1", ChangeKind.TRANSITIONED)]


def test_removed_request_emits_nothing():
    client = QueueClient([_req("1", P), _req("2", P)], [_req("1", P)])
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), clock=clock)
    events = []
    watcher.on_change(events.append)

    async def scenario():
        await watcher.poll()
        clock.now += 15
        return await watcher.poll()

    assert asyncio.run(scenario()) == []
    assert events == []
    assert watcher.status_of("2") is None


def test_unforced_polls_respect_min_gap():
    client = QueueClient([_req("1", P)])
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), min_gap_s=5, clock=clock)

    async def scenario():
        await watcher.poll()
        clock.now += 2
        skipped = await watcher.poll()
        forced = await watcher.poll(force=True)
        clock.now += 3
        later = await watcher.poll()
        return skipped, forced, later

    skipped, forced, later = asyncio.run(scenario())
    assert skipped is None
    assert forced == []
    assert later == []
    assert client.calls == 3
    assert watcher.throttled_polls == 1


def test_timer_interval_never_below_gap():
    watcher = DispatchQueueWatcher(QueueClient([]), Notifier(), interval_s=1, min_gap_s=5)
    assert watcher.interval_s == 5


def test_apply_uses_same_classification():
    watcher = DispatchQueueWatcher(QueueClient([]), Notifier())

    async def scenario():
        first = await watcher.apply([_req("1", P)])
        second = await watcher.apply([_req("1", C)])
        return first, second

    first, second = asyncio.run(scenario())
    assert first == []
    assert [(c.request_id, c.kind) for c in second] == [("1", ChangeKind.TRANSITIONED)]


def test_stop_discards_inflight_poll():
    class SlowClient:
        async def list_requests(self):
            await asyncio.sleep(0.1)
            return [_req("1", P)]

    watcher = DispatchQueueWatcher(SlowClient(), Notifier(), interval_s=5, min_gap_s=0.01)

    async def scenario():
        watcher.start()
        await asyncio.sleep(0.02)
        watcher.stop()
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert not watcher.primed
    assert watcher.snapshot().requests == ()
    assert watcher.running is False


def test_listener_errors_do_not_block_other_listeners():
    client = QueueClient([], [_req("1", P)])
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), clock=clock)
    seen = []

    def broken(change):
        raise RuntimeError("boom")

    watcher.on_change(broken)
    watcher.on_change(seen.append)

    async def scenario():
        await watcher.poll()
        clock.now += 15
        await watcher.poll()

    asyncio.run(scenario())
    assert [c.request_id for c in seen] == ["1"]


def test_completed_and_created_in_one_poll():
    client = QueueClient(
        [_req("A", P), _req("B", IP)],
        [_req("A", P), _req("B", C), _req("C", P)],
    )
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), clock=clock)

    async def scenario():
        await watcher.poll()
        clock.now += 15
        return await watcher.poll()

    events = asyncio.run(scenario())
    assert [(e.request_id, e.kind, e.previous_status, e.current_status) for e in events] == [
        ("B", ChangeKind.TRANSITIONED, IP, C),
        ("C", ChangeKind.CREATED, None, P),
    ]


def test_timer_ticks_are_never_throttled():
    client = QueueClient([_req("1", P)])
    clock = FakeClock()
    watcher = DispatchQueueWatcher(client, Notifier(), interval_s=5, min_gap_s=5, clock=clock)

    async def scenario():
        await watcher.poll(scheduled=True)
        clock.now += 4.9
        second = await watcher.poll(scheduled=True)
        clock.now += 1
        external = await watcher.poll()
        return second, external

    second, external = asyncio.run(scenario())
    assert second == []
    # An external unforced poll is still measured against the last timer tick.
    assert external is None
    assert client.calls == 2
    assert watcher.throttled_polls == 1


def test_late_first_tick_does_not_drop_the_next():
    class LateClock:
        def __init__(self):
            self.reads = 0

        def __call__(self):
            self.reads += 1
            lag = 0.03 if self.reads == 1 else 0.0
            return time.monotonic() + lag

    client = QueueClient([_req("1", P)])
    watcher = DispatchQueueWatcher(client, Notifier(), interval_s=0.05, min_gap_s=0.05, clock=LateClock())

    async def scenario():
        watcher.start()
        await asyncio.sleep(0.18)
        watcher.stop()

    asyncio.run(scenario())
    assert client.calls >= 3
    assert watcher.throttled_polls == 0


def test_change_without_request_is_not_emitted():
    notifier = Notifier()
    watcher = DispatchQueueWatcher(QueueClient([]), notifier)
    seen = []
    watcher.on_change(seen.append)

    watcher._emit(QueueChange(kind=ChangeKind.CREATED, request_id="7"))

    assert seen == []
    assert notifier.recent() == []
