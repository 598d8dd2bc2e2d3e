import asyncio
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fleet_roster import FleetRoster  # noqa: E402
from dispatch_models import CrewMember, CrewRole, Status, StatusCategory, Unit  # noqa: E402
from notifications import ERROR, INFO, Notifier  # noqa: E402


def test_history_is_bounded():
    notifier = Notifier(history=3)
    for i in range(5):
        notifier.info("t", f"m{i}")
    assert [n.message for n in notifier.recent()] == ["m2", "m3", "m4"]
    assert [n.message for n in notifier.recent(1)] == ["m4"]


def test_subscribers_receive_sse_frames():
    async def scenario():
        notifier = Notifier()
        q = notifier.subscribe()
        notifier.error("Location unavailable", "denied", {"key": "location:timeout"})
        frame = q.get_nowait()
        notifier.unsubscribe(q)
        notifier.info("after", "unsubscribed")
        return frame, q.empty()

    frame, empty = asyncio.run(scenario())
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    body = json.loads(frame[len("data: "):])
    assert body["level"] == ERROR
    assert body["payload"] == {"key": "location:timeout"}
    assert empty


def test_full_subscriber_queue_does_not_block():
    async def scenario():
        notifier = Notifier(queue_size=1)
        q = notifier.subscribe()
        notifier.info("a", "1")
        notifier.info("b", "2")
        return q.qsize(), len(notifier.recent())

    assert asyncio.run(scenario()) == (1, 2)


def test_error_once_until_cleared():
    notifier = Notifier()
    assert notifier.error_once("queue:poll", "down", "x") is not None
    assert notifier.error_once("queue:poll", "down", "x") is None
    notifier.clear("queue:poll")
    assert notifier.error_once("queue:poll", "down", "x") is not None
    assert len(notifier.recent()) == 2


def test_failing_sink_is_isolated():
    notifier = Notifier()
    seen = []

    def broken(notification):
        raise RuntimeError("sink down")

    notifier.add_sink(broken)
    notifier.add_sink(seen.append)
    notifier.info("New transport request", "Maria")
    assert [n.level for n in seen] == [INFO]


AVAILABLE = Status(id="1", label="Available", category=StatusCategory.AVAILABLE)
BUSY = Status(id="2", label="In service", category=StatusCategory.BUSY)
SHOP = Status(id="3", label="In maintenance", category=StatusCategory.OUT_OF_SERVICE)


def test_roster_replace_is_whole_snapshot():
    roster = FleetRoster()
    before = roster.snapshot()
    roster.replace([Unit(id="1", plate="A", status=AVAILABLE)], fetched_at=5.0)
    after = roster.snapshot()
    assert before.units == ()
    assert after is not before
    assert after.fetched_at == 5.0
    assert after.find("1").plate == "A"
    assert after.find("2") is None


def test_roster_stats_count_by_category():
    roster = FleetRoster()
    roster.replace(
        [
            Unit(id="1", plate="A", status=AVAILABLE),
            Unit(id="2", plate="B", status=AVAILABLE),
            Unit(id="3", plate="C", status=BUSY),
            Unit(id="4", plate="D", status=SHOP),
        ]
    )
    assert roster.snapshot().stats() == {"available": 2, "busy": 1, "out_of_service": 1, "total": 4}


def test_unit_for_crew_email():
    ana = CrewMember(id="3", given_name="Ana", family_name="Ruiz", role=CrewRole.PARAMEDIC, email="Ana@Example.org")
    roster = FleetRoster()
    roster.replace([Unit(id="1", plate="A", status=AVAILABLE), Unit(id="2", plate="B", status=BUSY, crew=(ana,))])
    snapshot = roster.snapshot()
    assert snapshot.unit_for_crew_email(" ana@example.org ").id == "2"
    assert snapshot.unit_for_crew_email("nobody@example.org") is None
    assert snapshot.unit_for_crew_email("") is None
