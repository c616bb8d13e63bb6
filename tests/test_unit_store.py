import random
import threading

from logrelay.models import LeveledPayload, LogEvent, StructuredPayload
from logrelay.store import LogStore


def ev(message, ts=1000, topic="browser", tenant="A", origin="H"):
    return LogEvent(ts, topic, tenant, origin, LeveledPayload("info", message, "app.js:1"))


def data_ev(data, ts=1000, topic="metrics"):
    return LogEvent(ts, topic, "A", "H", StructuredPayload(data))


def messages(events):
    return [e.payload.message for e in events]


def test_capacity_three_keeps_last_three():
    store = LogStore(capacity=3)
    for m in "abcd":
        store.write("A", "H", "browser", [ev(m)])
    assert messages(store.read("A", "H", "browser", limit=10).events) == ["b", "c", "d"]


def test_bucket_never_exceeds_capacity_and_keeps_most_recent_in_order():
    rnd = random.Random(7)
    store = LogStore(capacity=5)
    written = []
    n = 0
    for _ in range(40):
        batch = [ev(str(n + i)) for i in range(rnd.randint(1, 4))]
        n += len(batch)
        written.extend(batch)
        store.write("A", "H", "browser", batch)
        result = store.read("A", "H", "browser", limit=100)
        assert result.total_count <= 5
        assert result.events == written[-5:]


def test_round_trip_returns_written_events_in_order():
    store = LogStore()
    events = [ev(f"m{i}", ts=1000 + i) for i in range(12)]
    store.write("A", "H", "browser", events)
    result = store.read("A", "H", "browser", limit=len(events))
    assert result.events == events
    assert result.total_count == 12


def test_read_limit_returns_most_recent_oldest_first():
    store = LogStore()
    store.write("A", "H", "browser", [ev(str(i)) for i in range(10)])
    result = store.read("A", "H", "browser", limit=3)
    assert messages(result.events) == ["7", "8", "9"]
    assert result.total_count == 10


def test_missing_address_is_empty_not_error():
    store = LogStore()
    store.write("A", "H", "browser", [ev("x")])
    for address in [("B", "H", "browser"), ("A", "X", "browser"), ("A", "H", "other")]:
        result = store.read(*address)
        assert result.events == [] and result.total_count == 0


def test_filter_is_case_insensitive_and_total_is_prefilter():
    store = LogStore()
    store.write("A", "H", "browser", [ev("Failed to fetch"), ev("ok"), ev("fetch retry")])
    result = store.read("A", "H", "browser", limit=20, text_filter="FETCH")
    assert messages(result.events) == ["Failed to fetch", "fetch retry"]
    assert result.total_count == 3


def test_filter_matches_serialized_structured_payload():
    store = LogStore()
    store.write("A", "H", "metrics", [data_ev({"route": "/cart", "ms": 12}), data_ev({"route": "/home"})])
    result = store.read("A", "H", "metrics", text_filter='"route":"/cart"')
    assert len(result.events) == 1
    assert result.events[0].payload.data["ms"] == 12


def test_enumeration_reports_counts_and_activity():
    clock = iter(range(100, 1000, 10)).__next__
    store = LogStore(clock=clock)
    store.write("A", "H1", "browser", [ev("a"), ev("b")])
    store.write("A", "H1", "metrics", [data_ev({"x": 1})])
    store.write("A", "H2", "browser", [ev("c")])
    store.write("B", "H9", "browser", [ev("d")])

    topics = {t.topic: t for t in store.list_topics("A", "H1")}
    assert topics["browser"].count == 2
    assert topics["metrics"].count == 1
    assert topics["metrics"].last_activity > topics["browser"].last_activity

    origins = {o.origin: o for o in store.list_origins("A")}
    assert set(origins) == {"H1", "H2"}
    assert origins["H1"].total == 3
    assert origins["H1"].connected_at == 100

    tenants = {t.tenant: t for t in store.list_tenants()}
    assert tenants["A"].total == 4
    assert tenants["B"].total == 1
    assert store.tenant_count() == 2

    assert store.list_topics("A", "nope") == []
    assert store.list_origins("nope") == []


def test_concurrent_writers_on_different_topics_lose_nothing():
    store = LogStore(capacity=1000)

    def writer(topic):
        for i in range(200):
            store.write("A", "H", topic, [ev(str(i), topic=topic)])

    threads = [threading.Thread(target=writer, args=(f"t{k}",)) for k in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for k in range(8):
        result = store.read("A", "H", f"t{k}", limit=1000)
        assert messages(result.events) == [str(i) for i in range(200)]
