import pytest

from logrelay.errors import RateLimitError, ValidationError
from logrelay.gate import (
    DedupTable, IngestionGate, RateLimiter, RateLimitPolicy, is_loopback,
)
from logrelay.store import LogStore

REMOTE = "203.0.113.7"


class Clock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


class RecordingHub:
    def __init__(self):
        self.calls = []

    def publish(self, tenant, origin, topic_map):
        self.calls.append((tenant, origin, topic_map))


def make_gate(clock=None, limit=1000, window_ms=60_000):
    clock = clock or Clock()
    store = LogStore(capacity=500, clock=clock)
    hub = RecordingHub()
    policy = RateLimitPolicy(limit, window_ms)
    gate = IngestionGate(
        store, hub,
        rate_limiter=RateLimiter(loopback=policy, remote=policy, clock=clock),
        dedup=DedupTable(ttl_ms=5000, max_entries=1000, clock=clock),
        clock=clock,
    )
    return gate, store, hub, clock


def warning(message="Deprecated prop", ts=1):
    return {"level": "warn", "message": message, "source": "App.tsx:10", "timestamp": ts}


def test_identical_leveled_event_within_ttl_is_stored_once():
    gate, store, _, clock = make_gate()
    first = gate.submit("shop", "web1", {"browser": [warning(ts=1)]}, REMOTE)
    clock.now += 1000
    second = gate.submit("shop", "web1", {"browser": [warning(ts=2)]}, REMOTE)

    assert (first.stored, first.suppressed, first.status) == (1, 0, "success")
    assert (second.stored, second.suppressed, second.status) == (0, 1, "skipped")
    assert store.read("shop", "web1", "browser").total_count == 1


def test_identical_leveled_event_after_ttl_is_stored_again():
    gate, store, _, clock = make_gate()
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    clock.now += 5001
    again = gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    assert again.stored == 1
    assert store.read("shop", "web1", "browser").total_count == 2


def test_duplicates_inside_one_batch_collapse():
    gate, store, _, _ = make_gate()
    result = gate.submit("shop", "web1", {"browser": [warning(), warning(), warning("other")]}, REMOTE)
    assert (result.stored, result.suppressed) == (2, 1)


def test_dedup_is_scoped_per_origin():
    gate, store, _, _ = make_gate()
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    other = gate.submit("shop", "web2", {"browser": [warning()]}, REMOTE)
    assert other.stored == 1


def test_structured_events_dedup_on_exact_payload():
    gate, store, _, _ = make_gate()
    gate.submit("shop", "web1", {"cart": {"items": 2}}, REMOTE)
    same = gate.submit("shop", "web1", {"cart": {"items": 2}}, REMOTE)
    different = gate.submit("shop", "web1", {"cart": {"items": 3}}, REMOTE)
    assert same.stored == 0
    assert different.stored == 1
    assert [e.payload.data for e in store.read("shop", "web1", "cart").events] == [{"items": 2}, {"items": 3}]


def test_structured_list_is_a_sequence_of_events():
    gate, store, _, _ = make_gate()
    result = gate.submit("shop", "web1", {"clicks": [{"id": 1}, {"id": 2}]}, REMOTE)
    assert result.stored == 2
    assert store.read("shop", "web1", "clicks").total_count == 2


def test_fully_suppressed_topic_is_omitted_and_hub_gets_exact_subset():
    gate, store, hub, _ = make_gate()
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    result = gate.submit("shop", "web1", {"browser": [warning()], "cart": {"items": 1}}, REMOTE)

    assert (result.stored, result.suppressed) == (1, 1)
    assert list(result.topics) == ["cart"]
    tenant, origin, topic_map = hub.calls[-1]
    assert (tenant, origin) == ("shop", "web1")
    assert list(topic_map) == ["cart"]
    assert topic_map["cart"][0].payload.data == {"items": 1}


def test_skipped_submission_does_not_publish():
    gate, _, hub, _ = make_gate()
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    assert len(hub.calls) == 1


@pytest.mark.parametrize("tenant, origin, logs", [
    (None, "web1", {"browser": []}),
    ("shop", "", {"browser": []}),
    ("shop", "web1", None),
    ("shop", "web1", {}),
    ("shop", "web1", [{"message": "x"}]),
    ("shop", "web1", "text"),
    ("shop", "web1", {"browser": ["not an object"]}),
])
def test_malformed_submissions_rejected_before_mutation(tenant, origin, logs):
    gate, store, hub, _ = make_gate()
    with pytest.raises(ValidationError):
        gate.submit(tenant, origin, logs, REMOTE)
    assert store.tenant_count() == 0
    assert hub.calls == []
    assert len(gate.rate_limiter) == 0


def test_request_over_limit_rejected_then_window_reset_allows():
    gate, store, _, clock = make_gate(limit=3, window_ms=10_000)
    for i in range(3):
        gate.submit("shop", "web1", {"browser": [warning(f"m{i}")]}, REMOTE)

    clock.now += 4000
    with pytest.raises(RateLimitError) as exc:
        gate.submit("shop", "web1", {"browser": [warning("m3")]}, REMOTE)
    assert exc.value.retry_after == 6
    assert exc.value.limit == 3
    assert exc.value.count == 4
    assert store.read("shop", "web1", "browser").total_count == 3

    clock.now += 6001
    ok = gate.submit("shop", "web1", {"browser": [warning("m3")]}, REMOTE)
    assert ok.stored == 1


def test_rate_limit_is_per_client():
    gate, _, _, _ = make_gate(limit=1)
    gate.submit("shop", "web1", {"a": 1}, "198.51.100.1")
    gate.submit("shop", "web1", {"a": 2}, "198.51.100.2")
    with pytest.raises(RateLimitError):
        gate.submit("shop", "web1", {"a": 3}, "198.51.100.1")


def test_loopback_clients_get_their_own_policy():
    clock = Clock()
    limiter = RateLimiter(loopback=RateLimitPolicy(5, 10_000), remote=RateLimitPolicy(1, 60_000), clock=clock)
    for _ in range(5):
        limiter.hit("127.0.0.1")
    limiter.hit(REMOTE)
    with pytest.raises(RateLimitError):
        limiter.hit(REMOTE)
    with pytest.raises(RateLimitError):
        limiter.hit("127.0.0.1")


@pytest.mark.parametrize("client, expected", [
    ("127.0.0.1", True),
    ("::1", True),
    ("::ffff:127.0.0.1", True),
    ("localhost", True),
    ("10.0.0.5", False),
    ("testclient", False),
])
def test_is_loopback(client, expected):
    assert is_loopback(client) is expected


def test_rate_limit_sweep_drops_only_expired_windows():
    clock = Clock()
    limiter = RateLimiter(remote=RateLimitPolicy(10, 1000), clock=clock)
    limiter.hit("198.51.100.1")
    clock.now += 900
    limiter.hit("198.51.100.2")
    clock.now += 200
    assert limiter.sweep() == 1
    assert len(limiter) == 1


def test_dedup_sweep_past_cap_removes_only_expired_fingerprints():
    clock = Clock()
    table = DedupTable(ttl_ms=5000, max_entries=3, clock=clock)
    for k in "abc":
        assert table.check_and_record(("t", "o", "browser", k), clock.now) is False
    clock.now += 4000
    table.check_and_record(("t", "o", "browser", "fresh"), clock.now)
    # over the cap but nothing is older than the TTL yet
    assert len(table) == 4

    clock.now += 1500
    table.check_and_record(("t", "o", "browser", "newest"), clock.now)
    assert len(table) == 2
    assert table.check_and_record(("t", "o", "browser", "fresh"), clock.now) is True


def test_expired_fingerprint_no_longer_suppresses_even_before_sweep():
    clock = Clock()
    table = DedupTable(ttl_ms=5000, max_entries=1000, clock=clock)
    key = ("t", "o", "browser", "k")
    table.check_and_record(key, clock.now)
    clock.now += 5000
    assert table.check_and_record(key, clock.now) is False


def test_injected_empty_limiter_and_dedup_are_used():
    store = LogStore()
    limiter = RateLimiter(remote=RateLimitPolicy(1, 60_000))
    dedup = DedupTable(ttl_ms=60_000)
    gate = IngestionGate(store, rate_limiter=limiter, dedup=dedup)

    assert gate.rate_limiter is limiter
    assert gate.dedup is dedup
    gate.submit("shop", "web1", {"browser": [warning()]}, REMOTE)
    with pytest.raises(RateLimitError):
        gate.submit("shop", "web1", {"browser": [warning("other")]}, REMOTE)
