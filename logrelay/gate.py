# logrelay/gate.py
from __future__ import annotations
import ipaddress
import math
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple

from logrelay.errors import RateLimitError, ValidationError
from logrelay.logging import get_logger
from logrelay.models import LogEvent, events_from_wire, now_ms
from logrelay.store import LogStore

log = get_logger(__name__)

WARN_EVERY_MS = 5000


class _StripedLocks:
    """A fixed pool of locks; a key always maps to the same one."""

    def __init__(self, stripes: int = 64):
        self._locks = [Lock() for _ in range(stripes)]

    def for_key(self, key: Hashable) -> Lock:
        return self._locks[hash(key) % len(self._locks)]


def is_loopback(client: str) -> bool:
    try:
        addr = ipaddress.ip_address(client)
    except ValueError:
        return client == "localhost"
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.is_loopback


# ---------- rate limiting ----------
@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_ms: int


LOOPBACK_POLICY = RateLimitPolicy(limit=200, window_ms=10_000)
REMOTE_POLICY = RateLimitPolicy(limit=1000, window_ms=60_000)


@dataclass
class RateLimitCounter:
    count: int
    reset_at: int
    last_warning: int = 0


class RateLimiter:
    def __init__(self,
                 loopback: RateLimitPolicy = LOOPBACK_POLICY,
                 remote: RateLimitPolicy = REMOTE_POLICY,
                 clock: Callable[[], int] = now_ms,
                 max_entries: int = 10_000):
        self.loopback = loopback
        self.remote = remote
        self.max_entries = max_entries
        self._clock = clock
        self._counters: Dict[str, RateLimitCounter] = {}
        self._locks = _StripedLocks()

    def policy_for(self, client: str) -> RateLimitPolicy:
        return self.loopback if is_loopback(client) else self.remote

    def hit(self, client: str) -> int:
        """Count one request for *client*; raise RateLimitError past the policy limit."""
        policy = self.policy_for(client)
        now = self._clock()
        warn = False
        with self._locks.for_key(client):
            c = self._counters.get(client)
            if c is None:
                c = self._counters[client] = RateLimitCounter(0, now + policy.window_ms)
            elif now > c.reset_at:
                c.count = 0
                c.reset_at = now + policy.window_ms
            c.count += 1
            count, reset_at = c.count, c.reset_at
            if count > policy.limit * 3 // 4 and now - c.last_warning > WARN_EVERY_MS:
                c.last_warning = now
                warn = True

        if warn:
            log.warning("high_request_rate", client=client, count=count,
                        window_s=policy.window_ms / 1000)
        if len(self._counters) > self.max_entries:
            self.sweep(now)
        if count > policy.limit:
            retry_after = max(1, math.ceil((reset_at - now) / 1000))
            raise RateLimitError(retry_after=retry_after, count=count, limit=policy.limit)
        return count

    def sweep(self, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        for client, c in self._counters.copy().items():
            if now <= c.reset_at:
                continue
            with self._locks.for_key(client):
                current = self._counters.get(client)
                if current is not None and now > current.reset_at:
                    del self._counters[client]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._counters)


# ---------- dedup ----------
FingerprintKey = Tuple[str, str, str, str]


class DedupTable:
    """
    Last-seen time per (tenant, origin, topic, payload fingerprint).
    Entries older than the TTL no longer suppress anything; they are only
    removed by a sweep once the table grows past max_entries.
    """

    def __init__(self, ttl_ms: int = 5000, max_entries: int = 1000,
                 clock: Callable[[], int] = now_ms):
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock
        self._seen: Dict[FingerprintKey, int] = {}
        self._locks = _StripedLocks()

    def check_and_record(self, key: FingerprintKey, now: int) -> bool:
        """Return True if *key* is a duplicate; otherwise remember it as seen at *now*."""
        with self._locks.for_key(key):
            last = self._seen.get(key)
            if last is not None and now - last < self.ttl_ms:
                return True
            self._seen[key] = now
        if len(self._seen) > self.max_entries:
            self.sweep(now)
        return False

    def sweep(self, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        for key, last in self._seen.copy().items():
            if now - last <= self.ttl_ms:
                continue
            with self._locks.for_key(key):
                # re-check: a concurrent refresh wins over the sweep
                current = self._seen.get(key)
                if current is not None and now - current > self.ttl_ms:
                    del self._seen[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._seen)


# ---------- gate ----------
@dataclass
class Accepted:
    stored: int
    suppressed: int
    topics: Dict[str, List[LogEvent]] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return "success" if self.stored else "skipped"


def _require_name(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required fields: tenant, origin, logs ({name} is empty)")
    return value


class IngestionGate:
    """validate -> rate limit -> dedup -> store -> publish, one request at a time."""

    def __init__(self, store: LogStore, hub: Any = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 dedup: Optional[DedupTable] = None,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.hub = hub
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(clock=clock)
        self.dedup = dedup if dedup is not None else DedupTable(clock=clock)
        self._clock = clock

    def _parse(self, tenant: str, origin: str, topic_map: Any,
               now: int) -> Dict[str, List[LogEvent]]:
        if topic_map is None or (isinstance(topic_map, (Mapping, list, str)) and not topic_map):
            raise ValidationError("Missing required fields: tenant, origin, logs")
        if not isinstance(topic_map, Mapping):
            raise ValidationError("logs must be an object with topic keys")
        parsed: Dict[str, List[LogEvent]] = {}
        for topic, value in topic_map.items():
            if not isinstance(topic, str) or not topic:
                raise ValidationError("topic names must be non-empty strings")
            parsed[topic] = events_from_wire(tenant, origin, topic, value, now)
        return parsed

    def submit(self, tenant: Any, origin: Any, topic_map: Any, client: str) -> Accepted:
        tenant = _require_name(tenant, "tenant")
        origin = _require_name(origin, "origin")
        now = self._clock()
        parsed = self._parse(tenant, origin, topic_map, now)

        try:
            self.rate_limiter.hit(client)
        except RateLimitError as e:
            log.warning("rate_limited", client=client, count=e.count, limit=e.limit,
                        retry_after=e.retry_after)
            raise

        total = sum(len(events) for events in parsed.values())
        accepted: Dict[str, List[LogEvent]] = {}
        for topic, events in parsed.items():
            survivors = [
                e for e in events
                if not self.dedup.check_and_record(
                    (tenant, origin, topic, e.payload.fingerprint()), now)
            ]
            if survivors:
                accepted[topic] = survivors

        stored = sum(len(events) for events in accepted.values())
        if not accepted:
            log.debug("logs_skipped", tenant=tenant, origin=origin, suppressed=total)
            return Accepted(stored=0, suppressed=total)

        for topic, events in accepted.items():
            self.store.write(tenant, origin, topic, events)

        if self.hub is not None:
            self.hub.publish(tenant, origin, accepted)

        log.info(
            "logs_stored",
            tenant=tenant, origin=origin, stored=stored, suppressed=total - stored,
            topics=", ".join(f"{t}:{len(evs)}" for t, evs in accepted.items()),
        )
        return Accepted(stored=stored, suppressed=total - stored, topics=accepted)
