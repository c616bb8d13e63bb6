# logrelay/store.py
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, Iterable, List, Optional

from logrelay.models import LogEvent, now_ms

DEFAULT_CAPACITY = 500


@dataclass
class ReadResult:
    events: List[LogEvent]
    total_count: int


@dataclass
class TopicInfo:
    topic: str
    count: int
    last_activity: int


@dataclass
class OriginInfo:
    origin: str
    topics: List[TopicInfo]
    total: int
    last_activity: int
    connected_at: int


@dataclass
class TenantInfo:
    tenant: str
    origins: List[OriginInfo]
    total: int
    last_activity: int
    connected_at: int


def filter_recent(events: List[LogEvent], limit: int, text_filter: str = "") -> List[LogEvent]:
    """Case-insensitive substring filter, then the ``limit`` most recent, oldest first."""
    if text_filter:
        needle = text_filter.lower()
        events = [e for e in events if needle in e.text().lower()]
    if limit <= 0:
        return []
    return events[-limit:]


class TopicBucket:
    """Ordered, capacity-bounded events of one (tenant, origin, topic)."""

    def __init__(self, capacity: int, created_ms: int):
        self._events: Deque[LogEvent] = deque(maxlen=capacity)
        self._lock = Lock()
        self.last_activity = created_ms

    def extend(self, events: Iterable[LogEvent], at_ms: int) -> None:
        with self._lock:
            # deque(maxlen) drops from the left: oldest-first eviction
            self._events.extend(events)
            self.last_activity = at_ms

    def snapshot(self) -> List[LogEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        return len(self._events)


@dataclass
class OriginEntry:
    connected_at: int
    last_activity: int
    topics: Dict[str, TopicBucket] = field(default_factory=dict)


@dataclass
class TenantEntry:
    connected_at: int
    last_activity: int
    origins: Dict[str, OriginEntry] = field(default_factory=dict)


class LogStore:
    """
    tenant -> origin -> topic -> TopicBucket.

    The tree lock is only taken to create missing nodes and to copy key lists;
    appends lock the addressed bucket alone, so writers on different topics
    never wait on each other.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY,
                 clock: Callable[[], int] = now_ms):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock
        self._tenants: Dict[str, TenantEntry] = {}
        self._tree_lock = Lock()

    # ---------- write ----------
    def _bucket_for_write(self, tenant: str, origin: str, topic: str, now: int) -> TopicBucket:
        t = self._tenants.get(tenant)
        o = t.origins.get(origin) if t else None
        b = o.topics.get(topic) if o else None
        if b is None:
            with self._tree_lock:
                t = self._tenants.get(tenant)
                if t is None:
                    t = self._tenants[tenant] = TenantEntry(connected_at=now, last_activity=now)
                o = t.origins.get(origin)
                if o is None:
                    o = t.origins[origin] = OriginEntry(connected_at=now, last_activity=now)
                b = o.topics.get(topic)
                if b is None:
                    b = o.topics[topic] = TopicBucket(self.capacity, now)
        t.last_activity = now
        o.last_activity = now
        return b

    def write(self, tenant: str, origin: str, topic: str, events: Iterable[LogEvent]) -> int:
        batch = list(events)
        if not batch:
            return 0
        now = self._clock()
        self._bucket_for_write(tenant, origin, topic, now).extend(batch, now)
        return len(batch)

    # ---------- read ----------
    def _bucket(self, tenant: str, origin: str, topic: str) -> Optional[TopicBucket]:
        t = self._tenants.get(tenant)
        o = t.origins.get(origin) if t else None
        return o.topics.get(topic) if o else None

    def read(self, tenant: str, origin: str, topic: str,
             limit: int = 20, text_filter: str = "") -> ReadResult:
        bucket = self._bucket(tenant, origin, topic)
        if bucket is None:
            return ReadResult(events=[], total_count=0)
        events = bucket.snapshot()
        return ReadResult(events=filter_recent(events, limit, text_filter), total_count=len(events))

    # ---------- enumeration ----------
    def list_topics(self, tenant: str, origin: str) -> List[TopicInfo]:
        t = self._tenants.get(tenant)
        o = t.origins.get(origin) if t else None
        if o is None:
            return []
        with self._tree_lock:
            buckets = list(o.topics.items())
        return [TopicInfo(topic=name, count=len(b), last_activity=b.last_activity)
                for name, b in buckets]

    def list_origins(self, tenant: str) -> List[OriginInfo]:
        t = self._tenants.get(tenant)
        if t is None:
            return []
        with self._tree_lock:
            origins = list(t.origins.items())
        out: List[OriginInfo] = []
        for name, o in origins:
            topics = self.list_topics(tenant, name)
            out.append(OriginInfo(
                origin=name,
                topics=topics,
                total=sum(ti.count for ti in topics),
                last_activity=max((ti.last_activity for ti in topics), default=o.last_activity),
                connected_at=o.connected_at,
            ))
        return out

    def list_tenants(self) -> List[TenantInfo]:
        with self._tree_lock:
            tenants = list(self._tenants.items())
        out: List[TenantInfo] = []
        for name, t in tenants:
            origins = self.list_origins(name)
            out.append(TenantInfo(
                tenant=name,
                origins=origins,
                total=sum(oi.total for oi in origins),
                last_activity=t.last_activity,
                connected_at=t.connected_at,
            ))
        return out

    def tenant_count(self) -> int:
        return len(self._tenants)
