# logrelay/consumer.py
"""
Downstream client of the relay.

Holds one SSE subscription, mirrors pushed events into a per-address cache
and answers ``get_logs`` queries. When the stream is down every query is
answered by a point query against the range endpoint instead, and when the
backend is unreachable altogether whatever is cached is served.
"""
from __future__ import annotations
import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx

from logrelay.config import ConsumerSettings
from logrelay.errors import AddressNotFoundError, AmbiguousSelectionError, SubscriptionError
from logrelay.logging import get_logger
from logrelay.models import LogEvent
from logrelay.selector import Candidate, require, select_origin, select_tenant, select_topic
from logrelay.store import filter_recent

log = get_logger(__name__)

MAX_LINES = 100

Address = Tuple[str, str, str]  # tenant, origin, topic


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DEGRADED = "degraded"


# ---------- answers ----------
@dataclass
class Formatted:
    text: str
    events: List[LogEvent]
    total: int
    source: str     # "stream", "point-query" or "stale-cache"


@dataclass
class Disambiguation:
    text: str
    parameter: str
    candidates: List[str] = field(default_factory=list)


@dataclass
class AddressNotFound:
    text: str
    parameter: str
    candidates: List[str] = field(default_factory=list)


@dataclass
class Unavailable:
    text: str


Answer = Union[Formatted, Disambiguation, AddressNotFound, Unavailable]


def iter_sse(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Yield (event, data) pairs from the lines of a text/event-stream body."""
    event = "message"
    data: List[str] = []
    for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)


_SOURCE_LABELS = {
    "stream": "SSE streaming",
    "point-query": "direct query (stream unavailable)",
    "stale-cache": "cached copy (backend unreachable, may be stale)",
}


def format_logs(events: List[LogEvent], total: int, address: Address,
                text_filter: str = "", source: str = "stream", auto: bool = False) -> str:
    tenant, origin, topic = address
    out = f"**Logs** ({len(events)} entries"
    if text_filter:
        out += f", filtered by \"{text_filter}\""
    out += ")\n\n"
    out += f"**App:** {tenant}\n"
    out += f"**Origin:** {origin}\n"
    out += f"**Topic:** {topic}\n"
    out += f"**Total Available:** {total} entries\n"
    out += f"**Connection:** {_SOURCE_LABELS.get(source, source)}\n\n"

    for e in events:
        ts = datetime.fromtimestamp(e.timestamp / 1000).strftime("%H:%M:%S")
        if e.leveled:
            out += f"[{ts}] {(e.payload.level or 'log').ljust(5)} {e.payload.message}\n"
        else:
            out += f"[{ts}] {e.topic.ljust(15)} {e.text()}\n"

    if not events:
        out += "_No logs found matching the specified criteria._\n"
    if auto:
        out += "\n**Auto-selected** (single origin & topic available for this app)"
    return out


class _CachedTopic:
    def __init__(self, capacity: int, events: Iterable[LogEvent] = (), primed: bool = False):
        self.events: Deque[LogEvent] = deque(events, maxlen=capacity)
        # primed: seeded by an initial_logs snapshot and kept current by new_logs
        self.primed = primed


class StreamConsumer:
    def __init__(self, settings: Optional[ConsumerSettings] = None,
                 client: Optional[httpx.Client] = None,
                 auto_reconnect: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or ConsumerSettings()
        self.base_url = self.settings.backend_url.rstrip("/")
        self.auto_reconnect = auto_reconnect
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self.settings.request_timeout_seconds)
        self._clock = clock

        self._lock = threading.Lock()
        self._state = ConsumerState.DISCONNECTED
        self._cache: Dict[Address, _CachedTopic] = {}
        self._watch: Optional[Address] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._closed = False
        self._last_attempt: Optional[float] = None
        self.last_keepalive: Optional[float] = None

    @property
    def state(self) -> ConsumerState:
        return self._state

    def _set_state(self, state: ConsumerState) -> None:
        with self._lock:
            previous, self._state = self._state, state
        if previous is not state:
            log.info("consumer_state", previous=previous.value, state=state.value)

    # ---------- subscription ----------
    def start(self, address: Optional[Address] = None) -> None:
        """Open the stream in a background thread. Returns immediately."""
        if self._closed:
            return
        if address is not None:
            self._watch = address
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._last_attempt = self._clock()
            self._state = ConsumerState.CONNECTING
            self._thread = threading.Thread(target=self.stream_once,
                                            name="logrelay-stream", daemon=True)
            self._thread.start()

    def _stream_params(self) -> Dict[str, object]:
        if self._watch is None:
            return {}
        tenant, origin, topic = self._watch
        return {"tenant": tenant, "origin": origin, "topic": topic, "lines": MAX_LINES}

    def stream_once(self) -> None:
        """Hold one subscription until it ends; always leaves the consumer out of STREAMING."""
        timeout = httpx.Timeout(self.settings.request_timeout_seconds,
                                read=self.settings.keepalive_interval_seconds * 2)
        try:
            with self._client.stream("GET", f"{self.base_url}/api/logs/stream",
                                     params=self._stream_params(), timeout=timeout) as resp:
                resp.raise_for_status()
                for event, data in iter_sse(resp.iter_lines()):
                    if self._stop.is_set():
                        break
                    self.handle_event(event, data)
        except httpx.HTTPError as e:
            self._on_stream_lost(SubscriptionError(f"stream failed: {e}"))
        except Exception as e:
            log.exception("stream_reader_failed")
            self._on_stream_lost(SubscriptionError(f"stream reader failed: {e}"))
        else:
            self._on_stream_lost(SubscriptionError("stream closed by server"))

    def _on_stream_lost(self, error: SubscriptionError) -> None:
        with self._lock:
            # events pushed while we were away are missing until a new snapshot arrives
            for c in self._cache.values():
                c.primed = False
        if self._stop.is_set():
            self._set_state(ConsumerState.DISCONNECTED)
            return
        log.warning("stream_lost", error=error.message)
        self._set_state(ConsumerState.DEGRADED)

    def _maybe_reconnect(self) -> None:
        if self._closed or not self.auto_reconnect:
            return
        if self._state not in (ConsumerState.DISCONNECTED, ConsumerState.DEGRADED):
            return
        last = self._last_attempt
        if last is None or self._clock() - last >= self.settings.reconnect_interval_seconds:
            self.start()

    def close(self) -> None:
        """Stop the reader and release the client. A closed consumer answers nothing."""
        self._closed = True
        self._stop.set()
        if self._owns_client:
            self._client.close()
        self._set_state(ConsumerState.DISCONNECTED)

    # ---------- stream events ----------
    def handle_event(self, event: str, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            log.warning("bad_stream_event", sse_event=event)
            return
        if event == "connected":
            self._set_state(ConsumerState.STREAMING)
        elif event == "initial_logs":
            self._prime(data)
        elif event == "new_logs":
            self._append(data)
        elif event == "keepalive":
            self.last_keepalive = self._clock()

    def _prime(self, data: dict) -> None:
        address = (str(data.get("tenant", "")), str(data.get("origin", "")), str(data.get("topic", "")))
        entries = data.get("logs")
        if not isinstance(entries, list):
            entries = []
        events = [LogEvent.from_dict(d, *address) for d in entries if isinstance(d, dict)]
        with self._lock:
            self._cache[address] = _CachedTopic(self.settings.cache_capacity, events, primed=True)
        log.info("snapshot_loaded", tenant=address[0], origin=address[1], topic=address[2],
                 count=len(events))

    def _append(self, data: dict) -> None:
        tenant, origin = str(data.get("tenant", "")), str(data.get("origin", ""))
        logs = data.get("logs")
        if not isinstance(logs, dict):
            log.warning("bad_stream_event", sse_event="new_logs")
            return
        for topic, entries in logs.items():
            if not isinstance(entries, list):
                entries = [entries]
            events = [LogEvent.from_dict(d, tenant, origin, topic) for d in entries if isinstance(d, dict)]
            with self._lock:
                cached = self._cache.get((tenant, origin, topic))
                if cached is None:
                    cached = self._cache[(tenant, origin, topic)] = _CachedTopic(self.settings.cache_capacity)
                cached.events.extend(events)

    def cached(self, address: Address) -> List[LogEvent]:
        with self._lock:
            c = self._cache.get(address)
            return list(c.events) if c else []

    # ---------- candidates ----------
    def _fetch_status(self) -> Optional[dict]:
        try:
            resp = self._client.get(f"{self.base_url}/api/logs/status")
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("status_unavailable", error=str(e))
            return None

    def _cache_tree(self) -> Dict[str, Dict[str, Dict[str, int]]]:
        tree: Dict[str, Dict[str, Dict[str, int]]] = {}
        with self._lock:
            for (tenant, origin, topic), c in self._cache.items():
                tree.setdefault(tenant, {}).setdefault(origin, {})[topic] = len(c.events)
        return tree

    @staticmethod
    def _status_tree(status: dict) -> Dict[str, Dict[str, Dict[str, int]]]:
        tree: Dict[str, Dict[str, Dict[str, int]]] = {}
        for t in status.get("tenants") or []:
            origins = tree.setdefault(t["tenant"], {})
            for o in t.get("origins") or []:
                origins[o["origin"]] = {tp["topic"]: tp.get("count", 0) for tp in o.get("topics") or []}
        return tree

    # ---------- reads ----------
    def _point_query(self, address: Address, limit: int, text_filter: str) -> Tuple[List[LogEvent], int]:
        tenant, origin, topic = address
        params: Dict[str, object] = {"lines": limit}
        if text_filter:
            params["filter"] = text_filter
        url = "/".join([self.base_url, "api/logs", *(quote(p, safe="") for p in address)])
        resp = self._client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
        events = [LogEvent.from_dict(d, tenant, origin, topic) for d in data.get("logs") or []]
        return events, int(data.get("totalEntries", len(events)))

    def _read(self, address: Address, limit: int,
              text_filter: str) -> Optional[Tuple[List[LogEvent], int, str]]:
        with self._lock:
            c = self._cache.get(address)
            cached = list(c.events) if c else None
            primed = bool(c and c.primed)

        if self._state is ConsumerState.STREAMING and cached is not None and primed:
            return filter_recent(cached, limit, text_filter), len(cached), "stream"

        try:
            events, total = self._point_query(address, limit, text_filter)
            return events, total, "point-query"
        except (httpx.HTTPError, ValueError) as e:
            log.warning("point_query_failed", tenant=address[0], origin=address[1],
                        topic=address[2], error=str(e))
        if cached:
            return filter_recent(cached, limit, text_filter), len(cached), "stale-cache"
        return None

    def get_logs(self, tenant: Optional[str] = None, origin: Optional[str] = None,
                 topic: Optional[str] = None, limit: int = 20, text_filter: str = "") -> Answer:
        if self._closed:
            return Unavailable("**Consumer closed**\n\nThis log consumer has been shut down.")
        tenant = tenant or self.settings.default_app
        limit = max(1, min(int(limit or 20), MAX_LINES))
        self._maybe_reconnect()

        status = self._fetch_status()
        tree = self._status_tree(status) if status is not None else self._cache_tree()
        if status is None and not tree:
            return Unavailable(
                "**Backend unreachable**\n\n"
                f"Could not reach the log relay at {self.base_url} and nothing is cached yet.\n\n"
                "Make sure the relay server is running (logrelay serve)."
            )

        try:
            tenant = require(select_tenant(
                [Candidate(t, sum(sum(tp.values()) for tp in o.values())) for t, o in tree.items()],
                tenant)).name
            origins = tree[tenant]
            sel_origin = require(select_origin(
                [Candidate(o, sum(tp.values())) for o, tp in origins.items()], origin))
            topics = origins[sel_origin.name]
            sel_topic = require(select_topic([Candidate(t, n) for t, n in topics.items()], topic))
        except AmbiguousSelectionError as e:
            return Disambiguation(e.message, e.parameter, e.candidates)
        except AddressNotFoundError as e:
            return AddressNotFound(e.message, e.parameter, e.candidates)

        address = (tenant, sel_origin.name, sel_topic.name)
        self._watch = address
        result = self._read(address, limit, text_filter)
        if result is None:
            return Unavailable(
                "**Error retrieving logs**\n\n"
                f"The relay at {self.base_url} did not answer and no cached logs exist for "
                f"{tenant}/{address[1]}/{address[2]}."
            )
        events, total, source = result
        auto = sel_origin.auto and sel_topic.auto
        return Formatted(
            text=format_logs(events, total, address, text_filter, source, auto),
            events=events, total=total, source=source,
        )

