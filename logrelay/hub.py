# logrelay/hub.py
from __future__ import annotations
import asyncio
import itertools
from typing import AsyncIterator, Dict, List, Mapping, Optional, Set

from logrelay.logging import get_logger
from logrelay.models import LogEvent, dump_json, now_ms

log = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 500
KEEPALIVE_INTERVAL = 30.0


def format_sse(event: str, data: object) -> str:
    return f"event: {event}\ndata: {dump_json(data)}\n\n"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """One push channel. ``None`` in the queue marks end-of-stream."""

    _ids = itertools.count(1)

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE, peer: str = ""):
        self.id = next(Subscription._ids)
        self.peer = peer
        self.connected_at = now_ms()
        self.closed = False
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=maxsize)

    def offer(self, message: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.queue.put_nowait(None)


class BroadcastHub:
    """
    Fans accepted events out to every live subscription.

    Each subscriber owns a bounded queue; delivery is put_nowait, so a
    subscriber that stops draining is dropped instead of holding up the rest.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, peer: str = "") -> Subscription:
        self._loop = _running_loop() or self._loop
        sub = Subscription(self.queue_size, peer)
        self._subscribers.add(sub)
        log.info("subscriber_connected", subscriber=sub.id, peer=peer, active=len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            log.info("subscriber_disconnected", subscriber=sub.id, peer=sub.peer,
                     active=len(self._subscribers))
        sub.closed = True

    def _drop(self, sub: Subscription, reason: str) -> None:
        self._subscribers.discard(sub)
        sub.close()
        log.warning("subscriber_dropped", subscriber=sub.id, peer=sub.peer, reason=reason)

    def _deliver(self, message: str) -> int:
        delivered = 0
        for sub in list(self._subscribers):
            if sub.offer(message):
                delivered += 1
            else:
                self._drop(sub, "queue full")
        return delivered

    def _broadcast(self, message: str) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed() and _running_loop() is not loop:
            # queues belong to the server loop; hop over when called from a worker thread
            loop.call_soon_threadsafe(self._deliver, message)
        else:
            self._deliver(message)

    def publish(self, tenant: str, origin: str,
                topic_map: Mapping[str, List[LogEvent]]) -> None:
        if not self._subscribers:
            return
        payload: Dict[str, object] = {
            "tenant": tenant,
            "origin": origin,
            "logs": {topic: [e.to_dict() for e in events] for topic, events in topic_map.items()},
            "timestamp": now_ms(),
        }
        self._broadcast(format_sse("new_logs", payload))

    def keepalive(self) -> None:
        self._broadcast(format_sse("keepalive", {"timestamp": now_ms()}))

    async def run_keepalive(self, interval: float = KEEPALIVE_INTERVAL) -> None:
        while True:
            await asyncio.sleep(interval)
            self.keepalive()

    async def listen(self, sub: Subscription) -> AsyncIterator[str]:
        while True:
            message = await sub.queue.get()
            if message is None:
                return
            yield message

    def close_all(self) -> None:
        for sub in list(self._subscribers):
            self._subscribers.discard(sub)
            sub.close()
