# logrelay/models.py
from __future__ import annotations
import json
import time
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

from logrelay.errors import ValidationError

# topic written by console capture; its entries are leveled messages
BROWSER_TOPIC = "browser"


def now_ms() -> int:
    return int(time.time() * 1000)


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass(frozen=True)
class LeveledPayload:
    level: str
    message: str
    source: str = ""

    def fingerprint(self) -> str:
        # timestamp is deliberately not part of the identity
        return f"{self.level}:{self.message}:{self.source}"

    def text(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {"level": self.level, "message": self.message, "source": self.source}


@dataclass(frozen=True)
class StructuredPayload:
    data: Any

    def fingerprint(self) -> str:
        return dump_json(self.data)

    def text(self) -> str:
        return dump_json(self.data)

    def to_dict(self) -> dict:
        return {"data": self.data}


Payload = Union[LeveledPayload, StructuredPayload]


@dataclass(frozen=True)
class LogEvent:
    timestamp: int          # epoch millis
    topic: str
    tenant: str
    origin: str
    payload: Payload

    @property
    def leveled(self) -> bool:
        return isinstance(self.payload, LeveledPayload)

    def text(self) -> str:
        return self.payload.text()

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "topic": self.topic,
            "tenant": self.tenant,
            "origin": self.origin,
            **self.payload.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any],
                  tenant: str = "", origin: str = "", topic: str = "") -> "LogEvent":
        """Rebuild an event from its ``to_dict`` shape (as pushed over the stream)."""
        topic = str(d.get("topic") or topic)
        if topic == BROWSER_TOPIC or "data" not in d:
            payload: Payload = _leveled(d)
        else:
            payload = StructuredPayload(d["data"])
        return cls(
            timestamp=_timestamp(d.get("timestamp"), now_ms()),
            topic=topic,
            tenant=str(d.get("tenant") or tenant),
            origin=str(d.get("origin") or origin),
            payload=payload,
        )


def _timestamp(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def _text_field(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else dump_json(value)


def _leveled(entry: Mapping[str, Any]) -> LeveledPayload:
    return LeveledPayload(
        level=_text_field(entry.get("level")) or "info",
        message=_text_field(entry.get("message")),
        source=_text_field(entry.get("source", entry.get("sourceLocation"))),
    )


def events_from_wire(tenant: str, origin: str, topic: str, value: Any,
                     received_ms: Optional[int] = None) -> List[LogEvent]:
    """
    Turn one ``logs[topic]`` value of a submission into events.
    Browser entries are leveled messages and keep their own timestamp;
    anything else is structured data stamped with the receive time.
    A list is a sequence of events, any other value a single event.
    """
    received = now_ms() if received_ms is None else received_ms
    entries = value if isinstance(value, list) else [value]

    events: List[LogEvent] = []
    for entry in entries:
        if topic == BROWSER_TOPIC:
            if not isinstance(entry, Mapping):
                raise ValidationError(
                    f"entries of the '{BROWSER_TOPIC}' topic must be objects with level/message/source"
                )
            events.append(LogEvent(
                timestamp=_timestamp(entry.get("timestamp"), received),
                topic=topic, tenant=tenant, origin=origin,
                payload=_leveled(entry),
            ))
        else:
            events.append(LogEvent(
                timestamp=received, topic=topic, tenant=tenant, origin=origin,
                payload=StructuredPayload(entry),
            ))
    return events
