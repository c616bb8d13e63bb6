# logrelay/selector.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from logrelay.errors import AddressNotFoundError, AmbiguousSelectionError
from logrelay.models import BROWSER_TOPIC


@dataclass(frozen=True)
class Candidate:
    name: str
    count: int = 0


@dataclass
class Selected:
    name: str
    auto: bool
    message: str = ""


@dataclass
class Ambiguous:
    parameter: str
    candidates: List[Candidate] = field(default_factory=list)
    message: str = ""


@dataclass
class NotFound:
    parameter: str
    requested: Optional[str]
    candidates: List[Candidate] = field(default_factory=list)
    message: str = ""


Selection = Union[Selected, Ambiguous, NotFound]

_EMPTY_HINTS = {
    "tenant": "**No apps connected**\n\nMake sure producers are running with logging enabled.",
    "origin": "**No origins connected**\n\nMake sure producers are running with logging enabled.",
    "topic": "**No topics found** for the selected origin",
}


def _listing(candidates: Sequence[Candidate]) -> str:
    return "\n".join(f"- {c.name} ({c.count} entries)" for c in candidates) or "None"


def _select(parameter: str, candidates: Sequence[Candidate], requested: Optional[str],
            reserved: Optional[str] = None) -> Selection:
    candidates = list(candidates)
    label = parameter.capitalize()

    if requested:
        if any(c.name == requested for c in candidates):
            return Selected(requested, auto=False)
        return NotFound(
            parameter, requested, candidates,
            f"**{label} not found**\n\n{label} \"{requested}\" is not currently connected.\n\n"
            f"Available {parameter}s:\n{_listing(candidates)}",
        )

    if not candidates:
        return NotFound(parameter, None, [], _EMPTY_HINTS[parameter])
    if len(candidates) == 1 or (reserved is not None and [c.name for c in candidates] == [reserved]):
        c = candidates[0]
        return Selected(c.name, auto=True,
                        message=f"Auto-selected {parameter}: {c.name} ({c.count} entries)")
    return Ambiguous(
        parameter, candidates,
        f"**Multiple {label}s Available**\n\nPlease specify {parameter}:\n{_listing(candidates)}\n\n"
        f"Example: get_logs({parameter}=\"{candidates[0].name}\")",
    )


def select_tenant(tenants: Sequence[Candidate], requested: Optional[str]) -> Selection:
    """Tenant must always be named explicitly; a missing one is reported, never guessed."""
    if not requested:
        return NotFound(
            "tenant", None, list(tenants),
            "**Missing required parameter: tenant**\n\nYou must specify the application name.\n\n"
            "Example: get_logs(tenant=\"my-app\")\n\n"
            f"Or set LOGRELAY_DEFAULT_APP when starting the consumer.\n\nConnected apps:\n{_listing(tenants)}",
        )
    return _select("tenant", tenants, requested)


def select_origin(origins: Sequence[Candidate], requested: Optional[str]) -> Selection:
    return _select("origin", origins, requested)


def select_topic(topics: Sequence[Candidate], requested: Optional[str]) -> Selection:
    # a lone console-capture topic is the common case and never needs naming
    return _select("topic", topics, requested, reserved=BROWSER_TOPIC)


def require(selection: Selection) -> Selected:
    """Unwrap a Selected or raise the matching RelayError."""
    if isinstance(selection, Selected):
        return selection
    names = [c.name for c in selection.candidates]
    if isinstance(selection, Ambiguous):
        raise AmbiguousSelectionError(selection.message, selection.parameter, names)
    raise AddressNotFoundError(selection.message, selection.parameter, names)
