"""
Outbound events emitted by the engine.

The engine never stores anything itself. Hosts that persist drafts,
collect analytics or schedule background work subscribe with an
EventSink (any callable taking one event).

Contents:
- TemplateLoaded: A template was parsed and registered
- SessionStarted / SessionCompleted / SessionCancelled: Lifecycle
- DraftSaved: Snapshot ready for the host to persist
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

if TYPE_CHECKING:
    from formly.core.conversation_engine import ReviewSummary
    from formly.snapshot import SessionSnapshot


@dataclass(frozen=True)
class TemplateLoaded:
    template_id: str
    version: str
    name: str
    source: Optional[str] = None


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    template_id: str


@dataclass(frozen=True)
class SessionCompleted:
    """
    Attributes:
        answers: Canonical string form of every answer
        review: Review summary (answers by section, checklists, fees)
    """
    session_id: str
    template_id: str
    answers: Mapping[str, Any]
    review: "ReviewSummary"


@dataclass(frozen=True)
class SessionCancelled:
    session_id: str
    template_id: str


@dataclass(frozen=True)
class DraftSaved:
    session_id: str
    snapshot: "SessionSnapshot"


Event = Union[TemplateLoaded, SessionStarted, SessionCompleted, SessionCancelled, DraftSaved]

EventSink = Callable[[Event], None]
