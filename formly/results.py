"""
Result types returned by ConversationSession commands

These are the ONLY return types from start(), submit() and cancel().
Lifecycle misuse is reported as IllegalCommand, never as an exception.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from formly.contracts import FieldUpdate


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TurnResult:
    """
    Outcome of one command.

    Attributes:
        session_id: Session identifier
        status: Session status after the command
        updates: Values accepted this turn (one per field, first-acceptance
            order, final value)
        notes: Clarifications, rule messages, guidance
        question: Next question to show, None when nothing to ask
        completed: Whether the session reached completion
        progress: Fraction of reachable expected fields answered (0.0-1.0)
        step_id: Current step id (None once completed or cancelled)
        tier: Tier that produced this turn's proposals ('model',
            'retrieval', 'rules') or None
        debug: Attempts, dropped proposals, hint handling, failures
        turn_count: Number of utterances processed so far
    """
    session_id: str
    status: SessionStatus
    updates: Tuple[FieldUpdate, ...] = ()
    notes: Tuple[str, ...] = ()
    question: Optional[str] = None
    completed: bool = False
    progress: float = 0.0
    step_id: Optional[str] = None
    tier: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict)
    turn_count: int = 0


@dataclass(frozen=True)
class Busy:
    """
    Submission rejected because another turn is still being processed.

    Nothing about the session changed.
    """
    session_id: str
    reason: str = "A turn is already in progress for this session"


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected (invalid lifecycle transition).

    Examples:
    - submit() before start()
    - start() twice
    - cancel() after completion

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command
    """
    reason: str
    command_type: str
