"""
Semantic contracts for the form-filling engine.

This module defines immutable data structures that serve as contracts
between components. These are NOT validators - they define shape and
semantics without enforcing rules.

Design principles:
- Frozen dataclasses (immutable after creation)
- No validation logic (contracts, not validators)
- Definition layer only (no enforcement)

Contents:
- RetrievedContent: One snippet returned by the content index
- FieldProposal: A raw value an extraction tier proposes for one field
- ExtractionRequest: Everything a tier sees for one utterance
- ExtractionResult: What a tier returns
- FieldUpdate: A value accepted into the answers during a turn

Usage:
    from formly.contracts import ExtractionRequest, ExtractionResult
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from formly.core.template_model import ConversationStep, Template


@dataclass(frozen=True)
class RetrievedContent:
    """
    Snippet from the retrieval index.

    Attributes:
        text: Snippet text
        source: Where the snippet came from (document name, template id, ...)
        similarity: Cosine similarity clamped to [0, 1]
    """
    text: str
    source: str
    similarity: float


@dataclass(frozen=True)
class FieldProposal:
    """
    Raw value proposed by an extraction tier.

    Proposals are untrusted: the engine filters them to the current step
    and runs each through the Validation Engine before anything is stored.

    Attributes:
        field_id: Target field
        raw_value: Raw text (tiers stringify non-text model output)
    """
    field_id: str
    raw_value: str


@dataclass(frozen=True)
class ExtractionRequest:
    """
    Input to a tier for one utterance.

    Attributes:
        template: Active template
        step: Current step
        answers: Read-only view of accepted answers
        utterance: What the user typed
        context: Retrieved snippets (filled in by the retrieval tier)
        focus_field: Field the user was just asked about (None if the step
            has nothing left to ask)
    """
    template: "Template"
    step: "ConversationStep"
    answers: Mapping[str, Any]
    utterance: str
    context: Tuple[RetrievedContent, ...] = ()
    focus_field: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    """
    Output of a tier.

    Attributes:
        updates: Proposed values in tier order
        notes: User-facing remarks
        next_step_id: Advisory next step (never authoritative)
    """
    updates: Tuple[FieldProposal, ...] = ()
    notes: Tuple[str, ...] = ()
    next_step_id: Optional[str] = None


@dataclass(frozen=True)
class FieldUpdate:
    """
    Value accepted into the answers this turn.

    Attributes:
        field_id: Field written
        value: Typed value (None = explicitly blank)
        display: Canonical string form of value
    """
    field_id: str
    value: Any
    display: str
