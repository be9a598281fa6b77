"""
Conversation Engine - Template-driven form-filling session

Responsibilities:
- Own one session's lifecycle (not_started -> in_progress -> completed,
  cancelled reachable from any state but completed)
- Route each utterance through the extraction tier chain
- Filter, validate and merge proposals into the answers
- Apply conditional logic, step rules and default advancement
- Report progress, the next question and a review summary
- Produce and restore opaque snapshots for draft persistence

Design principles:
- Thin orchestration layer (navigation in StepSelector, checks in the
  Validation Engine, extraction in the tiers)
- The session never holds an invalid value
- Lifecycle misuse returns IllegalCommand; concurrent submits return Busy
- Single flight per session: one extraction in progress at a time
- Emits events instead of persisting anything itself
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from formly.contracts import ExtractionRequest, FieldUpdate
from formly.core.answer_store import AnswerStore
from formly.core.step_selector import Navigation, StepDecision, StepSelector
from formly.core.template_model import FieldNotFoundError, Template
from formly.core.validation_engine import Invalid, Valid, ValidationOutcome, canonical_string, validate
from formly.events import (
    DraftSaved,
    Event,
    EventSink,
    SessionCancelled,
    SessionCompleted,
    SessionStarted,
)
from formly.results import Busy, IllegalCommand, SessionStatus, TurnResult
from formly.snapshot import SNAPSHOT_FORMAT_VERSION, SessionSnapshot
from formly.tiers.chain import ChainOutcome
from formly.utils.clarification_templates import ClarificationTemplateID, question_for_field, render
from formly.utils.helpers import generate_session_id

logger = logging.getLogger(__name__)

USER_EDIT_SOURCE = "user_edit"


# =============================================================================
# Review summary
# =============================================================================

@dataclass(frozen=True)
class ReviewEntry:
    field_id: str
    label: str
    display: str
    required: bool


@dataclass(frozen=True)
class ReviewSection:
    id: str
    title: str
    entries: Tuple[ReviewEntry, ...]


@dataclass(frozen=True)
class ReviewSummary:
    """
    Everything a review screen needs.

    Attributes:
        template_id: Template the answers belong to
        sections: Answered fields grouped by schema section (document order)
        missing_required: Required fields of reachable steps still unanswered
        checklists: Template review checklists
        submission_guidance: Template submission guidance
        fee_info: Template fee information (read-only)
    """
    template_id: str
    sections: Tuple[ReviewSection, ...]
    missing_required: Tuple[str, ...]
    checklists: Tuple[Any, ...]
    submission_guidance: Optional[str]
    fee_info: Mapping[str, Any]


# =============================================================================
# Session
# =============================================================================

class ConversationSession:
    """
    One form-filling conversation over one template.

    Not thread-safe; intended to be driven from a single asyncio event loop.
    The template and the chain (and the model behind it) may be shared
    read-only by many sessions.
    """

    def __init__(
        self,
        template: Template,
        chain,
        *,
        session_id: Optional[str] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            template: Parsed template
            chain: ExtractionTierChain (anything with async run(request))
            session_id: Identifier (default: generated)
            event_sink: Callable receiving engine events (optional)
            clock: Callable returning 'now' for date validation (default datetime.now)

        Raises:
            TypeError: If template or chain has the wrong type
        """
        if not isinstance(template, Template):
            raise TypeError(f"template must be Template, got {type(template).__name__}")
        if not callable(getattr(chain, 'run', None)):
            raise TypeError("chain must have callable run() method")

        self.template = template
        self.chain = chain
        self.session_id = session_id or generate_session_id()
        self._sink = event_sink
        self._clock = clock or datetime.now
        self._selector = StepSelector(template)

        self._answers = AnswerStore()
        self._status = SessionStatus.NOT_STARTED
        self._step_index = 0
        self._excused: Set[int] = set()
        self._reopened: Set[int] = set()
        self._fired: Set[int] = set()
        self._prompt_field: Optional[str] = None
        self._turn_count = 0

        self._in_flight = False
        self._task: Optional[asyncio.Task] = None

        logger.info(f"Session {self.session_id} created for template '{template.id}' v{template.version}")

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def step_id(self) -> Optional[str]:
        if self._status != SessionStatus.IN_PROGRESS:
            return None
        return self.template.steps[self._step_index].id

    @property
    def answers(self) -> Mapping[str, Any]:
        return self._answers.view()

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def is_busy(self) -> bool:
        return self._in_flight

    @property
    def progress(self) -> float:
        """
        Fraction of expected fields answered, over steps not excused by
        skip or branch. Computed on demand; 1.0 when nothing is expected.
        """
        expected: Dict[str, None] = {}
        for index, step in enumerate(self.template.steps):
            if index in self._excused:
                continue
            for field_id in step.expected_fields:
                expected.setdefault(field_id, None)

        if not expected:
            return 1.0
        answered = sum(1 for field_id in expected if field_id in self._answers)
        return answered / len(expected)

    @property
    def progress_percent(self) -> float:
        return round(self.progress * 100, 1)

    def current_question(self) -> Optional[str]:
        """Question for the field being asked; the step title if the step asks nothing"""
        if self._status != SessionStatus.IN_PROGRESS:
            return None
        if self._prompt_field is not None:
            return question_for_field(self.template.field(self._prompt_field))
        step = self.template.steps[self._step_index]
        return step.description or step.title

    # =========================================================================
    # Commands
    # =========================================================================

    def start(self) -> Union[TurnResult, IllegalCommand]:
        """Begin the conversation at the first step"""
        if self._status != SessionStatus.NOT_STARTED:
            return IllegalCommand(
                reason=f"Session already {self._status.value}",
                command_type="start",
            )

        self._status = SessionStatus.IN_PROGRESS
        self._step_index = 0
        self._fired = set()
        logger.info(f"Session {self.session_id} started")
        self._emit(SessionStarted(session_id=self.session_id, template_id=self.template.id))

        notes: List[str] = []
        if not self.template.steps:
            self._complete()
        else:
            self._settle(notes)

        return self._result(notes=notes, debug={'first_question': True})

    async def submit(self, utterance: str) -> Union[TurnResult, Busy, IllegalCommand]:
        """
        Process one user utterance.

        Returns:
            TurnResult, Busy if a turn is already in flight, or IllegalCommand
            if the session is not in progress

        Raises:
            TypeError: If utterance is not a string
            asyncio.CancelledError: If the caller cancels this coroutine
                (nothing is merged)
        """
        if not isinstance(utterance, str):
            raise TypeError(f"utterance must be string, got {type(utterance).__name__}")
        if self._in_flight:
            logger.info(f"Session {self.session_id}: submit rejected, turn in flight")
            return Busy(session_id=self.session_id)
        if self._status != SessionStatus.IN_PROGRESS:
            return IllegalCommand(
                reason=f"Cannot submit while session is {self._status.value}",
                command_type="submit",
            )

        self._in_flight = True
        step_index = self._step_index
        request = ExtractionRequest(
            template=self.template,
            step=self.template.steps[step_index],
            answers=self._answers.view(),
            utterance=utterance,
            focus_field=self._prompt_field,
        )

        try:
            self._task = asyncio.ensure_future(self.chain.run(request))
            try:
                outcome = await self._task
            except asyncio.CancelledError:
                if self._status == SessionStatus.CANCELLED:
                    logger.info(f"Session {self.session_id}: extraction cancelled, proposals discarded")
                    return self._result(debug={'discarded': True})
                raise
            finally:
                self._task = None

            if self._status != SessionStatus.IN_PROGRESS or self._step_index != step_index:
                logger.info(f"Session {self.session_id}: session changed during extraction, proposals discarded")
                return self._result(debug={'discarded': True})

            return self._apply_outcome(step_index, utterance, outcome)
        finally:
            self._in_flight = False

    def cancel(self) -> Union[TurnResult, IllegalCommand]:
        """Cancel the session (and any in-flight extraction)"""
        if self._status in (SessionStatus.COMPLETED, SessionStatus.CANCELLED):
            return IllegalCommand(
                reason=f"Cannot cancel a {self._status.value} session",
                command_type="cancel",
            )

        self._status = SessionStatus.CANCELLED
        self._prompt_field = None
        if self._task is not None and not self._task.done():
            self._task.cancel()

        logger.info(f"Session {self.session_id} cancelled")
        self._emit(SessionCancelled(session_id=self.session_id, template_id=self.template.id))
        return self._result(debug={'cancelled': True})

    def edit_answer(self, field_id: str, raw: Any) -> Union[ValidationOutcome, Busy, IllegalCommand]:
        """
        Explicitly replace one answer (review screen edits).

        Valid values replace the stored value in place; invalid ones change
        nothing. While in progress the flow is re-evaluated afterwards.

        Raises:
            FieldNotFoundError: If field_id is not declared in the template
        """
        field = self.template.field(field_id)

        if self._in_flight:
            return Busy(session_id=self.session_id)
        if self._status not in (SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED):
            return IllegalCommand(
                reason=f"Cannot edit answers while session is {self._status.value}",
                command_type="edit_answer",
            )

        outcome = validate(field, raw, now=self._clock())
        if isinstance(outcome, Valid):
            self._answers.set(field_id, outcome.value, source=USER_EDIT_SOURCE, turn=self._turn_count)
            logger.info(f"Session {self.session_id}: '{field_id}' edited")
            if self._status == SessionStatus.IN_PROGRESS:
                self._settle([])
        else:
            logger.debug(f"Session {self.session_id}: edit of '{field_id}' rejected ({outcome.failure.kind.value})")
        return outcome

    def save_draft(self) -> SessionSnapshot:
        """Snapshot the session and emit DraftSaved for the host to persist"""
        snapshot = self.snapshot()
        self._emit(DraftSaved(session_id=self.session_id, snapshot=snapshot))
        logger.debug(f"Session {self.session_id}: draft saved (turn {self._turn_count})")
        return snapshot

    def review(self) -> ReviewSummary:
        """Answers grouped by section plus the template's review material"""
        sections = []
        for section in self.template.sections:
            entries = tuple(
                ReviewEntry(
                    field_id=field.id,
                    label=field.label,
                    display=canonical_string(field, self._answers.get(field.id)),
                    required=field.required,
                )
                for field in section.fields
                if field.id in self._answers
            )
            if entries:
                sections.append(ReviewSection(id=section.id, title=section.title, entries=entries))

        missing = []
        for index, step in enumerate(self.template.steps):
            if index in self._excused:
                continue
            for field_id in step.expected_fields:
                if field_id in missing or field_id in self._answers:
                    continue
                if self.template.field(field_id).required:
                    missing.append(field_id)

        review = self.template.review
        return ReviewSummary(
            template_id=self.template.id,
            sections=tuple(sections),
            missing_required=tuple(missing),
            checklists=review.checklists,
            submission_guidance=review.submission_guidance,
            fee_info=review.fee_info,
        )

    # =========================================================================
    # Snapshot / restore
    # =========================================================================

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(_data={
            'format_version': SNAPSHOT_FORMAT_VERSION,
            'session_id': self.session_id,
            'template_id': self.template.id,
            'template_version': self.template.version,
            'status': self._status.value,
            'step_index': self._step_index,
            'excused_steps': sorted(self._excused),
            'reopened_steps': sorted(self._reopened),
            'fired_rules': sorted(self._fired),
            'turn_count': self._turn_count,
            'prompt_field': self._prompt_field,
            'answers': self._answers.to_json(self._encode),
        })

    @classmethod
    def restore(
        cls,
        template: Template,
        chain,
        snapshot: SessionSnapshot,
        *,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "ConversationSession":
        """
        Rebuild a session from a snapshot.

        Answers are re-validated against the template; values that no
        longer validate (e.g. a date constraint relative to today) are
        dropped with a warning.

        Raises:
            ValueError: If the snapshot belongs to another template or
                version, or is internally inconsistent
        """
        data = snapshot.to_json()

        if data.get('template_id') != template.id or data.get('template_version') != template.version:
            raise ValueError(
                f"Snapshot is for template '{data.get('template_id')}' v{data.get('template_version')}, "
                f"not '{template.id}' v{template.version}"
            )

        session = cls(template, chain, session_id=data.get('session_id'), event_sink=event_sink, clock=clock)

        try:
            session._status = SessionStatus(data['status'])
            session._step_index = int(data['step_index'])
            session._excused = set(data.get('excused_steps', []))
            session._reopened = set(data.get('reopened_steps', []))
            session._fired = set(data.get('fired_rules', []))
            session._turn_count = int(data.get('turn_count', 0))
            stored = data.get('answers', {})
            values = stored.get('values', {})
            provenance = stored.get('provenance', {})
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed snapshot: {e}") from e

        step_count = len(template.steps)
        if session._status == SessionStatus.IN_PROGRESS and not 0 <= session._step_index < step_count:
            raise ValueError(f"Snapshot step index {session._step_index} out of range")
        if any(not isinstance(i, int) or not 0 <= i < step_count for i in session._excused | session._reopened):
            raise ValueError("Snapshot references steps outside the template")

        now = session._clock()
        for field_id, text in values.items():
            try:
                field = template.field(field_id)
            except FieldNotFoundError:
                raise ValueError(f"Snapshot answer for undeclared field '{field_id}'") from None

            outcome = validate(field, text, now=now)
            if isinstance(outcome, Invalid):
                logger.warning(f"Restored answer for '{field_id}' no longer valid ({outcome.failure.message}); dropped")
                continue
            origin = provenance.get(field_id, {})
            session._answers.set(
                field_id,
                outcome.value,
                source=origin.get('source', 'restored'),
                turn=origin.get('turn', 0),
            )

        session._answers.history = list(stored.get('history', []))

        if session._status == SessionStatus.IN_PROGRESS:
            session._set_prompt()
            prompt_field = data.get('prompt_field')
            if prompt_field in template.steps[session._step_index].expected_fields:
                session._prompt_field = prompt_field

        logger.info(f"Session {session.session_id} restored ({session._status.value}, turn {session._turn_count})")
        return session

    # =========================================================================
    # Turn processing
    # =========================================================================

    def _apply_outcome(self, step_index: int, utterance: str, outcome: ChainOutcome) -> TurnResult:
        self._turn_count += 1
        step = self.template.steps[step_index]
        result = outcome.result
        now = self._clock()

        notes: List[str] = list(result.notes)
        debug: Dict[str, Any] = {
            'tier': outcome.tier.value,
            'attempts': [attempt.to_dict() for attempt in outcome.attempts],
            'unexpected_fields': [],
            'failures': [],
        }

        # Tier proposals are untrusted: keep only this step's fields
        expected = set(step.expected_fields)
        accepted: Dict[str, Any] = {}
        for proposal in result.updates:
            if proposal.field_id not in expected:
                debug['unexpected_fields'].append(proposal.field_id)
                continue

            field = self.template.field(proposal.field_id)
            validation = validate(field, proposal.raw_value, now=now)

            if isinstance(validation, Invalid):
                failure = validation.failure
                debug['failures'].append({
                    'field_id': failure.field_id,
                    'kind': failure.kind.value,
                    'constraint': failure.constraint,
                })
                notes.append(failure.message)
                continue

            self._answers.set(field.id, validation.value, source=outcome.tier.value, turn=self._turn_count)
            accepted[field.id] = validation.value

        if debug['unexpected_fields']:
            logger.warning(f"Session {self.session_id}: dropped proposals outside step '{step.id}': {debug['unexpected_fields']}")

        if not accepted and not debug['failures'] and self._prompt_field is not None:
            label = self.template.field(self._prompt_field).label
            notes.append(render(ClarificationTemplateID.NOTE_NOTHING_EXTRACTED, label=label))

        self._answers.record_turn(step.id, utterance, outcome.tier.value, list(accepted))

        decision = self._selector.decide(step_index, self._answers.view(), self._fired, hint=result.next_step_id)
        self._fired.update(decision.fired_rules)
        notes.extend(decision.notes)
        debug['navigation'] = decision.navigation.value
        if result.next_step_id is not None:
            debug['hint'] = {'step_id': result.next_step_id, 'status': decision.hint_status}
        if decision.rule_failure is not None:
            debug['step_rule'] = {
                'field_id': decision.rule_failure.field_id,
                'rule': decision.rule_failure.rule.rule.value,
            }

        if decision.leaves_step:
            backward = decision.target_index is not None and decision.target_index < step_index
            self._apply_navigation(decision)
            if self._status == SessionStatus.IN_PROGRESS:
                if backward:
                    self._set_prompt()
                else:
                    self._settle(notes)
        else:
            self._set_prompt(decision)

        updates = tuple(
            FieldUpdate(field_id=fid, value=value, display=canonical_string(self.template.field(fid), value))
            for fid, value in accepted.items()
        )

        logger.debug(
            f"Session {self.session_id} turn {self._turn_count}: {len(updates)} accepted via "
            f"{outcome.tier.value}, {decision.navigation.value} -> {self.step_id}"
        )
        return self._result(updates=updates, notes=notes, debug=debug, tier=outcome.tier.value)

    def _apply_navigation(self, decision: StepDecision) -> None:
        self._excused.update(decision.excused_steps)
        self._excused.difference_update(decision.reopened_steps)
        self._reopened.discard(self._step_index)

        if decision.navigation == Navigation.COMPLETE:
            self._complete()
            return

        if decision.reopened_steps:
            self._reopened.add(decision.target_index)

        logger.debug(
            f"Session {self.session_id}: {decision.navigation.value} "
            f"'{self.template.steps[self._step_index].id}' -> '{self.template.steps[decision.target_index].id}'"
        )
        self._step_index = decision.target_index
        self._fired = set()

    def _settle(self, notes: List[str]) -> None:
        """
        Move forward through steps that need nothing from the user.

        Evaluates the current step without an utterance; steps already
        answered, skipped by their conditions, or asking nothing are passed
        through. Backward branches are only taken after a user turn.
        """
        while self._status == SessionStatus.IN_PROGRESS:
            decision = self._selector.decide(self._step_index, self._answers.view(), self._fired)
            self._fired.update(decision.fired_rules)
            notes.extend(decision.notes)

            backward = decision.target_index is not None and decision.target_index <= self._step_index
            if not decision.leaves_step or backward:
                self._set_prompt(decision if not backward else None)
                return

            self._apply_navigation(decision)

    def _set_prompt(self, decision: Optional[StepDecision] = None) -> None:
        if self._status != SessionStatus.IN_PROGRESS:
            self._prompt_field = None
            return
        if decision is not None and decision.reprompt_field is not None:
            self._prompt_field = decision.reprompt_field
            return
        self._prompt_field = self._selector.question_field(
            self._step_index,
            self._answers.view(),
            reopened=self._step_index in self._reopened,
        )

    def _complete(self) -> None:
        self._status = SessionStatus.COMPLETED
        self._prompt_field = None
        self._reopened.clear()
        logger.info(f"Session {self.session_id} completed after {self._turn_count} turns")
        self._emit(SessionCompleted(
            session_id=self.session_id,
            template_id=self.template.id,
            answers=MappingProxyType({
                fid: self._encode(fid, value) for fid, value in self._answers.view().items()
            }),
            review=self.review(),
        ))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _encode(self, field_id: str, value: Any) -> str:
        return canonical_string(self.template.field(field_id), value)

    def _emit(self, event: Event) -> None:
        if self._sink is not None:
            self._sink(event)

    def _result(
        self,
        updates: Tuple[FieldUpdate, ...] = (),
        notes: Optional[List[str]] = None,
        debug: Optional[Dict[str, Any]] = None,
        tier: Optional[str] = None,
    ) -> TurnResult:
        unique_notes = tuple(dict.fromkeys(n for n in (notes or []) if n))
        return TurnResult(
            session_id=self.session_id,
            status=self._status,
            updates=updates,
            notes=unique_notes,
            question=self.current_question(),
            completed=self._status == SessionStatus.COMPLETED,
            progress=self.progress,
            step_id=self.step_id,
            tier=tier,
            debug=debug or {},
            turn_count=self._turn_count,
        )
