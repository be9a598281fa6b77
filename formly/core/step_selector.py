"""
Step Selector - Stateless navigation decisions for the conversation flow

Responsibilities:
- Evaluate a step's conditional logic against the current answers
- Decide whether to stay on a step, advance, skip, branch or complete
- Apply step-exit rules before any departure
- Vet the advisory next-step hint returned by an extraction tier
- Pick the field to ask about next

Design principles:
- Stateless: all state comes from parameters
- Deterministic: same input always produces same output
- Pure functions: no side effects (the engine applies the decision)

Navigation semantics:
- Conditional rules are evaluated top-to-bottom; the first match applies
- skip: leave to the next step in order; the step's remaining fields are excused
- branch-to: jump to the target; a forward jump excuses the steps in
  between and the current step's remaining fields; a backward jump
  re-opens the target
- show-message / require-document: attach notes, then default
  advancement; each fires at most once per step visit
- default advancement: leave when every expected field is answered and
  the step rules pass; otherwise re-prompt
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import AbstractSet, Any, List, Mapping, Optional, Tuple

from formly.core.step_rules import StepRuleFailure, evaluate_step_rules
from formly.core.template_model import (
    INFORMATIONAL_ACTIONS,
    ConditionalAction,
    ConditionalRule,
    ConversationStep,
    StepRuleKind,
    Template,
)
from formly.utils.clarification_templates import ClarificationTemplateID, render

logger = logging.getLogger(__name__)


class Navigation(str, Enum):
    STAY = "stay"
    ADVANCE = "advance"
    SKIP = "skip"
    BRANCH = "branch"
    COMPLETE = "complete"


# Outcomes of the advisory hint check (recorded in debug output)
HINT_NONE = "none"
HINT_HONOURED = "honoured"
HINT_UNKNOWN_STEP = "ignored: unknown step"
HINT_NOT_FORWARD = "ignored: not a later step"
HINT_STEP_INCOMPLETE = "ignored: current step incomplete"
HINT_GAP_UNANSWERED = "ignored: intermediate step unanswered"
HINT_RULE_APPLIED = "ignored: conditional rule applied"


@dataclass(frozen=True)
class StepDecision:
    """
    What the engine should do after evaluating a step.

    Attributes:
        navigation: Kind of move
        target_index: Step index to move to (None for STAY/COMPLETE)
        excused_steps: Step indices whose unanswered fields no longer count
        reopened_steps: Step indices no longer excused (backward branch)
        notes: Notes to attach to the turn
        fired_rules: Indices into step.conditional_logic of informational
            rules that fired
        reprompt_field: Field to ask about when staying
        rule_failure: Failing step rule, if that is why we stay
        hint_status: Outcome of the advisory hint check
    """
    navigation: Navigation
    target_index: Optional[int] = None
    excused_steps: Tuple[int, ...] = ()
    reopened_steps: Tuple[int, ...] = ()
    notes: Tuple[str, ...] = ()
    fired_rules: Tuple[int, ...] = ()
    reprompt_field: Optional[str] = None
    rule_failure: Optional[StepRuleFailure] = None
    hint_status: str = HINT_NONE

    @property
    def leaves_step(self) -> bool:
        return self.navigation != Navigation.STAY


class StepSelector:
    """
    Stateless navigation over one template's conversation flow.
    """

    def __init__(self, template: Template):
        self.template = template

    # =========================================================================
    # Public API
    # =========================================================================

    def unanswered_fields(self, step: ConversationStep, answers: Mapping[str, Any]) -> List[str]:
        """Expected fields of the step with no value yet, in declaration order"""
        return [field_id for field_id in step.expected_fields if field_id not in answers]

    def is_step_answered(self, step: ConversationStep, answers: Mapping[str, Any]) -> bool:
        return not self.unanswered_fields(step, answers)

    def matching_rule(
        self,
        step: ConversationStep,
        answers: Mapping[str, Any],
        fired: AbstractSet[int] = frozenset(),
    ) -> Optional[Tuple[int, ConditionalRule]]:
        """
        First conditional rule whose condition holds.

        Informational rules already fired during this visit are passed over.

        Returns:
            (rule_index, rule) or None
        """
        for index, rule in enumerate(step.conditional_logic):
            if rule.action in INFORMATIONAL_ACTIONS and index in fired:
                continue
            if rule.condition.evaluate(answers):
                return index, rule
        return None

    def decide(
        self,
        step_index: int,
        answers: Mapping[str, Any],
        fired: AbstractSet[int] = frozenset(),
        hint: Optional[str] = None,
    ) -> StepDecision:
        """
        Decide the next move from a step.

        Args:
            step_index: Index of the current step
            answers: Current answers (after this turn's merges)
            fired: Informational rule indices already fired this visit
            hint: Advisory next-step id proposed by the extraction tier

        Returns:
            StepDecision
        """
        step = self.template.steps[step_index]
        notes: List[str] = []
        fired_now: List[int] = []

        match = self.matching_rule(step, answers, fired)
        if match is not None:
            rule_index, rule = match

            if rule.action == ConditionalAction.SKIP:
                logger.debug(f"Step '{step.id}': skip rule {rule_index} applies")
                decision = self._leave_via_rule(step_index, answers, Navigation.SKIP, step_index + 1)
                return self._with_hint_status(decision, hint, HINT_RULE_APPLIED)

            if rule.action == ConditionalAction.BRANCH_TO:
                target_index = self.template.step_index(rule.target)
                if target_index != step_index:
                    logger.debug(f"Step '{step.id}': branch rule {rule_index} -> '{rule.target}'")
                    decision = self._leave_via_rule(step_index, answers, Navigation.BRANCH, target_index)
                    return self._with_hint_status(decision, hint, HINT_RULE_APPLIED)

            if rule.action in INFORMATIONAL_ACTIONS:
                notes.extend(self._informational_notes(rule))
                fired_now.append(rule_index)

        decision = self._default_advancement(step_index, answers)
        if decision.leaves_step and hint is not None:
            decision = self._apply_hint(step_index, answers, hint, decision)
        elif hint is not None:
            decision = self._with_hint_status(decision, hint, HINT_STEP_INCOMPLETE)

        return replace(decision, notes=tuple(notes) + decision.notes, fired_rules=tuple(fired_now))

    def question_field(self, step_index: int, answers: Mapping[str, Any], reopened: bool = False) -> Optional[str]:
        """
        Field to ask about on a step.

        The first unanswered expected field; on a re-opened step whose fields
        are all answered, the first expected field (so the user can revise it).
        """
        step = self.template.steps[step_index]
        unanswered = self.unanswered_fields(step, answers)
        if unanswered:
            return unanswered[0]
        if reopened and step.expected_fields:
            return step.expected_fields[0]
        return None

    # =========================================================================
    # Internals
    # =========================================================================

    def _next(self, index: int) -> Tuple[Navigation, Optional[int]]:
        if index >= len(self.template.steps):
            return Navigation.COMPLETE, None
        return Navigation.ADVANCE, index

    def _default_advancement(self, step_index: int, answers: Mapping[str, Any]) -> StepDecision:
        step = self.template.steps[step_index]

        unanswered = self.unanswered_fields(step, answers)
        if unanswered:
            return StepDecision(Navigation.STAY, reprompt_field=unanswered[0])

        failure = evaluate_step_rules(self.template, step.validation_rules, answers)
        if failure is not None:
            return self._stay_on_rule_failure(failure)

        navigation, target = self._next(step_index + 1)
        return StepDecision(navigation, target_index=target)

    def _leave_via_rule(
        self,
        step_index: int,
        answers: Mapping[str, Any],
        navigation: Navigation,
        target_index: int,
    ) -> StepDecision:
        step = self.template.steps[step_index]

        # Fields being excused cannot block the departure via 'required'
        excused_fields = set(self.unanswered_fields(step, answers))
        rules = [
            r for r in step.validation_rules
            if not (r.rule == StepRuleKind.REQUIRED and r.field in excused_fields)
        ]
        failure = evaluate_step_rules(self.template, rules, answers)
        if failure is not None:
            return self._stay_on_rule_failure(failure)

        if target_index < step_index:
            reopened = tuple(range(target_index, step_index + 1))
            return StepDecision(navigation, target_index=target_index, reopened_steps=reopened)

        excused = tuple(range(step_index, min(target_index, len(self.template.steps))))
        nav, target = self._next(target_index)
        if nav == Navigation.COMPLETE:
            return StepDecision(Navigation.COMPLETE, excused_steps=excused)
        return StepDecision(navigation, target_index=target, excused_steps=excused)

    def _stay_on_rule_failure(self, failure: StepRuleFailure) -> StepDecision:
        note = render(ClarificationTemplateID.NOTE_STEP_RULE, message=failure.message)
        return StepDecision(
            Navigation.STAY,
            notes=(note,),
            reprompt_field=failure.field_id,
            rule_failure=failure,
        )

    def _informational_notes(self, rule: ConditionalRule) -> List[str]:
        notes = []
        if rule.message:
            notes.append(rule.message)
        if rule.action == ConditionalAction.REQUIRE_DOCUMENT and rule.documents:
            notes.append(render(ClarificationTemplateID.NOTE_DOCUMENTS, documents=", ".join(rule.documents)))
        return notes

    def _apply_hint(
        self,
        step_index: int,
        answers: Mapping[str, Any],
        hint: str,
        default: StepDecision,
    ) -> StepDecision:
        if not self.template.has_step(hint):
            return self._with_hint_status(default, hint, HINT_UNKNOWN_STEP)

        hint_index = self.template.step_index(hint)
        if hint_index <= step_index:
            return self._with_hint_status(default, hint, HINT_NOT_FORWARD)
        if hint_index == step_index + 1:
            return self._with_hint_status(default, hint, HINT_HONOURED)

        for between in range(step_index + 1, hint_index):
            if not self.is_step_answered(self.template.steps[between], answers):
                return self._with_hint_status(default, hint, HINT_GAP_UNANSWERED)

        logger.info(f"Honouring next-step hint '{hint}' from step {step_index}")
        return StepDecision(Navigation.ADVANCE, target_index=hint_index, hint_status=HINT_HONOURED)

    def _with_hint_status(self, decision: StepDecision, hint: Optional[str], status: str) -> StepDecision:
        if hint is None:
            return decision
        if status != HINT_HONOURED:
            logger.info(f"Ignoring next-step hint '{hint}' ({status})")
        return replace(decision, hint_status=status)
