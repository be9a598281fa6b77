"""
Step Rules - Cross-field checks evaluated when leaving a step

Rules compare answers already accepted by the Validation Engine. A rule
whose operands are unanswered passes (the field-level required flag and
the step's expected fields decide whether a value is needed), except
'required', which exists to demand one.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Optional, Sequence

from formly.core.template_model import StepRuleKind, StepValidationRule, Template
from formly.core.validation_engine import canonical_string

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepRuleFailure:
    """First failing rule for a step, with the field to re-prompt"""
    rule: StepValidationRule
    field_id: str
    message: str


def evaluate_step_rules(
    template: Template,
    rules: Sequence[StepValidationRule],
    answers: Mapping[str, Any],
) -> Optional[StepRuleFailure]:
    """
    Evaluate rules in declaration order.

    Args:
        template: Template (for field labels and canonical forms)
        rules: Rules attached to the step being left
        answers: Current answers (field id -> typed value)

    Returns:
        StepRuleFailure for the first failing rule, or None if all pass
    """
    for rule in rules:
        if _rule_holds(template, rule, answers):
            continue
        message = rule.message or _default_message(template, rule)
        logger.debug(f"Step rule {rule.rule.value} failed on '{rule.field}'")
        return StepRuleFailure(rule=rule, field_id=rule.field, message=message)
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _rule_holds(template: Template, rule: StepValidationRule, answers: Mapping[str, Any]) -> bool:
    value = answers.get(rule.field)

    if rule.rule == StepRuleKind.REQUIRED:
        return not _is_blank(value)

    if _is_blank(value):
        return True

    field = template.field(rule.field)

    if rule.rule == StepRuleKind.EQUALS:
        return canonical_string(field, value).casefold() == (rule.value or "").strip().casefold()
    if rule.rule == StepRuleKind.NOT_EQUALS:
        return canonical_string(field, value).casefold() != (rule.value or "").strip().casefold()

    other = answers.get(rule.value)
    if _is_blank(other):
        return True

    if rule.rule == StepRuleKind.MATCHES_FIELD:
        other_field = template.field(rule.value)
        return canonical_string(field, value).casefold() == canonical_string(other_field, other).casefold()

    if not isinstance(value, date) or not isinstance(other, date):
        return True
    if rule.rule == StepRuleKind.BEFORE_FIELD:
        return value < other
    return value > other


def _default_message(template: Template, rule: StepValidationRule) -> str:
    label = template.field(rule.field).label
    if rule.rule == StepRuleKind.REQUIRED:
        return f"{label} is required."
    if rule.rule == StepRuleKind.EQUALS:
        return f"{label} must be {rule.value}."
    if rule.rule == StepRuleKind.NOT_EQUALS:
        return f"{label} cannot be {rule.value}."

    other_label = template.field(rule.value).label
    if rule.rule == StepRuleKind.MATCHES_FIELD:
        return f"{label} must match {other_label}."
    if rule.rule == StepRuleKind.BEFORE_FIELD:
        return f"{label} must be before {other_label}."
    return f"{label} must be after {other_label}."
