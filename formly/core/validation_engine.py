"""
Validation Engine - Coerce and check one raw answer against one field

Responsibilities:
- Coerce raw text to the field's typed value (date, number, choice, ...)
- Enforce requiredness
- Evaluate the field's ValidationRuleSet in a fixed order
- Produce the canonical string form of a typed value

Design principles:
- Pure and deterministic given an explicit 'now'
- Never raises for bad user input; returns Invalid with a reason instead
- First failing constraint wins (pattern, minLength, maxLength, minAge,
  maxAge, maxDaysAgo, minDaysFromNow)
- validate(field, canonical_string(field, v)) == Valid(v) for every
  accepted v (idempotence)
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from dateutil import parser as dtparse

from formly.core.template_model import Field, FieldType
from formly.utils.clarification_templates import ClarificationTemplateID, render

logger = logging.getLogger(__name__)


class ValidationFailureKind(str, Enum):
    MISSING_REQUIRED = "missing_required"
    TYPE_MISMATCH = "type_mismatch"
    CONSTRAINT_VIOLATED = "constraint_violated"


@dataclass(frozen=True)
class ValidationFailure:
    """
    Why a raw answer was rejected.

    Attributes:
        field_id: Field the answer was proposed for
        kind: Failure category
        message: User-facing explanation
        constraint: Name of the violated constraint (constraint failures only)
    """
    field_id: str
    kind: ValidationFailureKind
    message: str
    constraint: Optional[str] = None


@dataclass(frozen=True)
class Valid:
    value: Any

    @property
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    failure: ValidationFailure

    @property
    def is_valid(self) -> bool:
        return False


ValidationOutcome = Union[Valid, Invalid]


# =============================================================================
# Coercion tables
# =============================================================================

TRUE_WORDS = {"yes", "y", "true", "1"}
FALSE_WORDS = {"no", "n", "false", "0"}

RELATIVE_DAYS = {"today": 0, "yesterday": -1, "tomorrow": 1}

# Two defaults differing in year, month and day; a date that parses the same
# under both names all three parts itself
PARTIAL_DATE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")

PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 15

TYPE_NAMES = {
    FieldType.TEXT: "text",
    FieldType.DATE: "date",
    FieldType.NUMBER: "number",
    FieldType.CHOICE: "option",
    FieldType.BOOLEAN: "yes/no answer",
    FieldType.EMAIL: "email address",
    FieldType.PHONE: "phone number",
}


class _CoercionError(ValueError):
    pass


# =============================================================================
# Public API
# =============================================================================

def validate(field: Field, raw: Any, now: Optional[datetime] = None) -> ValidationOutcome:
    """
    Validate a raw answer for a field.

    Args:
        field: Target field
        raw: Raw answer (usually text); None counts as empty
        now: Reference time for relative dates and age/day constraints
            (defaults to datetime.now())

    Returns:
        Valid(value) with the typed value, or Invalid(failure)
    """
    today = _today(now)
    text = _raw_text(raw)

    if text == "":
        if field.required:
            return Invalid(ValidationFailure(
                field_id=field.id,
                kind=ValidationFailureKind.MISSING_REQUIRED,
                message=render(ClarificationTemplateID.NOTE_MISSING_REQUIRED, label=field.label),
            ))
        return Valid(None)

    try:
        value = _coerce(field, text, today)
    except _CoercionError:
        logger.debug(f"Type mismatch for '{field.id}' ({field.type.value}): {text!r}")
        return Invalid(ValidationFailure(
            field_id=field.id,
            kind=ValidationFailureKind.TYPE_MISMATCH,
            message=render(
                ClarificationTemplateID.NOTE_TYPE_MISMATCH,
                raw=text,
                type=TYPE_NAMES[field.type],
                label=field.label,
            ),
        ))

    failure = _check_constraints(field, value, today)
    if failure is not None:
        return Invalid(failure)

    return Valid(value)


def canonical_string(field: Field, value: Any) -> str:
    """
    Canonical text form of a typed value.

    Dates are ISO (YYYY-MM-DD), booleans 'true'/'false', integral numbers
    without a decimal point, choices in their declared spelling.
    None (explicitly blank) is the empty string.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        # Fixed point; repr() switches to exponent form for small values
        return format(Decimal(repr(value)), "f")
    return str(value)


def age_on(birth: date, today: date) -> int:
    """Whole years from birth to today; a birthday not yet reached counts one less"""
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years


# =============================================================================
# Coercion
# =============================================================================

def _today(now: Optional[datetime]) -> date:
    if now is None:
        return datetime.now().date()
    if isinstance(now, datetime):
        return now.date()
    return now


def _raw_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw).strip()


def _coerce(field: Field, text: str, today: date) -> Any:
    coerce = _COERCERS[field.type]
    return coerce(field, text, today)


def _coerce_text(field: Field, text: str, today: date) -> str:
    return text


def _coerce_date(field: Field, text: str, today: date) -> date:
    lowered = text.lower()
    if lowered in RELATIVE_DAYS:
        return today + timedelta(days=RELATIVE_DAYS[lowered])

    # Bare month names ("March") would silently default day and year
    if not any(ch.isdigit() for ch in text):
        raise _CoercionError(text)

    try:
        parsed = [
            dtparse.parse(text, dayfirst=False, yearfirst=False, fuzzy=False, default=default).date()
            for default in PARTIAL_DATE_DEFAULTS
        ]
    except (ValueError, OverflowError) as e:
        raise _CoercionError(text) from e

    # "May 1990" or "15" would borrow the missing parts from the default
    if parsed[0] != parsed[1]:
        raise _CoercionError(text)
    return parsed[0]


def _coerce_number(field: Field, text: str, today: date) -> Union[int, float]:
    cleaned = text.replace(",", "").replace(" ", "")
    if cleaned.startswith("$"):
        cleaned = cleaned[1:]
    elif cleaned.startswith(("-$", "+$")):
        cleaned = cleaned[0] + cleaned[2:]

    if not NUMBER_RE.match(cleaned):
        raise _CoercionError(text)

    value = float(cleaned)
    if not math.isfinite(value):
        raise _CoercionError(text)
    if value.is_integer() and "." not in cleaned:
        return int(cleaned)
    return int(value) if value.is_integer() else value


def _coerce_choice(field: Field, text: str, today: date) -> str:
    lowered = text.casefold()
    for option in field.options:
        if option.strip().casefold() == lowered:
            return option
    raise _CoercionError(text)


def _coerce_boolean(field: Field, text: str, today: date) -> bool:
    lowered = text.lower()
    if lowered in TRUE_WORDS:
        return True
    if lowered in FALSE_WORDS:
        return False
    raise _CoercionError(text)


def _coerce_email(field: Field, text: str, today: date) -> str:
    if not EMAIL_RE.match(text):
        raise _CoercionError(text)
    return text.lower()


def _coerce_phone(field: Field, text: str, today: date) -> str:
    compact = PHONE_SEPARATORS_RE.sub("", text)
    prefix = ""
    if compact.startswith("+"):
        prefix, compact = "+", compact[1:]
    if not compact.isdigit() or not compact.isascii():
        raise _CoercionError(text)
    if not PHONE_MIN_DIGITS <= len(compact) <= PHONE_MAX_DIGITS:
        raise _CoercionError(text)
    return prefix + compact


_COERCERS = {
    FieldType.TEXT: _coerce_text,
    FieldType.DATE: _coerce_date,
    FieldType.NUMBER: _coerce_number,
    FieldType.CHOICE: _coerce_choice,
    FieldType.BOOLEAN: _coerce_boolean,
    FieldType.EMAIL: _coerce_email,
    FieldType.PHONE: _coerce_phone,
}


# =============================================================================
# Constraints
# =============================================================================

def _check_constraints(field: Field, value: Any, today: date) -> Optional[ValidationFailure]:
    rules = field.validation
    if rules is None:
        return None

    canonical = canonical_string(field, value)

    for name in rules.present_constraints():
        limit = getattr(rules, name)
        if _constraint_holds(name, limit, value, canonical, today):
            continue

        message = rules.message or _default_message(field, name, limit)
        logger.debug(f"Constraint '{name}' failed for '{field.id}': {canonical!r}")
        return ValidationFailure(
            field_id=field.id,
            kind=ValidationFailureKind.CONSTRAINT_VIOLATED,
            message=render(ClarificationTemplateID.NOTE_CONSTRAINT, message=message),
            constraint=name,
        )

    return None


def _constraint_holds(name: str, limit: Any, value: Any, canonical: str, today: date) -> bool:
    if name == "pattern":
        return re.fullmatch(limit, canonical) is not None
    if name == "min_length":
        return len(canonical) >= limit
    if name == "max_length":
        return len(canonical) <= limit

    # Date-only constraints; the parser rejects them on other types
    if not isinstance(value, date):
        return True
    if name == "min_age":
        return age_on(value, today) >= limit
    if name == "max_age":
        return age_on(value, today) <= limit
    if name == "max_days_ago":
        return (today - value).days <= limit
    if name == "min_days_from_now":
        return (value - today).days >= limit
    return True


def _default_message(field: Field, name: str, limit: Any) -> str:
    label = field.label
    if name == "pattern":
        return f"{label} is not in the expected format."
    if name == "min_length":
        return f"{label} must be at least {limit} characters."
    if name == "max_length":
        return f"{label} must be at most {limit} characters."
    if name == "min_age":
        return f"You must be at least {limit} years old."
    if name == "max_age":
        return f"You must be at most {limit} years old."
    if name == "max_days_ago":
        return f"{label} must be within the last {limit} days."
    if name == "min_days_from_now":
        return f"{label} must be at least {limit} days from today."
    return f"{label} is not valid."
