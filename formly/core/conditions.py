"""
Conditions - Closed condition language for step conditional logic

Responsibilities:
- Parse condition sources (dict DSL or string expression) at template load time
- Evaluate parsed conditions against the session answer map
- Report which field ids a condition references (for load-time checks)

Design principles:
- Parse once, evaluate many: downstream code never inspects raw strings
- Closed set of node types (Comparison, AllOf, AnyOf, Not)
- Deterministic and side-effect free
- Missing fields evaluate to False (field unanswered = condition not met),
  except 'ne', which follows Python semantics (None != value)

Supported dict DSL:
    all, any, not, eq, ne, is_true, is_false, exists, contains_lower,
    gte, gt, lte, lt

Supported string expressions:
    "has_real_id == true"          eq
    "visa_type != 'B1/B2'"         ne
    "age >= 18"                    gte (also >, <=, <)
    "moved_recently"               truthy
    "!moved_recently", "not x"     negated truthy
    "passport_number exists"       exists
    "a == 1 && b" / "a or b"       and binds tighter than or
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, FrozenSet, List, Mapping, Tuple, Union

logger = logging.getLogger(__name__)


class ConditionSyntaxError(ValueError):
    """Raised when a condition source cannot be parsed"""
    pass


class Operator(str, Enum):
    """Leaf comparison operators"""
    EQ = "eq"
    NE = "ne"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"
    EXISTS = "exists"
    TRUTHY = "truthy"
    CONTAINS_LOWER = "contains_lower"
    GTE = "gte"
    GT = "gt"
    LTE = "lte"
    LT = "lt"


NUMERIC_OPERATORS = {Operator.GTE, Operator.GT, Operator.LTE, Operator.LT}

# String expression symbols -> operator
_SYMBOL_OPERATORS = {
    "==": Operator.EQ,
    "!=": Operator.NE,
    ">=": Operator.GTE,
    "<=": Operator.LTE,
    ">": Operator.GT,
    "<": Operator.LT,
}

_FIELD_ID = r"[A-Za-z_][\w.\-]*"
_COMPARISON_RE = re.compile(rf"^({_FIELD_ID})\s*(==|!=|>=|<=|>|<)\s*(.+)$")
_NEGATION_RE = re.compile(rf"^(?:!|not\s+)\s*({_FIELD_ID})$", re.IGNORECASE)
_EXISTS_RE = re.compile(rf"^({_FIELD_ID})\s+exists$", re.IGNORECASE)
_BARE_FIELD_RE = re.compile(rf"^({_FIELD_ID})$")
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def _as_text(value: Any) -> str:
    """Lower-cased text form of an answer used for string comparisons"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip().lower()


# =============================================================================
# Condition nodes
# =============================================================================

@dataclass(frozen=True)
class Comparison:
    """Leaf condition: one operator applied to one field"""
    op: Operator
    field: str
    operand: Any = None

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.field})

    def evaluate(self, answers: Mapping[str, Any]) -> bool:
        actual = answers.get(self.field)

        if self.op == Operator.EXISTS:
            return actual is not None

        if self.op == Operator.TRUTHY:
            if isinstance(actual, str):
                return actual.strip() != ""
            return bool(actual) if actual is not None else False

        if self.op == Operator.IS_TRUE:
            return actual is True

        if self.op == Operator.IS_FALSE:
            return actual is False

        if self.op in (Operator.EQ, Operator.NE):
            matched = self._equals(actual)
            return matched if self.op == Operator.EQ else not matched

        if self.op == Operator.CONTAINS_LOWER:
            if not isinstance(actual, str):
                return False
            return str(self.operand).lower() in actual.lower()

        # Numeric comparison operators
        if actual is None or isinstance(actual, (bool, date)):
            return False
        try:
            left = float(actual)
            right = float(self.operand)
        except (TypeError, ValueError):
            return False

        if self.op == Operator.GTE:
            return left >= right
        if self.op == Operator.GT:
            return left > right
        if self.op == Operator.LTE:
            return left <= right
        return left < right

    def _equals(self, actual: Any) -> bool:
        if actual is None:
            return False
        if isinstance(self.operand, bool) or isinstance(actual, bool):
            if isinstance(self.operand, bool) and isinstance(actual, bool):
                return actual is self.operand
            return _as_text(actual) == _as_text(self.operand)
        if actual == self.operand:
            return True
        return _as_text(actual) == _as_text(self.operand)


@dataclass(frozen=True)
class AllOf:
    """Conjunction; empty is vacuously true"""
    conditions: Tuple["Condition", ...]

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.fields() for c in self.conditions))

    def evaluate(self, answers: Mapping[str, Any]) -> bool:
        return all(c.evaluate(answers) for c in self.conditions)


@dataclass(frozen=True)
class AnyOf:
    """Disjunction; empty is false"""
    conditions: Tuple["Condition", ...]

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.fields() for c in self.conditions))

    def evaluate(self, answers: Mapping[str, Any]) -> bool:
        return any(c.evaluate(answers) for c in self.conditions)


@dataclass(frozen=True)
class Not:
    condition: "Condition"

    def fields(self) -> FrozenSet[str]:
        return self.condition.fields()

    def evaluate(self, answers: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(answers)


Condition = Union[Comparison, AllOf, AnyOf, Not]


# =============================================================================
# Parsing
# =============================================================================

def parse_condition(source: Any) -> Condition:
    """
    Parse a condition source into a Condition tree.

    Args:
        source: Dict DSL or string expression

    Returns:
        Condition: Parsed condition

    Raises:
        ConditionSyntaxError: If the source is malformed
    """
    if isinstance(source, Mapping):
        return _parse_dsl(source)
    if isinstance(source, str):
        expression = source.strip()
        if not expression:
            raise ConditionSyntaxError("Empty condition expression")
        return _parse_expression(expression)
    raise ConditionSyntaxError(
        f"Condition must be object or string, got {type(source).__name__}"
    )


def _parse_dsl(dsl: Mapping) -> Condition:
    if not dsl:
        return AllOf(())

    if len(dsl) != 1:
        raise ConditionSyntaxError(
            f"Condition object must have exactly one operator, got {sorted(dsl.keys())}"
        )

    key, argument = next(iter(dsl.items()))

    if key in ("all", "any"):
        if not isinstance(argument, list):
            raise ConditionSyntaxError(f"'{key}' expects a list")
        children = tuple(parse_condition(sub) for sub in argument)
        return AllOf(children) if key == "all" else AnyOf(children)

    if key == "not":
        return Not(parse_condition(argument))

    try:
        op = Operator(key)
    except ValueError:
        raise ConditionSyntaxError(f"Unknown condition operator: '{key}'") from None

    if op in (Operator.IS_TRUE, Operator.IS_FALSE, Operator.EXISTS, Operator.TRUTHY):
        if not isinstance(argument, str) or not argument:
            raise ConditionSyntaxError(f"'{key}' expects a field id")
        return Comparison(op, argument)

    if not isinstance(argument, list) or len(argument) != 2 or not isinstance(argument[0], str):
        raise ConditionSyntaxError(f"'{key}' expects [field_id, value]")

    field, operand = argument
    if op in NUMERIC_OPERATORS:
        try:
            float(operand)
        except (TypeError, ValueError):
            raise ConditionSyntaxError(f"'{key}' expects a numeric threshold, got {operand!r}") from None
    return Comparison(op, field, operand)


def _split_outside_quotes(expression: str, separators: Tuple[str, ...]) -> List[str]:
    """Split on any of the separators (case-insensitive words or symbols) outside quotes"""
    parts = []
    current = []
    quote = None
    i = 0
    lowered = expression.lower()

    while i < len(expression):
        ch = expression[i]
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
            i += 1
            continue

        matched = None
        for sep in separators:
            if not lowered.startswith(sep, i):
                continue
            if sep.isalpha():
                # Word separators need whitespace on both sides
                before = expression[i - 1] if i > 0 else ""
                after = expression[i + len(sep)] if i + len(sep) < len(expression) else ""
                if not (before.isspace() and after.isspace()):
                    continue
            matched = sep
            break

        if matched:
            parts.append("".join(current))
            current = []
            i += len(matched)
        else:
            current.append(ch)
            i += 1

    if quote:
        raise ConditionSyntaxError(f"Unterminated quote in condition: {expression!r}")

    parts.append("".join(current))
    return parts


def _parse_expression(expression: str) -> Condition:
    disjuncts = _split_outside_quotes(expression, ("||", "or"))
    if len(disjuncts) > 1:
        return AnyOf(tuple(_parse_conjunction(part) for part in disjuncts))
    return _parse_conjunction(expression)


def _parse_conjunction(expression: str) -> Condition:
    conjuncts = _split_outside_quotes(expression, ("&&", "and"))
    if len(conjuncts) > 1:
        return AllOf(tuple(_parse_clause(part) for part in conjuncts))
    return _parse_clause(expression)


def _parse_clause(clause: str) -> Condition:
    clause = clause.strip()
    if not clause:
        raise ConditionSyntaxError("Empty clause in condition")

    match = _NEGATION_RE.match(clause)
    if match:
        return Not(Comparison(Operator.TRUTHY, match.group(1)))

    match = _EXISTS_RE.match(clause)
    if match:
        return Comparison(Operator.EXISTS, match.group(1))

    match = _COMPARISON_RE.match(clause)
    if match:
        field, symbol, raw_value = match.groups()
        op = _SYMBOL_OPERATORS[symbol]
        value = _parse_literal(raw_value.strip())
        if op in NUMERIC_OPERATORS and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ConditionSyntaxError(f"'{symbol}' expects a number in clause {clause!r}")
        return Comparison(op, field, value)

    match = _BARE_FIELD_RE.match(clause)
    if match:
        return Comparison(Operator.TRUTHY, match.group(1))

    raise ConditionSyntaxError(f"Cannot parse condition clause: {clause!r}")


def _parse_literal(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _NUMBER_RE.match(raw):
        return float(raw) if "." in raw else int(raw)
    return raw
