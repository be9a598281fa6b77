"""
Template Model - Declarative form definition (schema + conversation flow)

Responsibilities:
- Parse a template document (bytes, str or mapping) into an immutable Template
- Reject structurally inconsistent templates before any session can start
- Provide lookups: fields in document order, field by id, step by id

Design principles:
- All-or-nothing parsing: either a fully valid Template or TemplateParseError
- Collect every structural problem, report the first as reason/path
- Closed variants (FieldType, ConditionalAction, StepRuleKind) resolved at
  load time so downstream code never inspects raw strings
- Pure data: no behaviour beyond structural checks and lookups

Document shape:
    {
        "metadata": {"id", "name", "version", ...},
        "schema": {"sections": [{"id", "title", "fields": [...]}]},
        "conversationFlow": {"steps": [{"id", "expectedFields", ...}]},
        "review": {"checklists", "submissionGuidance", "feeInfo"},
        "systemPrompt": "..."
    }
"""

import json
import logging
import re
from dataclasses import dataclass, field as dataclass_field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from formly.core.conditions import Condition, ConditionSyntaxError, parse_condition

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class TemplateParseError(ValueError):
    """
    Structural template failure. Fatal for the session, never retried.

    Attributes:
        reason: Description of the first problem found
        path: Document location of the first problem
            (e.g. 'schema.sections[1].fields[0].type')
        errors: Every (path, reason) pair found
    """

    def __init__(self, reason: str, path: str = "", errors: Optional[List[Tuple[str, str]]] = None):
        self.reason = reason
        self.path = path
        self.errors = list(errors) if errors else [(path, reason)]
        message = f"{path}: {reason}" if path else reason
        if len(self.errors) > 1:
            message += f" (and {len(self.errors) - 1} more)"
        super().__init__(message)


class StepNotFoundError(KeyError):
    """Raised when a step id is not declared in the conversation flow"""
    pass


class FieldNotFoundError(KeyError):
    """Raised when a field id is not declared in the schema"""
    pass


# =============================================================================
# Closed variants
# =============================================================================

class FieldType(str, Enum):
    TEXT = "text"
    DATE = "date"
    NUMBER = "number"
    CHOICE = "choice"
    BOOLEAN = "boolean"
    EMAIL = "email"
    PHONE = "phone"


FIELD_TYPE_ALIASES = {
    "string": FieldType.TEXT,
    "textarea": FieldType.TEXT,
    "select": FieldType.CHOICE,
    "radio": FieldType.CHOICE,
    "dropdown": FieldType.CHOICE,
    "integer": FieldType.NUMBER,
    "decimal": FieldType.NUMBER,
    "currency": FieldType.NUMBER,
    "checkbox": FieldType.BOOLEAN,
    "yesno": FieldType.BOOLEAN,
    "bool": FieldType.BOOLEAN,
    "tel": FieldType.PHONE,
}


class ConditionalAction(str, Enum):
    SKIP = "skip"
    BRANCH_TO = "branch-to"
    REQUIRE_DOCUMENT = "require-document"
    SHOW_MESSAGE = "show-message"


ACTION_ALIASES = {
    "branch": ConditionalAction.BRANCH_TO,
    "branch_to": ConditionalAction.BRANCH_TO,
    "goto": ConditionalAction.BRANCH_TO,
    "require_document": ConditionalAction.REQUIRE_DOCUMENT,
    "require_documents": ConditionalAction.REQUIRE_DOCUMENT,
    "show_message": ConditionalAction.SHOW_MESSAGE,
    "message": ConditionalAction.SHOW_MESSAGE,
}

# Actions that attach notes without navigating
INFORMATIONAL_ACTIONS = {ConditionalAction.REQUIRE_DOCUMENT, ConditionalAction.SHOW_MESSAGE}


class StepRuleKind(str, Enum):
    REQUIRED = "required"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    MATCHES_FIELD = "matches_field"
    BEFORE_FIELD = "before_field"
    AFTER_FIELD = "after_field"


# Rule kinds whose 'value' names another field
FIELD_REFERENCE_RULES = {StepRuleKind.MATCHES_FIELD, StepRuleKind.BEFORE_FIELD, StepRuleKind.AFTER_FIELD}

# Constraint keys (document spelling -> attribute)
CONSTRAINT_KEYS = {
    "pattern": "pattern",
    "minLength": "min_length",
    "maxLength": "max_length",
    "minAge": "min_age",
    "maxAge": "max_age",
    "maxDaysAgo": "max_days_ago",
    "minDaysFromNow": "min_days_from_now",
}

DATE_ONLY_CONSTRAINTS = {"min_age", "max_age", "max_days_ago", "min_days_from_now"}


# =============================================================================
# Data model
# =============================================================================

@dataclass(frozen=True)
class ValidationRuleSet:
    """Per-field constraints; all present constraints must hold"""
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    max_days_ago: Optional[int] = None
    min_days_from_now: Optional[int] = None
    message: Optional[str] = None

    def present_constraints(self) -> List[str]:
        """Attribute names of constraints that are set, in evaluation order"""
        return [
            name for name in CONSTRAINT_KEYS.values()
            if getattr(self, name) is not None
        ]


@dataclass(frozen=True)
class Field:
    id: str
    label: str
    type: FieldType
    required: bool = False
    options: Tuple[str, ...] = ()
    validation: Optional[ValidationRuleSet] = None
    ai_prompt: Optional[str] = None


@dataclass(frozen=True)
class Section:
    id: str
    title: str
    description: str
    fields: Tuple[Field, ...]


@dataclass(frozen=True)
class StepValidationRule:
    """Cross-field rule evaluated when the conversation leaves a step"""
    field: str
    rule: StepRuleKind
    value: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ConditionalRule:
    condition: Condition
    action: ConditionalAction
    target: Optional[str] = None
    message: Optional[str] = None
    documents: Tuple[str, ...] = ()
    source: str = ""


@dataclass(frozen=True)
class ConversationStep:
    id: str
    title: str
    description: str
    expected_fields: Tuple[str, ...]
    validation_rules: Tuple[StepValidationRule, ...] = ()
    conditional_logic: Tuple[ConditionalRule, ...] = ()


@dataclass(frozen=True)
class Checklist:
    id: str
    title: str
    items: Tuple[str, ...]


@dataclass(frozen=True)
class ReviewInfo:
    checklists: Tuple[Checklist, ...] = ()
    submission_guidance: Optional[str] = None
    fee_info: Mapping[str, Any] = dataclass_field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class TemplateMetadata:
    id: str
    name: str
    version: str
    language_support: Tuple[str, ...] = ()
    category: Optional[str] = None
    description: Optional[str] = None
    estimated_time: Optional[int] = None
    difficulty: Optional[str] = None


@dataclass(frozen=True, eq=False)
class Template:
    """
    Immutable form template.

    Invariant: field ids are unique across the whole template, every step
    expected field and every condition reference is a declared field, and
    every branch target is a declared step.
    """
    metadata: TemplateMetadata
    sections: Tuple[Section, ...]
    steps: Tuple[ConversationStep, ...]
    review: ReviewInfo = ReviewInfo()
    system_prompt: Optional[str] = None

    def __post_init__(self):
        field_index = {}
        section_index = {}
        for section in self.sections:
            for f in section.fields:
                field_index[f.id] = f
                section_index[f.id] = section
        object.__setattr__(self, "_field_index", field_index)
        object.__setattr__(self, "_section_index", section_index)
        object.__setattr__(self, "_step_index", {s.id: i for i, s in enumerate(self.steps)})

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def name(self) -> str:
        return self.metadata.name

    def fields(self) -> Iterator[Field]:
        """All fields across all sections in document order (fresh iterator per call)"""
        for section in self.sections:
            yield from section.fields

    def has_field(self, field_id: str) -> bool:
        return field_id in self._field_index

    def field(self, field_id: str) -> Field:
        try:
            return self._field_index[field_id]
        except KeyError:
            raise FieldNotFoundError(field_id) from None

    def section_for(self, field_id: str) -> Section:
        try:
            return self._section_index[field_id]
        except KeyError:
            raise FieldNotFoundError(field_id) from None

    def step(self, step_id: str) -> ConversationStep:
        return self.steps[self.step_index(step_id)]

    def step_index(self, step_id: str) -> int:
        try:
            return self._step_index[step_id]
        except KeyError:
            raise StepNotFoundError(step_id) from None

    def has_step(self, step_id: str) -> bool:
        return step_id in self._step_index

    def expected_field_ids(self) -> List[str]:
        """Distinct expected field ids across all steps, in flow order"""
        seen = {}
        for step in self.steps:
            for field_id in step.expected_fields:
                seen.setdefault(field_id, None)
        return list(seen)


# =============================================================================
# Parsing
# =============================================================================

def parse_template(data: Union[bytes, str, Mapping[str, Any]]) -> Template:
    """
    Parse a template document.

    Args:
        data: Raw JSON (bytes or str) or an already-decoded mapping

    Returns:
        Template: Fully validated template

    Raises:
        TemplateParseError: On any structural problem (never partial)
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TemplateParseError(f"Template is not UTF-8: {e}") from None

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise TemplateParseError(f"Invalid JSON: {e}") from None

    if not isinstance(data, Mapping):
        raise TemplateParseError(f"Template root must be an object, got {type(data).__name__}")

    template = _TemplateParser(data).parse()
    logger.info(
        f"Parsed template '{template.id}' v{template.version}: "
        f"{sum(len(s.fields) for s in template.sections)} fields, {len(template.steps)} steps"
    )
    return template


def load_template(path: Union[str, Path]) -> Template:
    """
    Read and parse a template JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        TemplateParseError: If the document is invalid
    """
    template_path = Path(path)
    if not template_path.exists():
        raise FileNotFoundError(f"Template not found: {path}")
    return parse_template(template_path.read_bytes())


class _TemplateParser:
    """Single-use parser that collects every structural problem before failing"""

    def __init__(self, document: Mapping[str, Any]):
        self.document = document
        self.errors: List[Tuple[str, str]] = []
        self.field_types: Dict[str, FieldType] = {}

    def _fail(self, path: str, reason: str) -> None:
        self.errors.append((path, reason))

    def _require(self, obj: Mapping, key: str, path: str, kind=None) -> Any:
        """Fetch a required key; records an error and returns None if absent or wrong type"""
        if key not in obj or obj[key] is None:
            self._fail(f"{path}.{key}" if path else key, "missing required key")
            return None
        value = obj[key]
        if kind is not None and not isinstance(value, kind):
            self._fail(f"{path}.{key}" if path else key, f"expected {_kind_name(kind)}, got {type(value).__name__}")
            return None
        return value

    def _optional(self, obj: Mapping, key: str, path: str, kind, default=None) -> Any:
        value = obj.get(key)
        if value is None:
            return default
        if not isinstance(value, kind) or isinstance(value, bool) and kind is int:
            self._fail(f"{path}.{key}", f"expected {_kind_name(kind)}, got {type(value).__name__}")
            return default
        return value

    # -------------------------------------------------------------------------

    def parse(self) -> Template:
        metadata = self._parse_metadata()
        sections = self._parse_schema()
        steps = self._parse_flow()
        review = self._parse_review()
        system_prompt = self._optional(self.document, "systemPrompt", "", str)

        if self.errors:
            path, reason = self.errors[0]
            raise TemplateParseError(reason, path, self.errors)

        return Template(
            metadata=metadata,
            sections=sections,
            steps=steps,
            review=review,
            system_prompt=system_prompt,
        )

    def _parse_metadata(self) -> Optional[TemplateMetadata]:
        meta = self._require(self.document, "metadata", "", Mapping)
        if meta is None:
            return None

        template_id = self._require(meta, "id", "metadata", str)
        version = self._require(meta, "version", "metadata", str)
        name = self._require(meta, "name", "metadata", str)
        languages = self._optional(meta, "languageSupport", "metadata", list, default=[])

        if template_id is None or name is None or version is None:
            return None

        return TemplateMetadata(
            id=template_id,
            name=name,
            version=version,
            language_support=tuple(str(lang) for lang in languages),
            category=self._optional(meta, "category", "metadata", str),
            description=self._optional(meta, "description", "metadata", str),
            estimated_time=self._optional(meta, "estimatedTime", "metadata", int),
            difficulty=self._optional(meta, "difficulty", "metadata", str),
        )

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def _parse_schema(self) -> Tuple[Section, ...]:
        schema = self._require(self.document, "schema", "", Mapping)
        if schema is None:
            return ()

        raw_sections = self._require(schema, "sections", "schema", list)
        if raw_sections is None:
            return ()

        sections = []
        section_ids = set()
        for s_index, raw_section in enumerate(raw_sections):
            path = f"schema.sections[{s_index}]"
            if not isinstance(raw_section, Mapping):
                self._fail(path, "section must be an object")
                continue

            section_id = self._require(raw_section, "id", path, str)
            if section_id is not None:
                if section_id in section_ids:
                    self._fail(f"{path}.id", f"duplicate section id '{section_id}'")
                section_ids.add(section_id)

            raw_fields = self._optional(raw_section, "fields", path, list, default=[])
            fields = []
            for f_index, raw_field in enumerate(raw_fields):
                parsed = self._parse_field(raw_field, f"{path}.fields[{f_index}]")
                if parsed is not None:
                    fields.append(parsed)

            sections.append(Section(
                id=section_id or "",
                title=self._optional(raw_section, "title", path, str, default=section_id or ""),
                description=self._optional(raw_section, "description", path, str, default=""),
                fields=tuple(fields),
            ))

        return tuple(sections)

    def _parse_field(self, raw: Any, path: str) -> Optional[Field]:
        if not isinstance(raw, Mapping):
            self._fail(path, "field must be an object")
            return None

        field_id = self._require(raw, "id", path, str)
        label = self._require(raw, "label", path, str)
        raw_type = self._require(raw, "type", path, str)

        field_type = None
        if raw_type is not None:
            field_type = _resolve_field_type(raw_type)
            if field_type is None:
                self._fail(f"{path}.type", f"unknown field type '{raw_type}'")

        if field_id is not None:
            if field_id in self.field_types:
                self._fail(f"{path}.id", f"duplicate field id '{field_id}'")
            elif field_type is not None:
                self.field_types[field_id] = field_type

        required = raw.get("required", False)
        if not isinstance(required, bool):
            self._fail(f"{path}.required", "expected boolean")
            required = False

        options = raw.get("options")
        if field_type == FieldType.CHOICE:
            if not isinstance(options, list) or not options:
                self._fail(f"{path}.options", "choice field requires a non-empty options list")
                options = []
            elif not all(isinstance(o, str) and o.strip() for o in options):
                self._fail(f"{path}.options", "options must be non-empty strings")
                options = []
        elif options is not None:
            self._fail(f"{path}.options", f"options only allowed on choice fields, not '{raw_type}'")
            options = []

        validation = None
        if raw.get("validation") is not None:
            validation = self._parse_validation(raw["validation"], f"{path}.validation", field_type)

        if field_id is None or label is None or field_type is None:
            return None

        return Field(
            id=field_id,
            label=label,
            type=field_type,
            required=required,
            options=tuple(options or ()),
            validation=validation,
            ai_prompt=self._optional(raw, "aiPrompt", path, str),
        )

    def _parse_validation(self, raw: Any, path: str, field_type: Optional[FieldType]) -> Optional[ValidationRuleSet]:
        if not isinstance(raw, Mapping):
            self._fail(path, "validation must be an object")
            return None

        values = {}
        for key, attr in CONSTRAINT_KEYS.items():
            if raw.get(key) is None:
                continue
            value = raw[key]

            if attr == "pattern":
                if not isinstance(value, str):
                    self._fail(f"{path}.{key}", "expected string")
                    continue
                try:
                    re.compile(value)
                except re.error as e:
                    self._fail(f"{path}.{key}", f"invalid regular expression: {e}")
                    continue
            else:
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    self._fail(f"{path}.{key}", "expected non-negative integer")
                    continue
                if attr in DATE_ONLY_CONSTRAINTS and field_type is not None and field_type != FieldType.DATE:
                    self._fail(f"{path}.{key}", f"'{key}' only applies to date fields")
                    continue

            values[attr] = value

        unknown = set(raw.keys()) - set(CONSTRAINT_KEYS) - {"message"}
        for key in sorted(unknown):
            self._fail(f"{path}.{key}", "unknown validation key")

        if values.get("min_length") is not None and values.get("max_length") is not None:
            if values["min_length"] > values["max_length"]:
                self._fail(path, "minLength greater than maxLength")
        if values.get("min_age") is not None and values.get("max_age") is not None:
            if values["min_age"] > values["max_age"]:
                self._fail(path, "minAge greater than maxAge")

        message = self._optional(raw, "message", path, str)
        return ValidationRuleSet(message=message, **values)

    # -------------------------------------------------------------------------
    # Conversation flow
    # -------------------------------------------------------------------------

    def _parse_flow(self) -> Tuple[ConversationStep, ...]:
        flow = self._require(self.document, "conversationFlow", "", Mapping)
        if flow is None:
            return ()

        raw_steps = self._require(flow, "steps", "conversationFlow", list)
        if raw_steps is None:
            return ()

        # Collect step ids first so branch targets can point forward
        step_ids = set()
        for s_index, raw_step in enumerate(raw_steps):
            if isinstance(raw_step, Mapping) and isinstance(raw_step.get("id"), str):
                if raw_step["id"] in step_ids:
                    self._fail(f"conversationFlow.steps[{s_index}].id", f"duplicate step id '{raw_step['id']}'")
                step_ids.add(raw_step["id"])

        steps = []
        for s_index, raw_step in enumerate(raw_steps):
            step = self._parse_step(raw_step, f"conversationFlow.steps[{s_index}]", step_ids)
            if step is not None:
                steps.append(step)
        return tuple(steps)

    def _parse_step(self, raw: Any, path: str, step_ids: set) -> Optional[ConversationStep]:
        if not isinstance(raw, Mapping):
            self._fail(path, "step must be an object")
            return None

        step_id = self._require(raw, "id", path, str)

        expected = self._optional(raw, "expectedFields", path, list, default=[])
        expected_fields = []
        for i, field_id in enumerate(expected):
            if not isinstance(field_id, str):
                self._fail(f"{path}.expectedFields[{i}]", "expected field id string")
                continue
            if field_id not in self.field_types:
                self._fail(f"{path}.expectedFields[{i}]", f"undeclared field '{field_id}'")
                continue
            if field_id not in expected_fields:
                expected_fields.append(field_id)

        rules = []
        for i, raw_rule in enumerate(self._optional(raw, "validationRules", path, list, default=[])):
            rule = self._parse_step_rule(raw_rule, f"{path}.validationRules[{i}]", expected_fields)
            if rule is not None:
                rules.append(rule)

        logic = []
        for i, raw_logic in enumerate(self._optional(raw, "conditionalLogic", path, list, default=[])):
            conditional = self._parse_conditional(raw_logic, f"{path}.conditionalLogic[{i}]", step_ids)
            if conditional is not None:
                logic.append(conditional)

        if step_id is None:
            return None

        return ConversationStep(
            id=step_id,
            title=self._optional(raw, "title", path, str, default=step_id),
            description=self._optional(raw, "description", path, str, default=""),
            expected_fields=tuple(expected_fields),
            validation_rules=tuple(rules),
            conditional_logic=tuple(logic),
        )

    def _parse_step_rule(self, raw: Any, path: str, expected_fields: List[str]) -> Optional[StepValidationRule]:
        if not isinstance(raw, Mapping):
            self._fail(path, "validation rule must be an object")
            return None

        field_id = self._require(raw, "field", path, str)
        raw_kind = self._require(raw, "rule", path, str)
        value = raw.get("value")
        if value is not None and not isinstance(value, str):
            value = json.dumps(value) if isinstance(value, bool) else str(value)

        if field_id is not None and field_id not in self.field_types:
            self._fail(f"{path}.field", f"undeclared field '{field_id}'")
            field_id = None
        elif field_id is not None and field_id not in expected_fields:
            # A failing rule re-asks its field, so the step must accept answers for it
            self._fail(f"{path}.field", f"field '{field_id}' is not an expected field of this step")
            field_id = None

        kind = None
        if raw_kind is not None:
            try:
                kind = StepRuleKind(raw_kind.strip().lower().replace("-", "_"))
            except ValueError:
                self._fail(f"{path}.rule", f"unknown rule '{raw_kind}'")

        if kind is not None and kind != StepRuleKind.REQUIRED and value is None:
            self._fail(f"{path}.value", f"rule '{kind.value}' requires a value")
            kind = None

        if kind in FIELD_REFERENCE_RULES:
            if value not in self.field_types:
                self._fail(f"{path}.value", f"undeclared field '{value}'")
                kind = None
            elif kind != StepRuleKind.MATCHES_FIELD:
                operands = [field_id, value]
                if any(f is not None and self.field_types.get(f) != FieldType.DATE for f in operands):
                    self._fail(path, f"rule '{kind.value}' requires date fields")
                    kind = None

        if field_id is None or kind is None:
            return None

        return StepValidationRule(
            field=field_id,
            rule=kind,
            value=value,
            message=self._optional(raw, "message", path, str),
        )

    def _parse_conditional(self, raw: Any, path: str, step_ids: set) -> Optional[ConditionalRule]:
        if not isinstance(raw, Mapping):
            self._fail(path, "conditional logic entry must be an object")
            return None

        condition = None
        source = raw.get("condition")
        if source is None:
            self._fail(f"{path}.condition", "missing required key")
        else:
            try:
                condition = parse_condition(source)
            except ConditionSyntaxError as e:
                self._fail(f"{path}.condition", str(e))
            else:
                for field_id in sorted(condition.fields()):
                    if field_id not in self.field_types:
                        self._fail(f"{path}.condition", f"condition references undeclared field '{field_id}'")
                        condition = None

        raw_action = self._require(raw, "action", path, str)
        action, target = None, raw.get("target")
        if raw_action is not None:
            action, inline_target = _resolve_action(raw_action)
            if action is None:
                self._fail(f"{path}.action", f"unknown action '{raw_action}'")
            if inline_target:
                target = inline_target

        message = self._optional(raw, "message", path, str)
        documents = self._optional(raw, "documents", path, list, default=[])
        if not all(isinstance(d, str) for d in documents):
            self._fail(f"{path}.documents", "documents must be strings")
            documents = []

        if action == ConditionalAction.BRANCH_TO:
            if not isinstance(target, str) or not target:
                self._fail(f"{path}.target", "branch-to requires a target step id")
                action = None
            elif target not in step_ids:
                self._fail(f"{path}.target", f"branch target '{target}' is not a declared step")
                action = None
        elif action == ConditionalAction.SHOW_MESSAGE and not message:
            self._fail(f"{path}.message", "show-message requires a message")
            action = None
        elif action == ConditionalAction.REQUIRE_DOCUMENT and not documents and not message:
            self._fail(f"{path}.documents", "require-document requires documents or a message")
            action = None

        if condition is None or action is None:
            return None

        return ConditionalRule(
            condition=condition,
            action=action,
            target=target if action == ConditionalAction.BRANCH_TO else None,
            message=message,
            documents=tuple(documents),
            source=source if isinstance(source, str) else json.dumps(source, sort_keys=True),
        )

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    def _parse_review(self) -> ReviewInfo:
        review = self._optional(self.document, "review", "", Mapping, default=None)
        if review is None:
            return ReviewInfo()

        checklists = []
        for i, raw in enumerate(self._optional(review, "checklists", "review", list, default=[])):
            path = f"review.checklists[{i}]"
            if not isinstance(raw, Mapping):
                self._fail(path, "checklist must be an object")
                continue
            checklist_id = self._require(raw, "id", path, str)
            items = self._optional(raw, "items", path, list, default=[])
            if checklist_id is None:
                continue
            checklists.append(Checklist(
                id=checklist_id,
                title=self._optional(raw, "title", path, str, default=checklist_id),
                items=tuple(str(item) for item in items),
            ))

        fee_info = self._optional(review, "feeInfo", "review", Mapping, default={})
        return ReviewInfo(
            checklists=tuple(checklists),
            submission_guidance=self._optional(review, "submissionGuidance", "review", str),
            fee_info=MappingProxyType(json.loads(json.dumps(fee_info))),
        )


def _kind_name(kind) -> str:
    if kind is Mapping:
        return "object"
    if kind is list:
        return "list"
    if kind is str:
        return "string"
    if kind is int:
        return "integer"
    return getattr(kind, "__name__", str(kind))


def _resolve_field_type(raw_type: str) -> Optional[FieldType]:
    normalized = raw_type.strip().lower()
    try:
        return FieldType(normalized)
    except ValueError:
        return FIELD_TYPE_ALIASES.get(normalized)


def _resolve_action(raw_action: str) -> Tuple[Optional[ConditionalAction], Optional[str]]:
    """Resolve an action string; 'branch-to:step_id' carries its target inline"""
    name, _, inline_target = raw_action.partition(":")
    normalized = name.strip().lower()
    try:
        action = ConditionalAction(normalized)
    except ValueError:
        action = ACTION_ALIASES.get(normalized)
    return action, inline_target.strip() or None
