"""
Clarification Template Registry

Wording for every note and re-prompt the conversation engine produces.

Template Text:
- TEMPLATE_TEXT maps a template id to a pattern with {placeholder} slots
- render() fills the placeholders; missing placeholders raise KeyError
- Field questions prefer the field's own aiPrompt when the template
  author supplied one (see question_for_field)
"""

from enum import Enum
from typing import Dict

from formly.core.template_model import Field, FieldType


class ClarificationTemplateID(str, Enum):
    """
    Template identifiers for engine-generated text.

    Naming convention: <KIND>_<TOPIC>
    """
    # Questions
    ASK_FIELD = "ask_field"
    ASK_CHOICE = "ask_choice"
    ASK_DATE = "ask_date"
    ASK_BOOLEAN = "ask_boolean"

    # Validation notes
    NOTE_MISSING_REQUIRED = "note_missing_required"
    NOTE_TYPE_MISMATCH = "note_type_mismatch"
    NOTE_CONSTRAINT = "note_constraint"
    NOTE_STEP_RULE = "note_step_rule"

    # Extraction notes
    NOTE_UNSUPPORTED_VALUE = "note_unsupported_value"
    NOTE_RELATED_GUIDANCE = "note_related_guidance"
    NOTE_DOCUMENTS = "note_documents"
    NOTE_NOTHING_EXTRACTED = "note_nothing_extracted"


TEMPLATE_TEXT: Dict[ClarificationTemplateID, str] = {
    ClarificationTemplateID.ASK_FIELD: "What is your {label}?",
    ClarificationTemplateID.ASK_CHOICE: "What is your {label}? Options: {options}.",
    ClarificationTemplateID.ASK_DATE: "What is your {label}? (e.g. 2024-01-31)",
    ClarificationTemplateID.ASK_BOOLEAN: "{label}? (yes or no)",

    ClarificationTemplateID.NOTE_MISSING_REQUIRED: "{label} is required.",
    ClarificationTemplateID.NOTE_TYPE_MISMATCH: "I couldn't read '{raw}' as a valid {type} for {label}.",
    ClarificationTemplateID.NOTE_CONSTRAINT: "{message}",
    ClarificationTemplateID.NOTE_STEP_RULE: "{message}",

    ClarificationTemplateID.NOTE_UNSUPPORTED_VALUE: (
        "I couldn't find '{value}' in what you wrote, so {label} was not filled in."
    ),
    ClarificationTemplateID.NOTE_RELATED_GUIDANCE: "Related guidance: {text}",
    ClarificationTemplateID.NOTE_DOCUMENTS: "Please have these documents ready: {documents}.",
    ClarificationTemplateID.NOTE_NOTHING_EXTRACTED: "I didn't catch an answer for {label}.",
}


def render(template_id: ClarificationTemplateID, **values) -> str:
    """
    Render a template with its placeholders filled

    Raises:
        KeyError: If template_id is unknown or a placeholder is missing
    """
    if not isinstance(template_id, ClarificationTemplateID):
        template_id = ClarificationTemplateID(template_id)
    return TEMPLATE_TEXT[template_id].format(**values)


def question_for_field(field: Field) -> str:
    """
    Question text for one field.

    The field's aiPrompt wins when present; otherwise a type-specific default.
    """
    if field.ai_prompt:
        return field.ai_prompt

    if field.type == FieldType.CHOICE:
        return render(ClarificationTemplateID.ASK_CHOICE, label=field.label, options=", ".join(field.options))
    if field.type == FieldType.DATE:
        return render(ClarificationTemplateID.ASK_DATE, label=field.label)
    if field.type == FieldType.BOOLEAN:
        return render(ClarificationTemplateID.ASK_BOOLEAN, label=field.label)
    return render(ClarificationTemplateID.ASK_FIELD, label=field.label)
