"""
Prompt Builder - Construct model-tier prompts from an extraction request

Responsibilities:
- Select the system prompt (template-supplied or the default policy)
- Render the user prompt: template, step, missing fields, known answers,
  retrieved context and the utterance
- Deterministic ordering so identical requests give identical prompts

NOT responsible for:
- Model-family chat formatting (PromptFormatter)
- Parsing model output (ModelTier)
- Model calls

Design principles:
- Fail-fast validation (no partial builds)
- Field IDs for output keys, labels for meaning
"""

import logging
from typing import List, Tuple

from formly.contracts import ExtractionRequest
from formly.core.template_model import Field, FieldType
from formly.core.validation_engine import canonical_string

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are Formly, an offline-first form-filling assistant. "
    "Use only the provided template schema, the user's known answers and the retrieved context. "
    "Respond as compact JSON: "
    '{"updates": [{"fieldId": string, "value": any}], "nextStepId": string, "notes": string[]}. '
    "Validate all values against the field types and options before proposing them. "
    "Never include personal data the user has not explicitly provided. "
    "If you are uncertain, leave the field out and add a concise clarifying question to notes."
)


class PromptBuildError(Exception):
    """Raised when a prompt cannot be built from the request"""
    pass


class PromptBuilder:
    """
    Build model-tier prompts.

    Pure function: ExtractionRequest -> (system_prompt, user_prompt)
    No state, no side effects, deterministic output.
    """

    def build(self, request: ExtractionRequest) -> Tuple[str, str]:
        """
        Build system and user prompts.

        Raises:
            PromptBuildError: If the step has no fields left to ask and the
                utterance is empty
            TypeError: If request is not an ExtractionRequest
        """
        if not isinstance(request, ExtractionRequest):
            raise TypeError(f"request must be ExtractionRequest, got {type(request).__name__}")
        if not isinstance(request.utterance, str) or not request.utterance.strip():
            raise PromptBuildError("utterance must be a non-empty string")

        system = request.template.system_prompt or DEFAULT_SYSTEM_PROMPT
        return system, self._build_user_prompt(request)

    def _missing_fields(self, request: ExtractionRequest) -> List[Field]:
        return [
            request.template.field(field_id)
            for field_id in request.step.expected_fields
            if field_id not in request.answers
        ]

    def _build_user_prompt(self, request: ExtractionRequest) -> str:
        template = request.template
        step = request.step

        prompt = f"Template: {template.name} (id: {template.id}, version {template.version})\n"
        prompt += f"Step: {step.title} (id: {step.id})\n"
        if step.description:
            prompt += f"Step description: {step.description}\n"

        missing = self._missing_fields(request)
        # Re-asked steps have every field answered; offer all of them for revision
        if not missing:
            missing = [template.field(fid) for fid in step.expected_fields]

        prompt += "\nMissing fields:\n"
        if missing:
            for field in missing:
                prompt += self._describe_field(field)
        else:
            prompt += "  (none)\n"

        if request.focus_field and template.has_field(request.focus_field):
            prompt += f"\nCurrently asking about: {request.focus_field} ({template.field(request.focus_field).label})\n"

        prompt += "\nKnown answers:\n"
        known = [(fid, value) for fid, value in request.answers.items()]
        if known:
            for field_id, value in known:
                field = template.field(field_id)
                display = canonical_string(field, value) if value is not None else "(left blank)"
                prompt += f"  - {field_id}: {display}\n"
        else:
            prompt += "  (none)\n"

        if request.context:
            prompt += "\nRelevant context:\n"
            for snippet in request.context:
                prompt += f"  - [{snippet.source}] {snippet.text}\n"

        prompt += f"\nUser said: \"{request.utterance}\"\n\n"

        prompt += "Rules:\n"
        prompt += "- Only use field ids listed under Missing fields\n"
        prompt += "- For choice fields, use one of the listed options exactly\n"
        prompt += "- For dates, use YYYY-MM-DD\n"
        prompt += "- For yes/no fields, use true or false\n"
        prompt += "- Copy names and addresses exactly as the user wrote them\n"
        prompt += "- If nothing can be extracted, return {\"updates\": [], \"notes\": []}\n"

        return prompt

    def _describe_field(self, field: Field) -> str:
        line = f"  - {field.id}: {field.label} ({field.type.value}"
        if field.required:
            line += ", required"
        line += ")"
        if field.type == FieldType.CHOICE:
            line += f" options: {', '.join(field.options)}"
        if field.ai_prompt:
            line += f" hint: {field.ai_prompt}"
        return line + "\n"
