"""
Model Tier - Extract field values with an on-device language model

Responsibilities:
- Build system/user prompts for the current step
- Run generation off the event loop, stopping it when the turn is cancelled
- Parse and shape-check the model's JSON reply
- Stringify proposed values for the Validation Engine
- Drop free-text values that do not appear in the utterance

Wire format (model reply):
    {"updates": [{"fieldId": "...", "value": ...}],
     "nextStepId": "...",
     "notes": ["..."]}

Design principles:
- Any generation exception -> ExtractionError(generation_failed)
- Any reply that is not the expected shape -> ExtractionError(malformed_model_output)
- No validation of values here (the engine validates every proposal)
"""

import asyncio
import json
import logging
import threading
from typing import Any, List, Optional

from formly.contracts import ExtractionRequest, ExtractionResult, FieldProposal
from formly.core.template_model import FieldType
from formly.tiers.base import ExtractionError, ExtractionErrorKind, TierKind
from formly.utils.clarification_templates import ClarificationTemplateID, render
from formly.utils.evidence import validate_evidence_span
from formly.utils.prompt_builder import PromptBuildError, PromptBuilder

logger = logging.getLogger(__name__)


class ModelTier:
    """Language-model extraction tier"""

    kind = TierKind.MODEL

    def __init__(
        self,
        client: Optional[Any] = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
        prompt_builder: Optional[PromptBuilder] = None
    ) -> None:
        """
        Args:
            client: Loaded model client exposing is_loaded() and
                generate_json(prompt, system=..., max_tokens=..., temperature=...,
                stop_event=...); generation should end once stop_event is set
            max_tokens: Max new tokens per reply
            temperature: Sampling temperature (default 0.0)
            prompt_builder: Prompt builder (default PromptBuilder())

        Raises:
            TypeError: If client lacks a callable generate_json()
        """
        if client is not None and not callable(getattr(client, 'generate_json', None)):
            raise TypeError("client must have callable generate_json() method")

        self.client = client
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.prompt_builder = prompt_builder or PromptBuilder()

        logger.info(
            f"Model tier initialized (client={'yes' if client is not None else 'no'}, "
            f"temp={temperature}, max_tokens={max_tokens})"
        )

    def is_available(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(self.client.is_loaded())
        except Exception as e:
            logger.warning(f"Model client availability check failed: {e}")
            return False

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        if not self.is_available():
            raise ExtractionError(ExtractionErrorKind.UNAVAILABLE, self.kind, "model not loaded")

        try:
            system, prompt = self.prompt_builder.build(request)
        except PromptBuildError as e:
            raise ExtractionError(ExtractionErrorKind.GENERATION_FAILED, self.kind, str(e)) from e

        logger.debug(f"[{request.step.id}] Model prompt built ({len(prompt)} chars)")

        stop_event = threading.Event()
        try:
            raw_output = await asyncio.to_thread(
                self.client.generate_json,
                prompt,
                system=system,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                stop_event=stop_event,
            )
        except asyncio.CancelledError:
            # The worker thread is not cancelled with the await
            stop_event.set()
            logger.info(f"[{request.step.id}] Model generation cancelled")
            raise
        except Exception as e:
            logger.error(f"[{request.step.id}] Model generation failed: {type(e).__name__} - {e}")
            raise ExtractionError(
                ExtractionErrorKind.GENERATION_FAILED, self.kind, f"{type(e).__name__}: {e}"
            ) from e

        logger.debug(f"[{request.step.id}] Model output: {str(raw_output)[:200]}")
        return self._parse_reply(raw_output, request)

    # =========================================================================
    # Reply parsing
    # =========================================================================

    def _malformed(self, detail: str) -> ExtractionError:
        logger.warning(f"Malformed model output: {detail}")
        return ExtractionError(ExtractionErrorKind.MALFORMED_MODEL_OUTPUT, self.kind, detail)

    def _parse_reply(self, raw_output: Any, request: ExtractionRequest) -> ExtractionResult:
        if not isinstance(raw_output, str):
            raise self._malformed(f"expected text, got {type(raw_output).__name__}")

        try:
            parsed = json.loads(raw_output)
        except json.JSONDecodeError as e:
            raise self._malformed(f"invalid JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise self._malformed(f"expected JSON object, got {type(parsed).__name__}")

        raw_updates = parsed.get('updates', [])
        if not isinstance(raw_updates, list):
            raise self._malformed("'updates' must be a list")

        raw_notes = parsed.get('notes', [])
        if raw_notes is None:
            raw_notes = []
        if isinstance(raw_notes, str):
            raw_notes = [raw_notes]
        if not isinstance(raw_notes, list) or not all(isinstance(n, str) for n in raw_notes):
            raise self._malformed("'notes' must be a list of strings")

        next_step_id = parsed.get('nextStepId')
        if next_step_id is not None and not isinstance(next_step_id, str):
            raise self._malformed("'nextStepId' must be a string")

        notes: List[str] = [n for n in raw_notes if n.strip()]
        proposals: List[FieldProposal] = []

        for i, item in enumerate(raw_updates):
            if not isinstance(item, dict) or not isinstance(item.get('fieldId'), str):
                raise self._malformed(f"updates[{i}] must be an object with a string 'fieldId'")

            field_id = item['fieldId']
            value = item.get('value')
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                raise self._malformed(f"updates[{i}].value must be a scalar")

            raw_value = _stringify(value)

            if not self._has_evidence(request, field_id, raw_value):
                field = request.template.field(field_id)
                logger.warning(f"[{request.step.id}] Dropping unsupported value for '{field_id}'")
                notes.append(render(
                    ClarificationTemplateID.NOTE_UNSUPPORTED_VALUE,
                    value=raw_value,
                    label=field.label,
                ))
                continue

            proposals.append(FieldProposal(field_id=field_id, raw_value=raw_value))

        return ExtractionResult(
            updates=tuple(proposals),
            notes=tuple(notes),
            next_step_id=next_step_id or None,
        )

    def _has_evidence(self, request: ExtractionRequest, field_id: str, raw_value: str) -> bool:
        """Free-text values must be copied from the utterance"""
        if not request.template.has_field(field_id):
            return True
        if request.template.field(field_id).type != FieldType.TEXT:
            return True
        return validate_evidence_span(raw_value, request.utterance)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
