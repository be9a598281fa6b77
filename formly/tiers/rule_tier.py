"""
Rule Tier - Deterministic keyword/pattern extraction

Responsibilities:
- Propose values for the current step's fields using pattern extractors
  (email, phone, date, number, yes/no, choice options)
- Map address-style keywords to address fields
- Take the text after a field's label ('my last name is Smith')
- Fall back to the whole utterance for the field being asked
- Turn retrieved context into 'Related guidance' notes

Design principles:
- Always available, never raises (terminal fallback of the chain)
- Proposals are raw text; the engine filters and validates them
- Deterministic: same request, same proposals
"""

import logging
from typing import List, Optional, Set

from formly.contracts import ExtractionRequest, ExtractionResult, FieldProposal
from formly.core.template_model import Field, FieldType
from formly.tiers.base import TierKind
from formly.utils import text_patterns
from formly.utils.clarification_templates import ClarificationTemplateID, render

logger = logging.getLogger(__name__)


class RuleTier:
    """Keyword and pattern matching over the utterance"""

    kind = TierKind.RULES

    def is_available(self) -> bool:
        return True

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        try:
            return self._extract(request)
        except Exception:
            logger.exception(f"[{request.step.id}] Rule tier failed; returning empty result")
            return ExtractionResult()

    # =========================================================================

    def _extract(self, request: ExtractionRequest) -> ExtractionResult:
        notes = tuple(
            render(ClarificationTemplateID.NOTE_RELATED_GUIDANCE, text=snippet.text)
            for snippet in request.context
        )

        utterance = text_patterns.clean_text(request.utterance)
        if not utterance:
            return ExtractionResult(notes=notes)

        targets = self._target_fields(request)
        if text_patterns.is_skip(utterance):
            return ExtractionResult(updates=self._skip_proposal(targets), notes=notes)

        proposals: List[FieldProposal] = []
        claimed: Set[str] = set()

        address_text = text_patterns.text_after_keyword(utterance, text_patterns.ADDRESS_KEYWORDS)
        address = self._address_proposal(request, targets, address_text)
        if address is not None:
            proposals.append(address)
            claimed.add(address.field_id)

        seen_types: Set[FieldType] = set()
        for index, field in enumerate(targets):
            if field.id in claimed:
                continue
            asked = index == 0
            raw = self._match_field(field, utterance, asked, seen_types)
            seen_types.add(field.type)
            if raw is not None:
                proposals.append(FieldProposal(field_id=field.id, raw_value=raw))
                claimed.add(field.id)

        # An address with nowhere to go is not an answer to the asked field
        about_address = address_text is not None or _mentions(utterance, ["address"])
        if not proposals and targets and not about_address:
            proposals.append(FieldProposal(field_id=targets[0].id, raw_value=utterance))

        logger.debug(f"[{request.step.id}] Rule tier proposals: {[p.field_id for p in proposals]}")
        return ExtractionResult(updates=tuple(proposals), notes=notes)

    def _target_fields(self, request: ExtractionRequest) -> List[Field]:
        """
        Fields the utterance may answer, the asked field first.

        Unanswered expected fields; all expected fields when the step is
        being revisited.
        """
        step = request.step
        unanswered = [fid for fid in step.expected_fields if fid not in request.answers]
        field_ids = unanswered or list(step.expected_fields)

        focus = request.focus_field
        if focus in step.expected_fields:
            field_ids = [focus] + [fid for fid in field_ids if fid != focus]

        return [request.template.field(fid) for fid in field_ids]

    def _skip_proposal(self, targets: List[Field]) -> tuple:
        for field in targets:
            if not field.required:
                return (FieldProposal(field_id=field.id, raw_value=""),)
        return ()

    def _address_proposal(self, request: ExtractionRequest, targets: List[Field], value: Optional[str]) -> Optional[FieldProposal]:
        """
        'address' style keyword -> address field with the text after the keyword.

        Prefers an address field of the current step, otherwise the first
        unanswered address field anywhere in the template.
        """
        if value is None:
            return None

        candidates = [f for f in targets if _is_address_field(f)]
        if not candidates:
            candidates = [
                f for f in request.template.fields()
                if _is_address_field(f) and f.id not in request.answers
            ]
        if not candidates:
            return None
        return FieldProposal(field_id=candidates[0].id, raw_value=value)

    def _match_field(self, field: Field, utterance: str, asked: bool, seen_types: Set[FieldType]) -> Optional[str]:
        # Typed extractors fire once per type so one date does not fill every date field
        if field.type in seen_types and field.type not in (FieldType.CHOICE, FieldType.TEXT):
            return None

        if field.type == FieldType.EMAIL:
            return text_patterns.extract_email(utterance)
        if field.type == FieldType.PHONE:
            return text_patterns.extract_phone(utterance)
        if field.type == FieldType.DATE:
            return text_patterns.extract_date(utterance)
        if field.type == FieldType.NUMBER:
            return text_patterns.extract_number(utterance)
        if field.type == FieldType.BOOLEAN:
            # 'yes' only answers the question that was asked
            return text_patterns.yes_no(utterance) if asked else None
        if field.type == FieldType.CHOICE:
            return text_patterns.extract_choice(utterance, field.options)

        keywords = [field.label, field.id.replace("_", " ")]
        return text_patterns.text_after_keyword(utterance, keywords) if _mentions(utterance, keywords) else None


def _is_address_field(field: Field) -> bool:
    return "address" in field.id.lower() or "address" in field.label.lower()


def _mentions(utterance: str, keywords: List[str]) -> bool:
    lowered = utterance.lower()
    return any(k.lower() in lowered for k in keywords if k)
