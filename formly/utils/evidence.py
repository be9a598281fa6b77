"""
Evidence span check for model-proposed text answers.

Verifies that a value returned by the language model actually appears in
what the user typed. Free-text fields (names, addresses) must be copied
from the utterance, never invented by the model.

Design principles:
- Dumb, mechanical, predictable
- No semantic interpretation
- No fuzzy matching
- Fail safely (return False, never raise)
"""

import unicodedata


def validate_evidence_span(span: str, raw_text: str) -> bool:
    """
    Validate that a span exists as a substring in raw text.

    Rules:
    - Case-insensitive matching (using casefold)
    - Unicode normalized (NFKC)
    - Whitespace runs collapsed in both strings (model output often
      re-flows line breaks from multi-line addresses)
    - Punctuation preserved
    - Returns False for any invalid input (None, empty, whitespace-only)

    Args:
        span: The text span to validate (typically from model output)
        raw_text: The original user utterance

    Returns:
        True if normalized span exists as substring in normalized raw_text
    """
    if not isinstance(span, str) or not isinstance(raw_text, str):
        return False

    span_norm = _normalize(span)
    text_norm = _normalize(raw_text)

    if not span_norm or not text_norm:
        return False

    if len(span_norm) > len(text_norm):
        return False

    return span_norm in text_norm


def _normalize(text: str) -> str:
    folded = unicodedata.normalize('NFKC', text).casefold()
    return " ".join(folded.split())
