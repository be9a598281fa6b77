"""
Extraction tier contract

Every tier turns one utterance into field proposals. Tiers are
interchangeable strategies; the chain tries them in a fixed order and
falls back on ExtractionError.

Contents:
- TierKind: model, retrieval, rules
- ExtractionErrorKind / ExtractionError: recoverable tier failure
- ExtractionTier: structural protocol every tier satisfies
"""

from enum import Enum
from typing import Protocol, runtime_checkable

from formly.contracts import ExtractionRequest, ExtractionResult


class TierKind(str, Enum):
    MODEL = "model"
    RETRIEVAL = "retrieval"
    RULES = "rules"


# Fallback order; the rule tier is always last
TIER_ORDER = (TierKind.MODEL, TierKind.RETRIEVAL, TierKind.RULES)


class ExtractionErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    MALFORMED_MODEL_OUTPUT = "malformed_model_output"
    GENERATION_FAILED = "generation_failed"
    RETRIEVAL_FAILED = "retrieval_failed"
    TIMEOUT = "timeout"


class ExtractionError(Exception):
    """
    Recoverable tier failure. The chain absorbs it and tries the next tier.

    Attributes:
        kind: Failure category
        tier: Tier that failed
        detail: Free-text detail for logs
    """

    def __init__(self, kind: ExtractionErrorKind, tier: TierKind, detail: str = ""):
        self.kind = kind
        self.tier = tier
        self.detail = detail
        message = f"{tier.value} tier: {kind.value}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


@runtime_checkable
class ExtractionTier(Protocol):
    """Structural interface for an extraction tier"""

    kind: TierKind

    def is_available(self) -> bool:
        ...

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        ...
