"""
Retrieval Tier - Rule extraction augmented with retrieved context

Fetches the top-k snippets most similar to the utterance from a content
index, attaches them to the request and delegates to the rule tier. It
augments rule-based extraction rather than replacing it.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Optional

from formly.contracts import ExtractionRequest, ExtractionResult
from formly.tiers.base import ExtractionError, ExtractionErrorKind, TierKind
from formly.tiers.rule_tier import RuleTier

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3


class RetrievalTier:
    """Retrieval-augmented rule tier"""

    kind = TierKind.RETRIEVAL

    def __init__(self, index: Optional[Any] = None, rule_tier: Optional[RuleTier] = None, top_k: int = DEFAULT_TOP_K):
        """
        Args:
            index: Content index exposing search(query, k) and __len__
            rule_tier: Rule tier to delegate to (default RuleTier())
            top_k: Snippets to retrieve per utterance

        Raises:
            ValueError: If top_k < 1
        """
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        self.index = index
        self.rule_tier = rule_tier or RuleTier()
        self.top_k = top_k

    def is_available(self) -> bool:
        if self.index is None:
            return False
        try:
            return len(self.index) > 0
        except Exception as e:
            logger.warning(f"Content index size check failed: {e}")
            return False

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        if not self.is_available():
            raise ExtractionError(ExtractionErrorKind.UNAVAILABLE, self.kind, "no content index")

        try:
            snippets = await asyncio.to_thread(self.index.search, request.utterance, self.top_k)
        except Exception as e:
            logger.warning(f"[{request.step.id}] Retrieval failed: {type(e).__name__} - {e}")
            raise ExtractionError(
                ExtractionErrorKind.RETRIEVAL_FAILED, self.kind, f"{type(e).__name__}: {e}"
            ) from e

        logger.debug(f"[{request.step.id}] Retrieved {len(snippets)} snippets")
        augmented = replace(request, context=tuple(snippets))
        return await self.rule_tier.extract(augmented)
