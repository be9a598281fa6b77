"""
Extraction Tier Chain - Fixed-priority fallback over extraction tiers

Responsibilities:
- Order tiers model -> retrieval -> rules, whatever order they are given in
- Skip unavailable tiers without invoking them
- Fall back to the next tier on ExtractionError or timeout
- Record every attempt for debugging

Design principles:
- The rule tier is the guaranteed terminal fallback; a chain without one
  cannot be built
- Tier failures never surface as engine errors; they are logged and
  recorded in ChainOutcome.attempts
- Cancellation of the caller propagates (never absorbed)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from formly.contracts import ExtractionRequest, ExtractionResult
from formly.tiers.base import TIER_ORDER, ExtractionError, ExtractionErrorKind, TierKind

logger = logging.getLogger(__name__)


class AttemptStatus(str, Enum):
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class TierAttempt:
    tier: TierKind
    status: AttemptStatus
    error: Optional[ExtractionError] = None

    def to_dict(self) -> dict:
        entry = {'tier': self.tier.value, 'status': self.status.value}
        if self.error is not None:
            entry['error'] = self.error.kind.value
            entry['detail'] = self.error.detail
        return entry


@dataclass(frozen=True)
class ChainOutcome:
    """
    Attributes:
        result: Result of the tier that succeeded
        tier: Tier that produced the result
        attempts: Every tier considered, in order
    """
    result: ExtractionResult
    tier: TierKind
    attempts: Tuple[TierAttempt, ...]


# Error kind used when a tier raises something other than ExtractionError
_UNEXPECTED_ERROR_KIND = {
    TierKind.MODEL: ExtractionErrorKind.GENERATION_FAILED,
    TierKind.RETRIEVAL: ExtractionErrorKind.RETRIEVAL_FAILED,
    TierKind.RULES: ExtractionErrorKind.GENERATION_FAILED,
}


class ExtractionTierChain:
    """Ordered fallback over extraction tiers"""

    def __init__(self, tiers: Iterable, tier_timeout: Optional[float] = None):
        """
        Args:
            tiers: Tier instances (any order, one per kind)
            tier_timeout: Seconds allowed per non-terminal tier (None = no limit)

        Raises:
            TypeError: If a tier lacks kind / is_available() / extract()
            ValueError: If two tiers share a kind, no rule tier is given, or
                tier_timeout is not positive
        """
        tiers = list(tiers)
        self._validate_tiers(tiers)

        if tier_timeout is not None and tier_timeout <= 0:
            raise ValueError(f"tier_timeout must be positive, got {tier_timeout}")

        self.tiers = sorted(tiers, key=lambda t: TIER_ORDER.index(t.kind))
        self.tier_timeout = tier_timeout

        logger.info(
            f"Extraction chain initialized: {[t.kind.value for t in self.tiers]} "
            f"(timeout={tier_timeout})"
        )

    def _validate_tiers(self, tiers: List) -> None:
        kinds = set()
        for tier in tiers:
            kind = getattr(tier, 'kind', None)
            if not isinstance(kind, TierKind):
                raise TypeError(f"tier {tier!r} must have a TierKind 'kind' attribute")
            if not callable(getattr(tier, 'is_available', None)):
                raise TypeError(f"{kind.value} tier must have callable is_available() method")
            if not callable(getattr(tier, 'extract', None)):
                raise TypeError(f"{kind.value} tier must have callable extract() method")
            if kind in kinds:
                raise ValueError(f"Duplicate {kind.value} tier")
            kinds.add(kind)

        if TierKind.RULES not in kinds:
            raise ValueError("Extraction chain requires a rule tier as terminal fallback")

    def available_tiers(self) -> List[TierKind]:
        return [t.kind for t in self.tiers if t.kind == TierKind.RULES or t.is_available()]

    async def run(self, request: ExtractionRequest) -> ChainOutcome:
        """
        Run the chain for one request.

        Returns:
            ChainOutcome with the first successful result. The rule tier
            always produces one (an empty result if it misbehaves).
        """
        attempts: List[TierAttempt] = []

        for tier in self.tiers:
            terminal = tier.kind == TierKind.RULES

            if not terminal and not self._is_available(tier):
                attempts.append(TierAttempt(tier.kind, AttemptStatus.UNAVAILABLE))
                continue

            try:
                if self.tier_timeout is not None and not terminal:
                    result = await asyncio.wait_for(tier.extract(request), self.tier_timeout)
                else:
                    result = await tier.extract(request)
            except ExtractionError as e:
                error = e
            except asyncio.TimeoutError:
                error = ExtractionError(
                    ExtractionErrorKind.TIMEOUT, tier.kind, f"no result within {self.tier_timeout}s"
                )
            except Exception as e:
                logger.exception(f"{tier.kind.value} tier raised unexpectedly")
                error = ExtractionError(_UNEXPECTED_ERROR_KIND[tier.kind], tier.kind, f"{type(e).__name__}: {e}")
            else:
                if not isinstance(result, ExtractionResult):
                    error = ExtractionError(
                        ExtractionErrorKind.MALFORMED_MODEL_OUTPUT, tier.kind,
                        f"tier returned {type(result).__name__}"
                    )
                else:
                    attempts.append(TierAttempt(tier.kind, AttemptStatus.SUCCEEDED))
                    logger.debug(f"[{request.step.id}] {tier.kind.value} tier produced {len(result.updates)} proposals")
                    return ChainOutcome(result=result, tier=tier.kind, attempts=tuple(attempts))

            logger.warning(f"[{request.step.id}] {error}; falling back")
            attempts.append(TierAttempt(tier.kind, AttemptStatus.FAILED, error))

            if terminal:
                return ChainOutcome(result=ExtractionResult(), tier=tier.kind, attempts=tuple(attempts))

        # Unreachable: the rule tier is always last and always returns
        raise RuntimeError("Extraction chain exhausted without a rule tier")

    def _is_available(self, tier) -> bool:
        try:
            return bool(tier.is_available())
        except Exception as e:
            logger.warning(f"{tier.kind.value} tier availability check failed: {e}")
            return False
