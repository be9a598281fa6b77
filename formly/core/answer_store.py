"""
Answer Store - Per-session answer container

Responsibilities:
- Store validated typed values keyed by field id
- Record provenance for each value (source tier, turn, timestamp)
- Keep a short dialogue history (one entry per submitted utterance)
- Export / import a JSON-safe form via canonical strings

Design principles:
- Dumb container: no validation, no business logic
- Monotonic: values are only replaced (in place), never removed
- A present key with value None means 'explicitly left blank'
- Read access hands out read-only views, never the live dict
"""

import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class AnswerStore:
    """Answers for one session"""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self._provenance: Dict[str, Dict[str, Any]] = {}
        self.history: List[Dict[str, Any]] = []

    # ========================
    # Writes
    # ========================

    def set(self, field_id: str, value: Any, source: str, turn: int = 0) -> None:
        """
        Store (or replace in place) a field value.

        Args:
            field_id: Field identifier
            value: Validated typed value (None = explicitly blank)
            source: Origin ('model', 'retrieval', 'rules', 'user_edit', 'restored')
            turn: Turn number that produced the value
        """
        replaced = field_id in self._values
        self._values[field_id] = value
        self._provenance[field_id] = {
            'source': source,
            'turn': turn,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        logger.debug(f"{'Replaced' if replaced else 'Set'} '{field_id}' from {source} (turn {turn})")

    def record_turn(self, step_id: Optional[str], utterance: str, tier: Optional[str], accepted: List[str]) -> None:
        """Append one dialogue history entry"""
        self.history.append({
            'step_id': step_id,
            'utterance': utterance,
            'tier': tier,
            'accepted': list(accepted),
        })

    # ========================
    # Reads
    # ========================

    def has(self, field_id: str) -> bool:
        """True once the field has a value (including explicit blank)"""
        return field_id in self._values

    def get(self, field_id: str, default: Any = None) -> Any:
        return self._values.get(field_id, default)

    def provenance(self, field_id: str) -> Optional[Dict[str, Any]]:
        entry = self._provenance.get(field_id)
        return dict(entry) if entry else None

    def view(self) -> Mapping[str, Any]:
        """Read-only snapshot of the current answers"""
        return MappingProxyType(dict(self._values))

    def answered_ids(self) -> List[str]:
        return list(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, field_id: str) -> bool:
        return field_id in self._values

    # ========================
    # Export / import
    # ========================

    def to_json(self, encode) -> Dict[str, Any]:
        """
        JSON-safe export.

        Args:
            encode: Callable (field_id, value) -> str giving the canonical form

        Returns:
            dict: {'values': {...}, 'provenance': {...}, 'history': [...]}
        """
        return {
            'values': {fid: (None if v is None else encode(fid, v)) for fid, v in self._values.items()},
            'provenance': {fid: dict(p) for fid, p in self._provenance.items()},
            'history': [dict(entry) for entry in self.history],
        }
