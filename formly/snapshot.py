"""
Session snapshot - opaque draft envelope.

Rules:
- No code outside ConversationSession inspects _data
- Immutable after creation
- Deep copied on construction and export
- Serializable to/from JSON

This is a sealed envelope, not a model.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any, Dict

SNAPSHOT_FORMAT_VERSION = 1


@dataclass(frozen=True)
class SessionSnapshot:
    _data: Dict[str, Any]

    @property
    def session_id(self) -> str:
        return self._data.get('session_id', '')

    @property
    def template_id(self) -> str:
        return self._data.get('template_id', '')

    @property
    def turn_count(self) -> int:
        return self._data.get('turn_count', 0)

    def to_json(self) -> dict:
        """
        Serialize to JSON-safe dict (deep copy).

        Returns:
            dict: Deep copy of internal state
        """
        return copy.deepcopy(self._data)

    def dumps(self) -> str:
        return json.dumps(self._data, sort_keys=True)

    @staticmethod
    def from_json(data: dict) -> "SessionSnapshot":
        """
        Deserialize from JSON dict.

        Deep copies so no external reference can mutate the envelope.

        Raises:
            ValueError: If data is not a snapshot of a supported format
        """
        if not isinstance(data, dict):
            raise ValueError(f"Snapshot must be a dict, got {type(data).__name__}")
        version = data.get('format_version')
        if version != SNAPSHOT_FORMAT_VERSION:
            raise ValueError(f"Unsupported snapshot format version: {version!r}")
        return SessionSnapshot(_data=copy.deepcopy(data))

    @staticmethod
    def loads(text: str) -> "SessionSnapshot":
        return SessionSnapshot.from_json(json.loads(text))
