"""
Engine configuration from the environment.

Variables:
    FORMLY_MODEL_NAME        HuggingFace model id; empty disables the model tier
    FORMLY_MODEL_DEVICE      'cpu' or 'cuda' (default cpu)
    FORMLY_LOAD_IN_4BIT      true/false (default false; CUDA only)
    FORMLY_EMBEDDING_MODEL   sentence embedding model for the content index
    FORMLY_RETRIEVAL_TOP_K   snippets per utterance (default 3)
    FORMLY_TIER_TIMEOUT      seconds per non-terminal tier (default unset)
    FORMLY_MAX_TOKENS        max new tokens per model reply (default 512)
    FORMLY_LOG_LEVEL         logging level (default INFO)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class EngineConfig:
    model_name: str = ""
    model_device: str = "cpu"
    load_in_4bit: bool = False
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    retrieval_top_k: int = 3
    tier_timeout: Optional[float] = None
    max_tokens: int = 512
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Read configuration from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (tests)

        Raises:
            ValueError: If a variable holds an invalid value (message names it)
        """
        env = os.environ if environ is None else environ

        device = env.get("FORMLY_MODEL_DEVICE", "cpu").strip().lower()
        if device not in ("cpu", "cuda"):
            raise ValueError(f"FORMLY_MODEL_DEVICE must be 'cpu' or 'cuda', got {device!r}")

        top_k = _int(env, "FORMLY_RETRIEVAL_TOP_K", 3)
        if top_k < 1:
            raise ValueError(f"FORMLY_RETRIEVAL_TOP_K must be >= 1, got {top_k}")

        max_tokens = _int(env, "FORMLY_MAX_TOKENS", 512)
        if max_tokens < 1:
            raise ValueError(f"FORMLY_MAX_TOKENS must be >= 1, got {max_tokens}")

        timeout = None
        raw_timeout = env.get("FORMLY_TIER_TIMEOUT", "").strip()
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ValueError(f"FORMLY_TIER_TIMEOUT must be a number, got {raw_timeout!r}") from None
            if timeout <= 0:
                raise ValueError(f"FORMLY_TIER_TIMEOUT must be positive, got {raw_timeout!r}")

        return cls(
            model_name=env.get("FORMLY_MODEL_NAME", "").strip(),
            model_device=device,
            load_in_4bit=_bool(env, "FORMLY_LOAD_IN_4BIT", False),
            embedding_model=env.get("FORMLY_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL).strip() or DEFAULT_EMBEDDING_MODEL,
            retrieval_top_k=top_k,
            tier_timeout=timeout,
            max_tokens=max_tokens,
            log_level=env.get("FORMLY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be true or false, got {raw!r}")
