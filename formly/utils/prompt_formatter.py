"""
Prompt Formatter - wraps the extraction prompt in the model's chat format

Responsibilities:
- Work out the model family from the checkpoint name
- Render one system instruction plus one user message for that family

Design principles:
- The tokenizer's own chat template wins when it has one
- Hand-written formats for known families, plain text for anything else
- No state beyond what is fixed at construction
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def _inst(system: str, user: str) -> str:
    body = f"{system}\n\n{user}" if system else user
    return f"[INST] {body} [/INST]"


def _llama3(system: str, user: str) -> str:
    def block(role: str, content: str) -> str:
        return f"<|start_header_id|>{role}<|end_header_id|>\n\n{content}"

    turns = [block("system", system) + "<|eot_id|>"] if system else []
    turns.append(block("user", user) + "<|eot_id|>")
    return "<|begin_of_text|>" + "".join(turns) + block("assistant", "")


def _zephyr(system: str, user: str) -> str:
    prefix = f"<|system|>\n{system}\n" if system else ""
    return f"{prefix}<|user|>\n{user}\n<|assistant|>\n"


def _phi(system: str, user: str) -> str:
    prefix = f"<|system|>\n{system}<|end|>\n" if system else ""
    return f"{prefix}<|user|>\n{user}<|end|>\n<|assistant|>\n"


# (substrings in the lowercased model name, family); first hit wins
_FAMILY_MARKERS = (
    (("llama-3", "llama3"), "llama-3"),
    (("llama-2", "llama2"), "llama-2"),
    (("llama",), "llama"),
    (("mixtral",), "mixtral"),
    (("mistral",), "mistral"),
    (("zephyr",), "zephyr"),
    (("phi",), "phi"),
)


def detect_model_family(model_name: str) -> str:
    name = model_name.lower()
    for markers, family in _FAMILY_MARKERS:
        if any(marker in name for marker in markers):
            return family
    return "generic"


class PromptFormatter:
    """Chat formatting for a single system + user exchange"""

    MANUAL_FORMATS = {
        "mistral": _inst,
        "mixtral": _inst,
        "llama": _inst,
        "llama-2": _inst,
        "llama-3": _llama3,
        "zephyr": _zephyr,
        "phi": _phi,
    }

    def __init__(self, model_name: str, tokenizer=None):
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = detect_model_family(model_name)
        self.has_chat_template = getattr(tokenizer, "chat_template", None) is not None

        logger.info(f"Prompt format for {model_name}: {self._method()}")

    def _method(self) -> str:
        if self.has_chat_template:
            return "tokenizer_template"
        if self.model_family in self.MANUAL_FORMATS:
            return "manual"
        return "none"

    def format_chat(self, user: str, system: Optional[str] = None) -> str:
        """
        Render the exchange, trying in order: tokenizer chat template,
        manual family format, then system and user joined by a blank line.

            >>> PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2").format_chat("Name?")
            '[INST] Name? [/INST]'
        """
        system = system or ""

        if self.has_chat_template:
            messages = [{"role": "system", "content": system}] if system else []
            messages.append({"role": "user", "content": user})
            try:
                return self.tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
            except Exception as e:
                # Some templates refuse a system turn
                logger.warning(f"Chat template rejected the prompt ({e}); using {self.model_family} format")

        manual = self.MANUAL_FORMATS.get(self.model_family)
        if manual is not None:
            return manual(system, user)
        return f"{system}\n\n{user}" if system else user

    def get_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": self._method(),
        }
