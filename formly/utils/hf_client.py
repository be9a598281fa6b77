"""
HuggingFace Client - on-device causal LM used by the model extraction tier

Responsibilities:
- Load tokenizer and model once (NF4 4-bit when running on CUDA)
- Answer one system + user prompt pair per call
- Return the JSON object span of the reply for the tier to parse

Design principles:
- Constructed by the tier factory and passed in; sessions share one
  client read-only
- Load errors propagate, the factory decides whether to run without a model
- Chat formatting lives in PromptFormatter
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig,
    StoppingCriteria,
    StoppingCriteriaList,
)

from formly.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"


def _quantization_config(load_in_4bit: bool, device: str) -> Optional[BitsAndBytesConfig]:
    if not (load_in_4bit and device == DEVICE_CUDA):
        if load_in_4bit:
            logger.warning("4-bit loading needs CUDA; loading full precision on CPU")
        return None
    return BitsAndBytesConfig(
        load_in_4bit=True,
        bnb_4bit_quant_type="nf4",
        bnb_4bit_compute_dtype=torch.bfloat16,
        bnb_4bit_use_double_quant=True,
    )


class StopOnEvent(StoppingCriteria):
    """Ends generation after the current token once the event is set"""

    def __init__(self, event: threading.Event) -> None:
        self.event = event

    def __call__(self, input_ids, scores, **kwargs):
        return torch.full((input_ids.shape[0],), self.event.is_set(), dtype=torch.bool, device=input_ids.device)


def _load_tokenizer(model_name: str):
    tokenizer = AutoTokenizer.from_pretrained(model_name)
    # generate() needs a pad id; reuse EOS where the checkpoint has one
    if tokenizer.pad_token is None:
        if tokenizer.eos_token is not None:
            tokenizer.pad_token = tokenizer.eos_token
        else:
            tokenizer.add_special_tokens({"pad_token": "[PAD]"})
    return tokenizer


class HuggingFaceClient:
    """Loaded model + tokenizer pair with a JSON-oriented generate call"""

    def __init__(self, model_name: str, load_in_4bit: bool = False, device: str = DEVICE_CPU) -> None:
        """
        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: NF4 quantization (ignored off CUDA)
            device: "cuda" or "cpu"

        Raises:
            RuntimeError: CUDA requested on a machine without it
            Exception: Whatever transformers raises while loading
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("FORMLY_MODEL_DEVICE is 'cuda' but no CUDA device is available")

        self.model_name = model_name
        self.device = device

        started = time.time()
        logger.info(f"Loading extraction model {model_name} on {device}")

        self.tokenizer = _load_tokenizer(model_name)
        self.formatter = PromptFormatter(model_name, self.tokenizer)

        on_cuda = device == DEVICE_CUDA
        self.model = AutoModelForCausalLM.from_pretrained(
            model_name,
            quantization_config=_quantization_config(load_in_4bit, device),
            device_map="auto" if on_cuda else None,
            torch_dtype=torch.bfloat16 if on_cuda else torch.float32,
        )
        self.model.eval()

        logger.info(
            f"Extraction model ready in {time.time() - started:.1f}s "
            f"(prompt format: {self.formatter.get_info()['formatting_method']})"
        )

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
        stop_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Complete one user prompt under an optional system instruction.

        temperature 0.0 means greedy decoding, which keeps extraction
        repeatable for a given utterance. Setting stop_event ends generation
        early; the partial reply is returned.

        Raises:
            RuntimeError: If the model is not loaded
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        encoded = self.tokenizer(self.formatter.format_chat(prompt, system=system), return_tensors="pt")
        if self.device == DEVICE_CUDA:
            encoded = encoded.to(DEVICE_CUDA)
        prompt_length = encoded.input_ids.shape[1]

        sampling = temperature > 0
        try:
            with torch.no_grad():
                output = self.model.generate(
                    encoded.input_ids,
                    attention_mask=encoded.attention_mask,
                    max_new_tokens=max_tokens,
                    do_sample=sampling,
                    temperature=temperature if sampling else None,
                    pad_token_id=self.tokenizer.pad_token_id,
                    stopping_criteria=StoppingCriteriaList([StopOnEvent(stop_event)]) if stop_event is not None else None,
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"Out of GPU memory generating from a {prompt_length}-token prompt")
            raise

        if stop_event is not None and stop_event.is_set():
            logger.info(f"Generation stopped early after {output.shape[1] - prompt_length} tokens")

        reply = self.tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True)
        logger.debug(f"Model reply ({len(reply)} chars): {reply[:200]!r}")
        return reply

    def generate_json(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
        stop_event: Optional[threading.Event] = None,
    ) -> str:
        """Generate and cut the reply down to its JSON object (caller parses)"""
        reply = self.generate(
            prompt,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            stop_event=stop_event,
        )
        return repair_json(reply)

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "formatter": self.formatter.get_info(),
        }


def repair_json(text: str) -> str:
    """
    Strip markdown fences and chatter around a model reply, keeping the
    outermost {...} span. Braces are not balanced; the result may still
    fail json.loads(), which the model tier reports as malformed output.
    """
    text = text.strip()
    for fence in ("```json", "```"):
        if text.startswith(fence):
            text = text[len(fence):]
            break
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        logger.warning("Model reply contains no JSON object")
        return text
    return text[start:end + 1]
