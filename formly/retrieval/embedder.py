"""
Sentence embedder - mean-pooled transformer embeddings

Responsibilities:
- Load a HuggingFace encoder (tokenizer + model)
- Embed batches of text into plain float vectors

Design principles:
- Dependency injection: constructed once, shared read-only by indexes
- Inference only (eval mode, no gradients)
- Returns plain lists so the index does not depend on torch
"""

import logging
from typing import List, Sequence

import torch
from transformers import AutoModel, AutoTokenizer

from formly.config import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger(__name__)


class TransformerEmbedder:
    """Mean-pooled sentence embeddings from a transformer encoder"""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, device: str = "cpu", max_length: int = 256):
        """
        Args:
            model_name: HuggingFace encoder id
            device: 'cpu' or 'cuda'
            max_length: Token limit per text (longer texts are truncated)

        Raises:
            RuntimeError: If CUDA requested but not available
            Exception: If model loading fails
        """
        if device == "cuda" and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available")

        self.model_name = model_name
        self.device = device
        self.max_length = max_length

        logger.info(f"Loading embedding model: {model_name} (device={device})")
        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)
            self.model = AutoModel.from_pretrained(model_name).to(device)
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise

        self.model.eval()
        logger.info("Embedding model loaded")

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, in input order
        """
        if not texts:
            return []

        encoded = self.tokenizer(
            list(texts),
            padding=True,
            truncation=True,
            max_length=self.max_length,
            return_tensors="pt",
        ).to(self.device)

        with torch.no_grad():
            output = self.model(**encoded)

        # Mean pooling over real tokens only
        token_embeddings = output.last_hidden_state
        mask = encoded["attention_mask"].unsqueeze(-1).expand(token_embeddings.size()).float()
        summed = torch.sum(token_embeddings * mask, dim=1)
        counts = torch.clamp(mask.sum(dim=1), min=1e-9)
        pooled = summed / counts

        return pooled.cpu().tolist()
