"""
Tier chain factory - provider setup with graceful degradation

Builds the standard chain from configuration:
- model tier: loads the on-device model when a model name is configured;
  a load failure is logged and the chain continues without it
- retrieval tier: active when a non-empty content index is supplied
- rule tier: always present
- content index: built from guidance snippets with the configured embedder
"""

import logging
from typing import Any, Iterable, Optional, Tuple

from formly.config import EngineConfig
from formly.retrieval.content_index import ContentIndex
from formly.tiers.chain import ExtractionTierChain
from formly.tiers.model_tier import ModelTier
from formly.tiers.retrieval_tier import RetrievalTier
from formly.tiers.rule_tier import RuleTier

logger = logging.getLogger(__name__)


def load_model_client(config: EngineConfig) -> Optional[Any]:
    """
    Load the configured on-device model.

    Returns:
        HuggingFaceClient, or None if no model is configured or loading failed
    """
    if not config.model_name:
        logger.info("No model configured; model tier disabled")
        return None

    # torch/transformers are only imported when a model is actually requested
    from formly.utils.hf_client import HuggingFaceClient

    try:
        client = HuggingFaceClient(
            config.model_name,
            load_in_4bit=config.load_in_4bit,
            device=config.model_device,
        )
    except Exception as e:
        logger.warning(f"Model '{config.model_name}' failed to load ({type(e).__name__}: {e}); continuing without it")
        return None

    logger.info(f"Model tier enabled: {client.get_model_info()}")
    return client


def build_tier_chain(
    config: Optional[EngineConfig] = None,
    index: Optional[Any] = None,
    client: Optional[Any] = None,
) -> ExtractionTierChain:
    """
    Build the standard model -> retrieval -> rules chain.

    Args:
        config: Engine configuration (default EngineConfig.from_env())
        index: Content index for the retrieval tier (optional)
        client: Pre-loaded model client, shared read-only across sessions
            (skips loading from config)

    Returns:
        ExtractionTierChain
    """
    config = config or EngineConfig.from_env()

    if client is None:
        client = load_model_client(config)

    rule_tier = RuleTier()
    tiers = [
        ModelTier(client, max_tokens=config.max_tokens),
        RetrievalTier(index, rule_tier, top_k=config.retrieval_top_k),
        rule_tier,
    ]
    return ExtractionTierChain(tiers, tier_timeout=config.tier_timeout)


def build_content_index(
    snippets: Iterable[Tuple[str, str]],
    config: Optional[EngineConfig] = None,
    embedder: Optional[Any] = None,
) -> Optional[ContentIndex]:
    """
    Embed guidance snippets into a content index for the retrieval tier.

    Args:
        snippets: (text, source) pairs
        config: Engine configuration (default EngineConfig.from_env())
        embedder: Pre-loaded embedder (skips loading from config)

    Returns:
        ContentIndex, or None if the embedding model failed to load
    """
    config = config or EngineConfig.from_env()

    if embedder is None:
        from formly.retrieval.embedder import TransformerEmbedder

        try:
            embedder = TransformerEmbedder(config.embedding_model, device=config.model_device)
        except Exception as e:
            logger.warning(f"Embedding model '{config.embedding_model}' failed to load ({type(e).__name__}: {e}); retrieval tier disabled")
            return None

    index = ContentIndex(embedder)
    index.add_many(snippets)
    return index
