"""
Tests for environment configuration, the tier chain factory and logging setup
"""

import logging

import pytest

from formly.config import DEFAULT_EMBEDDING_MODEL, EngineConfig
from formly.logging_setup import configure_logging
from formly.retrieval.content_index import ContentIndex
from formly.tiers.base import TierKind
from formly.tiers.factory import build_content_index, build_tier_chain, load_model_client


class MockHFClient:
    def is_loaded(self):
        return True

    def generate_json(self, prompt, system=None, max_tokens=512, temperature=0.0, stop_event=None):
        return '{"updates": []}'


class MockEmbedder:
    def embed(self, texts):
        return [[float(len(text)), 1.0] for text in texts]


# ========== EngineConfig ==========

def test_defaults_from_empty_environment():
    config = EngineConfig.from_env({})

    assert config == EngineConfig()
    assert config.model_name == ""
    assert config.embedding_model == DEFAULT_EMBEDDING_MODEL
    assert config.tier_timeout is None


def test_values_from_environment():
    config = EngineConfig.from_env({
        "FORMLY_MODEL_NAME": " mistralai/Mistral-7B-Instruct-v0.2 ",
        "FORMLY_MODEL_DEVICE": "CUDA",
        "FORMLY_LOAD_IN_4BIT": "yes",
        "FORMLY_RETRIEVAL_TOP_K": "5",
        "FORMLY_TIER_TIMEOUT": "2.5",
        "FORMLY_MAX_TOKENS": "256",
        "FORMLY_LOG_LEVEL": "debug",
    })

    assert config.model_name == "mistralai/Mistral-7B-Instruct-v0.2"
    assert config.model_device == "cuda"
    assert config.load_in_4bit is True
    assert config.retrieval_top_k == 5
    assert config.tier_timeout == 2.5
    assert config.max_tokens == 256
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("name, value", [
    ("FORMLY_MODEL_DEVICE", "tpu"),
    ("FORMLY_LOAD_IN_4BIT", "sometimes"),
    ("FORMLY_RETRIEVAL_TOP_K", "0"),
    ("FORMLY_RETRIEVAL_TOP_K", "three"),
    ("FORMLY_TIER_TIMEOUT", "-1"),
    ("FORMLY_TIER_TIMEOUT", "soon"),
    ("FORMLY_MAX_TOKENS", "0"),
])
def test_invalid_values_name_the_variable(name, value):
    with pytest.raises(ValueError, match=name):
        EngineConfig.from_env({name: value})


# ========== Factory ==========

def test_chain_without_model_or_index():
    chain = build_tier_chain(EngineConfig())

    assert [t.kind for t in chain.tiers] == [TierKind.MODEL, TierKind.RETRIEVAL, TierKind.RULES]
    assert chain.available_tiers() == [TierKind.RULES]
    assert chain.tier_timeout is None


def test_chain_with_shared_client_and_index():
    index = build_content_index([("Renewal fee is $35.", "fees")], EngineConfig(), embedder=MockEmbedder())
    config = EngineConfig(retrieval_top_k=2, tier_timeout=5.0, max_tokens=128)

    chain = build_tier_chain(config, index=index, client=MockHFClient())

    assert chain.available_tiers() == [TierKind.MODEL, TierKind.RETRIEVAL, TierKind.RULES]
    assert chain.tier_timeout == 5.0
    assert chain.tiers[0].max_tokens == 128
    assert chain.tiers[1].top_k == 2


def test_no_model_configured():
    assert load_model_client(EngineConfig()) is None


def test_build_content_index_with_embedder():
    index = build_content_index(
        [("one snippet", "a"), ("another snippet", "b")],
        EngineConfig(),
        embedder=MockEmbedder(),
    )

    assert isinstance(index, ContentIndex)
    assert len(index) == 2


# ========== Logging ==========

def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ValueError, match="Unknown log level"):
        configure_logging("LOUD")


def test_configure_logging_accepts_names_and_numbers():
    configure_logging("warning")
    configure_logging(logging.DEBUG)
