"""Tests for the embedder registry."""

from __future__ import annotations

import pytest
from structlog import get_logger

from codeindex import embeddings
from codeindex.embeddings import (
    EmbedderInitContext,
    EmbedderNotRegisteredError,
    EmbedderRegistry,
    EmbedderRegistryError,
    create_default_embedder_registry,
)
from codeindex.embeddings.gemini import GeminiEmbedder
from codeindex.embeddings.ollama import OllamaEmbedder


def test_default_registry_has_builtin_providers() -> None:
    registry = create_default_embedder_registry()

    assert set(registry.snapshot()) == {
        "openai",
        "openai-compatible",
        "ollama",
        "gemini",
    }


def test_registry_rejects_duplicate_keys() -> None:
    registry = EmbedderRegistry()
    def _factory(context):
        return None

    registry.register("fake", _factory)

    with pytest.raises(EmbedderRegistryError):
        registry.register(" FAKE ", _factory)


def test_registry_unknown_provider_raises() -> None:
    registry = EmbedderRegistry()

    with pytest.raises(EmbedderNotRegisteredError):
        registry.get_factory("mystery")


def test_registry_create_passes_context(provider_config_factory) -> None:
    seen: list[EmbedderInitContext] = []

    def _factory(context: EmbedderInitContext):
        seen.append(context)
        return "embedder"

    registry = EmbedderRegistry({"fake": _factory})
    config = provider_config_factory()
    logger = get_logger("test.registry")

    created = registry.create(config, logger=logger, options={"rng": None})

    assert created == "embedder"
    assert seen[0].config is config
    assert dict(seen[0].options or {}) == {"rng": None}


def test_builtin_factories_forward_options(provider_config_factory) -> None:
    registry = create_default_embedder_registry()

    async def _sleep(delay: float) -> None:
        return None

    ollama = registry.create(
        provider_config_factory(provider="ollama", model="all-minilm"),
        logger=get_logger("test.registry"),
        options={"sleep": _sleep},
    )
    gemini = registry.create(
        provider_config_factory(
            provider="gemini",
            model="text-embedding-004",
            api_key="g-key",
        ),
        logger=get_logger("test.registry"),
    )

    assert isinstance(ollama, OllamaEmbedder)
    assert isinstance(gemini, GeminiEmbedder)
    assert ollama._sleep is _sleep


def test_lazy_exports_resolve_variants() -> None:
    assert embeddings.OllamaEmbedder is OllamaEmbedder
    with pytest.raises(AttributeError):
        embeddings.NoSuchEmbedder  # noqa: B018
