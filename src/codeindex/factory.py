"""Session wiring: validate settings, then build the embedder and store."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from codeindex.core.config import (
    EmbedderProvider,
    IndexerConfig,
    VectorStoreKind,
    VectorStoreSettings,
)
from codeindex.core.errors import ConfigurationError
from codeindex.core.logging import Logger, get_logger
from codeindex.embeddings import (
    Embedder,
    EmbedderNotRegisteredError,
    EmbedderRegistry,
    ProviderConfig,
    RetryPolicy,
    create_default_embedder_registry,
)
from codeindex.embeddings.gemini import DEFAULT_GEMINI_URL
from codeindex.embeddings.ollama import DEFAULT_OLLAMA_URL
from codeindex.embeddings.profiles import (
    DEFAULT_MAX_TOKENS_PER_ITEM,
    lookup_profile,
)
from codeindex.embeddings.tokens import TokenCounter
from codeindex.vectorstore import VectorStoreClient

__all__ = [
    "DEFAULT_GEMINI_URL",
    "DEFAULT_OLLAMA_URL",
    "IndexingServices",
    "ServiceFactory",
    "StoreBuilder",
]

FAISS_DIR_NAME = "index"

StoreBuilder = Callable[[VectorStoreSettings, Path, Logger], VectorStoreClient]
"""Callable building a store from settings, workspace root and logger."""


@dataclass(slots=True)
class IndexingServices:
    """Ready-to-use collaborators for one indexing session."""

    embedder: Embedder
    store: VectorStoreClient
    provider_config: ProviderConfig
    token_counter: TokenCounter
    store_settings: VectorStoreSettings | None = None

    async def aclose(self) -> None:
        try:
            await self.embedder.aclose()
        finally:
            await self.store.aclose()


def _build_qdrant(
    settings: VectorStoreSettings,
    root: Path,
    logger: Logger,
) -> VectorStoreClient:
    from codeindex.vectorstore.qdrant import QdrantVectorStore

    return QdrantVectorStore(
        url=settings.url or "",
        collection=settings.collection,
        api_key=settings.api_key,
        timeout=settings.timeout,
        logger=logger,
    )


def _build_faiss(
    settings: VectorStoreSettings,
    root: Path,
    logger: Logger,
) -> VectorStoreClient:
    from codeindex.vectorstore.faiss_store import FaissVectorStore

    return FaissVectorStore(
        path=settings.path or root,
        collection=settings.collection,
        logger=logger,
    )


_DEFAULT_STORE_BUILDERS: Mapping[VectorStoreKind, StoreBuilder] = {
    VectorStoreKind.QDRANT: _build_qdrant,
    VectorStoreKind.FAISS: _build_faiss,
}


class ServiceFactory:
    """Turn an :class:`IndexerConfig` into :class:`IndexingServices`.

    Everything that can be checked locally is checked first; the only
    network traffic :meth:`create` issues is the store's
    ``ensure_collection`` call once configuration is known to be valid.
    """

    def __init__(
        self,
        config: IndexerConfig,
        *,
        root: Path,
        registry: EmbedderRegistry | None = None,
        store_builders: Mapping[VectorStoreKind, StoreBuilder] | None = None,
        embedder_options: Mapping[str, Any] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.config = config
        self.root = root
        self.registry = registry or create_default_embedder_registry()
        self.store_builders = dict(store_builders or _DEFAULT_STORE_BUILDERS)
        self.embedder_options = dict(embedder_options or {})
        self.logger = (logger or get_logger(__name__)).bind(
            component="service-factory"
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def resolve_provider_config(self) -> ProviderConfig:
        """Validate embedder settings and resolve them into a config."""

        settings = self.config.embedder
        provider = settings.provider
        model = settings.model
        if model is None:
            raise ConfigurationError(
                f"embedder.model is required for provider {provider.value!r}",
                field="embedder.model",
            )

        api_key = settings.api_key
        base_url = settings.base_url
        if provider is EmbedderProvider.OPENAI and api_key is None:
            raise ConfigurationError(
                "embedder.api_key is required for provider 'openai' "
                "(set it in codeindex.toml, CODEINDEX_API_KEY or "
                "OPENAI_API_KEY)",
                field="embedder.api_key",
            )
        if provider is EmbedderProvider.GEMINI and api_key is None:
            raise ConfigurationError(
                "embedder.api_key is required for provider 'gemini' "
                "(set it in codeindex.toml, CODEINDEX_API_KEY or "
                "GEMINI_API_KEY)",
                field="embedder.api_key",
            )
        if provider is EmbedderProvider.OPENAI_COMPATIBLE and base_url is None:
            raise ConfigurationError(
                "embedder.base_url is required for provider "
                "'openai-compatible'",
                field="embedder.base_url",
            )
        if provider is EmbedderProvider.OLLAMA and base_url is None:
            base_url = DEFAULT_OLLAMA_URL
        if provider is EmbedderProvider.GEMINI and base_url is None:
            base_url = DEFAULT_GEMINI_URL

        profile = lookup_profile(provider.value, model)
        dimension = settings.dimension
        if dimension is None:
            if profile is None:
                raise ConfigurationError(
                    f"Unknown embedding dimension for provider "
                    f"{provider.value!r} and model {model!r}; set "
                    "embedder.dimension explicitly.",
                    field="embedder.dimension",
                )
            dimension = profile.dimension

        send_dimensions = bool(
            settings.dimension is not None
            and profile is not None
            and profile.supports_dimension_override
            and settings.dimension != profile.dimension
        )

        if settings.max_tokens_per_item is not None:
            max_tokens = settings.max_tokens_per_item
        elif profile is not None:
            max_tokens = profile.max_tokens_per_item
        else:
            max_tokens = DEFAULT_MAX_TOKENS_PER_ITEM

        retry = RetryPolicy(
            max_retries=settings.max_retries,
            service_unavailable_attempts=settings.service_unavailable_attempts,
            initial_delay=settings.initial_retry_delay,
            max_delay=settings.max_retry_delay,
        )
        return ProviderConfig(
            provider=provider.value,
            model=model,
            dimension=dimension,
            max_tokens_per_item=max_tokens,
            api_key=api_key,
            base_url=base_url,
            timeout=settings.timeout,
            retry=retry,
            send_dimensions=send_dimensions,
            tokenizer=profile.tokenizer if profile is not None else None,
        )

    def resolve_store_settings(self) -> VectorStoreSettings:
        """Validate store settings, filling the FAISS directory default."""

        settings = self.config.vector_store
        if settings.kind is VectorStoreKind.QDRANT and not settings.url:
            raise ConfigurationError(
                "vector_store.url is required for the qdrant store",
                field="vector_store.url",
            )
        if settings.kind is VectorStoreKind.FAISS:
            path = settings.path
            if path is None:
                path = self.root / self.config.scan.cache_dir / FAISS_DIR_NAME
            elif not path.is_absolute():
                path = self.root / path
            settings = settings.model_copy(update={"path": path})
        if settings.kind not in self.store_builders:
            raise ConfigurationError(
                f"Unsupported vector store kind {settings.kind.value!r}",
                field="vector_store.kind",
            )
        return settings

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def build_embedder(self, provider_config: ProviderConfig) -> Embedder:
        try:
            return self.registry.create(
                provider_config,
                logger=self.logger,
                options=self.embedder_options,
            )
        except EmbedderNotRegisteredError as exc:
            raise ConfigurationError(
                f"No embedder available for provider "
                f"{provider_config.provider!r}",
                field="embedder.provider",
            ) from exc

    def build_store(self, settings: VectorStoreSettings) -> VectorStoreClient:
        builder = self.store_builders[settings.kind]
        return builder(settings, self.root, self.logger)

    async def create(self) -> IndexingServices:
        """Validate, build and verify the session collaborators.

        Raises:
            ConfigurationError: If settings are incomplete or the existing
                collection has a different vector dimension.
            StoreError: If the store cannot be reached.
        """

        provider_config = self.resolve_provider_config()
        store_settings = self.resolve_store_settings()
        self.logger.info(
            "services-resolved",
            store=store_settings.kind.value,
            collection=store_settings.collection,
            **provider_config.describe(),
        )

        embedder = self.build_embedder(provider_config)
        services = IndexingServices(
            embedder=embedder,
            store=self.build_store(store_settings),
            provider_config=provider_config,
            token_counter=provider_config.token_counter(),
            store_settings=store_settings,
        )
        try:
            await services.store.ensure_collection(provider_config.dimension)
        except BaseException:
            await services.aclose()
            raise
        return services
