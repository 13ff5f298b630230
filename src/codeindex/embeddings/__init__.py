"""Embedder abstractions and the provider registry."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from codeindex.core.logging import Logger
from codeindex.embeddings.base import (
    BaseEmbedder,
    Embedder,
    ProviderConfig,
    RetryPolicy,
)
from codeindex.embeddings.errors import (
    AuthFailedError,
    EmbedError,
    EmbedErrorKind,
    InvalidResponseShapeError,
    ModelUnavailableError,
    RateLimitedError,
    RequestRejectedError,
    ServiceUnavailableError,
)
from codeindex.embeddings.profiles import ModelProfile, lookup_profile
from codeindex.embeddings.tokens import (
    ApproximateTokenCounter,
    TiktokenCounter,
    TokenCounter,
)

__all__ = [
    "ApproximateTokenCounter",
    "AuthFailedError",
    "BaseEmbedder",
    "EmbedError",
    "EmbedErrorKind",
    "Embedder",
    "EmbedderFactory",
    "EmbedderInitContext",
    "EmbedderNotRegisteredError",
    "EmbedderRegistry",
    "EmbedderRegistryError",
    "GeminiEmbedder",
    "InvalidResponseShapeError",
    "ModelProfile",
    "ModelUnavailableError",
    "OllamaEmbedder",
    "OpenAICompatibleEmbedder",
    "OpenAIEmbedder",
    "ProviderConfig",
    "RateLimitedError",
    "RequestRejectedError",
    "RetryPolicy",
    "ServiceUnavailableError",
    "TiktokenCounter",
    "TokenCounter",
    "create_default_embedder_registry",
    "lookup_profile",
    "register_builtin_embedders",
]


@dataclass(frozen=True, slots=True)
class EmbedderInitContext:
    """Construction context supplied to embedder factories.

    ``options`` carries test seams such as an injected client or sleep.
    """

    config: ProviderConfig
    logger: Logger
    options: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "options",
            MappingProxyType(dict(self.options or {})),
        )


EmbedderFactory = Callable[[EmbedderInitContext], Embedder]
"""Factory callable responsible for instantiating embedders."""


class EmbedderRegistryError(RuntimeError):
    """Base error type raised when interacting with the embedder registry."""


class EmbedderNotRegisteredError(EmbedderRegistryError):
    """Raised when no factory is registered for a provider kind."""


class EmbedderRegistry:
    """Mutable registry mapping provider kinds to factory callables."""

    def __init__(
        self,
        factories: Mapping[str, EmbedderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, EmbedderFactory] = {}
        if factories:
            for key, factory in factories.items():
                self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: EmbedderFactory) -> None:
        """Register ``factory`` under ``key``; errors if key already present."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise EmbedderRegistryError(
                f"Embedder {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def unregister(self, key: str) -> None:
        self._factories.pop(self._normalize_key(key), None)

    def get_factory(self, key: str) -> EmbedderFactory:
        """Return the factory registered for ``key`` or raise."""

        normalized = self._normalize_key(key)
        try:
            return self._factories[normalized]
        except KeyError as exc:
            raise EmbedderNotRegisteredError(
                f"No embedder registered under key {normalized!r}",
            ) from exc

    def create(
        self,
        config: ProviderConfig,
        *,
        logger: Logger,
        options: Mapping[str, Any] | None = None,
    ) -> Embedder:
        """Instantiate the embedder registered for ``config.provider``."""

        factory = self.get_factory(config.provider)
        context = EmbedderInitContext(
            config=config,
            logger=logger,
            options=options,
        )
        return factory(context)

    def snapshot(self) -> Mapping[str, EmbedderFactory]:
        """Return an immutable view of registered embedder factories."""

        return MappingProxyType(dict(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .compatible import OpenAICompatibleEmbedder
    from .gemini import GeminiEmbedder
    from .ollama import OllamaEmbedder
    from .openai import OpenAIEmbedder

_LAZY_EXPORTS = {
    "OpenAIEmbedder": ".openai",
    "OpenAICompatibleEmbedder": ".compatible",
    "OllamaEmbedder": ".ollama",
    "GeminiEmbedder": ".gemini",
}


def __getattr__(name: str) -> object:
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is not None:
        from importlib import import_module

        module = import_module(module_name, __name__)
        return getattr(module, name)

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})


def _factory_for(class_name: str) -> EmbedderFactory:
    def _factory(context: EmbedderInitContext) -> Embedder:
        embedder_type = __getattr__(class_name)
        return embedder_type(  # type: ignore[operator]
            context.config,
            logger=context.logger,
            **dict(context.options or {}),
        )

    return _factory


def register_builtin_embedders(
    registry: EmbedderRegistry,
) -> EmbedderRegistry:
    """Register the built-in provider variants on ``registry``."""

    builtins = {
        "openai": "OpenAIEmbedder",
        "openai-compatible": "OpenAICompatibleEmbedder",
        "ollama": "OllamaEmbedder",
        "gemini": "GeminiEmbedder",
    }
    registered = registry.snapshot()
    for key, class_name in builtins.items():
        if key not in registered:
            registry.register(key, _factory_for(class_name))
    return registry


def create_default_embedder_registry() -> EmbedderRegistry:
    """Return a registry populated with the built-in embedders."""

    registry = EmbedderRegistry()
    register_builtin_embedders(registry)
    return registry
