"""Configuration models and loaders for :mod:`codeindex`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from enum import StrEnum
import os
from pathlib import Path
from typing import Any, Mapping

import tomllib
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from codeindex.core.errors import ConfigurationError
from codeindex.resources import get_resource

DEFAULTS_RESOURCE_NAME = "codeindex.defaults.toml"
ENV_PREFIX = "CODEINDEX_"


class EmbedderProvider(StrEnum):
    """Embedding provider kinds understood by the service factory."""

    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"
    OLLAMA = "ollama"
    GEMINI = "gemini"


class VectorStoreKind(StrEnum):
    """Vector store backends understood by the service factory."""

    QDRANT = "qdrant"
    FAISS = "faiss"


class EmbedderSettings(BaseModel):
    """Provider selection, credentials and retry budget for embeddings."""

    provider: EmbedderProvider = Field(
        default=EmbedderProvider.OPENAI,
        description="Embedding provider kind.",
    )
    model: str | None = Field(
        default=None,
        description="Provider model identifier used for embeddings.",
    )
    api_key: str | None = Field(
        default=None,
        description="Credential sent to the provider when it requires one.",
    )
    base_url: str | None = Field(
        default=None,
        description="Endpoint override; required for compatible/ollama.",
    )
    dimension: int | None = Field(
        default=None,
        ge=1,
        description="Explicit vector dimension; defaults to the model profile.",
    )
    max_tokens_per_item: int | None = Field(
        default=None,
        ge=1,
        description="Per-chunk token ceiling; defaults to the model profile.",
    )
    max_retries: int = Field(
        default=5,
        ge=1,
        description="Total attempts allowed for rate-limited requests.",
    )
    service_unavailable_attempts: int = Field(
        default=2,
        ge=1,
        description="Total attempts allowed when the endpoint is unreachable.",
    )
    initial_retry_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_retry_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound in seconds for a single backoff delay.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("model", "api_key", "base_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value


class VectorStoreSettings(BaseModel):
    """Vector store connection and collection settings."""

    kind: VectorStoreKind = Field(
        default=VectorStoreKind.QDRANT,
        description="Vector store backend.",
    )
    url: str | None = Field(
        default="http://localhost:6333",
        description="Qdrant endpoint URL.",
    )
    api_key: str | None = Field(
        default=None,
        description="Qdrant API key for secured deployments.",
    )
    collection: str = Field(
        default="codeindex",
        min_length=1,
        description="Collection (index) name receiving the points.",
    )
    path: Path | None = Field(
        default=None,
        description="Directory for the local FAISS store artifacts.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Request timeout in seconds for remote stores.",
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @property
    def address(self) -> str:
        """Return a human-readable location for error messages."""

        if self.kind is VectorStoreKind.FAISS:
            return str(self.path) if self.path is not None else "<unset>"
        return self.url or "<unset>"


class BatchSettings(BaseModel):
    """Batch packing and dispatch limits for the orchestrator."""

    max_items: int = Field(default=64, ge=1)
    max_tokens: int = Field(default=100_000, ge=1)
    concurrency: int = Field(default=4, ge=1)
    fatal_error_threshold: int = Field(
        default=2,
        ge=1,
        description=(
            "Number of auth/model/response-shape failures tolerated before "
            "the orchestrator stops dispatching batches."
        ),
    )

    model_config = {"frozen": True}


class ScanSettings(BaseModel):
    """Workspace traversal and chunking settings."""

    include_extensions: tuple[str, ...] = Field(default_factory=tuple)
    exclude_patterns: tuple[str, ...] = Field(default_factory=tuple)
    respect_gitignore: bool = True
    max_file_bytes: int = Field(default=1_048_576, ge=1)
    chunk_lines: int = Field(default=60, ge=1)
    chunk_overlap: int = Field(default=0, ge=0)
    cache_dir: str = Field(
        default=".codeindex",
        description="Directory (relative to the workspace) for local state.",
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("include_extensions")
    @classmethod
    def _normalize_extensions(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized: list[str] = []
        for raw in value:
            ext = raw.strip().lower()
            if not ext:
                continue
            if not ext.startswith("."):
                ext = f".{ext}"
            normalized.append(ext)
        return tuple(dict.fromkeys(normalized))

    @model_validator(mode="after")
    def _check_overlap(self) -> "ScanSettings":
        if self.chunk_overlap >= self.chunk_lines:
            raise ValueError("scan.chunk_overlap must be < scan.chunk_lines")
        return self


class IndexerConfig(BaseModel):
    """Root configuration for an indexing session."""

    log_level: str = Field(default="INFO")
    embedder: EmbedderSettings = Field(default_factory=EmbedderSettings)
    vector_store: VectorStoreSettings = Field(
        default_factory=VectorStoreSettings
    )
    batching: BatchSettings = Field(default_factory=BatchSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["embedder"]["provider"]
        'openai'
    """

    return tomllib.loads(read_packaged_defaults_text())


def load_user_config(path: Path) -> dict[str, Any]:
    """Parse a user ``codeindex.toml`` file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """

    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to read configuration file {path}: {exc}"
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(
            f"Invalid TOML in configuration file {path}: {exc}"
        ) from exc


# Environment variable -> dotted config key.
_ENV_KEYS: Mapping[str, str] = {
    f"{ENV_PREFIX}LOG_LEVEL": "log_level",
    f"{ENV_PREFIX}PROVIDER": "embedder.provider",
    f"{ENV_PREFIX}MODEL": "embedder.model",
    f"{ENV_PREFIX}API_KEY": "embedder.api_key",
    f"{ENV_PREFIX}BASE_URL": "embedder.base_url",
    f"{ENV_PREFIX}DIMENSION": "embedder.dimension",
    f"{ENV_PREFIX}MAX_RETRIES": "embedder.max_retries",
    f"{ENV_PREFIX}STORE": "vector_store.kind",
    f"{ENV_PREFIX}STORE_URL": "vector_store.url",
    f"{ENV_PREFIX}STORE_API_KEY": "vector_store.api_key",
    f"{ENV_PREFIX}COLLECTION": "vector_store.collection",
    f"{ENV_PREFIX}CONCURRENCY": "batching.concurrency",
}

# Provider-native credential variables, consulted only when the matching
# provider is selected and no explicit key is configured.
_PROVIDER_KEY_ENV: Mapping[str, str] = {
    EmbedderProvider.OPENAI.value: "OPENAI_API_KEY",
    EmbedderProvider.GEMINI.value: "GEMINI_API_KEY",
}


def _set_dotted(target: dict[str, Any], dotted: str, value: Any) -> None:
    node = target
    *parents, leaf = dotted.split(".")
    for key in parents:
        node = node.setdefault(key, {})
    node[leaf] = value


def env_config_from_environ(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Translate ``CODEINDEX_*`` environment variables into a config layer."""

    source = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    for name, dotted in _ENV_KEYS.items():
        value = source.get(name)
        if value is None or not value.strip():
            continue
        _set_dotted(layer, dotted, value.strip())
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_provider_key_fallback(
    stack: dict[str, Any],
    environ: Mapping[str, str],
) -> None:
    embedder = stack.get("embedder")
    if not isinstance(embedder, MappingABC):
        return
    if embedder.get("api_key"):
        return
    provider = str(embedder.get("provider") or "").strip().lower()
    variable = _PROVIDER_KEY_ENV.get(provider)
    if variable is None:
        return
    value = environ.get(variable)
    if value and value.strip():
        stack["embedder"] = {**embedder, "api_key": value.strip()}


def load_config(
    *,
    defaults: Mapping[str, Any] | None = None,
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> IndexerConfig:
    """Load configuration according to the precedence stack.

    Precedence is CLI overrides > environment > user file > packaged
    defaults. Provider-native key variables (``OPENAI_API_KEY``,
    ``GEMINI_API_KEY``) fill ``embedder.api_key`` last, only when nothing
    else supplied one.

    Raises:
        ConfigurationError: If the merged payload fails validation.
    """

    stack = dict(defaults if defaults is not None else load_packaged_defaults())
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    _apply_provider_key_fallback(
        stack,
        os.environ if environ is None else environ,
    )

    try:
        return IndexerConfig(**stack)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid configuration: {exc}",
            field=location or None,
        ) from exc


__all__ = [
    "BatchSettings",
    "DEFAULTS_RESOURCE_NAME",
    "ENV_PREFIX",
    "EmbedderProvider",
    "EmbedderSettings",
    "IndexerConfig",
    "ScanSettings",
    "VectorStoreKind",
    "VectorStoreSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "read_packaged_defaults_text",
]
