"""Typed error hierarchy for embedding providers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar

__all__ = [
    "EmbedErrorKind",
    "EmbedError",
    "AuthFailedError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "ModelUnavailableError",
    "InvalidResponseShapeError",
    "RequestRejectedError",
    "error_type_for_status",
]


class EmbedErrorKind(StrEnum):
    """Failure classes surfaced by every embedder variant."""

    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    MODEL_UNAVAILABLE = "model_unavailable"
    INVALID_RESPONSE_SHAPE = "invalid_response_shape"
    REQUEST_REJECTED = "request_rejected"


@dataclass(slots=True, eq=False)
class EmbedError(RuntimeError):
    """Base error raised by embedders.

    ``fatal`` marks classes that will recur for every batch sent with the
    same provider settings; the orchestrator uses it to stop dispatching.
    """

    message: str
    provider: str
    model: str
    attempts: int = 1
    status_code: int | None = None
    detail: str | None = None
    retry_after: float | None = None

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.REQUEST_REJECTED
    fatal: ClassVar[bool] = False

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    def context(self) -> dict[str, object]:
        """Return structured fields suitable for log events and reports."""

        return {
            "kind": self.kind.value,
            "provider": self.provider,
            "model": self.model,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "detail": self.detail,
        }


@dataclass(slots=True, eq=False)
class AuthFailedError(EmbedError):
    """Credentials were rejected by the provider."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.AUTH_FAILED
    fatal: ClassVar[bool] = True


@dataclass(slots=True, eq=False)
class RateLimitedError(EmbedError):
    """The provider signalled too many requests."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.RATE_LIMITED


@dataclass(slots=True, eq=False)
class ServiceUnavailableError(EmbedError):
    """The endpoint could not be reached or answered with a server error."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.SERVICE_UNAVAILABLE


@dataclass(slots=True, eq=False)
class ModelUnavailableError(EmbedError):
    """The model does not exist or cannot produce embeddings."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.MODEL_UNAVAILABLE
    fatal: ClassVar[bool] = True


@dataclass(slots=True, eq=False)
class InvalidResponseShapeError(EmbedError):
    """The response body did not carry the expected vectors."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.INVALID_RESPONSE_SHAPE
    fatal: ClassVar[bool] = True


@dataclass(slots=True, eq=False)
class RequestRejectedError(EmbedError):
    """Any other client-side rejection (bad request, quota exhausted)."""

    kind: ClassVar[EmbedErrorKind] = EmbedErrorKind.REQUEST_REJECTED


def error_type_for_status(status: int) -> type[EmbedError]:
    """Map an HTTP status code onto the embedder error taxonomy.

    Example:
        >>> error_type_for_status(429).__name__
        'RateLimitedError'
        >>> error_type_for_status(503).__name__
        'ServiceUnavailableError'
    """

    if status in (401, 403):
        return AuthFailedError
    if status == 429:
        return RateLimitedError
    if status == 404:
        return ModelUnavailableError
    if status == 408 or status >= 500:
        return ServiceUnavailableError
    return RequestRejectedError
