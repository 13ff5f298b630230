"""Content hashing for file fingerprints and chunk payloads."""

from __future__ import annotations

import hashlib
from typing import Iterable, Iterator

__all__ = [
    "DEFAULT_HASH_ALGORITHM",
    "hash_bytes",
    "hash_stream",
    "hash_text",
]


DEFAULT_HASH_ALGORITHM = "sha256"
_DELIMITER = b"\x00"


def _normalize_chunks(chunks: Iterable[bytes]) -> Iterator[bytes]:
    for chunk in chunks:
        if not isinstance(chunk, (bytes, bytearray, memoryview)):
            raise TypeError("hash chunks must be bytes")
        if chunk:
            yield bytes(chunk)


def hash_stream(
    *,
    salt: str,
    chunks: Iterable[bytes],
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    """Compute a stable digest of ``chunks`` prefixed by ``salt``.

    The salt carries the chunker version and settings, so changing how files
    are split invalidates every stored fingerprint.
    """

    digest = hashlib.new(algorithm)
    digest.update(salt.encode("utf-8"))
    digest.update(_DELIMITER)
    for chunk in _normalize_chunks(chunks):
        digest.update(chunk)
    return digest.hexdigest()


def hash_bytes(
    data: bytes,
    *,
    salt: str,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    return hash_stream(salt=salt, chunks=(data,), algorithm=algorithm)


def hash_text(
    text: str,
    *,
    salt: str,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    """Hash a text payload after encoding it as UTF-8.

    Example:
        >>> hash_text("a", salt="v1") == hash_text("a", salt="v2")
        False
    """

    return hash_stream(
        salt=salt,
        chunks=(text.encode("utf-8", errors="surrogatepass"),),
        algorithm=algorithm,
    )
