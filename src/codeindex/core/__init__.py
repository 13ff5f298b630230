"""Core utilities shared across :mod:`codeindex` modules.

The core namespace holds configuration loading, logging setup and the
configuration error type so feature modules stay free of bootstrap code.

Example:
    >>> from codeindex.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import IndexerConfig, load_config, load_packaged_defaults
from .errors import ConfigurationError
from .logging import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "IndexerConfig",
    "configure_logging",
    "get_logger",
    "load_config",
    "load_packaged_defaults",
]
