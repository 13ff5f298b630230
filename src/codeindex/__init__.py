"""Top-level package for :mod:`codeindex`.

The package exposes version metadata so hosts embedding the indexer can
surface the installed build.

Example:
    >>> from codeindex import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("codeindex")
except metadata.PackageNotFoundError:  # pragma: no cover - source checkouts
    __version__ = "0.0.0"

__all__ = ["__version__"]
