"""Exception types for aikit-packager."""

from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "ManifestValidationError",
    "PackagerError",
    "ResolutionError",
]


class PackagerError(Exception):
    """Base class for all packaging failures."""


class ConfigurationError(PackagerError, ValueError):
    """Invalid options: raised before anything touches the filesystem."""


class ResolutionError(PackagerError):
    """
    A source reference could not be turned into a local directory.

    The underlying network, HTTP or git failure is chained as ``__cause__``.
    """


class ManifestValidationError(PackagerError):
    """The serialized manifest failed its structural self-check."""
