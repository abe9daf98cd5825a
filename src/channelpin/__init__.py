"""Keep installed packages on the stable channel of a two-channel package feed."""

from ._version import __version__

__all__ = ["__version__"]
