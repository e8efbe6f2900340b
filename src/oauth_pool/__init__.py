"""OAuth credential pool: acquire, store, refresh and fail over between grants."""

from ._version import __version__


__all__ = ["__version__"]
