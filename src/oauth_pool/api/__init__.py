"""HTTP API for the OAuth credential pool."""

from oauth_pool.api.app import create_app, get_app


__all__ = ["create_app", "get_app"]
