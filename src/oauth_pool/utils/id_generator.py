"""Utility functions for generating IDs."""

import secrets

import shortuuid


def generate_account_id() -> str:
    """Generate an account id.

    Returns:
        str: Short URL-safe ID (22 characters)
    """
    return shortuuid.uuid()


def generate_state_id() -> str:
    """Generate an unguessable state id for an authorization attempt."""
    return secrets.token_urlsafe(32)
