"""Core utilities: logging and time."""
