"""Authorization grant flows."""
