"""Service layer composing the pool components."""
