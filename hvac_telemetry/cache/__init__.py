"""Redis cache of per-unit current state."""
