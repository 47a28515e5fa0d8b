"""Infrastructure layer: shared caches and observability."""
