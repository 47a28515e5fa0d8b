"""Domain layer: the user directory contract and identity services."""
