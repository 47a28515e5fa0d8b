"""HTTP API for the OpenID Connect relying party."""
