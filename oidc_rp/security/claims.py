"""Typed access to provider-defined claim sets.

Claims come from ID tokens, access token payloads, introspection responses
and user-info responses. Their shape is provider-defined, and the claim names
used for lookups are configuration strings, so accessors return ``None`` for
missing or mistyped values instead of raising.
"""

from collections.abc import Iterator, Mapping
from typing import Any


class Claims(Mapping[str, Any]):
    """Read-only, string-keyed claim set with typed accessors.

    Example:
        claims = Claims({"sub": "alice", "groups": ["staff"]})
        claims.get_string("sub")           # "alice"
        claims.get_string_array("groups")  # ["staff"]
        claims.get_string("missing")       # None
    """

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Claims({sorted(self._data)!r})"

    def get_string(self, key: str | None) -> str | None:
        """Return a scalar claim as a non-empty string.

        Numbers are converted (some providers emit numeric subject ids).

        Args:
            key: Claim name (None is treated as missing)

        Returns:
            String value, or None if the claim is missing, empty or not scalar
        """
        if not key:
            return None
        value = self._data.get(key)
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and value:
            return value
        return None

    def get_string_array(self, key: str | None) -> list[str] | None:
        """Return an array claim containing only strings.

        Args:
            key: Claim name (None is treated as missing)

        Returns:
            List of strings, or None if the claim is missing or not an array of strings
        """
        if not key:
            return None
        value = self._data.get(key)
        if not isinstance(value, list):
            return None
        if not all(isinstance(item, str) for item in value):
            return None
        return list(value)

    def get_number(self, key: str) -> float | None:
        """Return a numeric claim such as ``exp``."""
        value = self._data.get(key)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return None
        return None

    def merged(self, other: Mapping[str, Any]) -> "Claims":
        """Return a new claim set with ``other`` filling in missing claims."""
        combined = dict(other)
        combined.update(self._data)
        return Claims(combined)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict copy, for logging and serialization."""
        return dict(self._data)
