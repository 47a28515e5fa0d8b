"""Tests for typed claim access."""

import pytest

from oidc_rp.security.claims import Claims


@pytest.fixture
def claims() -> Claims:
    return Claims(
        {
            "sub": "alice",
            "numeric_id": 42,
            "empty": "",
            "flag": True,
            "groups": ["staff", "admin"],
            "mixed": ["staff", 1],
            "exp": 1_700_000_000,
            "exp_text": "1700000000",
            "nested": {"a": 1},
        }
    )


class TestGetString:
    def test_string(self, claims: Claims) -> None:
        assert claims.get_string("sub") == "alice"

    def test_number_is_converted(self, claims: Claims) -> None:
        assert claims.get_string("numeric_id") == "42"

    @pytest.mark.parametrize("key", ["missing", "empty", "flag", "groups", "nested", None])
    def test_unusable_values_are_none(self, claims: Claims, key) -> None:
        assert claims.get_string(key) is None


class TestGetStringArray:
    def test_string_array(self, claims: Claims) -> None:
        assert claims.get_string_array("groups") == ["staff", "admin"]

    def test_mixed_array_is_none(self, claims: Claims) -> None:
        assert claims.get_string_array("mixed") is None

    def test_scalar_is_none(self, claims: Claims) -> None:
        assert claims.get_string_array("sub") is None

    def test_returns_copy(self, claims: Claims) -> None:
        claims.get_string_array("groups").append("root")
        assert claims.get_string_array("groups") == ["staff", "admin"]


class TestGetNumber:
    def test_number(self, claims: Claims) -> None:
        assert claims.get_number("exp") == 1_700_000_000.0

    def test_numeric_string(self, claims: Claims) -> None:
        assert claims.get_number("exp_text") == 1_700_000_000.0

    def test_non_numeric(self, claims: Claims) -> None:
        assert claims.get_number("sub") is None
        assert claims.get_number("flag") is None
        assert claims.get_number("missing") is None


def test_merged_prefers_own_claims() -> None:
    id_token = Claims({"sub": "alice", "email": "alice@id-token.example"})

    merged = id_token.merged({"email": "alice@userinfo.example", "name": "Alice"})

    assert merged["email"] == "alice@id-token.example"
    assert merged["name"] == "Alice"
    assert "name" not in id_token


def test_claims_is_read_only_mapping() -> None:
    claims = Claims({"sub": "alice"})

    with pytest.raises(TypeError):
        claims["sub"] = "mallory"  # type: ignore[index]
    assert dict(claims) == {"sub": "alice"}
    assert len(claims) == 1
