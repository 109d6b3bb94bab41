"""Tests for opaque token generation, hashing and bearer extraction."""

import base64
import hashlib

import pytest

from bookwave.service.tokens import (
    extract_bearer,
    generate_numeric_code,
    generate_opaque_token,
    hash_code,
    hash_token,
    tokens_match,
)


class TestOpaqueToken:
    def test_clear_value_is_urlsafe_without_padding(self):
        token = generate_opaque_token()
        assert "=" not in token.clear
        assert "+" not in token.clear and "/" not in token.clear
        # 32 random bytes -> 43 base64url characters
        assert len(token.clear) == 43

    def test_hash_is_base64_sha256_of_clear_value(self):
        token = generate_opaque_token()
        expected = base64.b64encode(hashlib.sha256(token.clear.encode()).digest()).decode()
        assert token.hash == expected
        assert hash_token(token.clear) == token.hash

    def test_tokens_are_unique(self):
        values = {generate_opaque_token().clear for _ in range(200)}
        assert len(values) == 200

    def test_repr_hides_clear_value(self):
        token = generate_opaque_token()
        assert token.clear not in repr(token)

    def test_rejects_short_entropy(self):
        with pytest.raises(ValueError):
            generate_opaque_token(8)


class TestNumericCode:
    def test_code_has_requested_length_and_digits_only(self):
        for length in (4, 5, 6, 8):
            code = generate_numeric_code(length)
            assert len(code) == length
            assert code.isdigit()

    def test_zero_length_rejected(self):
        with pytest.raises(ValueError):
            generate_numeric_code(0)

    def test_code_hash_ignores_surrounding_whitespace(self):
        assert hash_code(" 12345 ") == hash_code("12345")

    def test_tokens_match_constant_time_compare(self):
        assert tokens_match(hash_code("123"), hash_code("123"))
        assert not tokens_match(hash_code("123"), hash_code("124"))
        assert not tokens_match(None, hash_code("123"))
        assert not tokens_match(hash_code("123"), "")


class TestExtractBearer:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer   abc  ", "abc"),
            ("abc", "abc"),
            ('"abc"', "abc"),
            ("Bearer 'abc'", "abc"),
        ],
    )
    def test_accepts_supported_shapes(self, raw, expected):
        assert extract_bearer(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "null", "undefined", "Bearer null", '""'])
    def test_rejects_empty_and_nullish(self, raw):
        assert extract_bearer(raw) is None
