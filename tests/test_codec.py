"""
Tests for canonical serialization, digests and random identifiers.
"""

import hashlib

import pytest

from balancechain.codec import canonicalize, digest, random_id


class TestCanonicalize:
    """Deterministic text form of JSON-like values."""

    def test_key_order_does_not_matter(self):
        a = {"b": 1, "a": {"y": [1, 2], "x": None}}
        b = {"a": {"x": None, "y": [1, 2]}, "b": 1}
        assert canonicalize(a) == canonicalize(b)

    def test_no_whitespace(self):
        assert canonicalize({"a": [1, "x", True, None]}) == '{"a":[1,"x",true,null]}'

    def test_array_order_preserved(self):
        assert canonicalize([3, 1, 2]) == "[3,1,2]"

    def test_non_ascii_kept_verbatim(self):
        assert canonicalize({"t": "héllo ✓"}) == '{"t":"héllo ✓"}'

    def test_control_characters_escaped(self):
        assert canonicalize("a\nb\"c") == '"a\\nb\\"c"'

    def test_keys_sorted_by_utf16_code_units(self):
        # U+FF5E sorts before U+1F600 in UTF-16 (surrogates start at 0xD800)
        value = {"～": 2, "\U0001F600": 1}
        assert canonicalize(value) == '{"\U0001F600":1,"～":2}'

    @pytest.mark.parametrize(
        "value, expected",
        [
            (1.0, "1"),
            (0.5, "0.5"),
            (-2.5, "-2.5"),
            (123.456, "123.456"),
            (-0.0, "0"),
            (1e21, "1e+21"),
            (1e20, "100000000000000000000"),
            (1e-7, "1e-7"),
            (0.000001, "0.000001"),
            (1.5e-10, "1.5e-10"),
            (float("nan"), "null"),
            (float("inf"), "null"),
        ],
    )
    def test_number_formatting(self, value, expected):
        assert canonicalize(value) == expected

    @pytest.mark.parametrize(
        "value, expected",
        [
            (2**53 - 1, "9007199254740991"),
            (2**53 + 1, "9007199254740992"),
            (10**20, "100000000000000000000"),
            (10**21, "1e+21"),
            (-(10**22), "-1e+22"),
            (10**400, "null"),
        ],
    )
    def test_large_integers_match_float_form(self, value, expected):
        assert canonicalize(value) == expected
        if expected != "null":
            assert canonicalize(value) == canonicalize(float(value))

    def test_lone_surrogates_escaped(self):
        text = canonicalize({"t": "bad\ud800", "\udfff": 1})
        assert text == '{"t":"bad\\ud800","\\udfff":1}'
        # must hash without a UnicodeEncodeError
        assert len(digest(text)) == 64

    def test_surrogate_pairs_untouched(self):
        assert canonicalize("\U0001F600") == '"\U0001F600"'

    def test_integers_and_bools_distinct(self):
        assert canonicalize(True) == "true"
        assert canonicalize(1) == "1"

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            canonicalize({"a": object()})


class TestDigest:
    def test_sha256_hex_of_utf8(self):
        assert digest("abc") == hashlib.sha256(b"abc").hexdigest()
        assert digest(b"abc") == digest("abc")

    def test_lowercase_hex(self):
        d = digest("x")
        assert len(d) == 64
        assert d == d.lower()


class TestRandomId:
    def test_length_and_uniqueness(self):
        ids = {random_id(16) for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 32 for i in ids)
