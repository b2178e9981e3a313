"""normalizer モジュールのユニットテスト."""

import pytest

from mpn_index.normalizer import is_searchable, normalize_mpn


class TestNormalizeMpn:
    """normalize_mpn のテスト."""

    @pytest.mark.parametrize("raw", ["7665-PP", "7665pp", "7665 PP", " 7665.p/p "])
    def test_separators_and_case(self, raw):
        assert normalize_mpn(raw) == "7665PP"

    def test_mixed(self):
        assert normalize_mpn("ABC 123-x") == "ABC123X"

    @pytest.mark.parametrize("raw", [None, "", "   ", "--", " - / . "])
    def test_absent(self, raw):
        """空・記号のみは空文字ではなく None になること."""
        assert normalize_mpn(raw) is None

    def test_non_ascii_removed(self):
        assert normalize_mpn("ＡＢ-12é") == "12"

    @pytest.mark.parametrize("raw", ["7665-PP", "t567l-9900p", "ａ1", "x"])
    def test_idempotent(self, raw):
        once = normalize_mpn(raw)
        assert normalize_mpn(once) == once

    def test_output_alphabet(self):
        key = normalize_mpn("a-b_c 1.2/3 äö")
        assert key == "ABC123"
        assert key.isascii() and key.isalnum() and key == key.upper()


class TestIsSearchable:
    """is_searchable のテスト."""

    def test_long_enough(self):
        assert is_searchable("a-1", 2)

    def test_too_short_after_normalization(self):
        assert not is_searchable("a-", 2)

    def test_none(self):
        assert not is_searchable(None, 2)
