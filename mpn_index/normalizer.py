"""MPN 正規化モジュール.

書き込み時と検索時で同じ関数を使うこと。両者の結果が一致しないと照合できない。

    "7665-PP"   -> "7665PP"
    "ABC 123-x" -> "ABC123X"
    "--"        -> None
"""

from __future__ import annotations

import re

# ASCII 英数字以外をすべて除去する
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_mpn(raw: str | None) -> str | None:
    """MPN を検索キーに正規化する.

    Returns:
        大文字英数字のみの文字列。空になる場合は None（空文字は返さない）。
    """
    if not raw:
        return None
    key = _NON_ALNUM.sub("", raw).upper()
    return key or None


def is_searchable(raw: str | None, min_length: int) -> bool:
    """正規化後のキーが min_length 文字以上あるか."""
    key = normalize_mpn(raw)
    return key is not None and len(key) >= min_length
