"""MPN 完全一致検索モジュール."""

from __future__ import annotations

import logging
import time

from mpn_index.config import DEFAULT_SEARCH_LIMIT, SEARCH_MAX_LIMIT, SEARCH_MIN_LENGTH
from mpn_index.errors import SearchError
from mpn_index.models import IndexStore, SearchMatch
from mpn_index.normalizer import normalize_mpn

logger = logging.getLogger(__name__)


class LookupService:
    """ストアフロントからの検索を IndexStore.lookup に渡す."""

    def __init__(self, store: IndexStore, max_limit: int = SEARCH_MAX_LIMIT):
        self.store = store
        self.max_limit = max_limit

    def search(self, query: str | None, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchMatch]:
        """正規化した MPN が完全一致するバリアントを返す.

        空・短すぎるクエリはストアを呼ばずに空リストを返す。

        Raises:
            SearchError: ストアの失敗（原因はログにのみ残す）
        """
        q = (query or "").strip()
        if len(q) < SEARCH_MIN_LENGTH:
            return []

        start = time.perf_counter()
        try:
            records = self.store.lookup(q, self._clamp(limit))
        except Exception:
            logger.exception("検索失敗: q=%s", q)
            raise SearchError("search failed") from None

        matches = [SearchMatch.from_record(r) for r in records]
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("MPN 検索 %r -> %d 件 (%.1fms)", q, len(matches), elapsed_ms)
        return matches

    def explain(self, query: str) -> dict:
        """デバッグ用. 正規化結果と生のレコードを返す."""
        records = self.store.lookup(query, self.max_limit)
        return {
            "query": query,
            "normalized": normalize_mpn(query),
            "resultCount": len(records),
            "results": [r.to_row() for r in records],
        }

    def _clamp(self, limit) -> int:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = DEFAULT_SEARCH_LIMIT
        return max(1, min(limit, self.max_limit))
