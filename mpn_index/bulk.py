"""バルクエクスポート結果 (JSONL) のパースモジュール.

結果は 1 行 1 オブジェクトで、商品行とバリアント行が混在する。
バリアント行は "__parentId" で親商品の ID を持つ:

    {"id": "gid://shopify/Product/1", "title": "...", "handle": "...", "featuredImage": {...}}
    {"id": "gid://shopify/ProductVariant/11", "sku": "...", "metafield": {"value": "7665-PP"},
     "__parentId": "gid://shopify/Product/1"}

親商品が結果内に存在しないバリアント（孤児）は商品情報を持てないため索引しない。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable

from mpn_index.catalog import parse_product_node, parse_variant_node
from mpn_index.models import CatalogProduct, CatalogVariant
from mpn_index.normalizer import normalize_mpn

logger = logging.getLogger(__name__)

_PRODUCT_PREFIX = "gid://shopify/Product/"


@dataclass
class BulkParseResult:
    """パース結果と件数."""

    variants: list[CatalogVariant] = field(default_factory=list)  # MPN ありで親が見つかったもの
    products: int = 0
    variants_seen: int = 0
    orphans: int = 0
    without_mpn: int = 0
    malformed: int = 0

    @property
    def skipped(self) -> int:
        return self.orphans + self.without_mpn + self.malformed


def parse_bulk_lines(lines: Iterable[str]) -> BulkParseResult:
    """JSONL の行を商品とバリアントに分けて紐付ける.

    行の順序には依存しない（親より先に子が来ても紐付けられる）。
    壊れた行はスキップして malformed として数える。
    """
    result = BulkParseResult()
    products: dict[str, CatalogProduct] = {}
    children: list[dict] = []

    for line_no, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("JSONL %d 行目のパースエラー: %s", line_no, e)
            result.malformed += 1
            continue
        if not isinstance(obj, dict) or not obj.get("id"):
            logger.warning("JSONL %d 行目に id がありません", line_no)
            result.malformed += 1
            continue

        if "__parentId" in obj:
            children.append(obj)
        elif obj["id"].startswith(_PRODUCT_PREFIX):
            products[obj["id"]] = parse_product_node(obj)
        # それ以外の種類の行は対象外

    result.products = len(products)
    for obj in children:
        result.variants_seen += 1
        product = products.get(obj["__parentId"])
        if product is None:
            result.orphans += 1
            continue
        variant = parse_variant_node(obj, product)
        if normalize_mpn(variant.mpn) is None:
            result.without_mpn += 1
            continue
        result.variants.append(variant)

    if result.orphans:
        logger.warning("親商品が見つからないバリアント: %d 件（スキップ）", result.orphans)
    return result
