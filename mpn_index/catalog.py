"""Shopify Admin GraphQL API によるカタログ取得モジュール.

同期エンジンが使う操作:
  1. MPN メタフィールド付きバリアントのページ単位一覧
  2. 商品 1 件の全バリアント取得（Webhook 用）
  3. バルクエクスポートの投入・ポーリング・結果 (JSONL) 取得
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Iterator, Protocol

import requests

from mpn_index.config import (
    PAGE_SIZE,
    PRODUCT_VARIANTS_LIMIT,
    REQUEST_MAX_RETRIES,
    REQUEST_TIMEOUT,
    SHOPIFY_ACCESS_TOKEN,
    SHOPIFY_API_VERSION,
    SHOPIFY_SHOP,
    THROTTLE_MIN_AVAILABLE,
    THROTTLE_WAIT,
)
from mpn_index.errors import BulkExportError, CatalogError
from mpn_index.models import BulkOperation, CatalogProduct, CatalogVariant, VariantPage

logger = logging.getLogger(__name__)

# 公開中の商品のみを対象にする
ACTIVE_VARIANT_FILTER = "product_status:active"
ACTIVE_PRODUCT_FILTER = "status:active"

_VARIANT_FIELDS = """
  id
  title
  sku
  price
  image { url }
  metafield(namespace: $namespace, key: $key) { value }
"""

LIST_VARIANTS_QUERY = """
query ListVariantsWithMpn($cursor: String, $limit: Int!, $filter: String,
                          $namespace: String!, $key: String!) {
  productVariants(first: $limit, after: $cursor, query: $filter) {
    pageInfo { hasNextPage endCursor }
    edges {
      node {
        %s
        product { id title handle featuredImage { url } }
      }
    }
  }
}
""" % _VARIANT_FIELDS

PRODUCT_VARIANTS_QUERY = """
query ProductVariants($productId: ID!, $cursor: String, $limit: Int!,
                      $namespace: String!, $key: String!) {
  product(id: $productId) {
    id
    title
    handle
    featuredImage { url }
    variants(first: $limit, after: $cursor) {
      pageInfo { hasNextPage endCursor }
      edges { node { %s } }
    }
  }
}
""" % _VARIANT_FIELDS

BULK_RUN_MUTATION = """
mutation RunBulkExport($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

BULK_STATUS_QUERY = """
query BulkExportStatus($id: ID!) {
  node(id: $id) {
    ... on BulkOperation { id status errorCode url objectCount }
  }
}
"""


def build_bulk_query(namespace: str, key: str) -> str:
    """バルクエクスポート用クエリ. 商品の下にバリアントをネストし __parentId で紐付ける."""
    return """
{
  products(query: %s) {
    edges {
      node {
        id
        title
        handle
        featuredImage { url }
        variants {
          edges {
            node {
              id
              title
              sku
              price
              image { url }
              metafield(namespace: %s, key: %s) { value }
            }
          }
        }
      }
    }
  }
}
""" % (json.dumps(ACTIVE_PRODUCT_FILTER), json.dumps(namespace), json.dumps(key))


class CatalogPort(Protocol):
    """同期エンジンが必要とするカタログ操作."""

    def list_variants(self, namespace: str, key: str, cursor: str | None) -> VariantPage: ...

    def fetch_product_variants(
        self, product_id: str, namespace: str, key: str
    ) -> list[CatalogVariant]: ...

    def submit_bulk_export(self, namespace: str, key: str) -> str: ...

    def poll_bulk_export(self, export_id: str) -> BulkOperation: ...

    def fetch_bulk_result(self, url: str) -> Iterator[str]: ...


class ShopifyCatalog:
    """Shopify Admin GraphQL クライアント."""

    def __init__(
        self,
        shop: str = SHOPIFY_SHOP,
        access_token: str = SHOPIFY_ACCESS_TOKEN,
        api_version: str = SHOPIFY_API_VERSION,
        session: requests.Session | None = None,
        page_size: int = PAGE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not (shop and access_token):
            raise RuntimeError("SHOPIFY_SHOP / SHOPIFY_ACCESS_TOKEN が未設定です")
        self.endpoint = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self.page_size = page_size
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        })

    def graphql(self, query: str, variables: dict | None = None) -> dict:
        """GraphQL を実行し data を返す.

        HTTP 429 と THROTTLED エラーは REQUEST_MAX_RETRIES 回まで待機して再試行する。
        残りクエリコストが少ないときは次の呼び出しの前に待機する。

        Raises:
            CatalogError: 通信失敗・HTTP エラー・GraphQL エラー
        """
        payload = {"query": query, "variables": variables or {}}
        for attempt in range(REQUEST_MAX_RETRIES + 1):
            try:
                resp = self.session.post(self.endpoint, json=payload, timeout=REQUEST_TIMEOUT)
            except requests.RequestException as e:
                raise CatalogError(f"GraphQL request failed: {e}") from e

            if resp.status_code == 429 and attempt < REQUEST_MAX_RETRIES:
                wait = float(resp.headers.get("Retry-After") or THROTTLE_WAIT * (attempt + 1))
                logger.warning("レート制限 (429)。%.1f 秒待機して再試行 (%d回目)", wait, attempt + 1)
                self._sleep(wait)
                continue
            if resp.status_code != 200:
                raise CatalogError(f"GraphQL HTTP {resp.status_code}: {resp.text[:500]}")

            body = resp.json()
            errors = body.get("errors")
            if errors:
                throttled = any(
                    (e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors
                )
                if throttled and attempt < REQUEST_MAX_RETRIES:
                    logger.warning("THROTTLED。%.1f 秒待機して再試行", THROTTLE_WAIT)
                    self._sleep(THROTTLE_WAIT)
                    continue
                raise CatalogError(f"GraphQL errors: {json.dumps(errors)[:500]}")

            available = _deep_get(
                body, "extensions", "cost", "throttleStatus", "currentlyAvailable"
            )
            if available is not None and available < THROTTLE_MIN_AVAILABLE:
                self._sleep(THROTTLE_WAIT)
            return body.get("data") or {}

        raise CatalogError("GraphQL request throttled: retries exhausted")

    # ------------------------------------------------------------------
    def list_variants(self, namespace: str, key: str, cursor: str | None) -> VariantPage:
        """MPN メタフィールドを含むバリアントを 1 ページ取得する.

        MPN が空のバリアントもそのまま返す（同期側でスキップ件数として数える）。
        """
        data = self.graphql(LIST_VARIANTS_QUERY, {
            "cursor": cursor,
            "limit": self.page_size,
            "filter": ACTIVE_VARIANT_FILTER,
            "namespace": namespace,
            "key": key,
        })
        connection = data.get("productVariants")
        if connection is None:
            raise CatalogError("productVariants missing from response")

        variants = []
        for edge in connection.get("edges", []):
            node = edge["node"]
            variants.append(parse_variant_node(node, parse_product_node(node["product"])))

        page_info = connection.get("pageInfo") or {}
        return VariantPage(
            variants=variants,
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )

    def fetch_product_variants(
        self, product_id: str, namespace: str, key: str
    ) -> list[CatalogVariant]:
        """商品 1 件の現在のバリアントを全件取得する. 商品が存在しなければ空リスト.

        取りこぼしがあると取り込み側で未取得のバリアントを削除してしまうため、
        variants は最後のページまで送る。
        """
        variants: list[CatalogVariant] = []
        product = None
        cursor = None
        while True:
            data = self.graphql(PRODUCT_VARIANTS_QUERY, {
                "productId": product_id,
                "cursor": cursor,
                "limit": PRODUCT_VARIANTS_LIMIT,
                "namespace": namespace,
                "key": key,
            })
            product_node = data.get("product")
            if not product_node:
                if product is not None:
                    raise CatalogError(f"product {product_id} disappeared while paging variants")
                return []

            if product is None:
                product = parse_product_node(product_node)
            connection = product_node.get("variants") or {}
            for edge in connection.get("edges", []):
                variants.append(parse_variant_node(edge["node"], product))

            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return variants
            cursor = page_info.get("endCursor")
            if not cursor:
                raise CatalogError(f"product {product_id} variants: hasNextPage without endCursor")

    # ------------------------------------------------------------------
    def submit_bulk_export(self, namespace: str, key: str) -> str:
        """バルクエクスポートを投入し、BulkOperation の ID を返す."""
        data = self.graphql(BULK_RUN_MUTATION, {"query": build_bulk_query(namespace, key)})
        result = data.get("bulkOperationRunQuery") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = "; ".join(e.get("message", "") for e in user_errors)
            raise BulkExportError(f"bulk export rejected: {messages}")

        operation = result.get("bulkOperation") or {}
        if not operation.get("id"):
            raise BulkExportError("bulk export returned no operation id")
        logger.info("バルクエクスポート投入: %s (%s)", operation["id"], operation.get("status"))
        return operation["id"]

    def poll_bulk_export(self, export_id: str) -> BulkOperation:
        data = self.graphql(BULK_STATUS_QUERY, {"id": export_id})
        node = data.get("node")
        if not node:
            raise BulkExportError(f"bulk operation {export_id} not found")
        return BulkOperation(
            id=node["id"],
            status=node["status"],
            url=node.get("url"),
            error_code=node.get("errorCode"),
            object_count=int(node.get("objectCount") or 0),
        )

    def fetch_bulk_result(self, url: str) -> Iterator[str]:
        """バルク結果 (JSONL) を 1 行ずつストリーミングで返す.

        署名付き URL のため、アクセストークン付きのセッションは使わない。
        """
        try:
            with requests.get(url, stream=True, timeout=REQUEST_TIMEOUT) as resp:
                resp.raise_for_status()
                for line in resp.iter_lines(decode_unicode=True):
                    if line:
                        yield line
        except requests.RequestException as e:
            raise CatalogError(f"bulk result download failed: {e}") from e


def parse_product_node(node: dict) -> CatalogProduct:
    return CatalogProduct(
        id=node["id"],
        title=node.get("title") or "",
        handle=node.get("handle") or "",
        featured_image_url=_deep_get(node, "featuredImage", "url"),
    )


def parse_variant_node(node: dict, product: CatalogProduct) -> CatalogVariant:
    return CatalogVariant(
        id=node["id"],
        title=node.get("title"),
        sku=node.get("sku"),
        price=_price_text(node.get("price")),
        image_url=_deep_get(node, "image", "url"),
        mpn=_deep_get(node, "metafield", "value"),
        product=product,
    )


def _price_text(value) -> str | None:
    # API バージョンによって Money スカラー（文字列）か MoneyV2 オブジェクト
    if isinstance(value, dict):
        return value.get("amount")
    return None if value is None else str(value)


def _deep_get(d: dict, *keys: str):
    """ネストされた dict から安全に値を取得する."""
    for key in keys:
        if not isinstance(d, dict):
            return None
        d = d.get(key)
    return d
