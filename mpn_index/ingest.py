"""商品 Webhook（products/update, products/delete）の取り込みモジュール.

通知本文の内容は信用せず、更新時は必ずカタログから最新状態を取り直す。
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from mpn_index.catalog import CatalogPort
from mpn_index.config import (
    MPN_METAFIELD_KEY,
    MPN_METAFIELD_NAMESPACE,
    SHOPIFY_API_SECRET,
)
from mpn_index.models import (
    KIND_DELETE,
    KIND_UPDATE,
    ChangeNotification,
    IndexedRecord,
    IndexStore,
    IngestResult,
)

logger = logging.getLogger(__name__)

_PRODUCT_GID_PREFIX = "gid://shopify/Product/"

# Webhook トピック -> 通知種別
TOPIC_KINDS = {
    "products/create": KIND_UPDATE,
    "products/update": KIND_UPDATE,
    "products/delete": KIND_DELETE,
}


def product_gid(raw_id) -> str:
    """Webhook の数値 ID を GraphQL の gid に変換する. gid はそのまま返す."""
    text = str(raw_id).strip()
    if text.startswith("gid://"):
        return text
    if not text.isdigit():
        raise ValueError(f"invalid product id: {raw_id!r}")
    return f"{_PRODUCT_GID_PREFIX}{text}"


def verify_webhook(
    raw_body: bytes, hmac_header: str | None, secret: str | None = None
) -> bool:
    """X-Shopify-Hmac-Sha256 ヘッダを検証する.

    本文の生バイト列に対する HMAC-SHA256 (base64) と定数時間で比較する。
    secret を省略した場合は SHOPIFY_API_SECRET を使う。
    """
    if secret is None:
        secret = SHOPIFY_API_SECRET
    if not hmac_header or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, hmac_header.strip())


def notification_from_webhook(topic: str, payload: dict) -> ChangeNotification:
    """Webhook のトピックと本文から通知を組み立てる.

    Raises:
        ValueError: 未対応のトピック、または id が無い
    """
    kind = TOPIC_KINDS.get(topic)
    if kind is None:
        raise ValueError(f"unsupported webhook topic: {topic}")
    if payload.get("id") is None:
        raise ValueError("webhook payload has no id")
    return ChangeNotification(product_id=product_gid(payload["id"]), kind=kind)


class ChangeIngestor:
    """変更通知 1 件をインデックスに反映する."""

    def __init__(
        self,
        catalog: CatalogPort,
        store: IndexStore,
        namespace: str = MPN_METAFIELD_NAMESPACE,
        key: str = MPN_METAFIELD_KEY,
    ):
        self.catalog = catalog
        self.store = store
        self.namespace = namespace
        self.key = key

    def apply(self, notification: ChangeNotification) -> IngestResult:
        if notification.kind == KIND_DELETE:
            return self._apply_delete(notification)
        if notification.kind == KIND_UPDATE:
            return self._apply_update(notification)
        raise ValueError(f"unknown notification kind: {notification.kind}")

    def _apply_delete(self, notification: ChangeNotification) -> IngestResult:
        # 何度届いても結果は同じ
        removed = self.store.delete_by_product(notification.product_id)
        logger.info("商品削除: %s -> %d 件削除", notification.product_id, removed)
        return IngestResult(notification.product_id, notification.kind, removed=removed)

    def _apply_update(self, notification: ChangeNotification) -> IngestResult:
        product_id = notification.product_id
        result = IngestResult(product_id, notification.kind)

        # 取得失敗は通知全体の失敗（呼び出し側でログに残す）
        variants = self.catalog.fetch_product_variants(product_id, self.namespace, self.key)
        fetched_ids = set()

        for variant in variants:
            fetched_ids.add(variant.id)
            try:
                record = IndexedRecord.from_variant(variant)
                if record.mpn_normalized is not None:
                    self.store.upsert(record)
                    result.updated += 1
                else:
                    # MPN が消されたバリアントは削除する
                    result.removed += self.store.delete(variant.id)
            except Exception:
                logger.exception("バリアント反映失敗: %s (product=%s)", variant.id, product_id)
                result.failed += 1
                result.failed_variant_ids.append(variant.id)

        # Shopify 側で削除されたバリアント
        try:
            stale = self.store.variant_ids_for_product(product_id) - fetched_ids
        except Exception:
            logger.exception("既存バリアントの取得失敗: product=%s", product_id)
            stale = set()
        for variant_id in sorted(stale):
            try:
                result.removed += self.store.delete(variant_id)
            except Exception:
                logger.exception("バリアント削除失敗: %s (product=%s)", variant_id, product_id)
                result.failed += 1
                result.failed_variant_ids.append(variant_id)

        logger.info(
            "商品更新: %s -> 更新 %d, 削除 %d, 失敗 %d",
            product_id, result.updated, result.removed, result.failed,
        )
        return result
