"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from mpn_index.normalizer import normalize_mpn

# --- 同期ジョブのステータス ---
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# --- Webhook 通知の種別 ---
KIND_UPDATE = "update"
KIND_DELETE = "delete"


def utc_now() -> str:
    """現在時刻を ISO 8601 (UTC) で返す."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CatalogProduct:
    """Shopify 上の商品（バリアントの親）."""

    id: str  # gid://shopify/Product/...
    title: str
    handle: str
    featured_image_url: str | None = None


@dataclass
class CatalogVariant:
    """Shopify から取得したバリアント 1 件."""

    id: str  # gid://shopify/ProductVariant/...
    title: str | None
    sku: str | None
    price: str | None
    image_url: str | None
    mpn: str | None  # メタフィールドの生の値
    product: CatalogProduct


@dataclass
class VariantPage:
    """一覧取得 1 ページ分."""

    variants: list[CatalogVariant]
    has_next_page: bool
    end_cursor: str | None


@dataclass
class BulkOperation:
    """バルクエクスポートの状態."""

    id: str
    status: str  # CREATED / RUNNING / COMPLETED / FAILED / CANCELING / CANCELED / EXPIRED
    url: str | None = None
    error_code: str | None = None
    object_count: int = 0


@dataclass
class IndexedRecord:
    """検索インデックスの 1 レコード（バリアント 1 件）."""

    variant_id: str
    product_id: str
    product_handle: str
    product_title: str
    variant_title: str | None
    image_url: str | None
    mpn: str
    sku: str | None
    price: str | None
    updated_at: str | None = None

    @property
    def mpn_normalized(self) -> str | None:
        # 保存値ではなく常に mpn から再計算する
        return normalize_mpn(self.mpn)

    @classmethod
    def from_variant(cls, variant: CatalogVariant) -> IndexedRecord:
        """全同期・バルク同期・Webhook 共通の変換."""
        product = variant.product
        return cls(
            variant_id=variant.id,
            product_id=product.id,
            product_handle=product.handle,
            product_title=product.title,
            variant_title=variant.title,
            image_url=variant.image_url or product.featured_image_url,
            mpn=variant.mpn or "",
            sku=variant.sku,
            price=variant.price,
        )

    def to_row(self) -> dict:
        """DB 書き込み用の dict."""
        return {
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "product_handle": self.product_handle,
            "product_title": self.product_title,
            "variant_title": self.variant_title,
            "image_url": self.image_url,
            "mpn": self.mpn,
            "mpn_normalized": self.mpn_normalized,
            "sku": self.sku,
            "price": self.price,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> IndexedRecord:
        return cls(
            variant_id=row["variant_id"],
            product_id=row["product_id"],
            product_handle=row.get("product_handle") or "",
            product_title=row.get("product_title") or "",
            variant_title=row.get("variant_title"),
            image_url=row.get("image_url"),
            mpn=row.get("mpn") or "",
            sku=row.get("sku"),
            price=row.get("price"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class SyncJob:
    """同期ジョブ 1 回分の記録."""

    id: int
    sync_type: str  # "full"
    status: str  # running / completed / failed
    processed_variants: int = 0
    indexed_variants: int = 0
    error_message: str | None = None  # failed のときのみ
    started_at: str | None = None  # ISO 8601
    completed_at: str | None = None  # running の間は None

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    @classmethod
    def from_row(cls, row: dict) -> SyncJob:
        return cls(
            id=int(row["id"]),
            sync_type=row["sync_type"],
            status=row["status"],
            processed_variants=row.get("processed_variants") or 0,
            indexed_variants=row.get("indexed_variants") or 0,
            error_message=row.get("error_message"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
        )


@dataclass
class IndexStats:
    """インデックスの集計値."""

    total_variants: int = 0
    total_products: int = 0
    variants_with_mpn: int = 0
    last_updated: str | None = None


@dataclass
class SearchMatch:
    """検索結果 1 件（ストアフロント向けの形）."""

    variant_id: str
    product_handle: str
    product_title: str
    variant_title: str | None
    mpn: str
    sku: str | None
    image_url: str | None
    price: str | None

    @classmethod
    def from_record(cls, record: IndexedRecord) -> SearchMatch:
        return cls(
            variant_id=record.variant_id,
            product_handle=record.product_handle,
            product_title=record.product_title,
            variant_title=record.variant_title,
            mpn=record.mpn,
            sku=record.sku,
            image_url=record.image_url,
            price=record.price,
        )

    def to_dict(self) -> dict:
        """ストアフロントのテーマが期待する JSON 形式."""
        return {
            "productHandle": self.product_handle,
            "variantId": self.variant_id,
            "productTitle": self.product_title,
            "variantTitle": self.variant_title,
            "mpn": self.mpn,
            "sku": self.sku,
            "image": self.image_url,
            "price": self.price,
        }


@dataclass
class ChangeNotification:
    """商品の変更通知（Webhook）."""

    product_id: str  # gid 形式
    kind: str  # "update" or "delete"


@dataclass
class IngestResult:
    """変更通知 1 件の処理結果."""

    product_id: str
    kind: str
    updated: int = 0
    removed: int = 0
    failed: int = 0
    failed_variant_ids: list[str] = field(default_factory=list)


class IndexStore(Protocol):
    """MPN インデックスの保存先."""

    def upsert(self, record: IndexedRecord) -> None: ...

    def delete(self, variant_id: str) -> int: ...

    def delete_by_product(self, product_id: str) -> int: ...

    def variant_ids_for_product(self, product_id: str) -> set[str]: ...

    def clear(self) -> int: ...

    def lookup(self, query: str, limit: int) -> list[IndexedRecord]: ...

    def stats(self) -> IndexStats: ...


class JobTracker(Protocol):
    """同期ジョブの記録先."""

    def create(self, sync_type: str) -> int: ...

    def update_progress(self, job_id: int, processed: int, indexed: int) -> None: ...

    def complete(
        self, job_id: int, status: str, indexed: int, error_message: str | None = None
    ) -> None: ...

    def get(self, job_id: int) -> SyncJob | None: ...

    def history(self, sync_type: str, limit: int = 10) -> list[SyncJob]: ...

    def running(self, sync_type: str) -> list[SyncJob]: ...

    def fail_stale(self, max_age_seconds: int) -> list[int]: ...
