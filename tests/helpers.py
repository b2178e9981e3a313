"""テスト共通のフェイクと組み立て用ヘルパー."""

from __future__ import annotations

from pathlib import Path

from mpn_index.errors import CatalogError
from mpn_index.models import (
    BulkOperation,
    CatalogProduct,
    CatalogVariant,
    IndexedRecord,
    VariantPage,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def make_variant(
    variant_id: str,
    product_id: str = "gid://shopify/Product/1",
    mpn: str | None = "7665-PP",
    image_url: str | None = None,
) -> CatalogVariant:
    product = CatalogProduct(
        id=product_id,
        title=f"Product {product_id.rsplit('/', 1)[-1]}",
        handle=f"product-{product_id.rsplit('/', 1)[-1]}",
        featured_image_url="https://cdn.shopify.com/featured.jpg",
    )
    return CatalogVariant(
        id=variant_id,
        title="Default Title",
        sku=f"SKU-{variant_id.rsplit('/', 1)[-1]}",
        price="9.99",
        image_url=image_url,
        mpn=mpn,
        product=product,
    )


def make_record(variant_id: str, mpn: str = "7665-PP", product_id: str = "gid://shopify/Product/1"):
    return IndexedRecord.from_variant(make_variant(variant_id, product_id, mpn))


class FakeCatalog:
    """CatalogPort のテスト用実装."""

    def __init__(
        self,
        pages: list[list[CatalogVariant]] | None = None,
        products: dict[str, list[CatalogVariant]] | None = None,
        bulk_statuses: list[BulkOperation] | None = None,
        bulk_lines: list[str] | None = None,
        fail_on_page: int | None = None,
    ):
        self.pages = pages or []
        self.products = products or {}
        self.bulk_statuses = list(bulk_statuses or [])
        self.bulk_lines = bulk_lines or []
        self.fail_on_page = fail_on_page
        self.cursors: list[str | None] = []
        self.fetched_products: list[str] = []
        self.polls = 0
        self.downloaded: list[str] = []

    def list_variants(self, namespace, key, cursor):
        self.cursors.append(cursor)
        index = int(cursor or 0)
        if self.fail_on_page == index + 1:
            raise CatalogError(f"GraphQL HTTP 502 on page {index + 1}")
        has_next = index + 1 < len(self.pages)
        variants = self.pages[index] if self.pages else []
        return VariantPage(variants, has_next, str(index + 1) if has_next else None)

    def fetch_product_variants(self, product_id, namespace, key):
        self.fetched_products.append(product_id)
        return list(self.products.get(product_id, []))

    def submit_bulk_export(self, namespace, key):
        return "gid://shopify/BulkOperation/1"

    def poll_bulk_export(self, export_id):
        self.polls += 1
        if len(self.bulk_statuses) > 1:
            return self.bulk_statuses.pop(0)
        return self.bulk_statuses[0]

    def fetch_bulk_result(self, url):
        self.downloaded.append(url)
        return iter(self.bulk_lines)

