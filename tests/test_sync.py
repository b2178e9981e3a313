"""sync モジュール（SyncOrchestrator）のテスト."""

import pytest
from tests.helpers import FakeCatalog, make_record, make_variant

from mpn_index.errors import BulkExportError, BulkExportTimeout, CatalogError
from mpn_index.models import STATUS_COMPLETED, STATUS_FAILED, BulkOperation
from mpn_index.sync import STRATEGY_BULK, SyncOrchestrator


def _pages(count, per_page=2):
    """各ページ: MPN あり per_page 件 + MPN なし 1 件."""
    pages = []
    for p in range(count):
        page = [
            make_variant(f"gid://shopify/ProductVariant/{p}{i}", f"gid://shopify/Product/{p}",
                         mpn=f"MPN-{p}{i}")
            for i in range(per_page)
        ]
        page.append(make_variant(f"gid://shopify/ProductVariant/{p}9", mpn=None))
        pages.append(page)
    return pages


def _orchestrator(catalog, store, tracker, **kwargs):
    sleeps = []
    orchestrator = SyncOrchestrator(
        catalog, store, tracker,
        page_interval=kwargs.pop("page_interval", 0.1),
        poll_interval=kwargs.pop("poll_interval", 5),
        max_poll_attempts=kwargs.pop("max_poll_attempts", 3),
        progress_every=kwargs.pop("progress_every", 250),
        sleep=sleeps.append,
    )
    return orchestrator, sleeps


class TestPaginatedSync:
    """ページ取得による全件同期のテスト."""

    def test_indexes_all_pages(self, store, tracker):
        catalog = FakeCatalog(pages=_pages(3))
        orchestrator, sleeps = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        assert orchestrator.run(job_id) == 6

        job = tracker.get(job_id)
        assert job.status == STATUS_COMPLETED
        assert job.processed_variants == 9
        assert job.indexed_variants == 6
        assert job.completed_at is not None
        assert store.stats().total_variants == 6
        assert catalog.cursors == [None, "1", "2"]
        # 最終ページの後は待機しない
        assert sleeps == [0.1, 0.1]

    def test_skipped_variants_not_indexed(self, store, tracker):
        catalog = FakeCatalog(pages=_pages(1))
        orchestrator, _ = _orchestrator(catalog, store, tracker)

        orchestrator.run(tracker.create("full"))
        assert store.stats().total_variants == 2
        assert store.variant_ids_for_product("gid://shopify/Product/1") == set()

    def test_clears_stale_entries(self, store, tracker):
        store.upsert(make_record("gid://shopify/ProductVariant/gone", mpn="OLD-1"))
        catalog = FakeCatalog(pages=_pages(1))
        orchestrator, _ = _orchestrator(catalog, store, tracker)

        orchestrator.run(tracker.create("full"))
        assert store.lookup("OLD1", 10) == []

    def test_failure_on_page_3_of_5(self, store, tracker):
        """3 ページ目で失敗したら 2 ページ目までの件数で failed になること."""
        catalog = FakeCatalog(pages=_pages(5), fail_on_page=3)
        orchestrator, _ = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        with pytest.raises(CatalogError):
            orchestrator.run(job_id)

        job = tracker.get(job_id)
        assert job.status == STATUS_FAILED
        assert job.indexed_variants == 4
        assert job.processed_variants == 6
        assert "page 3" in job.error_message
        assert job.completed_at is not None

    def test_upsert_failure_mid_page_keeps_count(self, store, tracker):
        """ページ途中の upsert 失敗でも、それまでに索引した件数が残ること."""
        original = store.upsert

        def flaky_upsert(record):
            if record.variant_id == "gid://shopify/ProductVariant/11":
                raise RuntimeError("connection reset")
            original(record)

        store.upsert = flaky_upsert
        catalog = FakeCatalog(pages=_pages(3))
        orchestrator, _ = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        with pytest.raises(RuntimeError):
            orchestrator.run(job_id)

        job = tracker.get(job_id)
        assert job.status == STATUS_FAILED
        assert job.indexed_variants == 3
        assert job.error_message == "connection reset"
        assert store.stats().total_variants == 3

    def test_no_pause_when_disabled(self, store, tracker):
        catalog = FakeCatalog(pages=_pages(3))
        orchestrator, sleeps = _orchestrator(catalog, store, tracker, page_interval=0)

        orchestrator.run(tracker.create("full"))
        assert sleeps == []

    def test_empty_catalog(self, store, tracker):
        orchestrator, _ = _orchestrator(FakeCatalog(), store, tracker)
        job_id = tracker.create("full")

        assert orchestrator.run(job_id) == 0
        assert tracker.get(job_id).status == STATUS_COMPLETED

    def test_unknown_strategy(self, store, tracker):
        orchestrator, _ = _orchestrator(FakeCatalog(), store, tracker)
        with pytest.raises(ValueError):
            orchestrator.run(tracker.create("full"), "streaming")


_EXPORT_URL = "https://storage.example/bulk.jsonl"


class TestBulkSync:
    """バルクエクスポートによる全件同期のテスト."""

    def test_success(self, store, tracker, bulk_lines):
        catalog = FakeCatalog(
            bulk_statuses=[
                BulkOperation("op", "CREATED"),
                BulkOperation("op", "RUNNING"),
                BulkOperation("op", "COMPLETED", url=_EXPORT_URL, object_count=9),
            ],
            bulk_lines=bulk_lines,
        )
        orchestrator, sleeps = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        assert orchestrator.run(job_id, STRATEGY_BULK) == 3

        job = tracker.get(job_id)
        assert job.status == STATUS_COMPLETED
        assert job.indexed_variants == 3
        assert job.processed_variants == 6
        assert catalog.polls == 3
        assert sleeps == [5, 5]
        assert catalog.downloaded == [_EXPORT_URL]

    def test_orphan_skipped(self, store, tracker, bulk_lines):
        catalog = FakeCatalog(
            bulk_statuses=[BulkOperation("op", "COMPLETED", url=_EXPORT_URL)],
            bulk_lines=bulk_lines,
        )
        orchestrator, _ = _orchestrator(catalog, store, tracker)

        orchestrator.run(tracker.create("full"), STRATEGY_BULK)
        assert store.lookup("ORPHAN-1", 10) == []
        assert len(store.lookup("T567L9900P", 10)) == 1
        # 前方一致ではヒットしない
        assert [r.variant_id for r in store.lookup("T567L", 10)] == [
            "gid://shopify/ProductVariant/31"
        ]

    def test_completed_without_url(self, store, tracker):
        store.upsert(make_record("old", mpn="OLD-1"))
        catalog = FakeCatalog(bulk_statuses=[BulkOperation("op", "COMPLETED")])
        orchestrator, _ = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        assert orchestrator.run(job_id, STRATEGY_BULK) == 0
        assert catalog.downloaded == []
        assert store.stats().total_variants == 0

    @pytest.mark.parametrize("status, message", [
        ("FAILED", "failed: ACCESS_DENIED"),
        ("CANCELED", "canceled"),
        ("EXPIRED", "expired"),
    ])
    def test_terminal_failures(self, store, tracker, status, message):
        store.upsert(make_record("keep", mpn="KEEP-1"))
        catalog = FakeCatalog(
            bulk_statuses=[BulkOperation("op", status, error_code="ACCESS_DENIED")]
        )
        orchestrator, _ = _orchestrator(catalog, store, tracker)
        job_id = tracker.create("full")

        with pytest.raises(BulkExportError, match=message):
            orchestrator.run(job_id, STRATEGY_BULK)

        job = tracker.get(job_id)
        assert job.status == STATUS_FAILED
        assert message in job.error_message
        # 結果を取得できなかったのでインデックスはそのまま
        assert len(store.lookup("KEEP1", 10)) == 1

    def test_timeout(self, store, tracker):
        catalog = FakeCatalog(bulk_statuses=[BulkOperation("op", "RUNNING")])
        orchestrator, sleeps = _orchestrator(catalog, store, tracker, max_poll_attempts=4)
        job_id = tracker.create("full")

        with pytest.raises(BulkExportTimeout):
            orchestrator.run(job_id, STRATEGY_BULK)

        assert catalog.polls == 4
        assert len(sleeps) == 3
        assert tracker.get(job_id).status == STATUS_FAILED

    def test_progress_batches(self, store, tracker, bulk_lines):
        catalog = FakeCatalog(
            bulk_statuses=[BulkOperation("op", "COMPLETED", url=_EXPORT_URL)],
            bulk_lines=bulk_lines,
        )
        orchestrator, _ = _orchestrator(catalog, store, tracker, progress_every=2)
        calls = []
        original = tracker.update_progress
        tracker.update_progress = lambda *a: (calls.append(a), original(*a))
        job_id = tracker.create("full")

        orchestrator.run(job_id, STRATEGY_BULK)
        assert calls == [(job_id, 6, 2), (job_id, 6, 3)]
