"""全件同期モジュール.

2 つの方式をサポートする:
  paginated: productVariants をカーソルでページ送りしながら取得
  bulk:      バルクエクスポートを投入し、完了までポーリングして JSONL を取得

どちらも「インデックスを空にして作り直す」全件同期で、差分マージはしない。
削除・非公開になったバリアントを確実に消すため。
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from mpn_index.bulk import parse_bulk_lines
from mpn_index.catalog import CatalogPort
from mpn_index.config import (
    BULK_POLL_INTERVAL,
    BULK_POLL_MAX_ATTEMPTS,
    BULK_PROGRESS_EVERY,
    MPN_METAFIELD_KEY,
    MPN_METAFIELD_NAMESPACE,
    PAGE_INTERVAL,
)
from mpn_index.errors import BulkExportError, BulkExportTimeout
from mpn_index.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BulkOperation,
    IndexedRecord,
    IndexStore,
    JobTracker,
)

logger = logging.getLogger(__name__)

STRATEGY_PAGINATED = "paginated"
STRATEGY_BULK = "bulk"
STRATEGIES = (STRATEGY_PAGINATED, STRATEGY_BULK)

BULK_COMPLETED = "COMPLETED"
BULK_FAILED = "FAILED"
BULK_CANCELED = ("CANCELED", "CANCELING")
BULK_EXPIRED = "EXPIRED"


class SyncOrchestrator:
    """カタログからインデックスを作り直し、経過をジョブに記録する."""

    def __init__(
        self,
        catalog: CatalogPort,
        store: IndexStore,
        tracker: JobTracker,
        namespace: str = MPN_METAFIELD_NAMESPACE,
        key: str = MPN_METAFIELD_KEY,
        page_interval: float = PAGE_INTERVAL,
        poll_interval: float = BULK_POLL_INTERVAL,
        max_poll_attempts: int = BULK_POLL_MAX_ATTEMPTS,
        progress_every: int = BULK_PROGRESS_EVERY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.catalog = catalog
        self.store = store
        self.tracker = tracker
        self.namespace = namespace
        self.key = key
        self.page_interval = page_interval
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.progress_every = progress_every
        self._sleep = sleep

    def run(self, job_id: int, strategy: str = STRATEGY_PAGINATED) -> int:
        """作成済みジョブ job_id で全件同期を実行し、索引件数を返す.

        失敗時はジョブを failed にしたうえで例外をそのまま送出する。
        """
        if strategy == STRATEGY_PAGINATED:
            return self.run_paginated(job_id)
        if strategy == STRATEGY_BULK:
            return self.run_bulk(job_id)
        raise ValueError(f"unknown sync strategy: {strategy}")

    # ------------------------------------------------------------------
    def run_paginated(self, job_id: int) -> int:
        processed = 0
        indexed = 0
        logger.info("ジョブ #%d: ページ取得による全件同期 開始", job_id)
        try:
            self.store.clear()
            cursor = None
            page_count = 0
            while True:
                page_count += 1
                page = self.catalog.list_variants(self.namespace, self.key, cursor)
                page_indexed = 0
                page_skipped = 0
                for variant in page.variants:
                    processed += 1
                    record = IndexedRecord.from_variant(variant)
                    if record.mpn_normalized is None:
                        page_skipped += 1
                        continue
                    self.store.upsert(record)
                    # 途中で失敗しても成功済みの件数を残す
                    indexed += 1
                    page_indexed += 1

                self.tracker.update_progress(job_id, processed, indexed)
                logger.info(
                    "ジョブ #%d: ページ %d - %d 件 (索引 %d, スキップ %d)",
                    job_id, page_count, len(page.variants), page_indexed, page_skipped,
                )

                if not page.has_next_page:
                    break
                cursor = page.end_cursor
                if self.page_interval > 0:
                    self._sleep(self.page_interval)
        except Exception as e:
            self._fail(job_id, indexed, e)
            raise

        self.tracker.complete(job_id, STATUS_COMPLETED, indexed)
        logger.info("ジョブ #%d: 全件同期 完了 - %d 件索引", job_id, indexed)
        return indexed

    # ------------------------------------------------------------------
    def run_bulk(self, job_id: int) -> int:
        processed = 0
        indexed = 0
        logger.info("ジョブ #%d: バルクエクスポートによる全件同期 開始", job_id)
        try:
            export_id = self.catalog.submit_bulk_export(self.namespace, self.key)
            operation = self.wait_for_bulk_export(export_id)

            # url が無いのは結果 0 件のとき
            lines = self.catalog.fetch_bulk_result(operation.url) if operation.url else []
            parsed = parse_bulk_lines(lines)
            logger.info(
                "ジョブ #%d: 商品 %d 件, バリアント %d 件 (孤児 %d, MPN なし %d, 不正行 %d)",
                job_id, parsed.products, parsed.variants_seen,
                parsed.orphans, parsed.without_mpn, parsed.malformed,
            )

            # 結果を取得できてから空にする
            self.store.clear()
            processed = parsed.variants_seen
            for variant in parsed.variants:
                self.store.upsert(IndexedRecord.from_variant(variant))
                indexed += 1
                if indexed % self.progress_every == 0:
                    self.tracker.update_progress(job_id, processed, indexed)
            self.tracker.update_progress(job_id, processed, indexed)
        except Exception as e:
            self._fail(job_id, indexed, e)
            raise

        self.tracker.complete(job_id, STATUS_COMPLETED, indexed)
        logger.info("ジョブ #%d: バルク同期 完了 - %d 件索引", job_id, indexed)
        return indexed

    def wait_for_bulk_export(self, export_id: str) -> BulkOperation:
        """COMPLETED になるまでポーリングする.

        Raises:
            BulkExportError: FAILED / CANCELED / EXPIRED
            BulkExportTimeout: max_poll_attempts 回で完了しなかった
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            operation = self.catalog.poll_bulk_export(export_id)
            status = operation.status

            if status == BULK_COMPLETED:
                logger.info("バルクエクスポート完了: %s (%d objects)", export_id, operation.object_count)
                return operation
            if status == BULK_FAILED:
                raise BulkExportError(
                    f"bulk export {export_id} failed: {operation.error_code or 'unknown error'}"
                )
            if status in BULK_CANCELED:
                raise BulkExportError(f"bulk export {export_id} was canceled")
            if status == BULK_EXPIRED:
                raise BulkExportError(f"bulk export {export_id} expired before download")

            logger.info("バルクエクスポート待機中: %s status=%s (%d/%d)",
                        export_id, status, attempt, self.max_poll_attempts)
            if attempt < self.max_poll_attempts:
                self._sleep(self.poll_interval)

        raise BulkExportTimeout(
            f"bulk export {export_id} not finished after {self.max_poll_attempts} polls"
        )

    def _fail(self, job_id: int, indexed: int, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error("ジョブ #%d: 同期失敗 (%d 件索引済み): %s", job_id, indexed, message)
        try:
            self.tracker.complete(job_id, STATUS_FAILED, indexed, message)
        except Exception:
            # 元の例外を優先して送出する
            logger.exception("ジョブ #%d: failed への更新に失敗", job_id)
