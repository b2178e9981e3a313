"""検索・同期・Webhook の操作窓口.

HTTP ルーティングなどの外側の層はこのクラスのメソッドを呼ぶだけにする。
全件同期と Webhook 取り込みはスレッドプールで実行し、呼び出し元には
ジョブ ID（または受領の可否）をすぐに返す。結果はジョブ記録とログで確認する。
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from mpn_index.catalog import CatalogPort, ShopifyCatalog
from mpn_index.config import (
    DEFAULT_SEARCH_LIMIT,
    SHOPIFY_ACCESS_TOKEN,
    SHOPIFY_SHOP,
    STALE_JOB_SECONDS,
    SYNC_TYPE_FULL,
    WORKER_THREADS,
)
from mpn_index.errors import SyncAlreadyRunningError
from mpn_index.ingest import ChangeIngestor
from mpn_index.models import (
    STATUS_FAILED,
    ChangeNotification,
    IndexStats,
    IndexStore,
    JobTracker,
    SearchMatch,
    SyncJob,
)
from mpn_index.search import LookupService
from mpn_index.sync import STRATEGIES, STRATEGY_PAGINATED, SyncOrchestrator

logger = logging.getLogger(__name__)


class IndexService:
    def __init__(
        self,
        store: IndexStore,
        tracker: JobTracker,
        catalog: CatalogPort | None = None,
        orchestrator: SyncOrchestrator | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.store = store
        self.tracker = tracker
        self.lookup = LookupService(store)
        # カタログ未設定なら同期と Webhook は無効
        self.orchestrator = orchestrator
        self.ingestor = None
        if catalog is not None:
            self.orchestrator = orchestrator or SyncOrchestrator(catalog, store, tracker)
            self.ingestor = ChangeIngestor(catalog, store)
        self.executor = executor or ThreadPoolExecutor(
            max_workers=WORKER_THREADS, thread_name_prefix="mpn-index"
        )
        self._sync_lock = threading.Lock()

    # --- 検索 ---
    def search(self, query: str | None, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchMatch]:
        return self.lookup.search(query, limit)

    def stats(self) -> IndexStats:
        return self.store.stats()

    # --- 同期 ---
    def start_full_sync(
        self, sync_type: str = SYNC_TYPE_FULL, strategy: str = STRATEGY_PAGINATED
    ) -> int:
        """全件同期をバックグラウンドで開始し、ジョブ ID を返す.

        Raises:
            SyncAlreadyRunningError: 同じ種別のジョブが実行中
        """
        job_id = self._create_job(sync_type, strategy)
        try:
            future = self.executor.submit(self.orchestrator.run, job_id, strategy)
        except Exception as e:
            # 実行されないジョブを running のまま残さない
            self.tracker.complete(job_id, STATUS_FAILED, 0, str(e) or type(e).__name__)
            raise
        future.add_done_callback(lambda f: self._log_sync_outcome(job_id, f))
        logger.info("全件同期ジョブ #%d を開始 (%s, %s)", job_id, sync_type, strategy)
        return job_id

    def run_full_sync(
        self, sync_type: str = SYNC_TYPE_FULL, strategy: str = STRATEGY_PAGINATED
    ) -> SyncJob:
        """全件同期を呼び出し元のスレッドで実行する（CLI 用）. 失敗時は例外を送出."""
        job_id = self._create_job(sync_type, strategy)
        self.orchestrator.run(job_id, strategy)
        return self.tracker.get(job_id)

    def _create_job(self, sync_type: str, strategy: str) -> int:
        if self.orchestrator is None:
            raise RuntimeError("Shopify が未設定のため同期できません")
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown sync strategy: {strategy}")
        # 実行中チェックと作成を同じロック内で行う
        with self._sync_lock:
            running = self.tracker.running(sync_type)
            if running:
                raise SyncAlreadyRunningError(sync_type, running[0].id)
            return self.tracker.create(sync_type)

    def _log_sync_outcome(self, job_id: int, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error("全件同期ジョブ #%d 失敗: %s", job_id, error)
        else:
            logger.info("全件同期ジョブ #%d 終了: %d 件索引", job_id, future.result())

    def get_job_status(self, job_id) -> SyncJob | None:
        try:
            return self.tracker.get(int(job_id))
        except (TypeError, ValueError):
            return None

    def get_history(self, sync_type: str = SYNC_TYPE_FULL, limit: int = 20) -> list[SyncJob]:
        return self.tracker.history(sync_type, limit)

    def clear_index(self) -> int:
        removed = self.store.clear()
        logger.info("インデックスを削除: %d 件", removed)
        return removed

    def sweep_stale_jobs(self, max_age_seconds: int = STALE_JOB_SECONDS) -> list[int]:
        """プロセス停止で running のまま残ったジョブを failed にする."""
        job_ids = self.tracker.fail_stale(max_age_seconds)
        if job_ids:
            logger.warning("放置された running ジョブを failed に変更: %s", job_ids)
        return job_ids

    # --- Webhook ---
    def receive_notification(self, notification: ChangeNotification, verified: bool) -> bool:
        """変更通知を受け付ける.

        検証に失敗した通知は何もせず False を返す。受け付けた通知は
        バックグラウンドで反映し、ここでは結果を待たずに True を返す。
        反映の失敗はログにのみ残り、再試行はしない。
        """
        if not verified:
            logger.warning("Webhook 検証失敗のため破棄: %s", notification.product_id)
            return False
        if self.ingestor is None:
            logger.error("Shopify が未設定のため Webhook を処理できません: %s",
                         notification.product_id)
            return True

        future = self.executor.submit(self.ingestor.apply, notification)
        future.add_done_callback(lambda f: self._log_ingest_outcome(notification, f))
        return True

    def _log_ingest_outcome(self, notification: ChangeNotification, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(
                "Webhook 処理失敗: %s %s: %s", notification.kind, notification.product_id, error,
                exc_info=error,
            )

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


def build_service(in_memory: bool = False) -> IndexService:
    """環境変数の設定からサービスを組み立てる."""
    if in_memory:
        from mpn_index.memory import InMemoryIndexStore, InMemoryJobTracker

        store, tracker = InMemoryIndexStore(), InMemoryJobTracker()
    else:
        from mpn_index.db import SupabaseIndexStore, SupabaseJobTracker

        store, tracker = SupabaseIndexStore(), SupabaseJobTracker()

    catalog = None
    if SHOPIFY_SHOP and SHOPIFY_ACCESS_TOKEN:
        catalog = ShopifyCatalog()
        logger.info("Shopify カタログ: %s", SHOPIFY_SHOP)
    else:
        logger.warning("Shopify の認証情報が未設定のため同期は無効です")

    return IndexService(store, tracker, catalog)
