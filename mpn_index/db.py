"""Supabase データベース操作モジュール.

全テーブルは SUPABASE_SCHEMA（既定: mpn_index）スキーマに配置。
Supabase client のスキーマ指定は .schema() で行う。
テーブル定義は sql/schema.sql を参照。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from supabase import Client, create_client

from mpn_index.config import (
    SEARCH_MIN_LENGTH,
    SUPABASE_SCHEMA,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)
from mpn_index.errors import JobStateError, MissingKeyError
from mpn_index.models import (
    STATUS_FAILED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    IndexedRecord,
    IndexStats,
    SyncJob,
    utc_now,
)
from mpn_index.normalizer import is_searchable, normalize_mpn

logger = logging.getLogger(__name__)

LOOKUP_TABLE = "variant_lookups"
JOB_TABLE = "sync_status"
_STATS_PAGE = 1000

_client: Client | None = None


def get_client() -> Client:
    """Supabase クライアントを初回呼び出し時に生成して返す."""
    global _client
    if _client is None:
        if not (SUPABASE_URL and SUPABASE_SECRET_KEY):
            raise RuntimeError("SUPABASE_URL / SUPABASE_SECRET_KEY が未設定です")
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


class _SupabaseTables:
    def __init__(self, client: Client | None = None, schema: str = SUPABASE_SCHEMA):
        self._client = client
        self._schema = schema

    def _table(self, name: str):
        """専用スキーマのテーブルを参照する."""
        client = self._client or get_client()
        return client.schema(self._schema).table(name)


class SupabaseIndexStore(_SupabaseTables):
    """variant_lookups テーブルによる MPN インデックス."""

    def upsert(self, record: IndexedRecord) -> None:
        if record.mpn_normalized is None:
            raise MissingKeyError(f"variant {record.variant_id} has no MPN")
        row = record.to_row()
        row["updated_at"] = utc_now()
        # 既存行は全項目を置き換える（部分マージしない）
        self._table(LOOKUP_TABLE).upsert(row, on_conflict="variant_id").execute()

    def delete(self, variant_id: str) -> int:
        resp = self._table(LOOKUP_TABLE).delete().eq("variant_id", variant_id).execute()
        return len(resp.data or [])

    def delete_by_product(self, product_id: str) -> int:
        resp = self._table(LOOKUP_TABLE).delete().eq("product_id", product_id).execute()
        removed = len(resp.data or [])
        logger.info("variant_lookups から %d 件削除: product=%s", removed, product_id)
        return removed

    def variant_ids_for_product(self, product_id: str) -> set[str]:
        resp = (
            self._table(LOOKUP_TABLE)
            .select("variant_id")
            .eq("product_id", product_id)
            .execute()
        )
        return {row["variant_id"] for row in resp.data or []}

    def clear(self) -> int:
        # PostgREST はフィルタなしの DELETE を拒否するため全行に一致する条件を付ける
        resp = self._table(LOOKUP_TABLE).delete().neq("variant_id", "").execute()
        removed = len(resp.data or [])
        logger.info("variant_lookups を全削除: %d 件", removed)
        return removed

    def lookup(self, query: str, limit: int) -> list[IndexedRecord]:
        if not is_searchable(query, SEARCH_MIN_LENGTH):
            return []
        key = normalize_mpn(query)
        resp = (
            self._table(LOOKUP_TABLE)
            .select("*")
            .eq("mpn_normalized", key)
            .order("variant_id")
            .limit(limit)
            .execute()
        )
        return [IndexedRecord.from_row(row) for row in resp.data or []]

    def stats(self) -> IndexStats:
        """全行を 1000 件ずつ読み出して集計する."""
        stats = IndexStats()
        products: set[str] = set()
        start = 0
        while True:
            resp = (
                self._table(LOOKUP_TABLE)
                .select("variant_id, product_id, mpn, updated_at")
                .order("variant_id")
                .range(start, start + _STATS_PAGE - 1)
                .execute()
            )
            rows = resp.data or []
            for row in rows:
                stats.total_variants += 1
                products.add(row["product_id"])
                if row.get("mpn"):
                    stats.variants_with_mpn += 1
                updated_at = row.get("updated_at")
                if updated_at and (stats.last_updated is None or updated_at > stats.last_updated):
                    stats.last_updated = updated_at
            if len(rows) < _STATS_PAGE:
                break
            start += _STATS_PAGE
        stats.total_products = len(products)
        return stats


class SupabaseJobTracker(_SupabaseTables):
    """sync_status テーブルによる同期ジョブ記録.

    状態遷移は status = 'running' を条件にした UPDATE で行うため、
    終了済みジョブへの更新は 0 行となり JobStateError になる。
    """

    def create(self, sync_type: str) -> int:
        resp = (
            self._table(JOB_TABLE)
            .insert({
                "sync_type": sync_type,
                "status": STATUS_RUNNING,
                "processed_variants": 0,
                "indexed_variants": 0,
                "started_at": utc_now(),
            })
            .execute()
        )
        job_id = int(resp.data[0]["id"])
        logger.info("同期ジョブ作成: #%d (%s)", job_id, sync_type)
        return job_id

    def update_progress(self, job_id: int, processed: int, indexed: int) -> None:
        resp = (
            self._table(JOB_TABLE)
            .update({"processed_variants": processed, "indexed_variants": indexed})
            .eq("id", job_id)
            .eq("status", STATUS_RUNNING)
            .execute()
        )
        if not resp.data:
            raise JobStateError(f"job #{job_id} is not running")

    def complete(
        self, job_id: int, status: str, indexed: int, error_message: str | None = None
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise JobStateError(f"invalid terminal status: {status}")
        resp = (
            self._table(JOB_TABLE)
            .update({
                "status": status,
                "indexed_variants": indexed,
                "error_message": error_message if status == STATUS_FAILED else None,
                "completed_at": utc_now(),
            })
            .eq("id", job_id)
            .eq("status", STATUS_RUNNING)
            .execute()
        )
        if not resp.data:
            raise JobStateError(f"job #{job_id} is not running")

    def get(self, job_id: int) -> SyncJob | None:
        resp = self._table(JOB_TABLE).select("*").eq("id", job_id).limit(1).execute()
        return SyncJob.from_row(resp.data[0]) if resp.data else None

    def history(self, sync_type: str, limit: int = 10) -> list[SyncJob]:
        resp = (
            self._table(JOB_TABLE)
            .select("*")
            .eq("sync_type", sync_type)
            .order("id", desc=True)
            .limit(limit)
            .execute()
        )
        return [SyncJob.from_row(row) for row in resp.data or []]

    def running(self, sync_type: str) -> list[SyncJob]:
        resp = (
            self._table(JOB_TABLE)
            .select("*")
            .eq("sync_type", sync_type)
            .eq("status", STATUS_RUNNING)
            .execute()
        )
        return [SyncJob.from_row(row) for row in resp.data or []]

    def fail_stale(self, max_age_seconds: int) -> list[int]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        resp = (
            self._table(JOB_TABLE)
            .update({
                "status": STATUS_FAILED,
                "error_message": "orphaned: still running after restart",
                "completed_at": utc_now(),
            })
            .eq("status", STATUS_RUNNING)
            .lt("started_at", cutoff.isoformat())
            .execute()
        )
        return [int(row["id"]) for row in resp.data or []]
