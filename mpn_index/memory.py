"""プロセス内メモリ上のインデックス・ジョブ記録.

Supabase を使わないローカル実行とテストで使う。
各操作はロックで保護され、単体ではアトミック。
"""

from __future__ import annotations

import dataclasses
import itertools
import threading
from datetime import datetime, timedelta, timezone

from mpn_index.config import SEARCH_MIN_LENGTH
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


class InMemoryIndexStore:
    """variant_id をキーにした dict によるインデックス."""

    def __init__(self):
        self._records: dict[str, IndexedRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, record: IndexedRecord) -> None:
        if record.mpn_normalized is None:
            raise MissingKeyError(f"variant {record.variant_id} has no MPN")
        stored = dataclasses.replace(record, updated_at=utc_now())
        with self._lock:
            self._records[record.variant_id] = stored

    def delete(self, variant_id: str) -> int:
        with self._lock:
            return 1 if self._records.pop(variant_id, None) else 0

    def delete_by_product(self, product_id: str) -> int:
        with self._lock:
            doomed = [vid for vid, r in self._records.items() if r.product_id == product_id]
            for vid in doomed:
                del self._records[vid]
        return len(doomed)

    def variant_ids_for_product(self, product_id: str) -> set[str]:
        with self._lock:
            return {vid for vid, r in self._records.items() if r.product_id == product_id}

    def clear(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
        return removed

    def lookup(self, query: str, limit: int) -> list[IndexedRecord]:
        if not is_searchable(query, SEARCH_MIN_LENGTH):
            return []
        key = normalize_mpn(query)
        with self._lock:
            matches = [r for r in self._records.values() if r.mpn_normalized == key]
        matches.sort(key=lambda r: r.variant_id)
        return matches[:limit]

    def stats(self) -> IndexStats:
        with self._lock:
            records = list(self._records.values())
        if not records:
            return IndexStats()
        return IndexStats(
            total_variants=len(records),
            total_products=len({r.product_id for r in records}),
            variants_with_mpn=sum(1 for r in records if r.mpn),
            last_updated=max(r.updated_at for r in records if r.updated_at),
        )


class InMemoryJobTracker:
    """連番 ID の同期ジョブ記録."""

    def __init__(self):
        self._jobs: dict[int, SyncJob] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, sync_type: str) -> int:
        with self._lock:
            job_id = next(self._ids)
            self._jobs[job_id] = SyncJob(
                id=job_id,
                sync_type=sync_type,
                status=STATUS_RUNNING,
                started_at=utc_now(),
            )
        return job_id

    def update_progress(self, job_id: int, processed: int, indexed: int) -> None:
        with self._lock:
            job = self._require(job_id)
            if not job.is_running:
                raise JobStateError(f"job #{job_id} is already {job.status}")
            job.processed_variants = processed
            job.indexed_variants = indexed

    def complete(
        self, job_id: int, status: str, indexed: int, error_message: str | None = None
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise JobStateError(f"invalid terminal status: {status}")
        with self._lock:
            job = self._require(job_id)
            if not job.is_running:
                raise JobStateError(f"job #{job_id} is already {job.status}")
            job.status = status
            job.indexed_variants = indexed
            job.error_message = error_message if status == STATUS_FAILED else None
            job.completed_at = utc_now()

    def get(self, job_id: int) -> SyncJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    def history(self, sync_type: str, limit: int = 10) -> list[SyncJob]:
        with self._lock:
            jobs = [dataclasses.replace(j) for j in self._jobs.values() if j.sync_type == sync_type]
        jobs.sort(key=lambda j: j.id, reverse=True)
        return jobs[:limit]

    def running(self, sync_type: str) -> list[SyncJob]:
        with self._lock:
            return [
                dataclasses.replace(j)
                for j in self._jobs.values()
                if j.sync_type == sync_type and j.is_running
            ]

    def fail_stale(self, max_age_seconds: int) -> list[int]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        failed: list[int] = []
        with self._lock:
            for job in self._jobs.values():
                if job.is_running and datetime.fromisoformat(job.started_at) < cutoff:
                    job.status = STATUS_FAILED
                    job.error_message = "orphaned: still running after restart"
                    job.completed_at = utc_now()
                    failed.append(job.id)
        return failed

    def _require(self, job_id: int) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobStateError(f"job #{job_id} not found")
        return job
