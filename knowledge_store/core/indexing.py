"""Indexing job store and coordinator.

Provides:
- IndexingJobStore: persistence and status transitions for IndexingJobs
- IndexingCoordinator: invalidates embeddings and enqueues indexing work

Embeddings are always deleted (and committed) before the job that will
recreate them is written, so a worker can never find a stale embedding and
skip a fragment.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from knowledge_store.core.errors import InvalidTransition, NotFound
from knowledge_store.core.models import (
    JOB_TRANSITIONS,
    IndexingJob,
    JobStatus,
    JobType,
    utcnow,
)

if TYPE_CHECKING:
    from knowledge_store.core.audit import AuditLog
    from knowledge_store.core.storage import KnowledgeDB

logger = logging.getLogger(__name__)


def _check_transition(job: IndexingJob, target: JobStatus) -> None:
    if target not in JOB_TRANSITIONS[job.status]:
        raise InvalidTransition(
            f"Job {job.id} cannot move from {job.status.value} to {target.value}"
        )


class IndexingJobStore:
    """Store for IndexingJobs with DB persistence. Thread-safe."""

    def __init__(self, db: "KnowledgeDB") -> None:
        self._db = db

    def create(
        self,
        tenant_id: str,
        job_type: JobType,
        metadata: dict[str, Any],
    ) -> IndexingJob:
        """Create a new pending IndexingJob and persist to DB."""
        job = IndexingJob(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            metadata=metadata,
            items_total=len(metadata.get("fragment_ids", [])),
        )
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO indexing_jobs (
                    id, tenant_id, job_type, status, metadata, items_total,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.tenant_id,
                    job.job_type.value,
                    job.status.value,
                    json.dumps(job.metadata),
                    job.items_total,
                    job.created_at.isoformat(),
                    job.updated_at.isoformat(),
                ),
            )
        return job

    def get(self, job_id: str, tenant_id: str | None = None) -> IndexingJob | None:
        """Get job by ID, or None if not found (or owned by another tenant)."""
        if tenant_id is None:
            row = self._db.fetch_one("SELECT * FROM indexing_jobs WHERE id = ?", (job_id,))
        else:
            row = self._db.fetch_one(
                "SELECT * FROM indexing_jobs WHERE id = ? AND tenant_id = ?",
                (job_id, tenant_id),
            )
        return IndexingJob.from_row(row) if row else None

    def list_recent(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 10,
    ) -> list[IndexingJob]:
        """List recent jobs for a tenant, newest first."""
        sql = "SELECT * FROM indexing_jobs WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [IndexingJob.from_row(r) for r in self._db.fetch_all(sql, params)]

    def claim(self, job_id: str) -> IndexingJob | None:
        """Move a pending job to running.

        The conditional UPDATE is the only gate between competing workers.
        Returns None if the job is missing or another worker claimed it
        first.

        Raises:
            InvalidTransition: the job already finished.
        """
        now = utcnow().isoformat()
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                UPDATE indexing_jobs
                SET status = 'running', started_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                RETURNING *
                """,
                (now, now, job_id),
            ).fetchall()
        if rows:
            return IndexingJob.from_row(rows[0])

        job = self.get(job_id)
        if job is not None and job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            _check_transition(job, JobStatus.RUNNING)
        return None

    def claim_next(self) -> IndexingJob | None:
        """Claim the oldest pending job of any tenant, or None if the queue is empty."""
        while True:
            row = self._db.fetch_one(
                """
                SELECT id FROM indexing_jobs
                WHERE status = 'pending'
                ORDER BY created_at, rowid
                LIMIT 1
                """
            )
            if row is None:
                return None
            job = self.claim(row[0])
            if job is not None:
                return job

    def record_progress(self, job: IndexingJob) -> None:
        job.updated_at = utcnow()
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE indexing_jobs
                SET items_succeeded = ?, items_failed = ?, updated_at = ?
                WHERE id = ?
                """,
                (job.items_succeeded, job.items_failed, job.updated_at.isoformat(), job.id),
            )

    def _finish(self, job: IndexingJob, target: JobStatus, error: str | None) -> IndexingJob:
        _check_transition(job, target)
        now = utcnow()
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE indexing_jobs
                SET status = ?, error = ?, items_succeeded = ?, items_failed = ?,
                    finished_at = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (
                    target.value,
                    error,
                    job.items_succeeded,
                    job.items_failed,
                    now.isoformat(),
                    now.isoformat(),
                    job.id,
                ),
            )
            if cur.rowcount == 0:
                raise InvalidTransition(f"Job {job.id} is no longer running")
        job.status = target
        job.error = error
        job.finished_at = now
        job.updated_at = now
        return job

    def complete(self, job: IndexingJob) -> IndexingJob:
        return self._finish(job, JobStatus.COMPLETED, None)

    def fail(self, job: IndexingJob, error: str) -> IndexingJob:
        return self._finish(job, JobStatus.FAILED, error)


class IndexingCoordinator:
    """Enqueues embedding work and enforces invalidate-before-enqueue."""

    def __init__(self, db: "KnowledgeDB", jobs: IndexingJobStore, audit: "AuditLog") -> None:
        self._db = db
        self._jobs = jobs
        self._audit = audit

    def request_embeddings(
        self,
        tenant_id: str,
        fragment_ids: list[str],
        actor: str | None,
        *,
        import_batch: bool = False,
        source_id: str | None = None,
    ) -> IndexingJob:
        """Create one generate_embeddings job covering all fragment_ids."""
        metadata: dict[str, Any] = {
            "fragment_ids": list(fragment_ids),
            "requested_by": actor,
        }
        if source_id:
            metadata["source_id"] = source_id
        if import_batch:
            metadata["import_batch"] = True
        job = self._jobs.create(tenant_id, JobType.GENERATE_EMBEDDINGS, metadata)
        logger.info(f"Queued embedding job {job.id} for {len(fragment_ids)} fragments")
        return job

    def reindex_fragments(self, tenant_id: str, source_id: str, actor: str | None) -> dict[str, str]:
        """Drop every embedding of a source's fragments, then queue one reindex job."""
        if self._db.get_source(tenant_id, source_id) is None:
            raise NotFound("KnowledgeSource", source_id)

        fragment_ids = self._db.fragment_ids_for_source(tenant_id, source_id)
        removed = self._db.delete_embeddings(tenant_id, fragment_ids)

        job = self._jobs.create(
            tenant_id,
            JobType.REINDEX_KNOWLEDGE,
            {
                "source_id": source_id,
                "fragment_ids": fragment_ids,
                "requested_by": actor,
            },
        )
        logger.info(
            f"Reindex of source {source_id}: removed {removed} embeddings, queued job {job.id}"
        )
        self._audit.emit(
            tenant_id,
            "reindex_knowledge_source",
            {"source_id": source_id, "job_id": job.id},
            actor,
        )
        return {"job_id": job.id}

    def reindex_single_fragment(
        self, tenant_id: str, fragment_id: str, actor: str | None
    ) -> dict[str, str]:
        """Drop the fragment's embedding, then queue a reindex job for it."""
        if self._db.get_fragment(tenant_id, fragment_id) is None:
            raise NotFound("KnowledgeFragment", fragment_id)

        self._db.delete_embeddings(tenant_id, [fragment_id])

        job = self._jobs.create(
            tenant_id,
            JobType.REINDEX_KNOWLEDGE,
            {
                "fragment_id": fragment_id,
                "fragment_ids": [fragment_id],
                "requested_by": actor,
            },
        )
        self._audit.emit(
            tenant_id,
            "reindex_knowledge_fragment",
            {"fragment_id": fragment_id, "job_id": job.id},
            actor,
        )
        return {"job_id": job.id}

    def get_job(self, tenant_id: str, job_id: str) -> IndexingJob:
        job = self._jobs.get(job_id, tenant_id=tenant_id)
        if job is None:
            raise NotFound("IndexingJob", job_id)
        return job

    def list_jobs(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 10,
    ) -> list[IndexingJob]:
        return self._jobs.list_recent(tenant_id, status=status, limit=limit)


# Global store instance (set during init_db)
_job_store: IndexingJobStore | None = None


def init_job_store(db: "KnowledgeDB") -> IndexingJobStore:
    """Initialize the global job store."""
    global _job_store
    _job_store = IndexingJobStore(db)
    return _job_store


def get_job_store() -> IndexingJobStore:
    """Get the global job store. Must call init_job_store first."""
    if _job_store is None:
        raise RuntimeError("IndexingJobStore not initialized. Call init_job_store first.")
    return _job_store
