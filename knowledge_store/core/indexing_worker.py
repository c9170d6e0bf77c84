"""Indexing worker: turns pending IndexingJobs into stored embeddings.

Provides:
- IndexingEvent with SSE formatting for progress streaming
- run_indexing_job() async generator that executes one job
- run_pending_jobs() drain helper for background use
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator

import sqlite_vec

from knowledge_store.core.embedding_providers import EmbeddingError
from knowledge_store.core.errors import InvalidTransition
from knowledge_store.core.models import IndexingJob, JobStatus, JobType, KnowledgeFragment, utcnow

if TYPE_CHECKING:
    from knowledge_store.core.embedding_providers import EmbeddingProvider
    from knowledge_store.core.indexing import IndexingJobStore
    from knowledge_store.core.storage import KnowledgeDB

logger = logging.getLogger(__name__)


class IndexingEventType(str, Enum):
    """Types of events emitted while a job runs."""

    STARTED = "started"
    BATCH_COMPLETE = "batch_complete"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IndexingEvent:
    """Event emitted during an indexing job for SSE streaming."""

    type: IndexingEventType
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        event_data = {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


def _select_fragments(
    job: IndexingJob, db: "KnowledgeDB"
) -> tuple[list[KnowledgeFragment], int]:
    """Resolve the fragments a job must embed.

    Returns (to_embed, already_indexed). Listed fragments that no longer
    exist are simply absent from to_embed.
    """
    fragments = db.get_fragments_by_ids(job.tenant_id, job.fragment_ids)

    if job.job_type == JobType.GENERATE_EMBEDDINGS:
        indexed = db.fragment_ids_with_embeddings(job.tenant_id, [f.id for f in fragments])
        return [f for f in fragments if f.id not in indexed], len(indexed)
    elif job.job_type == JobType.REINDEX_KNOWLEDGE:
        return fragments, 0
    else:
        raise ValueError(f"Unhandled job type: {job.job_type}")


def _check_vectors(
    provider: "EmbeddingProvider", batch: list[KnowledgeFragment], vectors: list[list[float]]
) -> None:
    """Reject provider output that does not fit the batch or the model width."""
    if len(vectors) != len(batch):
        raise EmbeddingError(
            f"{provider.name} returned {len(vectors)} vectors for {len(batch)} fragments",
            provider=provider.name,
        )
    for fragment, vector in zip(batch, vectors):
        if len(vector) != provider.dimensions:
            raise EmbeddingError(
                f"{provider.name} returned {len(vector)} dimensions for fragment "
                f"{fragment.id}, expected {provider.dimensions}",
                provider=provider.name,
            )


def _job_error(e: EmbeddingError) -> str:
    return f"{e} (retriable)" if e.retriable else str(e)


def _failed_event(job: IndexingJob, error: str, retriable: bool = False) -> IndexingEvent:
    return IndexingEvent(
        type=IndexingEventType.FAILED,
        job_id=job.id,
        data={**job.to_dict(), "error": error, "retriable": retriable},
    )


async def run_indexing_job(
    job: IndexingJob,
    db: "KnowledgeDB",
    store: "IndexingJobStore",
    provider: "EmbeddingProvider",
    batch_size: int = 100,
) -> AsyncIterator[IndexingEvent]:
    """Run one indexing job, yielding events for SSE streaming.

    Args:
        job: A pending or already claimed (running) job
        db: Database instance
        store: IndexingJobStore for status transitions
        provider: Embedding provider used for every batch
        batch_size: Fragments sent to the provider per call

    Yields:
        IndexingEvent for each significant step. Nothing is yielded if the
        job was claimed by another worker first.
    """
    if job.status == JobStatus.PENDING:
        try:
            claimed = store.claim(job.id)
        except InvalidTransition:
            claimed = None
        if claimed is None:
            logger.info(f"Job {job.id} is no longer pending, skipping")
            return
        job = claimed

    try:
        to_embed, already_indexed = _select_fragments(job, db)
    except Exception as e:
        logger.exception(f"Could not resolve fragments for job {job.id}")
        store.fail(job, f"Unexpected error: {e}")
        yield _failed_event(job, str(e))
        return

    # Listed fragments that were deleted before the job ran
    missing = len(job.fragment_ids) - len(to_embed) - already_indexed
    job.items_succeeded += already_indexed
    job.items_failed += max(missing, 0)
    store.record_progress(job)

    yield IndexingEvent(
        type=IndexingEventType.STARTED,
        job_id=job.id,
        data={
            "job_type": job.job_type.value,
            "items_total": job.items_total,
            "to_embed": len(to_embed),
            "provider": provider.name,
            "model": provider.model_id,
        },
    )

    try:
        for start in range(0, len(to_embed), batch_size):
            batch = to_embed[start : start + batch_size]
            texts = [f"{f.title}\n\n{f.content}" for f in batch]

            vectors = await provider.embed(texts)
            _check_vectors(provider, batch, vectors)

            saved = 0
            for fragment, vector in zip(batch, vectors):
                stored = db.save_embedding_if_current(
                    job.tenant_id,
                    fragment_id=fragment.id,
                    fragment_version=fragment.version,
                    model=provider.model_id,
                    embedding=sqlite_vec.serialize_float32(vector),
                    dimensions=provider.dimensions,
                )
                if stored:
                    saved += 1
                else:
                    logger.info(
                        f"Fragment {fragment.id} changed during job {job.id}, embedding discarded"
                    )

            job.items_succeeded += saved
            job.items_failed += len(batch) - saved
            store.record_progress(job)

            yield IndexingEvent(
                type=IndexingEventType.BATCH_COMPLETE,
                job_id=job.id,
                data={"batch_size": len(batch), "saved": saved, **job.to_dict()},
            )

    except EmbeddingError as e:
        logger.error(
            f"Embedding failed for job {job.id} ({e.provider}, retriable={e.retriable}): {e}"
        )
        store.fail(job, _job_error(e))
        yield _failed_event(job, str(e), e.retriable)
        return
    except Exception as e:
        logger.exception(f"Unexpected error in indexing job {job.id}")
        store.fail(job, f"Unexpected error: {e}")
        yield _failed_event(job, str(e))
        return

    store.complete(job)
    logger.info(
        f"Job {job.id} completed: {job.items_succeeded} indexed, {job.items_failed} failed"
    )
    yield IndexingEvent(
        type=IndexingEventType.COMPLETED,
        job_id=job.id,
        data=job.to_dict(),
    )


async def run_pending_jobs(
    db: "KnowledgeDB",
    store: "IndexingJobStore",
    provider: "EmbeddingProvider",
    batch_size: int = 100,
    limit: int | None = None,
) -> list[IndexingJob]:
    """Claim and run pending jobs oldest first until the queue is empty.

    Returns the jobs that were processed, in their final state.
    """
    processed: list[IndexingJob] = []
    while limit is None or len(processed) < limit:
        job = store.claim_next()
        if job is None:
            break
        async for _ in run_indexing_job(job, db, store, provider, batch_size):
            pass
        processed.append(store.get(job.id))
    return processed
