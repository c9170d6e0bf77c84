"""Tests for indexing job state and the invalidate-then-enqueue coordinator."""

import pytest

from knowledge_store.core.errors import InvalidTransition, NotFound
from knowledge_store.core.indexing import IndexingJobStore
from knowledge_store.core.models import JobStatus, JobType

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
ACTOR = "member-1"


def test_reindex_single_fragment_drops_embedding_and_queues_job(db, store, coordinator, jobs, embed):
    fragment = store.create_fragment(TENANT, "Vacation", "25 days", actor=ACTOR)
    embed(fragment)

    result = coordinator.reindex_single_fragment(TENANT, fragment.id, ACTOR)

    assert db.get_embedding(TENANT, fragment.id) is None
    queued = jobs.list_recent(TENANT)
    assert len(queued) == 1
    assert queued[0].id == result["job_id"]
    assert queued[0].status == JobStatus.PENDING
    assert queued[0].job_type == JobType.REINDEX_KNOWLEDGE
    assert queued[0].metadata["fragment_id"] == fragment.id
    assert queued[0].fragment_ids == [fragment.id]


def test_reindex_single_fragment_not_found(coordinator, jobs):
    with pytest.raises(NotFound):
        coordinator.reindex_single_fragment(TENANT, "missing", ACTOR)
    assert jobs.list_recent(TENANT) == []


def test_reindex_source(db, store, coordinator, jobs, embed):
    source = store.create_source(TENANT, "Policies", actor=ACTOR)
    a = store.create_fragment(TENANT, "A", "alpha", source_id=source.id, actor=ACTOR)
    b = store.create_fragment(TENANT, "B", "beta", source_id=source.id, actor=ACTOR)
    embed(a)
    embed(b)

    result = coordinator.reindex_fragments(TENANT, source.id, ACTOR)

    assert db.fragment_ids_with_embeddings(TENANT, [a.id, b.id]) == set()
    job = jobs.get(result["job_id"])
    assert job.job_type == JobType.REINDEX_KNOWLEDGE
    assert job.metadata["source_id"] == source.id
    assert job.fragment_ids == [a.id, b.id]
    assert job.items_total == 2


def test_reindex_empty_source_still_queues(store, coordinator, jobs):
    source = store.create_source(TENANT, "Empty", actor=ACTOR)
    result = coordinator.reindex_fragments(TENANT, source.id, ACTOR)
    assert jobs.get(result["job_id"]).fragment_ids == []


def test_reindex_source_of_other_tenant(store, coordinator):
    source = store.create_source(TENANT, "Policies", actor=ACTOR)
    with pytest.raises(NotFound):
        coordinator.reindex_fragments(OTHER_TENANT, source.id, ACTOR)


def test_request_embeddings_metadata(coordinator):
    job = coordinator.request_embeddings(
        TENANT, ["f1", "f2"], ACTOR, import_batch=True, source_id="s1"
    )
    assert job.status == JobStatus.PENDING
    assert job.metadata == {
        "fragment_ids": ["f1", "f2"],
        "requested_by": ACTOR,
        "source_id": "s1",
        "import_batch": True,
    }


def test_get_job_is_tenant_scoped(coordinator):
    job = coordinator.request_embeddings(TENANT, ["f1"], ACTOR)
    assert coordinator.get_job(TENANT, job.id).id == job.id
    with pytest.raises(NotFound):
        coordinator.get_job(OTHER_TENANT, job.id)


def test_list_jobs_status_filter(coordinator, jobs):
    first = coordinator.request_embeddings(TENANT, ["f1"], ACTOR)
    coordinator.request_embeddings(TENANT, ["f2"], ACTOR)
    jobs.claim(first.id)

    assert [j.id for j in coordinator.list_jobs(TENANT, status=JobStatus.RUNNING)] == [first.id]
    assert len(coordinator.list_jobs(TENANT, status=JobStatus.PENDING)) == 1
    assert coordinator.list_jobs(OTHER_TENANT) == []


# ==================== State machine ====================


def test_job_lifecycle(jobs):
    job = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": ["a", "b"]})

    running = jobs.claim(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.started_at is not None

    running.items_succeeded = 1
    running.items_failed = 1
    done = jobs.complete(running)
    assert done.status == JobStatus.COMPLETED

    stored = jobs.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.finished_at is not None
    assert stored.progress_percent == 100.0


def test_claim_already_running_returns_none(jobs):
    job = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})
    assert jobs.claim(job.id) is not None
    assert jobs.claim(job.id) is None
    assert jobs.get(job.id).status == JobStatus.RUNNING


def test_pending_job_cannot_finish(jobs):
    job = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})
    with pytest.raises(InvalidTransition):
        jobs.fail(job, "nope")
    assert jobs.get(job.id).status == JobStatus.PENDING


def test_terminal_job_cannot_change(jobs):
    job = jobs.create(TENANT, JobType.REINDEX_KNOWLEDGE, {"fragment_ids": []})
    running = jobs.claim(job.id)
    failed = jobs.fail(running, "provider down")
    assert jobs.get(job.id).error == "provider down"

    with pytest.raises(InvalidTransition):
        jobs.complete(failed)
    with pytest.raises(InvalidTransition):
        jobs.claim(job.id)


def test_claim_next_takes_oldest_pending(jobs):
    first = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})
    second = jobs.create(OTHER_TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})

    assert jobs.claim_next().id == first.id
    assert jobs.claim_next().id == second.id
    assert jobs.claim_next() is None


def test_claim_unknown_job(jobs):
    assert jobs.claim("missing") is None


def test_claim_next_skips_job_taken_by_another_worker(db, jobs):
    first = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})
    second = jobs.create(TENANT, JobType.GENERATE_EMBEDDINGS, {"fragment_ids": []})
    other_worker = IndexingJobStore(db)
    real_claim = jobs.claim
    attempts = []

    def claim_after_competitor(job_id):
        # The other worker wins the first job between SELECT and UPDATE
        if not attempts:
            assert other_worker.claim(job_id) is not None
        attempts.append(job_id)
        return real_claim(job_id)

    jobs.claim = claim_after_competitor

    claimed = jobs.claim_next()

    assert attempts == [first.id, second.id]
    assert claimed.id == second.id
    assert claimed.status == JobStatus.RUNNING
    assert jobs.get(first.id).status == JobStatus.RUNNING
