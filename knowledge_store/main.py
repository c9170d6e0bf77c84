from __future__ import annotations

import json
import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from knowledge_store.core.audit import get_audit_log
from knowledge_store.core.embedding_providers import get_provider
from knowledge_store.core.errors import (
    InvalidTransition,
    KnowledgeError,
    NotFound,
    SchemaError,
    StorageError,
    ValidationError,
    VersionConflict,
)
from knowledge_store.core.fragment_store import FragmentStore
from knowledge_store.core.import_pipeline import (
    DEFAULT_SEPARATOR,
    FragmentImporter,
    parse_csv,
    parse_text_blocks,
)
from knowledge_store.core.indexing import IndexingCoordinator, get_job_store
from knowledge_store.core.indexing_worker import run_indexing_job
from knowledge_store.core.models import ImportCandidate, JobStatus
from knowledge_store.core.queries import FragmentFilters
from knowledge_store.core.settings import Settings
from knowledge_store.core.storage import get_db, init_db

logger = logging.getLogger(__name__)

app = FastAPI(title="knowledge-store")


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    logger.info(f"Knowledge store started (env={s.app_env}, db={s.db_path})")


# ==================== Error mapping ====================

_STATUS_BY_ERROR: list[tuple[type[KnowledgeError], int]] = [
    (NotFound, 404),
    (ValidationError, 422),
    (SchemaError, 400),
    (VersionConflict, 409),
    (InvalidTransition, 409),
    (StorageError, 500),
]


@app.exception_handler(KnowledgeError)
async def _knowledge_error(request: Request, exc: KnowledgeError) -> JSONResponse:
    status = 400
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"error": str(exc)})


# ==================== Request context ====================


def _tenant(x_tenant_id: str | None) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise ValidationError("X-Tenant-Id header is required")
    return tenant_id


def _coordinator() -> IndexingCoordinator:
    return IndexingCoordinator(get_db(), get_job_store(), get_audit_log())


def _store() -> FragmentStore:
    return FragmentStore(get_db(), get_audit_log(), _coordinator())


def _importer() -> FragmentImporter:
    return FragmentImporter(get_db(), get_audit_log(), _coordinator())


# ==================== Request bodies ====================


class SourceCreate(BaseModel):
    name: str
    description: str | None = None
    icon: str | None = None


class SourceUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    icon: str | None = None


class FragmentCreate(BaseModel):
    title: str
    content: str
    source_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class FragmentUpdate(BaseModel):
    source_id: str | None = None
    title: str | None = None
    content: str | None = None
    tags: list[str] | None = None
    priority: int | None = None
    metadata: dict[str, Any] | None = None


class FeedbackRequest(BaseModel):
    positive: bool


class CsvImportRequest(BaseModel):
    content: str
    source_id: str | None = None
    generate_embeddings: bool = True


class TextImportRequest(BaseModel):
    content: str
    separator: str = DEFAULT_SEPARATOR
    source_id: str | None = None
    generate_embeddings: bool = True


# ==================== Sources ====================


@app.get("/api/knowledge/sources")
def api_list_sources(x_tenant_id: str | None = Header(None)):
    tenant_id = _tenant(x_tenant_id)
    return {"sources": [s.to_dict() for s in _store().get_sources(tenant_id)]}


@app.post("/api/knowledge/sources", status_code=201)
def api_create_source(
    body: SourceCreate,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    tenant_id = _tenant(x_tenant_id)
    source = _store().create_source(
        tenant_id, body.name, body.description, body.icon, actor=x_actor_id
    )
    return source.to_dict()


@app.get("/api/knowledge/sources/{source_id}")
def api_get_source(source_id: str, x_tenant_id: str | None = Header(None)):
    """Source with indexed_count and total_count."""
    return _store().get_source_with_stats(_tenant(x_tenant_id), source_id)


@app.patch("/api/knowledge/sources/{source_id}")
def api_update_source(
    source_id: str,
    body: SourceUpdate,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    source = _store().update_source(
        _tenant(x_tenant_id),
        source_id,
        body.model_dump(exclude_unset=True),
        actor=x_actor_id,
    )
    return source.to_dict()


@app.delete("/api/knowledge/sources/{source_id}")
def api_delete_source(
    source_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    deleted = _store().delete_source(_tenant(x_tenant_id), source_id, actor=x_actor_id)
    return {"deleted": deleted}


@app.post("/api/knowledge/sources/{source_id}/toggle")
def api_toggle_source(
    source_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    source = _store().toggle_source_status(_tenant(x_tenant_id), source_id, actor=x_actor_id)
    return source.to_dict()


@app.post("/api/knowledge/sources/{source_id}/reindex", status_code=202)
def api_reindex_source(
    source_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    """Drop the source's embeddings and queue a reindex job."""
    return _coordinator().reindex_fragments(_tenant(x_tenant_id), source_id, x_actor_id)


# ==================== Fragments ====================


@app.get("/api/knowledge/fragments")
def api_list_fragments(
    x_tenant_id: str | None = Header(None),
    source_id: str | None = None,
    search: str | None = None,
    tags: list[str] | None = Query(None),
    is_active: bool | None = None,
):
    """List fragments, newest first.

    Args:
        source_id: Only fragments of this source
        search: Case-insensitive substring of title or content
        tags: Repeatable; every tag must be present
        is_active: Filter on active flag
    """
    filters = FragmentFilters(
        source_id=source_id,
        search=search,
        tags=tuple(tags or ()),
        is_active=is_active,
    )
    fragments = _store().get_fragments(_tenant(x_tenant_id), filters)
    return {"fragments": [f.to_dict() for f in fragments], "count": len(fragments)}


@app.post("/api/knowledge/fragments", status_code=201)
def api_create_fragment(
    body: FragmentCreate,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    fragment = _store().create_fragment(
        _tenant(x_tenant_id),
        body.title,
        body.content,
        source_id=body.source_id,
        tags=body.tags,
        priority=body.priority,
        metadata=body.metadata,
        actor=x_actor_id,
    )
    return fragment.to_dict()


@app.get("/api/knowledge/fragments/{fragment_id}")
def api_get_fragment(fragment_id: str, x_tenant_id: str | None = Header(None)):
    return _store().get_fragment_with_embedding(_tenant(x_tenant_id), fragment_id)


@app.patch("/api/knowledge/fragments/{fragment_id}")
def api_update_fragment(
    fragment_id: str,
    body: FragmentUpdate,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    """Metadata edit without a version bump. Content changes are rejected."""
    fragment = _store().update_fragment(
        _tenant(x_tenant_id),
        fragment_id,
        body.model_dump(exclude_unset=True),
        actor=x_actor_id,
    )
    return fragment.to_dict()


@app.put("/api/knowledge/fragments/{fragment_id}")
def api_update_fragment_version(
    fragment_id: str,
    body: FragmentUpdate,
    reindex: bool = False,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    """Versioned edit: bumps version, rehashes content, drops the embedding."""
    fragment = _store().update_fragment_with_version(
        _tenant(x_tenant_id),
        fragment_id,
        body.model_dump(exclude_unset=True),
        actor=x_actor_id,
        reindex=reindex,
    )
    return fragment.to_dict()


@app.delete("/api/knowledge/fragments/{fragment_id}")
def api_delete_fragment(
    fragment_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    deleted = _store().delete_fragment(_tenant(x_tenant_id), fragment_id, actor=x_actor_id)
    return {"deleted": deleted}


@app.post("/api/knowledge/fragments/{fragment_id}/toggle")
def api_toggle_fragment(
    fragment_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    fragment = _store().toggle_fragment_status(
        _tenant(x_tenant_id), fragment_id, actor=x_actor_id
    )
    return fragment.to_dict()


@app.post("/api/knowledge/fragments/{fragment_id}/reindex", status_code=202)
def api_reindex_fragment(
    fragment_id: str,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    return _coordinator().reindex_single_fragment(_tenant(x_tenant_id), fragment_id, x_actor_id)


@app.post("/api/knowledge/fragments/{fragment_id}/usage")
def api_record_usage(fragment_id: str, x_tenant_id: str | None = Header(None)):
    _store().record_usage(_tenant(x_tenant_id), fragment_id)
    return {"ok": True}


@app.post("/api/knowledge/fragments/{fragment_id}/feedback")
def api_record_feedback(
    fragment_id: str,
    body: FeedbackRequest,
    x_tenant_id: str | None = Header(None),
):
    _store().record_feedback(_tenant(x_tenant_id), fragment_id, body.positive)
    return {"ok": True}


# ==================== Import ====================


def _run_import(
    tenant_id: str,
    candidates: list[ImportCandidate],
    source_id: str | None,
    generate_embeddings: bool,
    actor: str | None,
):
    limit = Settings.from_env().import_max_rows
    if len(candidates) > limit:
        return JSONResponse(
            status_code=413,
            content={"error": f"Import has {len(candidates)} rows, limit is {limit}"},
        )
    result = _importer().import_fragments(
        tenant_id,
        candidates,
        source_id,
        actor=actor,
        generate_embeddings=generate_embeddings,
    )
    return result.to_dict()


@app.post("/api/knowledge/import/csv")
def api_import_csv(
    body: CsvImportRequest,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    """Import rows of a CSV document with title/content (and optional tags/priority) columns."""
    tenant_id = _tenant(x_tenant_id)
    return _run_import(
        tenant_id, parse_csv(body.content), body.source_id, body.generate_embeddings, x_actor_id
    )


@app.post("/api/knowledge/import/text")
def api_import_text(
    body: TextImportRequest,
    x_tenant_id: str | None = Header(None),
    x_actor_id: str | None = Header(None),
):
    """Import separator-delimited text blocks; each block's first line is its title."""
    tenant_id = _tenant(x_tenant_id)
    try:
        candidates = parse_text_blocks(body.content, body.separator)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return _run_import(
        tenant_id, candidates, body.source_id, body.generate_embeddings, x_actor_id
    )


# ==================== Indexing jobs ====================


@app.get("/api/knowledge/jobs")
def api_list_jobs(
    x_tenant_id: str | None = Header(None),
    status: JobStatus | None = None,
    limit: int = 10,
):
    jobs = _coordinator().list_jobs(_tenant(x_tenant_id), status=status, limit=limit)
    return {"jobs": [j.to_dict() for j in jobs]}


@app.get("/api/knowledge/jobs/{job_id}")
def api_get_job(job_id: str, x_tenant_id: str | None = Header(None)):
    return _coordinator().get_job(_tenant(x_tenant_id), job_id).to_dict()


@app.get("/api/knowledge/jobs/{job_id}/stream")
async def api_job_stream(job_id: str, x_tenant_id: str | None = Header(None)):
    """SSE stream that runs a pending job and reports its progress."""
    job = _coordinator().get_job(_tenant(x_tenant_id), job_id)
    if job.status != JobStatus.PENDING:
        return {"error": f"Job is not pending (status: {job.status.value})"}

    s = Settings.from_env()
    try:
        provider = get_provider(s)
    except ValueError as e:
        return {"error": str(e)}

    db = get_db()
    store = get_job_store()

    async def event_generator():
        """Generate SSE events from the indexing job."""
        try:
            async for event in run_indexing_job(job, db, store, provider, s.worker_batch_size):
                yield event.to_sse()
        except Exception as e:
            logger.exception(f"Stream for job {job_id} aborted")
            yield f"event: error\ndata: {json.dumps({'error': str(e)})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ==================== Aggregates ====================


@app.get("/api/knowledge/stats")
def api_stats(x_tenant_id: str | None = Header(None)):
    return _store().get_stats(_tenant(x_tenant_id)).to_dict()


@app.get("/api/knowledge/tags")
def api_tags(x_tenant_id: str | None = Header(None)):
    return {"tags": _store().get_all_tags(_tenant(x_tenant_id))}


@app.get("/api/knowledge/audit")
def api_audit(x_tenant_id: str | None = Header(None), limit: int = 50):
    tenant_id = _tenant(x_tenant_id)
    get_audit_log().flush()
    return {"entries": get_db().list_audit_entries(tenant_id, limit=limit)}


def serve() -> None:
    """Run the API under uvicorn with host and port from the environment."""
    s = Settings.from_env()
    uvicorn.run(
        "knowledge_store.main:app",
        host=s.api_host,
        port=s.api_port,
        log_level=s.log_level.lower(),
    )


if __name__ == "__main__":
    serve()
