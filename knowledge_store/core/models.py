"""Entities of the knowledge fragment store and their row mappings."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class JobType(str, Enum):
    """Kind of indexing work requested."""

    GENERATE_EMBEDDINGS = "generate_embeddings"
    REINDEX_KNOWLEDGE = "reindex_knowledge"


class JobStatus(str, Enum):
    """Status of an indexing job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# pending -> running -> completed | failed; nothing skips running
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass
class KnowledgeSource:
    """Named grouping of fragments."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    icon: str | None = None
    is_active: bool = True
    fragment_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: str | None = None
    has_embeddings: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "is_active": self.is_active,
            "fragment_count": self.fragment_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
        }
        if self.has_embeddings is not None:
            d["has_embeddings"] = self.has_embeddings
        return d

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> KnowledgeSource:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            is_active=bool(row["is_active"]),
            fragment_count=row["fragment_count"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            created_by=row["created_by"],
        )


@dataclass
class KnowledgeFragment:
    """Atomic, independently retrievable unit of knowledge text."""

    id: str
    tenant_id: str
    title: str
    content: str
    source_id: str | None = None
    tags: list[str] = field(default_factory=list)
    is_active: bool = True
    version: int = 1
    content_hash: str | None = None
    priority: int = DEFAULT_PRIORITY
    usage_count: int = 0
    positive_feedback: int = 0
    negative_feedback: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: str | None = None
    source: dict[str, Any] | None = None  # id, name, icon of the owning source
    has_embedding: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source_id": self.source_id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "is_active": self.is_active,
            "version": self.version,
            "content_hash": self.content_hash,
            "priority": self.priority,
            "usage_count": self.usage_count,
            "positive_feedback": self.positive_feedback,
            "negative_feedback": self.negative_feedback,
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
        }
        if self.source is not None:
            d["source"] = self.source
        if self.has_embedding is not None:
            d["has_embedding"] = self.has_embedding
        return d

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> KnowledgeFragment:
        keys = row.keys()
        source = None
        if "source_name" in keys and row["source_name"] is not None:
            source = {
                "id": row["source_id"],
                "name": row["source_name"],
                "icon": row["source_icon"],
            }
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            source_id=row["source_id"],
            title=row["title"],
            content=row["content"],
            tags=json.loads(row["tags"] or "[]"),
            is_active=bool(row["is_active"]),
            version=row["version"],
            content_hash=row["content_hash"],
            priority=row["priority"],
            usage_count=row["usage_count"],
            positive_feedback=row["positive_feedback"],
            negative_feedback=row["negative_feedback"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            created_by=row["created_by"],
            source=source,
        )


@dataclass
class EmbeddingRecord:
    """Vector representation of one fragment's content at some version."""

    id: str
    tenant_id: str
    fragment_id: str
    model: str
    dimensions: int
    fragment_version: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    embedding: bytes | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fragment_id": self.fragment_id,
            "model": self.model,
            "dimensions": self.dimensions,
            "fragment_version": self.fragment_version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EmbeddingRecord:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            fragment_id=row["fragment_id"],
            model=row["model"],
            dimensions=row["dimensions"],
            fragment_version=row["fragment_version"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            embedding=row["embedding"] if "embedding" in row.keys() else None,
        )


@dataclass
class IndexingJob:
    """Asynchronous unit of embedding work."""

    id: str
    tenant_id: str
    job_type: JobType
    status: JobStatus
    metadata: dict[str, Any] = field(default_factory=dict)
    items_total: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def fragment_ids(self) -> list[str]:
        return list(self.metadata.get("fragment_ids", []))

    @property
    def progress_percent(self) -> float:
        if not self.items_total:
            return 0.0
        return ((self.items_succeeded + self.items_failed) / self.items_total) * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "metadata": self.metadata,
            "items_total": self.items_total,
            "items_succeeded": self.items_succeeded,
            "items_failed": self.items_failed,
            "progress_percent": round(self.progress_percent, 1),
            "error": self.error,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> IndexingJob:
        """Create IndexingJob from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            metadata=json.loads(row["metadata"] or "{}"),
            items_total=row["items_total"] or 0,
            items_succeeded=row["items_succeeded"] or 0,
            items_failed=row["items_failed"] or 0,
            error=row["error"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            updated_at=_dt(row["updated_at"]),
        )


@dataclass
class ImportCandidate:
    """Parsed import row; never persisted as-is."""

    title: str
    content: str
    tags: list[str] | None = None
    priority: int | None = None


@dataclass
class ImportResult:
    success: bool = False
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    fragment_ids: list[str] = field(default_factory=list)
    job_id: str | None = None

    @property
    def partial_failure(self) -> bool:
        """Some rows were imported and some were rejected."""
        return self.success_count > 0 and self.error_count > 0

    def add_error(self, row: int, message: str) -> None:
        self.errors.append({"row": row, "message": message})
        self.error_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": list(self.errors),
            "fragment_ids": list(self.fragment_ids),
            "job_id": self.job_id,
            "partial_failure": self.partial_failure,
        }


@dataclass(frozen=True)
class KnowledgeStats:
    total_sources: int
    active_sources: int
    total_fragments: int
    indexed_fragments: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total_sources": self.total_sources,
            "active_sources": self.active_sources,
            "total_fragments": self.total_fragments,
            "indexed_fragments": self.indexed_fragments,
        }
