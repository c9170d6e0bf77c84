"""CRUD over knowledge sources and fragments.

Every operation is scoped to an explicit tenant id and attributes its audit
entry to the acting member. Content-changing edits go through
update_fragment_with_version, which bumps the version, rehashes the content
and drops the fragment's embedding in one write.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from knowledge_store.core.errors import NotFound, ValidationError, VersionConflict
from knowledge_store.core.hashing import content_hash, next_version
from knowledge_store.core.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    KnowledgeFragment,
    KnowledgeSource,
    KnowledgeStats,
)
from knowledge_store.core.queries import FragmentFilters, list_fragments

if TYPE_CHECKING:
    from knowledge_store.core.audit import AuditLog
    from knowledge_store.core.indexing import IndexingCoordinator
    from knowledge_store.core.storage import KnowledgeDB

logger = logging.getLogger(__name__)

SOURCE_FIELDS = frozenset({"name", "description", "icon"})
FRAGMENT_FIELDS = frozenset({"source_id", "title", "tags", "priority", "metadata"})
VERSIONED_FRAGMENT_FIELDS = FRAGMENT_FIELDS | {"content"}


def require_text(value: str | None, field_name: str) -> str:
    """Return the trimmed value, or raise ValidationError if it is blank."""
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    return text


def validate_priority(priority: int | None) -> int:
    if priority is None:
        return DEFAULT_PRIORITY
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError(f"priority must be an integer, got {priority!r}")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
        )
    return priority


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """Trim tags, drop blanks and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags or []:
        tag = str(tag).strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


class FragmentStore:
    """Tenant-scoped operations on sources and fragments."""

    def __init__(
        self,
        db: "KnowledgeDB",
        audit: "AuditLog",
        coordinator: "IndexingCoordinator | None" = None,
    ) -> None:
        self._db = db
        self._audit = audit
        self._coordinator = coordinator

    # ==================== Sources ====================

    def create_source(
        self,
        tenant_id: str,
        name: str,
        description: str | None = None,
        icon: str | None = None,
        *,
        actor: str | None,
    ) -> KnowledgeSource:
        source = self._db.insert_source(
            tenant_id,
            name=require_text(name, "name"),
            description=description or None,
            icon=icon or None,
            created_by=actor,
        )
        self._audit.emit(
            tenant_id,
            "create_knowledge_source",
            {"source_id": source.id, "name": source.name},
            actor,
        )
        return source

    def get_source(self, tenant_id: str, source_id: str) -> KnowledgeSource:
        source = self._db.get_source(tenant_id, source_id)
        if source is None:
            raise NotFound("KnowledgeSource", source_id)
        return source

    def get_sources(self, tenant_id: str) -> list[KnowledgeSource]:
        """All sources of the tenant, newest first, with has_embeddings set."""
        sources = self._db.list_sources(tenant_id)
        indexed = self._db.source_ids_with_embeddings(tenant_id, [s.id for s in sources])
        for source in sources:
            source.has_embeddings = source.id in indexed
        return sources

    def get_source_with_stats(self, tenant_id: str, source_id: str) -> dict[str, Any]:
        source = self.get_source(tenant_id, source_id)
        fragments = self.get_fragments(tenant_id, FragmentFilters(source_id=source_id))
        return {
            **source.to_dict(),
            "indexed_count": sum(1 for f in fragments if f.has_embedding),
            "total_count": len(fragments),
        }

    def update_source(
        self,
        tenant_id: str,
        source_id: str,
        fields: dict[str, Any],
        *,
        actor: str | None,
    ) -> KnowledgeSource:
        unknown = set(fields) - SOURCE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update source fields: {sorted(unknown)}")
        updates = dict(fields)
        if "name" in updates:
            updates["name"] = require_text(updates["name"], "name")

        source = self._db.update_source(tenant_id, source_id, updates)
        if source is None:
            raise NotFound("KnowledgeSource", source_id)

        self._audit.emit(
            tenant_id,
            "update_knowledge_source",
            {"source_id": source_id, "updates": updates},
            actor,
        )
        return source

    def delete_source(self, tenant_id: str, source_id: str, *, actor: str | None) -> bool:
        """Delete a source, its fragments and their embeddings.

        Returns False when there was no such source in the tenant.
        """
        deleted = self._db.delete_source_cascade(tenant_id, source_id)
        if not deleted:
            logger.info(f"Source {source_id} not deleted for tenant {tenant_id}: no matching row")
            return False

        logger.info(f"Deleted source {source_id} for tenant {tenant_id}")
        self._audit.emit(tenant_id, "delete_knowledge_source", {"source_id": source_id}, actor)
        return True

    def toggle_source_status(
        self, tenant_id: str, source_id: str, *, actor: str | None
    ) -> KnowledgeSource:
        source = self._db.toggle_source(tenant_id, source_id)
        if source is None:
            raise NotFound("KnowledgeSource", source_id)
        self._audit.emit(
            tenant_id,
            "toggle_knowledge_source",
            {"source_id": source_id, "is_active": source.is_active},
            actor,
        )
        return source

    # ==================== Fragments ====================

    def create_fragment(
        self,
        tenant_id: str,
        title: str,
        content: str,
        *,
        source_id: str | None = None,
        tags: Iterable[str] | None = None,
        priority: int | None = None,
        metadata: dict[str, Any] | None = None,
        actor: str | None,
    ) -> KnowledgeFragment:
        title = require_text(title, "title")
        content = require_text(content, "content")
        priority = validate_priority(priority)
        if source_id:
            self.get_source(tenant_id, source_id)

        fragment = self._db.insert_fragment(
            tenant_id,
            title=title,
            content=content,
            content_hash=content_hash(content),
            source_id=source_id or None,
            tags=normalize_tags(tags),
            priority=priority,
            metadata=metadata,
            created_by=actor,
        )

        if source_id:
            self._db.refresh_fragment_count(tenant_id, source_id)

        self._audit.emit(
            tenant_id,
            "create_knowledge_fragment",
            {"fragment_id": fragment.id, "title": fragment.title},
            actor,
        )
        return fragment

    def get_fragment(self, tenant_id: str, fragment_id: str) -> KnowledgeFragment:
        fragment = self._db.get_fragment(tenant_id, fragment_id)
        if fragment is None:
            raise NotFound("KnowledgeFragment", fragment_id)
        return fragment

    def get_fragment_with_embedding(self, tenant_id: str, fragment_id: str) -> dict[str, Any]:
        fragment = self.get_fragment(tenant_id, fragment_id)
        embedding = self._db.get_embedding(tenant_id, fragment_id)
        fragment.has_embedding = embedding is not None
        return {
            **fragment.to_dict(),
            "embedding_info": embedding.to_dict() if embedding else None,
        }

    def get_fragments(
        self, tenant_id: str, filters: FragmentFilters | None = None
    ) -> list[KnowledgeFragment]:
        return list_fragments(self._db, tenant_id, filters)

    def _validated_patch(self, tenant_id: str, fields: dict[str, Any], allowed: frozenset) -> dict[str, Any]:
        unknown = set(fields) - allowed
        if unknown:
            if "content" in unknown:
                raise ValidationError(
                    "content changes must use update_fragment_with_version"
                )
            raise ValidationError(f"Cannot update fragment fields: {sorted(unknown)}")

        updates = dict(fields)
        if "title" in updates:
            updates["title"] = require_text(updates["title"], "title")
        if "content" in updates:
            updates["content"] = require_text(updates["content"], "content")
        if "priority" in updates:
            updates["priority"] = validate_priority(updates["priority"])
        if "tags" in updates:
            updates["tags"] = normalize_tags(updates["tags"])
        if "metadata" in updates and not isinstance(updates["metadata"] or {}, dict):
            raise ValidationError("metadata must be an object")
        if updates.get("source_id"):
            self.get_source(tenant_id, updates["source_id"])
        elif "source_id" in updates:
            updates["source_id"] = None
        return updates

    def _refresh_counts(self, tenant_id: str, *source_ids: str | None) -> None:
        for source_id in {s for s in source_ids if s}:
            self._db.refresh_fragment_count(tenant_id, source_id)

    def update_fragment(
        self,
        tenant_id: str,
        fragment_id: str,
        fields: dict[str, Any],
        *,
        actor: str | None,
    ) -> KnowledgeFragment:
        """Metadata-only edit: no version bump and no rehash."""
        updates = self._validated_patch(tenant_id, fields, FRAGMENT_FIELDS)
        current = self.get_fragment(tenant_id, fragment_id)

        fragment = self._db.patch_fragment(tenant_id, fragment_id, updates)
        if fragment is None:
            raise NotFound("KnowledgeFragment", fragment_id)
        if "source_id" in updates and updates["source_id"] != current.source_id:
            self._refresh_counts(tenant_id, current.source_id, updates["source_id"])

        self._audit.emit(
            tenant_id,
            "update_knowledge_fragment",
            {"fragment_id": fragment_id, "updates": updates},
            actor,
        )
        return fragment

    def update_fragment_with_version(
        self,
        tenant_id: str,
        fragment_id: str,
        fields: dict[str, Any],
        *,
        actor: str | None,
        reindex: bool = False,
    ) -> KnowledgeFragment:
        """Content-affecting edit.

        Bumps version by one, stores the hash of the effective content and
        removes the now-stale embedding in the same write. With reindex=True a
        reindex job for the fragment is queued afterwards.

        Raises:
            NotFound: fragment does not exist in the tenant.
            VersionConflict: another writer bumped the version first.
        """
        updates = self._validated_patch(tenant_id, fields, VERSIONED_FRAGMENT_FIELDS)
        current = self.get_fragment(tenant_id, fragment_id)

        new_version = next_version(current.version)
        new_hash = content_hash(updates.get("content", current.content))

        fragment = self._db.update_fragment_versioned(
            tenant_id,
            fragment_id,
            updates,
            expected_version=current.version,
            new_version=new_version,
            new_hash=new_hash,
        )
        if fragment is None:
            if self._db.get_fragment(tenant_id, fragment_id) is None:
                raise NotFound("KnowledgeFragment", fragment_id)
            raise VersionConflict(fragment_id, current.version)

        if "source_id" in updates and updates["source_id"] != current.source_id:
            self._refresh_counts(tenant_id, current.source_id, updates["source_id"])

        self._audit.emit(
            tenant_id,
            "update_knowledge_fragment_version",
            {
                "fragment_id": fragment_id,
                "old_version": current.version,
                "new_version": new_version,
                "updates": updates,
            },
            actor,
        )

        if reindex and self._coordinator is not None:
            self._coordinator.reindex_single_fragment(tenant_id, fragment_id, actor)
        return fragment

    def delete_fragment(self, tenant_id: str, fragment_id: str, *, actor: str | None) -> bool:
        """Delete a fragment and its embedding. Returns False if nothing was deleted."""
        fragment = self._db.get_fragment(tenant_id, fragment_id)

        deleted = self._db.delete_fragment_row(tenant_id, fragment_id)
        if not deleted:
            logger.info(f"Fragment {fragment_id} not deleted for tenant {tenant_id}: no matching row")
            return False

        if fragment is not None and fragment.source_id:
            self._db.refresh_fragment_count(tenant_id, fragment.source_id)

        self._audit.emit(tenant_id, "delete_knowledge_fragment", {"fragment_id": fragment_id}, actor)
        return True

    def toggle_fragment_status(
        self, tenant_id: str, fragment_id: str, *, actor: str | None
    ) -> KnowledgeFragment:
        fragment = self._db.toggle_fragment(tenant_id, fragment_id)
        if fragment is None:
            raise NotFound("KnowledgeFragment", fragment_id)
        self._audit.emit(
            tenant_id,
            "toggle_knowledge_fragment",
            {"fragment_id": fragment_id, "is_active": fragment.is_active},
            actor,
        )
        return fragment

    def record_usage(self, tenant_id: str, fragment_id: str) -> None:
        if not self._db.increment_counter(tenant_id, fragment_id, "usage_count"):
            raise NotFound("KnowledgeFragment", fragment_id)

    def record_feedback(self, tenant_id: str, fragment_id: str, positive: bool) -> None:
        column = "positive_feedback" if positive else "negative_feedback"
        if not self._db.increment_counter(tenant_id, fragment_id, column):
            raise NotFound("KnowledgeFragment", fragment_id)

    # ==================== Aggregates ====================

    def get_stats(self, tenant_id: str) -> KnowledgeStats:
        return self._db.get_stats(tenant_id)

    def get_all_tags(self, tenant_id: str) -> list[str]:
        return self._db.list_tags(tenant_id)
