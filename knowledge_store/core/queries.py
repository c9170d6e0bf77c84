"""Read-side fragment listing with source metadata and embedding presence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from knowledge_store.core.models import KnowledgeFragment
from knowledge_store.core.storage import FRAGMENT_SELECT

if TYPE_CHECKING:
    from knowledge_store.core.storage import KnowledgeDB


@dataclass(frozen=True)
class FragmentFilters:
    source_id: str | None = None
    search: str | None = None
    tags: tuple[str, ...] = ()
    is_active: bool | None = None


def build_fragment_query(tenant_id: str, filters: FragmentFilters) -> tuple[str, list[Any]]:
    """Compose the tenant-scoped listing query for the given filters."""
    clauses = ["f.tenant_id = ?"]
    params: list[Any] = [tenant_id]

    if filters.source_id:
        clauses.append("f.source_id = ?")
        params.append(filters.source_id)

    search = (filters.search or "").strip()
    if search:
        clauses.append("(kx_contains(f.title, ?) OR kx_contains(f.content, ?))")
        params.extend([search, search])

    # Every requested tag must be present on the fragment
    for tag in filters.tags:
        clauses.append("EXISTS (SELECT 1 FROM json_each(f.tags) WHERE json_each.value = ?)")
        params.append(tag)

    if filters.is_active is not None:
        clauses.append("f.is_active = ?")
        params.append(1 if filters.is_active else 0)

    sql = (
        FRAGMENT_SELECT
        + " WHERE "
        + " AND ".join(clauses)
        + " ORDER BY f.created_at DESC, f.rowid DESC"
    )
    return sql, params


def list_fragments(
    db: "KnowledgeDB",
    tenant_id: str,
    filters: FragmentFilters | None = None,
) -> list[KnowledgeFragment]:
    """List fragments with has_embedding set, using one batched existence lookup."""
    sql, params = build_fragment_query(tenant_id, filters or FragmentFilters())
    fragments = [KnowledgeFragment.from_row(r) for r in db.fetch_all(sql, params)]
    return attach_embedding_flags(db, tenant_id, fragments)


def attach_embedding_flags(
    db: "KnowledgeDB",
    tenant_id: str,
    fragments: list[KnowledgeFragment],
) -> list[KnowledgeFragment]:
    indexed = db.fragment_ids_with_embeddings(tenant_id, [f.id for f in fragments])
    for fragment in fragments:
        fragment.has_embedding = fragment.id in indexed
    return fragments
