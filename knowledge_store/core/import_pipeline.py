"""Bulk fragment import from delimited text and separator-split text blocks."""

from __future__ import annotations

import csv
import io
import logging
from typing import TYPE_CHECKING

from knowledge_store.core.errors import NotFound, SchemaError, StorageError
from knowledge_store.core.fragment_store import normalize_tags
from knowledge_store.core.hashing import content_hash
from knowledge_store.core.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    ImportCandidate,
    ImportResult,
)

if TYPE_CHECKING:
    from knowledge_store.core.audit import AuditLog
    from knowledge_store.core.indexing import IndexingCoordinator
    from knowledge_store.core.storage import KnowledgeDB

logger = logging.getLogger(__name__)

TITLE_HEADERS = ("title", "titulo", "título")
CONTENT_HEADERS = ("content", "contenido")
TAGS_HEADERS = ("tags", "etiquetas")
PRIORITY_HEADERS = ("priority", "prioridad")

DEFAULT_SEPARATOR = "---"
UNTITLED = "Untitled"


def _column(headers: list[str], names: tuple[str, ...]) -> int | None:
    for i, header in enumerate(headers):
        if header in names:
            return i
    return None


def _cell(values: list[str], index: int | None) -> str:
    if index is None or index >= len(values):
        return ""
    return values[index].strip()


def _parse_priority(raw: str) -> int | None:
    """Integer 1-10, otherwise None (out-of-range and non-numeric are ignored)."""
    try:
        value = int(raw)
    except ValueError:
        return None
    if MIN_PRIORITY <= value <= MAX_PRIORITY:
        return value
    return None


def parse_csv(text: str) -> list[ImportCandidate]:
    """Parse comma-separated rows with a header row into import candidates.

    Standard CSV quoting applies: quoted fields may contain commas, newlines
    and doubled quotes. Rows with an empty title or content are kept so the
    importer can report them with their row number.

    Raises:
        SchemaError: header has no title or no content column.
    """
    reader = csv.reader(io.StringIO(text.replace("\r\n", "\n")))
    rows = [r for r in reader if r]
    if not rows:
        return []

    headers = [h.replace("\ufeff", "").strip().lower() for h in rows[0]]
    title_idx = _column(headers, TITLE_HEADERS)
    content_idx = _column(headers, CONTENT_HEADERS)
    tags_idx = _column(headers, TAGS_HEADERS)
    priority_idx = _column(headers, PRIORITY_HEADERS)

    if title_idx is None or content_idx is None:
        raise SchemaError('CSV must have "title" and "content" columns')

    candidates = []
    for values in rows[1:]:
        candidate = ImportCandidate(
            title=_cell(values, title_idx),
            content=_cell(values, content_idx),
        )
        raw_tags = _cell(values, tags_idx)
        if raw_tags:
            candidate.tags = [t.strip() for t in raw_tags.split(";") if t.strip()]
        raw_priority = _cell(values, priority_idx)
        if raw_priority:
            candidate.priority = _parse_priority(raw_priority)
        candidates.append(candidate)
    return candidates


def parse_text_blocks(text: str, separator: str = DEFAULT_SEPARATOR) -> list[ImportCandidate]:
    """Split text on separator; first line of each block is the title, the rest the content.

    A block whose first line is blank is titled "Untitled". Content may come
    out empty, in which case the importer rejects that row.
    """
    if not separator:
        raise ValueError("separator must not be empty")

    candidates = []
    for block in text.replace("\r\n", "\n").split(separator):
        if not block.strip():
            continue
        block = block.rstrip()
        # Drop the line break that ends the separator line itself
        if block.startswith("\n"):
            block = block[1:]
        lines = block.split("\n")
        title = lines[0].strip() or UNTITLED
        content = "\n".join(lines[1:]).strip()
        candidates.append(ImportCandidate(title=title, content=content))
    return candidates


class FragmentImporter:
    """Validates candidates and inserts them as one batch."""

    def __init__(
        self,
        db: "KnowledgeDB",
        audit: "AuditLog",
        coordinator: "IndexingCoordinator",
    ) -> None:
        self._db = db
        self._audit = audit
        self._coordinator = coordinator

    def import_fragments(
        self,
        tenant_id: str,
        candidates: list[ImportCandidate],
        source_id: str | None = None,
        *,
        actor: str | None,
        generate_embeddings: bool = True,
    ) -> ImportResult:
        """Import candidates into the tenant, optionally under a source.

        Row problems are collected in the result (1-based row numbers) and
        never abort the batch. A storage failure on the bulk insert reports
        the whole batch under row 0.
        """
        if source_id and self._db.get_source(tenant_id, source_id) is None:
            raise NotFound("KnowledgeSource", source_id)

        result = ImportResult(total_processed=len(candidates))
        rows = []

        for i, candidate in enumerate(candidates, start=1):
            title = (candidate.title or "").strip()
            content = (candidate.content or "").strip()
            if not title:
                result.add_error(i, "Title is required")
                continue
            if not content:
                result.add_error(i, "Content is required")
                continue

            priority = candidate.priority
            if priority is None or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
                priority = DEFAULT_PRIORITY

            rows.append(
                {
                    "source_id": source_id or None,
                    "title": title,
                    "content": content,
                    "content_hash": content_hash(content),
                    "tags": normalize_tags(candidate.tags),
                    "priority": priority,
                }
            )

        if not rows:
            return result

        try:
            result.fragment_ids = self._db.insert_fragments_bulk(tenant_id, rows, created_by=actor)
        except StorageError as e:
            logger.error(f"Bulk import of {len(rows)} fragments failed for tenant {tenant_id}: {e}")
            result.add_error(0, f"Database error: {e}")
            result.error_count += len(rows) - 1
            return result

        result.success_count = len(result.fragment_ids)
        result.success = result.success_count > 0

        if source_id:
            self._db.refresh_fragment_count(tenant_id, source_id)

        if generate_embeddings and result.fragment_ids:
            try:
                job = self._coordinator.request_embeddings(
                    tenant_id,
                    result.fragment_ids,
                    actor,
                    import_batch=True,
                    source_id=source_id,
                )
                result.job_id = job.id
            except StorageError as e:
                logger.error(f"Could not queue embedding job after import: {e}")

        logger.info(
            f"Imported {result.success_count}/{result.total_processed} fragments "
            f"for tenant {tenant_id} ({result.error_count} errors)"
        )
        self._audit.emit(
            tenant_id,
            "import_knowledge_fragments",
            {
                "source_id": source_id,
                "count": result.success_count,
                "fragment_ids": result.fragment_ids,
                "job_id": result.job_id,
            },
            actor,
        )
        return result
