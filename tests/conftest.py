"""Shared fixtures: in-memory knowledge database and the services built on it."""

import sqlite3

import pytest

from knowledge_store.core.audit import AuditLog
from knowledge_store.core.fragment_store import FragmentStore
from knowledge_store.core.import_pipeline import FragmentImporter
from knowledge_store.core.indexing import IndexingCoordinator, IndexingJobStore
from knowledge_store.core.storage import KnowledgeDB


@pytest.fixture
def db():
    """Create an in-memory database for testing."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    database = KnowledgeDB(conn=conn)
    database.init()
    return database


@pytest.fixture
def audit(db):
    log = AuditLog(db.insert_audit_entry)
    yield log
    log.close()


@pytest.fixture
def jobs(db):
    return IndexingJobStore(db)


@pytest.fixture
def coordinator(db, jobs, audit):
    return IndexingCoordinator(db, jobs, audit)


@pytest.fixture
def store(db, audit, coordinator):
    return FragmentStore(db, audit, coordinator)


@pytest.fixture
def importer(db, audit, coordinator):
    return FragmentImporter(db, audit, coordinator)


@pytest.fixture
def embed(db):
    """Store a fake embedding for a fragment at its current version."""

    def _embed(fragment, model="test-model"):
        return db.save_embedding_if_current(
            fragment.tenant_id,
            fragment_id=fragment.id,
            fragment_version=fragment.version,
            model=model,
            embedding=b"\x00" * 12,
            dimensions=3,
        )

    return _embed
