"""Typed failures raised by the knowledge store."""

from __future__ import annotations


class KnowledgeError(Exception):
    """Base exception for knowledge store errors."""


class NotFound(KnowledgeError):
    """Entity id does not resolve within the tenant."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(KnowledgeError):
    """A required field is empty or a value is out of range."""


class SchemaError(KnowledgeError):
    """Import input is missing required columns."""


class StorageError(KnowledgeError):
    """Underlying persistence failure."""


class VersionConflict(KnowledgeError):
    """Fragment was modified by another writer between read and write."""

    def __init__(self, fragment_id: str, expected_version: int) -> None:
        super().__init__(
            f"Fragment {fragment_id} is no longer at version {expected_version}"
        )
        self.fragment_id = fragment_id
        self.expected_version = expected_version


class InvalidTransition(KnowledgeError):
    """Indexing job status change not allowed by the state machine."""
