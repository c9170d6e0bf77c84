"""Tests for environment-driven settings."""

import os
from unittest.mock import patch

from knowledge_store.core.settings import Settings


def test_defaults():
    with patch.dict(os.environ, {}, clear=True):
        s = Settings.from_env()
    assert s.app_env == "dev"
    assert s.embedding_provider == "openai"
    assert s.embedding_model == "text-embedding-3-small"
    assert s.import_max_rows == 5000
    assert s.worker_batch_size == 100
    assert s.api_port == 8000


def test_overrides():
    env = {
        "DB_PATH": " /tmp/k.db ",
        "LOG_LEVEL": "debug",
        "IMPORT_MAX_ROWS": "10",
        "AUDIT_QUEUE_SIZE": "5",
    }
    with patch.dict(os.environ, env, clear=True):
        s = Settings.from_env()
    assert s.db_path == "/tmp/k.db"
    assert s.log_level == "DEBUG"
    assert s.import_max_rows == 10
    assert s.audit_queue_size == 5


def test_api_key_read_but_not_shown():
    with patch.dict(os.environ, {"OPENAI_API_KEY": " sk-secret "}, clear=True):
        s = Settings.from_env()
    assert s.openai_api_key == "sk-secret"
    assert "sk-secret" not in repr(s)
