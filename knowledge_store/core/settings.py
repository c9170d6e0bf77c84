from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    embedding_provider: str
    embedding_model: str
    openai_api_key: str = field(repr=False)
    import_max_rows: int
    audit_queue_size: int
    worker_batch_size: int
    api_host: str
    api_port: int

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/knowledge.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "openai").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small").strip(),
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            import_max_rows=_i("IMPORT_MAX_ROWS", "5000"),
            audit_queue_size=_i("AUDIT_QUEUE_SIZE", "1000"),
            worker_batch_size=_i("WORKER_BATCH_SIZE", "100"),
            api_host=os.getenv("API_HOST", "0.0.0.0").strip(),
            api_port=_i("API_PORT", "8000"),
        )
