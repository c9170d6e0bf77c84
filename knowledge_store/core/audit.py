"""Best-effort audit trail delivered over a non-blocking in-process channel.

Events are emitted after the primary write has committed and are handed to a
sink by a background thread, so a failing or slow sink never fails or delays
the operation that produced the event.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from knowledge_store.core.models import utcnow

logger = logging.getLogger(__name__)

ENTITY_TYPE = "knowledge"


@dataclass(frozen=True)
class AuditEvent:
    """Outbound audit record."""

    tenant_id: str
    action: str
    actor: str | None
    changes: dict[str, Any] = field(default_factory=dict)
    entity_type: str = ENTITY_TYPE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def entity_id(self) -> str | None:
        return self.changes.get("source_id") or self.changes.get("fragment_id")


AuditSink = Callable[[AuditEvent], None]

_STOP = object()


class AuditLog:
    """Queue-backed audit channel. Thread-safe."""

    def __init__(self, sink: AuditSink, maxsize: int = 1000) -> None:
        self._sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._drain, name="audit-log", daemon=True
                )
                self._thread.start()

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._sink(event)
            except Exception:
                logger.exception(f"Audit entry dropped: {getattr(event, 'action', event)}")
            finally:
                self._queue.task_done()

    def emit(
        self,
        tenant_id: str,
        action: str,
        changes: dict[str, Any],
        actor: str | None,
    ) -> None:
        """Queue an audit event. Never raises."""
        event = AuditEvent(tenant_id=tenant_id, action=action, actor=actor, changes=changes)
        try:
            self._ensure_started()
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Audit queue full, dropping {action} for tenant {tenant_id}")
        except Exception:
            logger.exception(f"Could not queue audit event {action}")

    def flush(self) -> None:
        """Block until every queued event has been handed to the sink."""
        if self._thread is not None and self._thread.is_alive():
            self._queue.join()

    def close(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join()
        self._thread = None


_audit: AuditLog | None = None


def init_audit_log(sink: AuditSink, maxsize: int = 1000) -> AuditLog:
    """Initialize the global audit log."""
    global _audit
    if _audit is not None:
        _audit.close()
    _audit = AuditLog(sink, maxsize=maxsize)
    return _audit


def get_audit_log() -> AuditLog:
    """Get the global audit log. Must call init_audit_log first."""
    if _audit is None:
        raise RuntimeError("AuditLog not initialized. Call init_audit_log first.")
    return _audit
