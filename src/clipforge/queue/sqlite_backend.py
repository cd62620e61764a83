"""SQLite implementation of ConsumableQueue.

This module provides the local, crash-safe queue using:
- sqlite-utils for schema management and row access
- WAL mode for concurrent readers alongside one writer
- BEGIN IMMEDIATE transactions for atomic dequeue
- Exponential backoff retry for database lock handling
- Heartbeats and stale-item reset for crash recovery
"""

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from .backends import ConsumableQueue
from .models import EnqueueResult, JobDescriptor, QueueItem, QueueItemStatus

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_items (
    job_id TEXT PRIMARY KEY,
    job_key TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    last_error TEXT,
    result TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_status_created ON queue_items(status, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_job_key ON queue_items(job_key);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

COLUMNS = (
    "job_id", "job_key", "payload", "status", "attempt_count", "created_at", "started_at",
    "completed_at", "last_heartbeat", "worker_id", "last_error", "result",
)


class SQLiteQueue(ConsumableQueue):
    """SQLite-backed queue with atomic dequeue.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never claim the same item
    - One connection per instance, shared across threads under a lock
    - Heartbeat threads open their own instance
    """

    def __init__(self, db_path: str):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db = Database(conn)
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()
        self.db.executescript(SCHEMA_SQL)

    def enqueue(self, descriptor: JobDescriptor) -> EnqueueResult:
        """Add a descriptor as a pending item.

        Re-enqueueing a job_id that is running or succeeded is refused;
        anything else is reset to pending with the new payload.
        """
        with self._lock:
            existing = self.get_status(descriptor.job_id)
            if existing.get("status") in (QueueItemStatus.RUNNING.value, QueueItemStatus.SUCCEEDED.value):
                return EnqueueResult(accepted=False, reason=f"Job {descriptor.job_id} already {existing['status']}")

            now = datetime.now().isoformat()
            self.db["queue_items"].insert(
                {
                    "job_id": descriptor.job_id,
                    "job_key": descriptor.job_key,
                    "payload": descriptor.model_dump_json(),
                    "status": QueueItemStatus.PENDING.value,
                    "attempt_count": 0,
                    "created_at": now,
                },
                pk="job_id",
                replace=True,
            )
            self.db.conn.commit()
            self._log_transition(descriptor.job_id, existing.get("status"), QueueItemStatus.PENDING.value)
        return EnqueueResult(accepted=True, message_id=descriptor.job_id)

    def status(self) -> Dict[str, Any]:
        try:
            counts = self.counts()
        except sqlite3.Error as e:
            return {"healthy": False, "configured": True, "message": f"Queue database error: {e}"}
        return {
            "healthy": True,
            "configured": True,
            "message": f"{counts['pending']} pending, {counts['running']} running",
        }

    def dequeue(self, worker_id: str) -> Optional[QueueItem]:
        """Atomically claim the oldest pending item.

        Retry logic: exponential backoff (100ms, 200ms, 400ms) on database lock.
        """
        max_retries = 3
        for attempt in range(max_retries):
            try:
                with self._lock:
                    return self._dequeue_once(worker_id)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        return None

    def _dequeue_once(self, worker_id: str) -> Optional[QueueItem]:
        conn = self.db.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            now = datetime.now().isoformat()
            cursor = conn.execute(
                f"""
                UPDATE queue_items
                SET status = ?,
                    worker_id = ?,
                    started_at = ?,
                    last_heartbeat = ?,
                    attempt_count = attempt_count + 1
                WHERE job_id = (
                    SELECT job_id FROM queue_items
                    WHERE status = ?
                    ORDER BY created_at ASC
                    LIMIT 1
                )
                RETURNING {", ".join(COLUMNS)}
                """,
                (QueueItemStatus.RUNNING.value, worker_id, now, now, QueueItemStatus.PENDING.value),
            )
            row = cursor.fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        if row is None:
            return None
        item = self._row_to_item(dict(zip(COLUMNS, row)))
        self._log_transition(item.job_id, QueueItemStatus.PENDING.value,
                             QueueItemStatus.RUNNING.value, worker_id=worker_id)
        return item

    def _row_to_item(self, row: Dict[str, Any]) -> QueueItem:
        def parse(value):
            return datetime.fromisoformat(value) if value else None

        return QueueItem(
            descriptor=JobDescriptor.model_validate_json(row["payload"]),
            status=QueueItemStatus(row["status"]),
            attempt_count=row["attempt_count"] or 0,
            worker_id=row["worker_id"],
            created_at=parse(row["created_at"]),
            started_at=parse(row["started_at"]),
            completed_at=parse(row["completed_at"]),
            last_heartbeat=parse(row["last_heartbeat"]),
            last_error=row["last_error"],
            result=json.loads(row["result"]) if row["result"] else {},
        )

    def ack_success(self, job_id: str, result: Dict[str, Any]) -> None:
        self._finish(job_id, QueueItemStatus.SUCCEEDED, result=result)

    def ack_fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, QueueItemStatus.FAILED, error=error)

    def _finish(self, job_id: str, status: QueueItemStatus, result: Optional[Dict[str, Any]] = None,
                error: Optional[str] = None) -> None:
        error_snippet = error[:500] if error else None
        with self._lock:
            with self.db.conn:
                self.db.execute(
                    """
                    UPDATE queue_items
                    SET status = ?, completed_at = ?, last_error = ?, result = ?
                    WHERE job_id = ?
                    """,
                    (status.value, datetime.now().isoformat(), error_snippet,
                     json.dumps(result) if result is not None else None, job_id),
                )
            self._log_transition(job_id, QueueItemStatus.RUNNING.value, status.value, error=error_snippet)

    def update_heartbeat(self, job_id: str) -> None:
        """Only updates items in 'running' state."""
        with self._lock:
            with self.db.conn:
                self.db.execute(
                    "UPDATE queue_items SET last_heartbeat = ? WHERE job_id = ? AND status = ?",
                    (datetime.now().isoformat(), job_id, QueueItemStatus.RUNNING.value),
                )

    def reset_stale_running(self, timeout_s: int = 7200) -> int:
        """Crash recovery: reset running items whose heartbeat is older than ``timeout_s``."""
        cutoff = (datetime.now() - timedelta(seconds=timeout_s)).isoformat()
        with self._lock:
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE queue_items
                    SET status = ?, worker_id = NULL
                    WHERE status = ?
                      AND COALESCE(last_heartbeat, started_at, created_at) < ?
                    RETURNING job_id
                    """,
                    (QueueItemStatus.PENDING.value, QueueItemStatus.RUNNING.value, cutoff),
                )
                rows = cursor.fetchall()
            for row in rows:
                self._log_transition(row[0], QueueItemStatus.RUNNING.value, QueueItemStatus.PENDING.value,
                                     error="Reset stale job (crash recovery)")
        if rows:
            logger.warning("Reset %d stale running queue items", len(rows))
        return len(rows)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """Raw row for a job, or an empty dict if unknown."""
        with self._lock:
            rows = list(self.db["queue_items"].rows_where("job_id = ?", [job_id]))
        return dict(rows[0]) if rows else {}

    def get_item(self, job_id: str) -> Optional[QueueItem]:
        row = self.get_status(job_id)
        return self._row_to_item(row) if row else None

    def get_all_items(self, status_filter: Optional[str] = None) -> List[QueueItem]:
        with self._lock:
            if status_filter:
                rows = list(self.db["queue_items"].rows_where("status = ?", [status_filter]))
            else:
                rows = list(self.db["queue_items"].rows)
        return [self._row_to_item(dict(r)) for r in rows]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in QueueItemStatus}
        with self._lock:
            for status, n in self.db.execute(
                "SELECT status, COUNT(*) FROM queue_items GROUP BY status"
            ).fetchall():
                counts[status] = n
        counts["total"] = sum(counts.values())
        return counts

    def _log_transition(self, job_id: str, from_state: Optional[str], to_state: str,
                        worker_id: Optional[str] = None, error: Optional[str] = None) -> None:
        with self._lock:
            self.db["state_transitions"].insert({
                "job_id": job_id,
                "from_state": from_state,
                "to_state": to_state,
                "timestamp": datetime.now().isoformat(),
                "worker_id": worker_id,
                "error_snippet": error[:200] if error else None,
            })
            self.db.conn.commit()

    def close(self) -> None:
        self.db.conn.close()
