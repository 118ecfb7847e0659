"""
SQLite database for persistent job storage.

This module provides a simple SQLite-based persistence layer for job records,
so the job history survives server restarts. Jobs that were still queued or
running when the process stopped are marked failed on start-up.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import JobStatus


# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")

INTERRUPTED_MESSAGE = "interrupted by restart"


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: every call opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        _ensure_db_dir(db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    sandbox_id TEXT NOT NULL,
                    parent_track TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    step_kind TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    short_description TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    parameters TEXT,
                    snapshot_track TEXT,
                    error TEXT,
                    events TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                ON jobs(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)

    def save_job(self, job_data: Dict[str, Any]) -> None:
        """
        Save or update a job record.

        Args:
            job_data: Dictionary with job fields
        """
        snapshot_track = job_data.get("snapshot_track")
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO jobs (
                    id, project_id, sandbox_id, parent_track,
                    workflow_id, step_kind, provider_id, short_description,
                    status, created_at, updated_at, parameters,
                    snapshot_track, error, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_data["id"],
                job_data["project_id"],
                job_data["sandbox_id"],
                json.dumps(list(job_data["parent_track"])),
                job_data["workflow_id"],
                job_data["step_kind"],
                job_data["provider_id"],
                job_data.get("short_description"),
                job_data["status"],
                _serialize_datetime(job_data["created_at"]),
                _serialize_datetime(job_data["updated_at"]),
                json.dumps(job_data.get("parameters", {})),
                json.dumps(list(snapshot_track)) if snapshot_track is not None else None,
                job_data.get("error"),
                json.dumps([
                    {"timestamp": _serialize_datetime(e["timestamp"]), "message": e["message"]}
                    for e in job_data.get("events", [])
                ]),
            ))

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Args:
            job_id: The job ID

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_dict(row)

    def list_jobs(self) -> List[Dict[str, Any]]:
        """
        List all jobs ordered by creation time (newest first).

        Returns:
            List of job data dictionaries
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC"
            ).fetchall()

            return [self._row_to_dict(row) for row in rows]

    def update_job_status(
        self,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        snapshot_track: Optional[List[int]] = None,
    ) -> None:
        """
        Update job status and related fields.

        Args:
            job_id: The job ID
            status: New status value
            error: Optional error message
            snapshot_track: Track of the appended snapshot for succeeded jobs
        """
        with self._get_connection() as conn:
            updates = ["status = ?", "updated_at = ?"]
            values: List[Any] = [status, _serialize_datetime(_now())]

            if error is not None:
                updates.append("error = ?")
                values.append(error)

            if snapshot_track is not None:
                updates.append("snapshot_track = ?")
                values.append(json.dumps(list(snapshot_track)))

            values.append(job_id)

            conn.execute(
                f"UPDATE jobs SET {', '.join(updates)} WHERE id = ?",
                values
            )

    def add_job_event(self, job_id: str, message: str, timestamp: Optional[datetime] = None) -> None:
        """
        Add an event to a job's event log.

        Args:
            job_id: The job ID
            message: Event message
            timestamp: Event time (default: now)
        """
        timestamp = timestamp or _now()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT events FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return

            events = json.loads(row["events"] or "[]")
            events.append({
                "timestamp": _serialize_datetime(timestamp),
                "message": message,
            })

            conn.execute(
                "UPDATE jobs SET events = ?, updated_at = ? WHERE id = ?",
                (json.dumps(events), _serialize_datetime(timestamp), job_id)
            )

    def fail_interrupted(self) -> int:
        """
        Mark jobs left queued or running by a previous process as failed.

        Returns:
            Number of jobs marked failed
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id FROM jobs WHERE status IN (?, ?)",
                (JobStatus.QUEUED.value, JobStatus.RUNNING.value),
            ).fetchall()
        for row in rows:
            self.update_job_status(row["id"], JobStatus.FAILED.value, error=INTERRUPTED_MESSAGE)
            self.add_job_event(row["id"], f"Job {INTERRUPTED_MESSAGE}.")
        return len(rows)

    def delete_job(self, job_id: str) -> bool:
        """
        Delete a job record.

        Args:
            job_id: The job ID

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        events_raw = json.loads(row["events"] or "[]")
        events = [
            {
                "timestamp": _deserialize_datetime(e["timestamp"]),
                "message": e["message"],
            }
            for e in events_raw
        ]

        return {
            "id": row["id"],
            "project_id": row["project_id"],
            "sandbox_id": row["sandbox_id"],
            "parent_track": json.loads(row["parent_track"]),
            "workflow_id": row["workflow_id"],
            "step_kind": row["step_kind"],
            "provider_id": row["provider_id"],
            "short_description": row["short_description"],
            "status": row["status"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "parameters": json.loads(row["parameters"] or "{}"),
            "snapshot_track": json.loads(row["snapshot_track"]) if row["snapshot_track"] else None,
            "error": row["error"],
            "events": events,
        }
