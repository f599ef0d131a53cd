"""Durable job storage backed by SQLite.

Every status transition is a conditional UPDATE guarded on the expected
prior status (and, for running jobs, on the claim token), so independent
worker processes sharing one database file never both claim or both
finish the same job.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import PersistenceError
from .logger import configure_logger
from .models import CLAIMABLE_STATUSES, Config, Job, JobStatus
from .utils import from_db, generate_job_id, to_db

logger = configure_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    handler_key TEXT NOT NULL,
    payload TEXT,
    tenant_id TEXT,
    priority INTEGER NOT NULL DEFAULT 5,
    status TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL,
    retry_delay_ms INTEGER NOT NULL,
    retry_backoff_multiplier REAL NOT NULL,
    retry_max_delay_ms INTEGER,
    retry_jitter INTEGER NOT NULL DEFAULT 1,
    timeout_ms INTEGER NOT NULL,
    error_message TEXT,
    locked_by TEXT,
    claim_token TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled ON jobs (status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_jobs_priority ON jobs (priority);
CREATE INDEX IF NOT EXISTS idx_jobs_tenant ON jobs (tenant_id);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs (created_at);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_COLUMNS = (
    "id",
    "name",
    "handler_key",
    "payload",
    "tenant_id",
    "priority",
    "status",
    "scheduled_at",
    "started_at",
    "completed_at",
    "retry_count",
    "max_retries",
    "retry_delay_ms",
    "retry_backoff_multiplier",
    "retry_max_delay_ms",
    "retry_jitter",
    "timeout_ms",
    "error_message",
    "locked_by",
    "claim_token",
    "created_at",
    "updated_at",
)

_CLAIMABLE = tuple(s.value for s in CLAIMABLE_STATUSES)

# Columns cleared whenever a job leaves the running state
_RELEASE_CLAIM = {"locked_by": None, "claim_token": None}


class JobStorage:
    """SQLite store for job records and persisted configuration."""

    def __init__(self, db_path: str = ".jobctl/jobs.db"):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open job store {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Job store error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write-locked transaction; other writers wait until it commits."""
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def _init_db(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(_SCHEMA)

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        payload = row["payload"]
        return Job(
            id=row["id"],
            name=row["name"],
            handler_key=row["handler_key"],
            payload=json.loads(payload) if payload is not None else None,
            tenant_id=row["tenant_id"],
            priority=row["priority"],
            status=JobStatus(row["status"]),
            scheduled_at=from_db(row["scheduled_at"]),
            started_at=from_db(row["started_at"]),
            completed_at=from_db(row["completed_at"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            retry_delay_ms=row["retry_delay_ms"],
            retry_backoff_multiplier=row["retry_backoff_multiplier"],
            retry_max_delay_ms=row["retry_max_delay_ms"],
            retry_jitter=bool(row["retry_jitter"]),
            timeout_ms=row["timeout_ms"],
            error_message=row["error_message"],
            locked_by=row["locked_by"],
            claim_token=row["claim_token"],
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )

    @staticmethod
    def _job_to_row(job: Job) -> Tuple[Any, ...]:
        return (
            job.id,
            job.name,
            job.handler_key,
            json.dumps(job.payload),
            job.tenant_id,
            job.priority,
            job.status.value,
            to_db(job.scheduled_at),
            to_db(job.started_at),
            to_db(job.completed_at),
            job.retry_count,
            job.max_retries,
            job.retry_delay_ms,
            job.retry_backoff_multiplier,
            job.retry_max_delay_ms,
            int(job.retry_jitter),
            job.timeout_ms,
            job.error_message,
            job.locked_by,
            job.claim_token,
            to_db(job.created_at),
            to_db(job.updated_at),
        )

    # Jobs

    def insert_job(self, job: Job) -> None:
        """Insert a new job row."""
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._job_to_row(job),
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        """Fetch one job by id, or None if it does not exist."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[Job]:
        """List jobs in creation order, optionally filtered by status and tenant."""
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)

        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._connection() as conn:
            return [self._row_to_job(row) for row in conn.execute(sql, params)]

    def claim_batch(self, batch_size: int, worker_id: str, now: datetime) -> List[Job]:
        """
        Claim up to batch_size due jobs for worker_id.

        Eligible jobs are pending or failed with scheduled_at <= now, taken in
        priority DESC, scheduled_at ASC order (insertion order breaks ties).
        Each job is flipped to running by an UPDATE that only matches while it
        is still claimable, inside a write-locked transaction.
        """
        now_db = to_db(now)
        claimed: List[str] = []

        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id FROM jobs
                WHERE status IN (?, ?) AND scheduled_at <= ?
                ORDER BY priority DESC, scheduled_at ASC, rowid ASC
                LIMIT ?
                """,
                (*_CLAIMABLE, now_db, batch_size),
            ).fetchall()

            for row in rows:
                cur = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, locked_by = ?, claim_token = ?, updated_at = ?
                    WHERE id = ? AND status IN (?, ?)
                    """,
                    (
                        JobStatus.RUNNING.value,
                        worker_id,
                        generate_job_id(),
                        now_db,
                        row["id"],
                        *_CLAIMABLE,
                    ),
                )
                if cur.rowcount == 1:
                    claimed.append(row["id"])

            jobs = [
                self._row_to_job(conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone())
                for job_id in claimed
            ]

        if jobs:
            logger.debug(f"Worker {worker_id} claimed {len(jobs)} job(s)")
        return jobs

    def _update_where(
        self,
        job_id: str,
        expected_status: JobStatus,
        fields: Dict[str, Any],
        claim_token: Optional[str] = None,
    ) -> bool:
        """Apply fields only if the job is still in expected_status (and claim)."""
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params: List[Any] = list(fields.values())
        sql = f"UPDATE jobs SET {assignments} WHERE id = ? AND status = ?"
        params.extend([job_id, expected_status.value])
        if claim_token is not None:
            sql += " AND claim_token = ?"
            params.append(claim_token)

        with self._connection() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount == 1

    def mark_started(self, job_id: str, claim_token: str, started_at: datetime) -> bool:
        """Stamp the start of the current attempt on a job this claim still holds."""
        started = to_db(started_at)
        return self._update_where(
            job_id,
            JobStatus.RUNNING,
            {"started_at": started, "updated_at": started},
            claim_token,
        )

    def complete_job(self, job_id: str, claim_token: str, now: datetime) -> bool:
        """Mark a claimed running job completed and release its claim."""
        fields = {
            "status": JobStatus.COMPLETED.value,
            "completed_at": to_db(now),
            "error_message": None,
            "updated_at": to_db(now),
            **_RELEASE_CLAIM,
        }
        return self._update_where(job_id, JobStatus.RUNNING, fields, claim_token)

    def schedule_retry(
        self,
        job_id: str,
        claim_token: str,
        retry_count: int,
        next_run_at: datetime,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Return a claimed running job to pending with its next run time."""
        fields = {
            "status": JobStatus.PENDING.value,
            "scheduled_at": to_db(next_run_at),
            "retry_count": retry_count,
            "error_message": error_message,
            "started_at": None,
            "updated_at": to_db(now),
            **_RELEASE_CLAIM,
        }
        return self._update_where(job_id, JobStatus.RUNNING, fields, claim_token)

    def dead_letter_job(
        self, job_id: str, claim_token: str, error_message: str, now: datetime
    ) -> bool:
        """Move a claimed running job to the dead letter queue."""
        fields = {
            "status": JobStatus.DEAD_LETTER.value,
            "completed_at": to_db(now),
            "error_message": error_message,
            "updated_at": to_db(now),
            **_RELEASE_CLAIM,
        }
        return self._update_where(job_id, JobStatus.RUNNING, fields, claim_token)

    def list_running(self, claimed_before: datetime) -> List[Job]:
        """Running jobs whose current attempt began before the given time."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND COALESCE(started_at, updated_at) <= ?
                ORDER BY updated_at
                """,
                (JobStatus.RUNNING.value, to_db(claimed_before)),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def release_stale_claim(
        self,
        job_id: str,
        claim_token: str,
        status: JobStatus,
        retry_count: int,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Release a claim abandoned by a dead worker, to failed or dead_letter."""
        fields: Dict[str, Any] = {
            "status": status.value,
            "retry_count": retry_count,
            "error_message": error_message,
            "updated_at": to_db(now),
            **_RELEASE_CLAIM,
        }
        if status == JobStatus.DEAD_LETTER:
            fields["completed_at"] = to_db(now)
        else:
            fields["scheduled_at"] = to_db(now)
            fields["started_at"] = None
        return self._update_where(job_id, JobStatus.RUNNING, fields, claim_token)

    # Dead-letter queue

    def list_dead_letter(
        self, limit: int, offset: int, tenant_id: Optional[str] = None
    ) -> Tuple[List[Job], int]:
        """One page of dead-letter jobs, newest first, plus the total count."""
        where = "status = ?"
        params: List[Any] = [JobStatus.DEAD_LETTER.value]
        if tenant_id is not None:
            where += " AND tenant_id = ?"
            params.append(tenant_id)

        with self._connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE {where} ORDER BY updated_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            return [self._row_to_job(row) for row in rows], total

    def dead_letter_older_than(
        self, cutoff: datetime, limit: int, tenant_id: Optional[str] = None
    ) -> List[Job]:
        """Dead-letter jobs untouched since the cutoff, oldest first."""
        sql = "SELECT * FROM jobs WHERE status = ? AND updated_at < ?"
        params: List[Any] = [JobStatus.DEAD_LETTER.value, to_db(cutoff)]
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        sql += " ORDER BY updated_at ASC LIMIT ?"
        params.append(limit)

        with self._connection() as conn:
            return [self._row_to_job(row) for row in conn.execute(sql, params)]

    def requeue_dead_letter(self, job_id: str, now: datetime) -> bool:
        """Return a dead-letter job to pending with a fresh retry budget."""
        fields = {
            "status": JobStatus.PENDING.value,
            "retry_count": 0,
            "error_message": None,
            "scheduled_at": to_db(now),
            "started_at": None,
            "completed_at": None,
            "updated_at": to_db(now),
            **_RELEASE_CLAIM,
        }
        return self._update_where(job_id, JobStatus.DEAD_LETTER, fields)

    def delete_dead_letter(self, job_id: str) -> bool:
        """Delete a job only if it is still in the dead letter queue."""
        with self._connection() as conn:
            cur = conn.execute(
                "DELETE FROM jobs WHERE id = ? AND status = ?",
                (job_id, JobStatus.DEAD_LETTER.value),
            )
            return cur.rowcount == 1

    # Statistics

    def counts_by_status(self, created_since: datetime) -> Dict[JobStatus, int]:
        """Number of jobs per status among those created since the cutoff."""
        counts: Dict[JobStatus, int] = {status: 0 for status in JobStatus}
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM jobs WHERE created_at >= ? GROUP BY status",
                (to_db(created_since),),
            ).fetchall()
        for row in rows:
            counts[JobStatus(row["status"])] = row["cnt"]
        return counts

    def completion_spans(self, completed_since: datetime) -> Sequence[Tuple[datetime, datetime]]:
        """(started_at, completed_at) of jobs completed successfully since the cutoff."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT started_at, completed_at FROM jobs
                WHERE status = ? AND completed_at >= ? AND started_at IS NOT NULL
                """,
                (JobStatus.COMPLETED.value, to_db(completed_since)),
            ).fetchall()
        return [(from_db(row["started_at"]), from_db(row["completed_at"])) for row in rows]

    # Configuration

    def get_config(self) -> Config:
        """Persisted configuration, with defaults for unset keys."""
        with self._connection() as conn:
            rows = conn.execute("SELECT key, value FROM config").fetchall()
        stored = {row["key"]: json.loads(row["value"]) for row in rows}
        return Config(**stored)

    def set_config(self, config: Config) -> None:
        """Persist every configuration field in one transaction."""
        with self._transaction() as conn:
            for key, value in config.model_dump().items():
                conn.execute(
                    "INSERT INTO config (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, json.dumps(value)),
                )
