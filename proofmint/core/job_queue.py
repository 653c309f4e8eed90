"""
Durable mint job queue backed by PostgreSQL.

Jobs are rows in ``mint_jobs``. Producers insert them in the ``waiting`` state;
the single consumer leases the oldest due job with ``FOR UPDATE SKIP LOCKED``
and moves it through ``active`` to ``completed``, ``delayed`` (retry scheduled)
or ``failed``. Terminal jobs are kept for an audit window and then purged.
"""

import structlog
from typing import Any, Dict, Optional
from datetime import timedelta

from psycopg2 import extras

from proofmint import config
from proofmint.core.database import Database
from proofmint.core.errors import InvalidJobPayloadError, JobNotFoundError
from proofmint.core.utils import new_record_id, utcnow
from proofmint.models.jobs import JobState, MintJob, MintJobPayload

logger = structlog.get_logger()

# pg_advisory_lock key held by the one process allowed to consume the queue
WORKER_LOCK_KEY = 0x50524F4F464D4E54

class JobQueue:
    """Queue handle used by both the API (producer) and the worker (consumer)."""

    def __init__(self, db: Database, name: str = config.MINT_QUEUE_NAME,
                 max_attempts: int = config.MINT_MAX_ATTEMPTS):
        self.db = db
        self.name = name
        self.max_attempts = max_attempts
        self._lock_conn = None

    # Producer side

    def enqueue(self, payload: MintJobPayload) -> str:
        """Persist a new job and return its ID without waiting for processing."""
        if not isinstance(payload, MintJobPayload):
            try:
                payload = MintJobPayload.model_validate(payload)
            except Exception as e:
                raise InvalidJobPayloadError(str(e))

        job_id = new_record_id()
        sql = """
        INSERT INTO mint_jobs (id, queue_name, payload, state, max_attempts)
        VALUES (%s, %s, %s, %s, %s)
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, (
                        job_id, self.name,
                        extras.Json(payload.model_dump(mode="json")),
                        JobState.WAITING.value, self.max_attempts,
                    ))
                    conn.commit()

            logger.info("Mint job enqueued", job_id=job_id, original_hash=payload.original_hash)
            return job_id

        except Exception as e:
            logger.error("Failed to enqueue mint job", original_hash=payload.original_hash, error=str(e))
            raise

    def get_job(self, job_id: str) -> MintJob:
        sql = "SELECT * FROM mint_jobs WHERE id::text = %s AND queue_name = %s"
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (job_id, self.name))
                    row = cur.fetchone()
        except Exception as e:
            logger.error("Failed to load mint job", job_id=job_id, error=str(e))
            raise

        if not row:
            raise JobNotFoundError()
        return _job_from_row(row)

    def counts(self) -> Dict[str, int]:
        sql = "SELECT state, COUNT(*) FROM mint_jobs WHERE queue_name = %s GROUP BY state"
        counts = {state.value: 0 for state in JobState}
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (self.name,))
                for state, count in cur.fetchall():
                    counts[state] = count
        return counts

    # Consumer side

    def acquire_worker_lock(self) -> bool:
        """Take the process-wide consumer lock; False if another worker holds it."""
        if self._lock_conn is not None:
            return True
        conn = self.db.connect()
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute("SELECT pg_try_advisory_lock(%s)", (WORKER_LOCK_KEY,))
            acquired = cur.fetchone()[0]
        if not acquired:
            conn.close()
            return False
        self._lock_conn = conn
        return True

    def release_worker_lock(self):
        if self._lock_conn is None:
            return
        try:
            with self._lock_conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(%s)", (WORKER_LOCK_KEY,))
        finally:
            self._lock_conn.close()
            self._lock_conn = None

    def recover_orphaned(self) -> int:
        """Return jobs left ``active`` by a crashed consumer to ``waiting``."""
        sql = """
        UPDATE mint_jobs SET state = 'waiting', run_at = NOW()
        WHERE queue_name = %s AND state = 'active'
        RETURNING id
        """
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (self.name,))
                recovered = [str(row[0]) for row in cur.fetchall()]
                conn.commit()

        for job_id in recovered:
            logger.warning("Re-queued orphaned active job; a mint may already have landed",
                           job_id=job_id)
        return len(recovered)

    def lease(self) -> Optional[MintJob]:
        """Move the oldest due job to ``active`` and return it, or None if idle."""
        sql = """
        UPDATE mint_jobs
        SET state = 'active', attempts_made = attempts_made + 1, processed_at = NOW()
        WHERE id = (
            SELECT id FROM mint_jobs
            WHERE queue_name = %s AND state IN ('waiting', 'delayed') AND run_at <= NOW()
            ORDER BY run_at, created_at
            FOR UPDATE SKIP LOCKED
            LIMIT 1
        )
        RETURNING *
        """
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, (self.name,))
                row = cur.fetchone()
                conn.commit()
        return _job_from_row(row) if row else None

    def update_progress(self, job_id: str, progress: int):
        """Record progress; stored progress never decreases."""
        sql = "UPDATE mint_jobs SET progress = GREATEST(progress, %s) WHERE id::text = %s"
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (int(progress), job_id))
                conn.commit()

    def complete(self, job_id: str, result: Dict[str, Any]):
        sql = """
        UPDATE mint_jobs
        SET state = 'completed', progress = 100, result = %s, failed_reason = NULL, finished_at = NOW()
        WHERE id::text = %s
        """
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (extras.Json(result), job_id))
                conn.commit()

    def schedule_retry(self, job_id: str, reason: str, delay_seconds: float):
        sql = """
        UPDATE mint_jobs
        SET state = 'delayed', failed_reason = %s, run_at = NOW() + %s
        WHERE id::text = %s
        """
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (reason, timedelta(seconds=delay_seconds), job_id))
                conn.commit()

    def fail(self, job_id: str, reason: str):
        sql = """
        UPDATE mint_jobs SET state = 'failed', failed_reason = %s, finished_at = NOW()
        WHERE id::text = %s
        """
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (reason, job_id))
                conn.commit()

    def requeue(self, job_id: str) -> bool:
        """Return a leased job to ``waiting`` when its outcome could not be recorded."""
        sql = """
        UPDATE mint_jobs SET state = 'waiting', run_at = NOW()
        WHERE id::text = %s AND state = 'active'
        """
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                requeued = cur.rowcount == 1
                conn.commit()
        return requeued

    def purge_finished(self, completed_age: int = config.COMPLETED_RETENTION_SECONDS,
                       completed_count: int = config.COMPLETED_RETENTION_COUNT,
                       failed_age: int = config.FAILED_RETENTION_SECONDS) -> int:
        """
        Drop terminal jobs past their audit window.

        Completed jobs are kept for ``completed_age`` seconds and at most the
        ``completed_count`` most recent; failed jobs for ``failed_age`` seconds.
        """
        now = utcnow()
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        DELETE FROM mint_jobs
                        WHERE queue_name = %s AND state = 'completed'
                          AND (finished_at < %s OR id NOT IN (
                              SELECT id FROM mint_jobs
                              WHERE queue_name = %s AND state = 'completed'
                              ORDER BY finished_at DESC
                              LIMIT %s
                          ))
                    """, (self.name, now - timedelta(seconds=completed_age), self.name, completed_count))
                    completed_deleted = cur.rowcount

                    cur.execute("""
                        DELETE FROM mint_jobs
                        WHERE queue_name = %s AND state = 'failed' AND finished_at < %s
                    """, (self.name, now - timedelta(seconds=failed_age)))
                    failed_deleted = cur.rowcount
                    conn.commit()

            if completed_deleted or failed_deleted:
                logger.info("Purged finished mint jobs",
                            completed_deleted=completed_deleted, failed_deleted=failed_deleted)
            return completed_deleted + failed_deleted

        except Exception as e:
            logger.error("Failed to purge finished jobs", error=str(e))
            raise

def _job_from_row(row) -> MintJob:
    row = dict(row)
    return MintJob(
        job_id=str(row["id"]),
        payload=MintJobPayload.model_validate(row["payload"]),
        state=row["state"],
        progress=row["progress"],
        attempts_made=row["attempts_made"],
        result=row.get("result"),
        failed_reason=row.get("failed_reason"),
        created_at=row.get("created_at"),
        processed_at=row.get("processed_at"),
        finished_at=row.get("finished_at"),
    )
