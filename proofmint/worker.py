"""
Mint worker process.

Exactly one worker may consume the mint queue at a time, system-wide. Across
processes this is enforced with a PostgreSQL advisory lock; inside a process a
module-level lock lets only one job execute at once. Identifier prediction in
the processor relies on this.

Run with ``python -m proofmint.worker``.
"""

import signal
import threading
import time
import structlog
from typing import Optional

from proofmint import config
from proofmint.core.database import Database, ProofStore
from proofmint.core.job_queue import JobQueue
from proofmint.core.ledger import LedgerClient
from proofmint.core.storage import DurableStorageClient
from proofmint.core.utils import configure_logging
from proofmint.models.jobs import MintJob
from proofmint.services.metadata import MetadataPublisher
from proofmint.services.processor import MintProcessor

logger = structlog.get_logger()

_execution_lock = threading.Lock()

class WorkerLockError(RuntimeError):
    """Another worker already consumes the queue."""

def backoff_delay(attempts_made: int, base_seconds: float = config.MINT_BACKOFF_SECONDS) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... after the 1st, 2nd, 3rd failed attempt."""
    return base_seconds * (2 ** max(attempts_made - 1, 0))

class MintWorker:
    """Leases mint jobs one at a time and applies the retry policy."""

    def __init__(self, queue: JobQueue, processor: MintProcessor,
                 max_attempts: int = config.MINT_MAX_ATTEMPTS,
                 backoff_seconds: float = config.MINT_BACKOFF_SECONDS,
                 poll_interval: float = config.WORKER_POLL_INTERVAL_SECONDS,
                 purge_interval: float = config.WORKER_PURGE_INTERVAL_SECONDS):
        self.queue = queue
        self.processor = processor
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.poll_interval = poll_interval
        self.purge_interval = purge_interval
        self._stopping = threading.Event()
        self._last_purge = 0.0
        self._stranded_job_id = None

    def start(self):
        if not self.queue.acquire_worker_lock():
            raise WorkerLockError("Another mint worker is already running")
        recovered = self.queue.recover_orphaned()
        logger.info("Mint worker started", queue=self.queue.name, recovered_jobs=recovered)

    def stop(self, *_args):
        logger.info("Mint worker stopping")
        self._stopping.set()

    def run_once(self) -> bool:
        """Lease and fully process at most one job. Returns False when the queue is idle."""
        with _execution_lock:
            if self._stranded_job_id is not None:
                self._requeue_stranded()
            job = self.queue.lease()
            if job is None:
                return False
            try:
                self._execute(job)
            except Exception:
                # The outcome was not recorded and the job is still active.
                self._stranded_job_id = job.job_id
                raise
            return True

    def _requeue_stranded(self):
        job_id = self._stranded_job_id
        self.queue.requeue(job_id)
        self._stranded_job_id = None
        logger.warning("Re-queued job whose outcome was not recorded; a mint may already have landed",
                       job_id=job_id)

    def _execute(self, job: MintJob):
        log = logger.bind(job_id=job.job_id, original_hash=job.payload.original_hash,
                          attempt=job.attempts_made)
        log.info("Processing mint job", user_wallet=job.payload.user_wallet)

        try:
            result = self.processor.process(
                job.job_id, job.payload,
                on_progress=lambda progress: self.queue.update_progress(job.job_id, progress),
            )
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or e.__class__.__name__
            # Unclassified exceptions (network, database) count as transient
            if not getattr(e, "retryable", True):
                log.error("Mint job failed permanently", error=reason, error_type=e.__class__.__name__)
                self.queue.fail(job.job_id, reason)
            elif job.attempts_made < self.max_attempts:
                delay = backoff_delay(job.attempts_made, self.backoff_seconds)
                log.warning("Mint job attempt failed, retrying", error=reason, retry_in_seconds=delay)
                self.queue.schedule_retry(job.job_id, reason, delay)
            else:
                log.error("Mint job failed after final attempt", error=reason)
                self.queue.fail(job.job_id, reason)
        else:
            self.queue.complete(job.job_id, result.model_dump(by_alias=True))
            log.info("Mint job completed", asset_id=result.asset_id, metadata_uri=result.metadata_uri)

    def purge_if_due(self):
        now = time.monotonic()
        if now - self._last_purge >= self.purge_interval:
            self._last_purge = now
            try:
                self.queue.purge_finished()
            except Exception as e:
                logger.error("Job purge failed", error=str(e))

    def run_forever(self):
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)
        logger.info("Mint worker ready and waiting for jobs")
        try:
            while not self._stopping.is_set():
                self.purge_if_due()
                try:
                    busy = self.run_once()
                except Exception as e:
                    # Queue bookkeeping failed (e.g. database unavailable); the next pass re-queues the job.
                    logger.error("Mint worker loop error", error=str(e))
                    busy = False
                if not busy:
                    self._stopping.wait(self.poll_interval)
        finally:
            self.queue.release_worker_lock()
            logger.info("Mint worker stopped")

def build_worker(db: Optional[Database] = None) -> MintWorker:
    db = db or Database().initialize()
    ledger = LedgerClient()
    publisher = MetadataPublisher(DurableStorageClient())
    processor = MintProcessor(ledger=ledger, publisher=publisher, proofs=ProofStore(db))
    return MintWorker(JobQueue(db), processor)

def main():
    configure_logging()
    worker = build_worker()
    worker.start()
    worker.run_forever()

if __name__ == "__main__":
    main()
