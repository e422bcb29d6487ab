"""Completion worker: runs durable completion jobs on a thread pool.

Jobs are rows in the store, so work enqueued before a restart is picked up by
the next drain. A claimed job holds a lease; a RUNNING job whose lease expired
was orphaned by a crash and is claimed again.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import assert_never

from cert_engine.acme_client import TRANSIENT_ERRORS
from cert_engine.issuance import IssuanceService
from cert_engine.models import CompletionJob, JobKind
from cert_engine.store import CertificateStore

logger = logging.getLogger(__name__)

_BACKOFF_BASE_SECONDS = 30
_LEASE_MARGIN_SECONDS = 120

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CompletionWorker:
    """Claims due completion jobs and executes them, retrying transient failures with backoff."""

    def __init__(
        self,
        store: CertificateStore,
        issuance: IssuanceService,
        *,
        max_workers: int = 4,
        max_attempts: int = 3,
        deadline_seconds: int = 180,
        backoff_base_seconds: int = _BACKOFF_BASE_SECONDS,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._issuance = issuance
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._lease_seconds = deadline_seconds + _LEASE_MARGIN_SECONDS
        self._backoff_base_seconds = backoff_base_seconds
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="completion")
        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="completion-dispatch")
        self._drain_lock = threading.Lock()

    def wake(self) -> Future:
        """Schedule a drain in the background and return immediately."""
        return self._dispatcher.submit(self.drain)

    def drain(self) -> int:
        """Run batches until no job is due. Returns the total number of jobs run."""
        total = 0
        while True:
            ran = self.run_pending()
            if not ran:
                return total
            total += ran

    def run_pending(self) -> int:
        """Claim up to one job per worker thread, run them concurrently and wait.

        Returns the number of jobs run. A claimed job starts at once, so its
        lease covers only its own run; later jobs wait for the next batch.
        """
        with self._drain_lock:
            jobs = self._store.claim_due_jobs(self._clock(), self._max_workers, self._lease_seconds)
            if not jobs:
                return 0
            logger.info("Running %d completion job(s)", len(jobs))
            futures = [self._pool.submit(self._run, job) for job in jobs]
            for future in futures:
                future.result()
            return len(jobs)

    def _run(self, job: CompletionJob) -> None:
        try:
            self._execute(job)
        except TRANSIENT_ERRORS as e:
            if job.attempts < self._max_attempts:
                delay = timedelta(seconds=self._backoff_base_seconds * 2 ** (job.attempts - 1))
                logger.warning(
                    "Job %s for certificate %s hit a transient error (attempt %d/%d), retrying in %s: %s",
                    job.id,
                    job.cert_id,
                    job.attempts,
                    self._max_attempts,
                    delay,
                    e,
                )
                self._store.retry_job(job.id, self._clock() + delay, str(e))
                return
            self._give_up(job, e)
        except Exception as e:
            self._give_up(job, e)
        else:
            self._store.complete_job(job.id)

    def _execute(self, job: CompletionJob) -> None:
        if job.kind is JobKind.COMPLETE_HTTP01:
            self._issuance.complete_http01(job.cert_id)
        else:
            assert_never(job.kind)

    def _give_up(self, job: CompletionJob, error: Exception) -> None:
        logger.exception("Job %s for certificate %s failed after %d attempt(s)", job.id, job.cert_id, job.attempts)
        message = str(error) or type(error).__name__
        self._issuance.fail(job.cert_id, message)
        self._store.fail_job(job.id, message)

    def shutdown(self, wait: bool = True) -> None:
        self._dispatcher.shutdown(wait=wait)
        self._pool.shutdown(wait=wait)
