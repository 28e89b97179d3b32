# worker.py
import logging
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

from audit import AuditEmitter, ConsoleAuditSink, StoreAuditSink
from claims import ClaimManager
from dispatcher import DEFAULT_LINK_TTL, Dispatcher
from lifecycle import LifecycleController
from models import utcnow
from storage import DEFAULT_DB_PATH, Storage

logger = logging.getLogger(__name__)


class Worker:
    def __init__(self, resolver, senders, db_path=DEFAULT_DB_PATH, worker_id=None, poll_interval=60.0,
                 batch_size=50, lease_seconds=600, retry_backoff_seconds=30, send_timeout=30,
                 link_ttl=DEFAULT_LINK_TTL, concurrency=4, stop_event=None, clock=None, audit_sinks=None):
        # Own connection per worker; pollers only share the database file
        self.db = Storage(db_path)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        # The lease is renewed per job, so it only has to outlast one job's sends
        if lease_seconds <= 2 * send_timeout:
            logger.warning("lease_seconds=%s does not cover two sends of %ss; slow jobs may be taken over",
                           lease_seconds, send_timeout)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock or utcnow

        if audit_sinks is None:
            audit_sinks = [ConsoleAuditSink(), StoreAuditSink(self.db)]
        self.audit = AuditEmitter(audit_sinks)
        self.claims = ClaimManager(self.db, self.audit, self.worker_id, lease_seconds)
        self.controller = LifecycleController(self.db, self.audit, self.worker_id, retry_backoff_seconds)
        self.dispatcher = Dispatcher(resolver, senders, link_ttl=link_ttl, send_timeout=send_timeout,
                                     max_workers=self.concurrency * 2)

    def run(self):
        """Poll immediately, then every poll_interval until stopped."""
        try:
            while not self.stop_event.is_set():
                try:
                    self.run_once()
                except sqlite3.Error:
                    logger.exception("%s: tick aborted by store error; retrying next interval", self.worker_id)
                except Exception:
                    logger.exception("%s: tick aborted; retrying next interval", self.worker_id)
                if self.stop_event.wait(self.poll_interval):
                    break
        finally:
            self.close()

    def close(self):
        self.dispatcher.close()
        self.db.close()

    def _now(self):
        return self._clock()

    def run_once(self):
        """One poll tick; returns the number of jobs processed."""
        recovered = self.claims.reclaim_stale(self.batch_size, self._now())
        for job in recovered:
            logger.warning("%s: reclaimed stale job %s", self.worker_id, job.id)
            self.controller.abandon(job, self._now())

        jobs = self.claims.claim_batch(self.batch_size, self._now())
        if not jobs:
            return len(recovered)

        if self.concurrency == 1 or len(jobs) == 1:
            for job in jobs:
                self._process_job(job)
        else:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs)),
                                    thread_name_prefix=self.worker_id) as pool:
                list(pool.map(self._process_job, jobs))

        logger.info("%s: processed %d scheduled job(s)", self.worker_id, len(jobs))
        return len(recovered) + len(jobs)

    def _process_job(self, job):
        # One job's trouble must not stop the rest of the batch; an
        # uncommitted job stays in progress until its lease runs out.
        try:
            # Jobs late in a long batch may have been taken over while waiting
            if not self.claims.renew(job, self._now()):
                logger.warning("%s: job %s was taken over before delivery; skipping", self.worker_id, job.id)
                return None
            result = self.dispatcher.dispatch(job)
            return self.controller.complete(job, result, self._now())
        except Exception:
            logger.exception("%s: job %s left in progress after unexpected error", self.worker_id, job.id)
            return None
