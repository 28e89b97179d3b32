# claims.py
import uuid

from models import IN_PROGRESS, SCHEDULED, utcnow


class ClaimManager:
    """
    Hands out due jobs to exactly one worker.

    All coordination between pollers goes through Storage.claim_due: the
    select and the scheduled -> in_progress update share one write
    transaction, and each row update re-checks the status, so a job that
    another poller already took is skipped rather than claimed twice.
    """

    def __init__(self, storage, audit, worker_id=None, lease_seconds=600):
        self.storage = storage
        self.audit = audit
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds

    def claim_batch(self, limit, now=None):
        now = now or utcnow()
        jobs = self.storage.claim_due(self.worker_id, limit, now, self.lease_seconds)
        for job in jobs:
            self.audit.emit(job.id, SCHEDULED, IN_PROGRESS, job.attempts, worker_id=self.worker_id, at=now)
        return jobs

    def renew(self, job, now=None):
        """Refresh the lease right before delivery; False means another worker owns the job now."""
        return self.storage.renew_lease(job.id, self.worker_id, now or utcnow(), self.lease_seconds)

    def reclaim_stale(self, limit, now=None):
        """Jobs left in progress by a worker that never came back; caller records the lost attempt."""
        now = now or utcnow()
        return self.storage.claim_stale(self.worker_id, limit, now, self.lease_seconds)
