# lifecycle.py
import logging
from datetime import timedelta

from errors import TransientDeliveryError
from models import DELIVERED, FAILED, IN_PROGRESS, SCHEDULED, DispatchResult, utcnow

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "claim lease expired before delivery was confirmed"


class LifecycleController:
    """
    Applies the outcome of a dispatch to a claimed job:

      in_progress -> delivered   any channel succeeded
      in_progress -> scheduled   failed, retries left (after backoff)
      in_progress -> failed      failed permanently or out of attempts
    """

    def __init__(self, storage, audit, worker_id, retry_backoff_seconds=30):
        self.storage = storage
        self.audit = audit
        self.worker_id = worker_id
        self.retry_backoff_seconds = retry_backoff_seconds

    def backoff(self, attempts):
        return timedelta(seconds=self.retry_backoff_seconds * 2 ** max(attempts - 1, 0))

    def complete(self, job, result, now=None):
        """Commit the transition for `result`; returns the updated job, or None if the claim was lost."""
        now = now or utcnow()
        attempts = job.attempts + 1
        fields = {"attempts": attempts, "last_attempt_at": now}

        if result.any_succeeded:
            new_status = DELIVERED
            fields.update(delivered_at=now, next_attempt_at=None, last_error=result.error_summary())
        elif result.permanent or attempts >= job.max_attempts:
            new_status = FAILED
            fields.update(last_error=result.error_summary(), next_attempt_at=None)
        else:
            new_status = SCHEDULED
            next_attempt_at = now + self.backoff(attempts) if self.retry_backoff_seconds else None
            fields.update(last_error=result.error_summary(), next_attempt_at=next_attempt_at)
        fields["status"] = new_status

        if not self.storage.finish(job.id, self.worker_id, fields, now=now):
            logger.warning("job %s: claim lost before %s could be recorded", job.id, new_status)
            return None

        self.audit.emit(job.id, IN_PROGRESS, new_status, attempts,
                        error=fields.get("last_error"), worker_id=self.worker_id, at=now)
        return self.storage.get_job(job.id)

    def abandon(self, job, now=None):
        """Count a reclaimed stale job as one failed transient attempt."""
        result = DispatchResult({channel: TransientDeliveryError(LEASE_EXPIRED) for channel in job.channel_list})
        return self.complete(job, result, now=now)
