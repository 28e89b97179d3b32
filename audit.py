# audit.py
import logging

from models import AuditEvent, to_iso

logger = logging.getLogger(__name__)


class ConsoleAuditSink:
    """Prints one line per transition, the way the workers always have."""

    def __call__(self, event):
        extra = [f"attempts={event.attempts}"]
        if event.worker_id:
            extra.append(f"worker={event.worker_id}")
        if event.error:
            extra.append(f"error={event.error}")
        print(f"[{to_iso(event.at)}] Job {event.job_id}: {event.old_status} → {event.new_status} ({', '.join(extra)})")


class StoreAuditSink:
    """Keeps transition history in the job_events table."""

    def __init__(self, storage):
        self.storage = storage

    def __call__(self, event):
        self.storage.add_event(event)


class AuditEmitter:
    """
    Fans transition events out to every sink.

    Fire-and-forget: a failing sink is logged and skipped, it never fails
    the transition that produced the event.
    """

    def __init__(self, sinks=None):
        self.sinks = list(sinks or [])

    def emit(self, job_id, old_status, new_status, attempts, error=None, worker_id=None, at=None):
        event = AuditEvent(job_id, old_status, new_status, attempts, error=error, worker_id=worker_id)
        if at is not None:
            event.at = at
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("audit sink %r failed for job %s", sink, job_id)
        return event
