# jobs.py
import math

from audit import AuditEmitter
from errors import JobConflictError, JobNotFoundError, JobValidationError
from models import (
    CANCELLED,
    EMAIL,
    MUTABLE_STATUSES,
    PAUSED,
    SCHEDULED,
    SMS,
    CHANNEL_SETS,
    ScheduledJob,
    from_iso,
    normalize_channels,
    utcnow,
)


def check_destinations(channels, phone, email):
    """Every requested channel needs a matching destination."""
    wanted = CHANNEL_SETS[channels]
    if SMS in wanted and not phone:
        raise JobValidationError("Phone number required for sms delivery")
    if EMAIL in wanted and not email:
        raise JobValidationError("Email required for email delivery")


def _parse_when(value):
    try:
        return from_iso(value)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Invalid scheduled_for value: {value!r}") from e


class JobService:
    """
    The job operations the rest of the platform calls.

    `contacts` resolves a stored contact id to a mapping with optional
    "phone"/"email" keys (None if unknown to the owner). `content_catalog`
    answers whether an owner may deliver a content reference. Both belong
    to other parts of the platform and are optional here.
    """

    def __init__(self, storage, audit=None, contacts=None, content_catalog=None, clock=None):
        self.storage = storage
        self.audit = audit or AuditEmitter()
        self.contacts = contacts
        self.content_catalog = content_catalog
        self._clock = clock or utcnow

    # ---------------- Create ----------------
    def create_job(self, owner_id, content_ref, channels, scheduled_for, *, recipient_contact_id=None,
                   recipient_phone=None, recipient_email=None, metadata=None, max_attempts=None):
        if not owner_id:
            raise JobValidationError("owner_id is required")
        if not content_ref:
            raise JobValidationError("content_ref is required")
        channel_set = normalize_channels(channels)
        if channel_set is None:
            raise JobValidationError(f"channels must be one of: {', '.join(CHANNEL_SETS)}")
        when = _parse_when(scheduled_for)
        if when is None:
            raise JobValidationError("scheduled_for is required")

        if self.content_catalog is not None and not self.content_catalog(owner_id, content_ref):
            raise JobValidationError(f"Content {content_ref} not found")

        if recipient_contact_id:
            contact = self.contacts(owner_id, recipient_contact_id) if self.contacts else None
            if contact is None:
                raise JobValidationError(f"Recipient contact {recipient_contact_id} not found")
            recipient_phone = recipient_phone or contact.get("phone")
            recipient_email = recipient_email or contact.get("email")

        check_destinations(channel_set, recipient_phone, recipient_email)

        if max_attempts is None:
            max_attempts = self.storage.get_setting("max_attempts")
        if max_attempts < 1:
            raise JobValidationError("max_attempts must be at least 1")

        now = self._clock()
        job = ScheduledJob(
            owner_id=owner_id,
            content_ref=content_ref,
            channels=channel_set,
            scheduled_for=when,
            recipient_contact_id=recipient_contact_id,
            recipient_phone=recipient_phone,
            recipient_email=recipient_email,
            max_attempts=max_attempts,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.storage.insert_job(job)
        self.audit.emit(job.id, None, SCHEDULED, 0, at=now)
        return job.id

    # ---------------- Read ----------------
    def get_job(self, job_id, owner_id=None):
        """Fetch one job; with `owner_id`, another owner's job is reported as missing."""
        job = self.storage.get_job(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, owner_id, status=None, search=None, page=1, limit=20):
        page, limit = max(int(page), 1), max(int(limit), 1)
        jobs = self.storage.list_jobs(owner_id=owner_id, status=status, search=search,
                                      limit=limit, offset=(page - 1) * limit)
        total = self.storage.count_jobs(owner_id=owner_id, status=status, search=search)
        return {
            "jobs": jobs,
            "pagination": {"page": page, "limit": limit, "total": total,
                           "total_pages": math.ceil(total / limit)},
        }

    def stats(self, owner_id=None):
        return self.storage.stats(owner_id=owner_id, now=self._clock())

    # ---------------- Mutate ----------------
    def update_job(self, job_id, scheduled_for=None, channels=None, status=None, owner_id=None):
        job = self.get_job(job_id, owner_id)
        if job.status not in MUTABLE_STATUSES:
            raise JobConflictError(job_id, job.status, "update")

        fields = {}
        if scheduled_for is not None:
            fields["scheduled_for"] = _parse_when(scheduled_for)
        if channels is not None:
            channel_set = normalize_channels(channels)
            if channel_set is None:
                raise JobValidationError(f"channels must be one of: {', '.join(CHANNEL_SETS)}")
            check_destinations(channel_set, job.recipient_phone, job.recipient_email)
            fields["channels"] = channel_set
        if status is not None:
            if status not in (SCHEDULED, PAUSED, CANCELLED):
                raise JobValidationError(f"status may only be set to {SCHEDULED}, {PAUSED} or {CANCELLED}")
            fields["status"] = status
        if not fields:
            raise JobValidationError("No updates provided")

        now = self._clock()
        if not self.storage.update_pending(job_id, fields, now=now):
            # Claimed or finished since we looked
            raise JobConflictError(job_id, self.get_job(job_id).status, "update")
        if "status" in fields and fields["status"] != job.status:
            self.audit.emit(job_id, job.status, fields["status"], job.attempts, at=now)
        return self.get_job(job_id)

    def cancel_job(self, job_id, owner_id=None):
        job = self.get_job(job_id, owner_id)
        if job.status not in MUTABLE_STATUSES:
            raise JobConflictError(job_id, job.status, "cancel")
        now = self._clock()
        # The guarded update re-checks status, so a claim racing us wins.
        if not self.storage.update_pending(job_id, {"status": CANCELLED}, now=now):
            raise JobConflictError(job_id, self.get_job(job_id).status, "cancel")
        self.audit.emit(job_id, job.status, CANCELLED, job.attempts, at=now)
        return self.get_job(job_id)

    def pause_job(self, job_id, owner_id=None):
        return self.update_job(job_id, status=PAUSED, owner_id=owner_id)

    def resume_job(self, job_id, owner_id=None):
        return self.update_job(job_id, status=SCHEDULED, owner_id=owner_id)

    # ---------------- Operator test ----------------
    def send_test(self, job_id, dispatcher, owner_id=None):
        """Deliver a job right now without touching its lifecycle."""
        return dispatcher.dispatch(self.get_job(job_id, owner_id))
