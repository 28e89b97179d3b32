from datetime import timedelta

import pytest

from audit import AuditEmitter, StoreAuditSink
from claims import ClaimManager
from errors import JobConflictError, JobNotFoundError, JobValidationError
from jobs import JobService
from models import BOTH, CANCELLED, PAUSED, SCHEDULED, SMS


class TestCreateJob:
    def test_creates_scheduled_job(self, db, service, clock):
        job_id = service.create_job("owner-1", "notes/a.m4a", "email", clock() + timedelta(days=1),
                                    recipient_email="ana@example.com",
                                    metadata={"custom_message": "Happy birthday"})

        job = db.get_job(job_id)
        assert job.status == SCHEDULED
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.metadata == {"custom_message": "Happy birthday"}
        assert job.delivered_at is None

    def test_past_schedule_is_accepted(self, db, service, clock):
        job_id = service.create_job("owner-1", "notes/a.m4a", "sms", clock() - timedelta(days=2),
                                    recipient_phone="+15550001111")
        assert db.get_job(job_id).status == SCHEDULED

    def test_accepts_iso_strings_and_phone_alias(self, db, service):
        job_id = service.create_job("owner-1", "notes/a.m4a", "phone", "2026-03-01T09:30:00Z",
                                    recipient_phone="+15550001111")
        job = db.get_job(job_id)
        assert job.channels == SMS
        assert job.scheduled_for.isoformat() == "2026-03-01T09:30:00+00:00"

    @pytest.mark.parametrize("channels, phone, email", [
        ("email", "+15550001111", None),
        ("sms", None, "ana@example.com"),
        ("both", "+15550001111", None),
        ("both", None, "ana@example.com"),
        ("", "+15550001111", "ana@example.com"),
        ("fax", "+15550001111", "ana@example.com"),
    ])
    def test_rejects_channel_without_destination(self, db, service, clock, channels, phone, email):
        with pytest.raises(JobValidationError):
            service.create_job("owner-1", "notes/a.m4a", channels, clock(),
                               recipient_phone=phone, recipient_email=email)
        assert db.count_jobs() == 0

    def test_rejects_bad_timestamp(self, service):
        with pytest.raises(JobValidationError):
            service.create_job("owner-1", "notes/a.m4a", "email", "tomorrow-ish",
                               recipient_email="ana@example.com")

    def test_rejects_non_string_timestamp(self, service):
        with pytest.raises(JobValidationError):
            service.create_job("owner-1", "notes/a.m4a", "email", 1700000000,
                               recipient_email="ana@example.com")

    def test_contact_fills_missing_destinations(self, db, clock):
        contacts = {("owner-1", "c-1"): {"phone": "+15550002222", "email": "bo@example.com"}}
        service = JobService(db, contacts=lambda owner, cid: contacts.get((owner, cid)), clock=clock)

        job_id = service.create_job("owner-1", "notes/a.m4a", BOTH, clock(),
                                    recipient_contact_id="c-1", recipient_email="override@example.com")

        job = db.get_job(job_id)
        assert job.recipient_phone == "+15550002222"
        assert job.recipient_email == "override@example.com"

    def test_unknown_contact_is_rejected(self, db, clock):
        service = JobService(db, contacts=lambda owner, cid: None, clock=clock)
        with pytest.raises(JobValidationError, match="contact"):
            service.create_job("owner-1", "notes/a.m4a", "email", clock(), recipient_contact_id="c-9")

    def test_content_must_belong_to_owner(self, db, clock):
        service = JobService(db, content_catalog=lambda owner, ref: ref.startswith(owner), clock=clock)
        with pytest.raises(JobValidationError, match="not found"):
            service.create_job("owner-1", "owner-2/a.m4a", "email", clock(), recipient_email="ana@example.com")

    def test_max_attempts_comes_from_config(self, db, service, clock):
        db.set_config("max_attempts", 5)
        job_id = service.create_job("owner-1", "notes/a.m4a", "email", clock(), recipient_email="a@example.com")
        assert db.get_job(job_id).max_attempts == 5

    def test_creation_is_audited(self, db, clock):
        service = JobService(db, audit=AuditEmitter([StoreAuditSink(db)]), clock=clock)
        job_id = service.create_job("owner-1", "notes/a.m4a", "email", clock(), recipient_email="a@example.com")
        [event] = db.list_events(job_id)
        assert (event["old_status"], event["new_status"]) == (None, SCHEDULED)


class TestUpdateJob:
    def test_reschedule_and_change_channels(self, db, service, schedule, clock):
        job_id = schedule(channels="email", recipient_phone="+15550001111")
        later = clock() + timedelta(hours=3)

        job = service.update_job(job_id, scheduled_for=later, channels="both")

        assert job.scheduled_for == later
        assert job.channels == BOTH

    def test_new_channels_need_destinations(self, service, schedule):
        job_id = schedule(channels="email")
        with pytest.raises(JobValidationError):
            service.update_job(job_id, channels="sms")

    def test_nothing_to_update(self, service, schedule):
        with pytest.raises(JobValidationError):
            service.update_job(schedule())

    def test_only_pause_resume_or_cancel_via_status(self, service, schedule):
        with pytest.raises(JobValidationError):
            service.update_job(schedule(), status="delivered")

    def test_pause_hides_job_until_resumed(self, db, service, schedule, clock):
        job_id = schedule()
        claims = ClaimManager(db, AuditEmitter(), worker_id="w1")

        assert service.pause_job(job_id).status == PAUSED
        assert claims.claim_batch(10, clock()) == []
        assert service.resume_job(job_id).status == SCHEDULED
        assert [j.id for j in claims.claim_batch(10, clock())] == [job_id]

    def test_update_conflicts_once_claimed(self, db, service, schedule, clock):
        job_id = schedule()
        ClaimManager(db, AuditEmitter(), worker_id="w1").claim_batch(1, clock())

        with pytest.raises(JobConflictError):
            service.update_job(job_id, scheduled_for=clock() + timedelta(days=1))

    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.update_job("missing", status=PAUSED)


class TestCancelJob:
    def test_cancel_scheduled_and_paused(self, db, service, schedule):
        scheduled, paused = schedule(), schedule()
        service.pause_job(paused)

        assert service.cancel_job(scheduled).status == CANCELLED
        assert service.cancel_job(paused).status == CANCELLED

    def test_cancel_twice_conflicts(self, service, schedule):
        job_id = schedule()
        service.cancel_job(job_id)
        with pytest.raises(JobConflictError):
            service.cancel_job(job_id)

    def test_cancelled_job_cannot_be_resumed(self, service, schedule):
        job_id = schedule()
        service.cancel_job(job_id)
        with pytest.raises(JobConflictError):
            service.resume_job(job_id)


class TestOwnership:
    def test_other_owner_sees_not_found(self, db, service, schedule):
        job_id = schedule()
        assert service.get_job(job_id, "owner-1").id == job_id

        for call in (
            lambda: service.get_job(job_id, "owner-2"),
            lambda: service.update_job(job_id, status=PAUSED, owner_id="owner-2"),
            lambda: service.pause_job(job_id, "owner-2"),
            lambda: service.resume_job(job_id, "owner-2"),
            lambda: service.cancel_job(job_id, "owner-2"),
        ):
            with pytest.raises(JobNotFoundError):
                call()
        assert db.get_job(job_id).status == SCHEDULED

    def test_owner_can_cancel_own_job(self, service, schedule):
        job_id = schedule()
        assert service.cancel_job(job_id, "owner-1").status == CANCELLED


class TestListing:
    def test_paginates_owner_jobs_in_schedule_order(self, service, schedule):
        ids = [schedule(offset=timedelta(minutes=m)) for m in (30, 10, 20)]
        schedule(owner_id="someone-else")

        first = service.list_jobs("owner-1", page=1, limit=2)
        second = service.list_jobs("owner-1", page=2, limit=2)

        assert [j.id for j in first["jobs"]] == [ids[1], ids[2]]
        assert [j.id for j in second["jobs"]] == [ids[0]]
        assert first["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    def test_filters_by_status_and_search(self, service, schedule):
        birthday = schedule(metadata={"title": "Birthday wishes"})
        other = schedule()
        service.cancel_job(other)

        assert [j.id for j in service.list_jobs("owner-1", search="Birthday")["jobs"]] == [birthday]
        assert [j.id for j in service.list_jobs("owner-1", status=CANCELLED)["jobs"]] == [other]
        assert len(service.list_jobs("owner-1", status="all")["jobs"]) == 2

    def test_stats(self, service, schedule):
        schedule(channels="email")
        schedule(channels="sms", offset=timedelta(days=1))
        service.cancel_job(schedule(channels="both"))

        stats = service.stats("owner-1")

        assert stats["total"] == 3
        assert stats[SCHEDULED] == 2
        assert stats[CANCELLED] == 1
        assert stats["upcoming"] == 1
        assert stats["channels"] == {"email": 1, "sms": 1, "both": 1}
