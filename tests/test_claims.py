import threading
from datetime import timedelta

import pytest

from audit import AuditEmitter
from claims import ClaimManager
from models import CANCELLED, IN_PROGRESS, SCHEDULED
from storage import Storage


@pytest.fixture
def claims(db):
    return ClaimManager(db, AuditEmitter(), worker_id="w-test", lease_seconds=60)


def claim_concurrently(db_path, workers, batch, now):
    """Each worker gets its own connection, like separate poller processes."""
    barrier = threading.Barrier(workers)
    results = [None] * workers

    def run(i):
        store = Storage(db_path)
        try:
            barrier.wait()
            results[i] = [j.id for j in store.claim_due(f"w{i}", batch, now, 60)]
        finally:
            store.close()

    threads = [threading.Thread(target=run, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


@pytest.mark.parametrize("eligible", [40, 12])
def test_concurrent_claimers_never_share_a_job(db, db_path, clock, schedule, eligible):
    for _ in range(eligible):
        schedule()

    results = claim_concurrently(db_path, workers=5, batch=6, now=clock())
    claimed = [job_id for batch in results for job_id in batch]

    assert len(claimed) == len(set(claimed))
    assert len(claimed) == min(5 * 6, eligible)
    for worker_index, batch in enumerate(results):
        for job_id in batch:
            job = db.get_job(job_id)
            assert job.status == IN_PROGRESS
            assert job.worker_id == f"w{worker_index}"


def test_only_due_active_jobs_are_claimed(db, service, claims, clock, schedule):
    due = schedule(offset=timedelta(hours=-1))
    future = schedule(offset=timedelta(hours=1))
    cancelled = schedule(offset=timedelta(hours=-1))
    paused = schedule(offset=timedelta(hours=-1))
    service.cancel_job(cancelled)
    service.pause_job(paused)

    jobs = claims.claim_batch(10, clock())

    assert [j.id for j in jobs] == [due]
    assert db.get_job(future).status == SCHEDULED
    assert db.get_job(cancelled).status == CANCELLED


def test_claim_orders_by_due_time_then_id(db, claims, clock, schedule):
    late = schedule(offset=timedelta(minutes=-1))
    early = schedule(offset=timedelta(minutes=-30))
    same_a = schedule(offset=timedelta(minutes=-10))
    same_b = schedule(offset=timedelta(minutes=-10))

    jobs = claims.claim_batch(10, clock())

    assert [j.id for j in jobs] == [early] + sorted([same_a, same_b]) + [late]


def test_claim_respects_limit_and_empty_store(claims, clock, schedule):
    assert claims.claim_batch(5, clock()) == []
    for _ in range(3):
        schedule()
    assert len(claims.claim_batch(2, clock())) == 2
    assert len(claims.claim_batch(2, clock())) == 1
    assert claims.claim_batch(2, clock()) == []


def test_claim_skips_jobs_waiting_out_backoff(db, claims, clock, schedule):
    job_id = schedule()
    db.update_pending(job_id, {"next_attempt_at": clock() + timedelta(seconds=30)})

    assert claims.claim_batch(10, clock()) == []
    clock.advance(seconds=31)
    assert [j.id for j in claims.claim_batch(10, clock())] == [job_id]


def test_exhausted_job_is_never_claimed(db, claims, clock, schedule):
    job_id = schedule(max_attempts=2)
    db.update_pending(job_id, {"attempts": 2})

    assert claims.claim_batch(10, clock()) == []


def test_claim_sets_lease_and_emits_event(db, claims, clock, schedule):
    job_id = schedule()
    seen = []
    claims.audit.sinks.append(seen.append)

    [job] = claims.claim_batch(1, clock())

    assert job.lease_until == clock() + timedelta(seconds=60)
    assert job.worker_id == "w-test"
    assert [(e.job_id, e.old_status, e.new_status) for e in seen] == [(job_id, SCHEDULED, IN_PROGRESS)]


def test_reclaim_only_after_lease_expires(db, claims, clock, schedule):
    job_id = schedule()
    claims.claim_batch(1, clock())
    rescuer = ClaimManager(db, AuditEmitter(), worker_id="w-rescue", lease_seconds=60)

    assert rescuer.reclaim_stale(10, clock() + timedelta(seconds=59)) == []

    [job] = rescuer.reclaim_stale(10, clock() + timedelta(seconds=61))
    assert job.id == job_id
    assert job.worker_id == "w-rescue"
    assert db.get_job(job_id).status == IN_PROGRESS
