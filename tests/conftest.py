import os
import tempfile
import time
from datetime import datetime, timedelta, timezone

import pytest

# dashboard opens its store at import time; keep it out of the working tree
os.environ.setdefault("DELIVERYCTL_DB", os.path.join(tempfile.mkdtemp(prefix="deliveryctl-"), "dashboard.db"))

from jobs import JobService
from storage import Storage
from worker import Worker


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StubResolver:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def resolve(self, content_ref, ttl_seconds):
        self.calls.append((content_ref, ttl_seconds))
        if self.error:
            raise self.error
        return f"https://files.example/{content_ref}?expires={ttl_seconds}"


class StubSender:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.sent = []

    def send(self, destination, *args):
        self.sent.append((destination,) + args)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def db(db_path):
    storage = Storage(db_path)
    yield storage
    storage.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(db, clock):
    return JobService(db, clock=clock)


@pytest.fixture
def resolver():
    return StubResolver()


@pytest.fixture
def make_worker(db_path, clock, resolver):
    workers = []

    def factory(senders, **kwargs):
        kwargs.setdefault("resolver", resolver)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("retry_backoff_seconds", 0)
        kwargs.setdefault("poll_interval", 0.05)
        w = Worker(senders=senders, db_path=db_path, **kwargs)
        workers.append(w)
        return w

    yield factory
    for w in workers:
        w.close()


@pytest.fixture
def schedule(service, clock):
    """Create a job due one minute ago unless told otherwise."""

    def factory(channels="email", offset=timedelta(minutes=-1), **kwargs):
        kwargs.setdefault("recipient_email", "ana@example.com" if channels in ("email", "both") else None)
        kwargs.setdefault("recipient_phone", "+15550001111" if channels in ("sms", "both") else None)
        return service.create_job(kwargs.pop("owner_id", "owner-1"), kwargs.pop("content_ref", "notes/hello.m4a"),
                                  channels, clock() + offset, **kwargs)

    return factory
