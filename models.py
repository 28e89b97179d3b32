# models.py
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from errors import PermanentDeliveryError

# Job states
SCHEDULED = "scheduled"
PAUSED = "paused"
IN_PROGRESS = "in_progress"
DELIVERED = "delivered"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (SCHEDULED, PAUSED, IN_PROGRESS, DELIVERED, FAILED, CANCELLED)
TERMINAL_STATUSES = (DELIVERED, FAILED, CANCELLED)
MUTABLE_STATUSES = (SCHEDULED, PAUSED)

# Channels
EMAIL = "email"
SMS = "sms"
BOTH = "both"

CHANNEL_SETS = {
    EMAIL: (EMAIL,),
    SMS: (SMS,),
    BOTH: (EMAIL, SMS),
}
CHANNEL_ALIASES = {"phone": SMS}


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(value):
    """Fixed-width UTC timestamp, so string order in the store is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif not isinstance(value, str):
        raise TypeError(f"expected an ISO-8601 string or datetime, got {type(value).__name__}")
    else:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_channels(value):
    """Return the canonical channel set name, or None if it is not one."""
    if not value:
        return None
    value = CHANNEL_ALIASES.get(value.strip().lower(), value.strip().lower())
    return value if value in CHANNEL_SETS else None


@dataclass
class ScheduledJob:
    owner_id: str
    content_ref: str
    channels: str
    scheduled_for: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    recipient_contact_id: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_email: Optional[str] = None
    status: str = SCHEDULED
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    worker_id: Optional[str] = None
    lease_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def channel_list(self):
        return CHANNEL_SETS[self.channels]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def destination(self, channel):
        if channel == EMAIL:
            return self.recipient_email
        if channel == SMS:
            return self.recipient_phone
        return None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            content_ref=row["content_ref"],
            channels=row["channels"],
            scheduled_for=from_iso(row["scheduled_for"]),
            recipient_contact_id=row["recipient_contact_id"],
            recipient_phone=row["recipient_phone"],
            recipient_email=row["recipient_email"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_attempt_at=from_iso(row["next_attempt_at"]),
            last_attempt_at=from_iso(row["last_attempt_at"]),
            delivered_at=from_iso(row["delivered_at"]),
            last_error=row["last_error"],
            metadata=json.loads(row["metadata"] or "{}"),
            worker_id=row["worker_id"],
            lease_until=from_iso(row["lease_until"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def to_dict(self):
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = to_iso(value)
        return data


@dataclass
class AuditEvent:
    job_id: str
    old_status: Optional[str]
    new_status: str
    attempts: int
    error: Optional[str] = None
    worker_id: Optional[str] = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class DispatchResult:
    """Outcome of one dispatch pass; None marks a channel that delivered."""
    per_channel: Dict[str, Optional[Exception]] = field(default_factory=dict)

    @property
    def any_succeeded(self):
        return any(err is None for err in self.per_channel.values())

    @property
    def permanent(self):
        # Only meaningful when nothing succeeded: retrying cannot help.
        failures = [err for err in self.per_channel.values() if err is not None]
        return bool(failures) and all(isinstance(err, PermanentDeliveryError) for err in failures)

    def error_summary(self):
        parts = [f"{channel}: {err}" for channel, err in self.per_channel.items() if err is not None]
        return "; ".join(parts) or None
