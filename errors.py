# errors.py


class SchedulerError(Exception):
    """Base class for delivery engine errors."""


class JobValidationError(SchedulerError):
    """Rejected job input; nothing was written."""


class JobNotFoundError(SchedulerError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobConflictError(SchedulerError):
    def __init__(self, job_id, status, action="modify"):
        super().__init__(f"Cannot {action} job {job_id} with status: {status}")
        self.job_id = job_id
        self.status = status


class DeliveryError(SchedulerError):
    """A channel send or artifact resolution did not succeed."""


class TransientDeliveryError(DeliveryError):
    """Provider or network failure; worth another attempt."""


class PermanentDeliveryError(DeliveryError):
    """Failure that no retry can fix (bad or missing destination, no sender)."""
