# dispatcher.py
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as SendTimeout
from functools import partial

from channels import build_message
from errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from models import EMAIL, DispatchResult

logger = logging.getLogger(__name__)

DEFAULT_LINK_TTL = 7 * 24 * 3600


class Dispatcher:
    """
    One delivery attempt for a claimed job.

    Resolves the artifact link, then tries every requested channel even if
    an earlier one failed. Never touches job state; the lifecycle
    controller decides what the result means.
    """

    def __init__(self, resolver, senders, link_ttl=DEFAULT_LINK_TTL, send_timeout=30, max_workers=8):
        self.resolver = resolver
        self.senders = dict(senders or {})
        self.link_ttl = link_ttl
        self.send_timeout = send_timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="send")

    def close(self):
        # Timed-out sends may still be running; do not wait on them.
        self._pool.shutdown(wait=False)

    def dispatch(self, job):
        result = DispatchResult()
        try:
            url = self.resolver.resolve(job.content_ref, self.link_ttl)
        except DeliveryError as e:
            error = e
        except Exception as e:
            error = TransientDeliveryError(f"artifact resolver failed: {e}")
        else:
            error = None

        if error is not None:
            logger.warning("job %s: no artifact link, skipping all channels: %s", job.id, error)
            for channel in job.channel_list:
                result.per_channel[channel] = error
            return result

        subject, body = build_message(job, url, self.link_ttl)
        for channel in job.channel_list:
            result.per_channel[channel] = self._send(job, channel, subject, body, url)
        return result

    def _send(self, job, channel, subject, body, url):
        destination = job.destination(channel)
        if not destination:
            return PermanentDeliveryError(f"no {channel} destination on recipient")
        sender = self.senders.get(channel)
        if sender is None:
            return PermanentDeliveryError(f"no sender configured for {channel}")

        if channel == EMAIL:
            call = partial(sender.send, destination, subject, body, url)
        else:
            call = partial(sender.send, destination, body, url)

        future = self._pool.submit(call)
        try:
            future.result(timeout=self.send_timeout)
        except SendTimeout:
            future.cancel()
            error = TransientDeliveryError(f"{channel} send timed out after {self.send_timeout}s")
        except DeliveryError as e:
            error = e
        except Exception as e:
            error = TransientDeliveryError(f"{channel} send failed: {e}")
        else:
            return None

        logger.warning("job %s: %s delivery failed: %s", job.id, channel, error)
        return error
