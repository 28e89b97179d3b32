# channels.py
import html
import smtplib
from email.message import EmailMessage

import httpx

from errors import PermanentDeliveryError, TransientDeliveryError

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def build_message(job, url, ttl_seconds):
    """Subject and plain-text body for a delivery, from the job's metadata."""
    meta = job.metadata or {}
    title = meta.get("title") or "Voice note"
    sender_name = meta.get("sender_name") or "SureTalk"
    intro = meta.get("custom_message") or f"Voice note from {sender_name}"

    days = max(1, round(ttl_seconds / 86400))
    expiry = f"{days} day{'s' if days != 1 else ''}"
    subject = f"Voice Note: {title}"
    body = f"{intro}\n\nListen to voice note: {url}\n\nThis link will expire in {expiry}."
    return subject, body


class EmailSender:
    def __init__(self, host, port=587, from_address="noreply@suretalk.com", username=None,
                 password=None, secure=False, timeout=30):
        self.host = host
        self.port = int(port)
        self.from_address = from_address
        self.username = username
        self.password = password
        self.secure = secure
        self.timeout = timeout

    def _build(self, destination, subject, body, url):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f'"SureTalk" <{self.from_address}>'
        msg["To"] = destination
        msg.set_content(body)
        intro = body.split("\n\n", 1)[0]
        msg.add_alternative(f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h1>{html.escape(subject)}</h1>
          <p>{html.escape(intro)}</p>
          <a href="{html.escape(url, quote=True)}">Listen to Voice Note</a>
        </div>
        """, subtype="html")
        return msg

    def _connect(self):
        if self.secure:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        server.ehlo()
        if server.has_extn("starttls"):
            server.starttls()
            server.ehlo()
        return server

    def send(self, destination, subject, body, url):
        message = self._build(destination, subject, body, url)
        try:
            with self._connect() as server:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentDeliveryError(f"recipient refused: {destination}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"SMTP send failed: {e}") from e


class SmsSender:
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(self, account_sid, auth_token, from_number, timeout=30, client=None):
        self.url = TWILIO_MESSAGES_URL.format(sid=account_sid)
        self.auth = (account_sid, auth_token)
        self.from_number = from_number
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, destination, body, url):
        try:
            response = self.client.post(
                self.url,
                data={"To": destination, "From": self.from_number, "Body": body},
                auth=self.auth,
            )
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"SMS gateway unreachable: {e}") from e

        if response.status_code < 400:
            return
        try:
            detail = response.json().get("message") or response.text
        except ValueError:
            detail = response.text
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"SMS gateway error {response.status_code}: {detail}")
        raise PermanentDeliveryError(f"SMS rejected ({response.status_code}): {detail}")
