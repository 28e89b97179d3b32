# cli.py
import logging
import threading
import time
from datetime import timedelta

import click

from artifacts import S3ArtifactResolver
from audit import AuditEmitter, ConsoleAuditSink, StoreAuditSink
from channels import EmailSender, SmsSender
from claims import ClaimManager
from dispatcher import Dispatcher
from errors import SchedulerError
from jobs import JobService
from lifecycle import LifecycleController
from models import EMAIL, SMS, STATUSES, to_iso, utcnow
from storage import DEFAULT_DB_PATH, Storage

CHANNEL_CHOICES = click.Choice(["email", "sms", "both", "phone"], case_sensitive=False)


def fail(message):
    click.echo(f"❌ {message}", err=True)
    raise click.exceptions.Exit(1)


def _parse_at(value):
    """ISO timestamp (UTC if no offset) or +N seconds from now."""
    if value.startswith("+"):
        return utcnow() + timedelta(seconds=int(value[1:]))
    return value


def _service(obj):
    db = Storage(obj["db_path"])
    return JobService(db, audit=AuditEmitter([StoreAuditSink(db)]))


def _fmt(value):
    return to_iso(value) if value else "-"


def delivery_options(f):
    """Collaborator settings; each falls back to its environment variable."""
    options = [
        click.option("--smtp-host", envvar="SMTP_HOST", default=None, help="SMTP server (enables email)"),
        click.option("--smtp-port", envvar="SMTP_PORT", default=587, type=int),
        click.option("--smtp-user", envvar="SMTP_USER", default=None),
        click.option("--smtp-pass", envvar="SMTP_PASS", default=None),
        click.option("--smtp-from", envvar="SMTP_FROM", default="noreply@suretalk.com"),
        click.option("--smtp-secure/--no-smtp-secure", envvar="SMTP_SECURE", default=False, help="Implicit TLS"),
        click.option("--twilio-sid", envvar="TWILIO_ACCOUNT_SID", default=None, help="Twilio account (enables SMS)"),
        click.option("--twilio-token", envvar="TWILIO_AUTH_TOKEN", default=None),
        click.option("--twilio-from", envvar="TWILIO_FROM_NUMBER", default=None),
        click.option("--s3-bucket", envvar="S3_BUCKET", default=None, help="Bucket for bare content keys"),
        click.option("--aws-region", envvar="AWS_REGION", default="us-east-1"),
        click.option("--s3-endpoint-url", envvar="S3_ENDPOINT_URL", default=None),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_collaborators(opts, send_timeout):
    senders = {}
    if opts["smtp_host"]:
        senders[EMAIL] = EmailSender(
            opts["smtp_host"], opts["smtp_port"], from_address=opts["smtp_from"],
            username=opts["smtp_user"], password=opts["smtp_pass"],
            secure=opts["smtp_secure"], timeout=send_timeout,
        )
    if opts["twilio_sid"] and opts["twilio_token"] and opts["twilio_from"]:
        senders[SMS] = SmsSender(opts["twilio_sid"], opts["twilio_token"], opts["twilio_from"], timeout=send_timeout)
    resolver = S3ArtifactResolver(
        default_bucket=opts["s3_bucket"], region=opts["aws_region"], endpoint_url=opts["s3_endpoint_url"],
    )
    return resolver, senders


@click.group()
@click.option("--db", "db_path", envvar="DELIVERYCTL_DB", default=DEFAULT_DB_PATH, show_default=True,
              help="SQLite job store")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """deliveryctl - scheduled voice-note delivery engine"""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"db_path": db_path}


# ---------------- Schedule ----------------
@cli.command()
@click.option("--owner", required=True, help="Owning account id")
@click.option("--content", required=True, help="Content reference (s3://bucket/key or key)")
@click.option("--channels", required=True, type=CHANNEL_CHOICES, help="Delivery channels")
@click.option("--at", "at", default="+0", help="ISO timestamp (UTC) or +seconds delay")
@click.option("--phone", default=None, help="Recipient phone")
@click.option("--email", default=None, help="Recipient email")
@click.option("--message", default=None, help="Custom message text")
@click.option("--title", default=None, help="Voice note title")
@click.option("--sender-name", default=None, help="Shown as the sender")
@click.option("--max-attempts", default=None, type=int, help="Overrides the max_attempts config")
@click.pass_obj
def schedule(obj, owner, content, channels, at, phone, email, message, title, sender_name, max_attempts):
    """Schedule a delivery"""
    metadata = {k: v for k, v in (("custom_message", message), ("title", title), ("sender_name", sender_name)) if v}
    try:
        job_id = _service(obj).create_job(
            owner, content, channels, _parse_at(at),
            recipient_phone=phone, recipient_email=email, metadata=metadata, max_attempts=max_attempts,
        )
    except (SchedulerError, ValueError) as e:
        fail(f"Failed to schedule delivery: {e}")
    click.echo(f"✅ Job {job_id} scheduled.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--owner", default=None, help="Only this account's jobs")
@click.option("--status", default=None, type=click.Choice(STATUSES + ("all",)), help="Filter by status")
@click.option("--search", default=None, help="Match content, message or recipient")
@click.option("--page", default=1, type=int)
@click.option("--limit", default=20, type=int)
@click.pass_obj
def list_jobs(obj, owner, status, search, page, limit):
    """List scheduled jobs"""
    listing = _service(obj).list_jobs(owner, status=status, search=search, page=page, limit=limit)
    if not listing["jobs"]:
        click.echo("No jobs found.")
        return

    for job in listing["jobs"]:
        click.echo(f"{job.id} | owner={job.owner_id} | {job.channels} | status={job.status} | "
                   f"attempts={job.attempts}/{job.max_attempts} | scheduled_for={_fmt(job.scheduled_for)}")
    p = listing["pagination"]
    click.echo(f"page {p['page']}/{max(p['total_pages'], 1)} ({p['total']} job(s))")


# ---------------- Show ----------------
@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(obj, job_id):
    """Show details of a single job"""
    service = _service(obj)
    try:
        job = service.get_job(job_id)
    except SchedulerError as e:
        fail(str(e))

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Owner: {job.owner_id}")
    click.echo(f"  Content: {job.content_ref}")
    click.echo(f"  Channels: {job.channels}")
    click.echo(f"  Recipient: phone={job.recipient_phone or '-'} email={job.recipient_email or '-'}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Attempts: {job.attempts}/{job.max_attempts}")
    click.echo(f"  Scheduled for: {_fmt(job.scheduled_for)}")
    click.echo(f"  Next attempt: {_fmt(job.next_attempt_at)}")
    click.echo(f"  Last attempt: {_fmt(job.last_attempt_at)}")
    click.echo(f"  Delivered: {_fmt(job.delivered_at)}")
    click.echo(f"  Error: {job.last_error or '-'}")
    events = service.storage.list_events(job.id)
    if events:
        click.echo("  History:")
    for ev in events:
        err = f" error={ev['error']}" if ev["error"] else ""
        click.echo(f"    [{ev['created_at']}] {ev['old_status'] or '-'} → {ev['new_status']} "
                   f"(attempts={ev['attempts']}){err}")


# ---------------- Mutations ----------------
@cli.command()
@click.argument("job_id")
@click.option("--at", "at", default=None, help="New ISO timestamp (UTC) or +seconds delay")
@click.option("--channels", default=None, type=CHANNEL_CHOICES)
@click.pass_obj
def update(obj, job_id, at, channels):
    """Reschedule or change channels of a pending job"""
    try:
        job = _service(obj).update_job(job_id, scheduled_for=_parse_at(at) if at else None, channels=channels)
    except (SchedulerError, ValueError) as e:
        fail(str(e))
    click.echo(f"🛠️ Job {job.id} updated (scheduled_for={_fmt(job.scheduled_for)}, channels={job.channels}).")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def pause(obj, job_id):
    """Hold a scheduled job"""
    try:
        _service(obj).pause_job(job_id)
    except SchedulerError as e:
        fail(str(e))
    click.echo(f"⏸ Job {job_id} paused.")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def resume(obj, job_id):
    """Put a paused job back on the schedule"""
    try:
        _service(obj).resume_job(job_id)
    except SchedulerError as e:
        fail(str(e))
    click.echo(f"▶ Job {job_id} scheduled again.")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def cancel(obj, job_id):
    """Cancel a scheduled or paused job"""
    try:
        _service(obj).cancel_job(job_id)
    except SchedulerError as e:
        fail(str(e))
    click.echo(f"🚫 Job {job_id} cancelled.")


@cli.command("send-test")
@click.argument("job_id")
@click.option("--send-timeout", default=30, type=float)
@delivery_options
@click.pass_obj
def send_test(obj, job_id, send_timeout, **delivery):
    """Deliver a job now without changing its status"""
    resolver, senders = build_collaborators(delivery, send_timeout)
    dispatcher = Dispatcher(resolver, senders, link_ttl=3600, send_timeout=send_timeout)
    try:
        result = _service(obj).send_test(job_id, dispatcher)
    except SchedulerError as e:
        fail(str(e))
    finally:
        dispatcher.close()
    for channel, err in result.per_channel.items():
        click.echo(f"  {channel}: {'ok' if err is None else err}")
    click.echo("✅ Test delivered." if result.any_succeeded else "❌ Test delivery failed.")


# ---------------- Status ----------------
@cli.command()
@click.option("--owner", default=None)
@click.pass_obj
def status(obj, owner):
    """Show summary of job states"""
    stats = _service(obj).stats(owner)
    if not stats["total"]:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state in STATUSES:
        click.echo(f"  {state}: {stats[state]}")
    click.echo(f"  upcoming: {stats['upcoming']}")
    for channels, count in sorted(stats["channels"].items()):
        click.echo(f"  via {channels}: {count}")


# ---------------- Metrics ----------------
@cli.command()
@click.pass_obj
def metrics(obj):
    """Show delivery metrics summary"""
    db = Storage(obj["db_path"])
    stats = db.stats()
    row = db.delivery_metrics()

    click.echo("📈 Metrics Summary")
    click.echo(f"  Delivered jobs: {stats['delivered']}")
    click.echo(f"  Failed jobs: {stats['failed']}")
    click.echo(f"  Cancelled jobs: {stats['cancelled']}")
    click.echo(f"  Avg attempts to deliver: {row['avg_attempts']:.2f}" if row["avg_attempts"] is not None
               else "  Avg attempts to deliver: N/A")
    click.echo(f"  Avg delivery latency (s): {row['avg_latency']:.3f}" if row["avg_latency"] is not None
               else "  Avg delivery latency: N/A")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=1, help="Number of workers to start")
@click.option("--poll-interval", default=None, type=float, help="Seconds between polls (uses config if set)")
@click.option("--batch-size", default=None, type=int, help="Jobs claimed per poll (uses config if set)")
@click.option("--lease-seconds", default=None, type=int, help="Claim lease before a job counts as stale (uses config if set)")
@click.option("--backoff", default=None, type=int, help="Retry backoff base in seconds (uses config if set)")
@click.option("--concurrency", default=None, type=int, help="Jobs dispatched in parallel per worker (uses config if set)")
@click.option("--send-timeout", default=None, type=float, help="Per-send timeout in seconds (uses config if set)")
@delivery_options
@click.pass_obj
def worker(obj, count, poll_interval, batch_size, lease_seconds, backoff, concurrency, send_timeout, **delivery):
    """Start delivery workers with graceful shutdown"""
    from worker import Worker

    db = Storage(obj["db_path"])

    # Load config defaults if args are not provided
    if poll_interval is None:
        poll_interval = db.get_setting("poll_interval", float)
    if batch_size is None:
        batch_size = db.get_setting("batch_size")
    if lease_seconds is None:
        lease_seconds = db.get_setting("lease_seconds")
    if backoff is None:
        backoff = db.get_setting("retry_backoff_seconds")
    if concurrency is None:
        concurrency = db.get_setting("concurrency")
    if send_timeout is None:
        send_timeout = db.get_setting("send_timeout", float)
    link_ttl = db.get_setting("link_ttl_seconds")
    db.close()

    resolver, senders = build_collaborators(delivery, send_timeout)
    if not senders:
        click.echo("⚠️ No channel senders configured; every delivery will fail permanently.")

    stop_event = threading.Event()
    workers = []

    for i in range(count):
        w = Worker(resolver, senders,
                   db_path=obj["db_path"],
                   worker_id=f"worker-{i+1}",
                   poll_interval=poll_interval,
                   batch_size=batch_size,
                   lease_seconds=lease_seconds,
                   retry_backoff_seconds=backoff,
                   send_timeout=send_timeout,
                   link_ttl=link_ttl,
                   concurrency=concurrency,
                   stop_event=stop_event)
        t = threading.Thread(target=w.run, name=f"worker-thread-{i+1}", daemon=True)
        workers.append((w, t))
        click.echo(f"🚀 Starting {w.worker_id} (poll={poll_interval}s, batch={batch_size}, "
                   f"lease={lease_seconds}s, backoff={backoff}s, channels={','.join(senders) or 'none'})")
        t.start()

    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        stop_event.set()
        for _, t in workers:
            t.join(timeout=5.0)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass

@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(obj, key, value):
    """Set a config key to a value"""
    Storage(obj["db_path"]).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")

@config.command("get")
@click.argument("key")
@click.pass_obj
def config_get(obj, key):
    """Get a config key"""
    db = Storage(obj["db_path"])
    value = db.get_config(key)
    default = db.get_setting(key, str)
    if value is not None:
        click.echo(f"{key}={value}")
    elif default is not None:
        click.echo(f"{key}={default} (default)")
    else:
        click.echo(f"{key} not set")

@config.command("list")
@click.pass_obj
def config_list(obj):
    """List all config keys"""
    rows = Storage(obj["db_path"]).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass

@rescue.command("leases")
@click.option("--limit", default=100, help="Most jobs to recover in one pass")
@click.pass_obj
def rescue_leases(obj, limit):
    """Recover in-progress jobs whose lease expired, counting the lost attempt"""
    db = Storage(obj["db_path"])
    audit = AuditEmitter([ConsoleAuditSink(), StoreAuditSink(db)])
    claims = ClaimManager(db, audit, worker_id="rescue", lease_seconds=db.get_setting("lease_seconds"))
    controller = LifecycleController(db, audit, "rescue", db.get_setting("retry_backoff_seconds"))

    jobs = claims.reclaim_stale(limit)
    if not jobs:
        click.echo("No expired leases found.")
        return
    for job in jobs:
        controller.abandon(job)
    click.echo(f"🔧 Recovered {len(jobs)} job(s): {', '.join(j.id for j in jobs)}")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
