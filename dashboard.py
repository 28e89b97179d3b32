# dashboard.py
import os
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from audit import AuditEmitter, StoreAuditSink
from errors import JobConflictError, JobNotFoundError, JobValidationError
from jobs import JobService
from models import FAILED, STATUSES, to_iso
from storage import DEFAULT_DB_PATH, Storage

app = FastAPI(title="deliveryctl")
db = Storage(os.environ.get("DELIVERYCTL_DB", DEFAULT_DB_PATH))


def service():
    return JobService(db, audit=AuditEmitter([StoreAuditSink(db)]))


def _fmt(value):
    return to_iso(value) if value else "-"


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f7f7fb; color: #333; }
  h1 { background: #667eea; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #5a4fcf; }
  .container { padding: 20px; }
  .navbar { background: #764ba2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #667eea; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  canvas { margin-top: 20px; display: block; max-width: 600px; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""

def page(title: str, body_html: str, include_chart_js: bool = False) -> str:
    script_tag = '<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>' if include_chart_js else ''
    return f"""
    <html>
    <head>
      <title>{title}</title>
      {script_tag}
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/metrics">📈 Metrics</a>
        <a href="/failed">🗑 Failed</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """

def jobs_table(jobs) -> str:
    html = """
    <table>
      <tr><th>ID</th><th>Owner</th><th>Channels</th><th>Status</th><th>Attempts</th><th>Scheduled for</th><th>Error</th></tr>
    """
    for job in jobs:
        html += (f"<tr><td><a href='/job/{escape(job.id)}'>{escape(job.id)}</a></td><td>{escape(job.owner_id)}</td>"
                 f"<td>{job.channels}</td><td>{job.status}</td><td>{job.attempts}/{job.max_attempts}</td>"
                 f"<td>{_fmt(job.scheduled_for)}</td><td>{escape(job.last_error or '-')}</td></tr>")
    return html + "</table>"

# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home():
    jobs = db.list_jobs(limit=50, newest_first=True)
    body = "<h2>Recent jobs</h2>" + jobs_table(jobs)
    body += """
      <h2>Job states</h2>
      <canvas id="jobChart"></canvas>
      <script>
        async function loadChart() {
          const res = await fetch('/metrics/json');
          const data = await res.json();
          new Chart(document.getElementById('jobChart'), {
            type: 'pie',
            data: {
              labels: ['Scheduled', 'Paused', 'In progress', 'Delivered', 'Failed', 'Cancelled'],
              datasets: [{
                data: [data.scheduled, data.paused, data.in_progress, data.delivered, data.failed, data.cancelled],
                backgroundColor: ['#2196F3', '#9E9E9E', '#FFC107', '#4CAF50', '#F44336', '#795548']
              }]
            }
          });
        }
        loadChart();
      </script>
    """
    return page("📬 Delivery Dashboard", body, include_chart_js=True)

# ---------- Metrics ----------
@app.get("/metrics", response_class=HTMLResponse)
def metrics_page():
    stats = db.stats()
    extra = db.delivery_metrics()
    cards = "".join(f'<div class="card"><h3>{s}</h3><p>{stats[s]}</p></div>' for s in STATUSES)
    cards += f'<div class="card"><h3>upcoming</h3><p>{stats["upcoming"]}</p></div>'
    attempts = f"{extra['avg_attempts']:.2f}" if extra["avg_attempts"] is not None else "N/A"
    latency = f"{extra['avg_latency']:.1f}s" if extra["avg_latency"] is not None else "N/A"
    cards += f'<div class="card"><h3>Avg attempts</h3><p>{attempts}</p></div>'
    cards += f'<div class="card"><h3>Avg latency</h3><p>{latency}</p></div>'
    body = f"""
      <div class="cards">{cards}</div>
      <p class="muted">Tip: Use the CLI "metrics" command for scriptable outputs.</p>
    """
    return page("📈 Metrics", body)

@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json():
    return dict(db.stats(), **db.delivery_metrics())

# ---------- Failed ----------
@app.get("/failed", response_class=HTMLResponse)
def failed_page():
    jobs = db.list_jobs(status=FAILED, limit=200, newest_first=True)
    body = "<h2>Permanently failed deliveries</h2>" + jobs_table(jobs)
    if not jobs:
        body += "<p class='muted'>No failed jobs.</p>"
    return page("🗑 Failed Deliveries", body)

# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page():
    rows = db.list_config()

    body = """
      <h2>Runtime configuration</h2>
      <table>
        <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
    """
    if not rows:
        body += "</table><p class='muted'>No config entries found; workers use built-in defaults.</p>"
    else:
        for r in rows:
            body += f"<tr><td>{escape(r['key'])}</td><td>{escape(r['value'])}</td><td>{r['updated_at']}</td></tr>"
        body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"

    return page("⚙ Config", body)

# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str):
    job = db.get_job(job_id)
    if not job:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

    history = "".join(
        f"<tr><td>{ev['created_at']}</td><td>{ev['old_status'] or '-'}</td><td>{ev['new_status']}</td>"
        f"<td>{ev['attempts']}</td><td>{escape(ev['worker_id'] or '-')}</td><td>{escape(ev['error'] or '-')}</td></tr>"
        for ev in db.list_events(job.id)
    )
    body = f"""
      <h2>Job {escape(job.id)}</h2>
      <div class="cards">
        <div class="card"><b>Status</b><p>{job.status}</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempts}/{job.max_attempts}</p></div>
        <div class="card"><b>Channels</b><p>{job.channels}</p></div>
        <div class="card"><b>Owner</b><p>{escape(job.owner_id)}</p></div>
      </div>

      <h3>Recipient</h3>
      <p class="muted">phone={escape(job.recipient_phone or '-')} email={escape(job.recipient_email or '-')}</p>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{_fmt(job.created_at)}</td></tr>
        <tr><th>Scheduled for</th><td>{_fmt(job.scheduled_for)}</td></tr>
        <tr><th>Next attempt</th><td>{_fmt(job.next_attempt_at)}</td></tr>
        <tr><th>Last attempt</th><td>{_fmt(job.last_attempt_at)}</td></tr>
        <tr><th>Delivered</th><td>{_fmt(job.delivered_at)}</td></tr>
      </table>

      <h3>Last error</h3>
      <pre>{escape(job.last_error or '-')}</pre>

      <h3>History</h3>
      <table>
        <tr><th>At</th><th>From</th><th>To</th><th>Attempts</th><th>Worker</th><th>Error</th></tr>
        {history}
      </table>
    """
    return page(f"🔎 Job {escape(job.id)} Detail", body)

# ---------- JSON API ----------
class JobCreate(BaseModel):
    owner_id: str
    content_ref: str
    channels: str
    scheduled_for: datetime
    recipient_contact_id: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_email: Optional[str] = None
    metadata: Dict[str, Any] = {}
    max_attempts: Optional[int] = None


class JobUpdate(BaseModel):
    scheduled_for: Optional[datetime] = None
    channels: Optional[str] = None
    status: Optional[str] = None


def _error(status_code, exc):
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})

@app.exception_handler(JobValidationError)
def on_validation_error(request: Request, exc: JobValidationError):
    return _error(400, exc)

@app.exception_handler(JobNotFoundError)
def on_not_found(request: Request, exc: JobNotFoundError):
    return _error(404, exc)

@app.exception_handler(JobConflictError)
def on_conflict(request: Request, exc: JobConflictError):
    return _error(409, exc)

@app.post("/api/jobs", status_code=201)
def create_job(payload: JobCreate):
    svc = service()
    job_id = svc.create_job(
        payload.owner_id, payload.content_ref, payload.channels, payload.scheduled_for,
        recipient_contact_id=payload.recipient_contact_id,
        recipient_phone=payload.recipient_phone,
        recipient_email=payload.recipient_email,
        metadata=payload.metadata,
        max_attempts=payload.max_attempts,
    )
    return {"success": True, "message": "Delivery scheduled", "data": svc.get_job(job_id).to_dict()}

@app.get("/api/jobs")
def list_jobs(owner_id: str, status: Optional[str] = None, search: Optional[str] = None,
              page: int = 1, limit: int = 20):
    listing = service().list_jobs(owner_id, status=status, search=search, page=page, limit=limit)
    return {"success": True, "data": {"jobs": [j.to_dict() for j in listing["jobs"]],
                                      "pagination": listing["pagination"]}}

@app.get("/api/stats")
def job_stats(owner_id: Optional[str] = None):
    return {"success": True, "data": service().stats(owner_id)}

@app.get("/api/jobs/{job_id}")
def get_job(job_id: str, owner_id: str):
    return {"success": True, "data": service().get_job(job_id, owner_id).to_dict()}

@app.patch("/api/jobs/{job_id}")
def update_job(job_id: str, payload: JobUpdate, owner_id: str):
    job = service().update_job(job_id, scheduled_for=payload.scheduled_for,
                               channels=payload.channels, status=payload.status, owner_id=owner_id)
    return {"success": True, "message": "Delivery updated", "data": job.to_dict()}

@app.delete("/api/jobs/{job_id}")
def cancel_job(job_id: str, owner_id: str):
    job = service().cancel_job(job_id, owner_id)
    return {"success": True, "message": "Delivery cancelled", "data": job.to_dict()}
