"""Delivery dispatcher for saved-search alerts.

Turns queued DeliveryRecords into emails:
1. Resolve the record's fingerprints to current catalog rows
2. Render a subject and HTML body
3. Hand them to the injected sender

On success the record becomes `sent`. On failure it becomes `failed`
with its fingerprints kept, so a later retry needs no re-matching; the
ledger is never touched here. In dry-run mode nothing is sent and the
record becomes `dry_run`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import requests

from jobcatalog.config import EmailConfig
from jobcatalog.errors import DeliveryError, PersistenceError
from jobcatalog.models import (
    DeliveryRecord,
    DeliveryStatus,
    Job,
    RunRecord,
    SavedSearch,
    utcnow,
)
from jobcatalog.storage import CatalogStore

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> None:
        """Deliver one message or raise DeliveryError."""
        ...


class ResendSender:
    """Sends email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise DeliveryError("RESEND_API_KEY not set")
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, email: EmailConfig, timeout: float = 30.0) -> "ResendSender":
        return cls(email.api_key, email.from_address, email.api_url, timeout=timeout)

    def send(self, to: str, subject: str, html: str) -> None:
        try:
            resp = self.session.post(
                self.api_url,
                json={
                    "from": self.from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DeliveryError(f"Failed to send email: {exc}") from exc

        if resp.status_code >= 400:
            raise DeliveryError(f"Resend API error {resp.status_code}: {resp.text[:200]}")
        logger.debug("Email to %s accepted: %s", to, resp.text[:100])


class LogSender:
    """Logs instead of sending. Handy for local runs without credentials."""

    def send(self, to: str, subject: str, html: str) -> None:
        logger.info("Would send to %s: %s (%d bytes)", to, subject, len(html))


# ── Rendering ──────────────────────────────────────────────────────────────


def build_subject(search: SavedSearch, jobs: list[Job]) -> str:
    """Build email subject line."""
    label = f" for “{search.name}”" if search.name else ""
    if len(jobs) == 1:
        job = jobs[0]
        return f"New job{label}: {job.title} at {job.company or 'Unknown'}"
    return f"{len(jobs)} new jobs{label}"


def build_html_body(search: SavedSearch, jobs: list[Job], board_url: str = "") -> str:
    """Build HTML email body."""
    now = datetime.now(timezone.utc).strftime("%B %d, %Y at %I:%M %p UTC")

    jobs_html = ""
    for job in jobs:
        location = job.location_display
        location_html = f'<span style="color:#6b7280;"> · {_escape_html(location)}</span>' if location else ""
        pay_html = (
            f'<div style="color:#047857;font-size:13px;margin-top:4px;">{_escape_html(job.pay_extracted)}</div>'
            if job.has_pay and job.pay_extracted else ""
        )
        jobs_html += f'''
        <div style="background:#f9fafb;border:1px solid #e5e7eb;border-radius:8px;padding:16px;margin-bottom:12px;">
            <div style="margin-bottom:4px;">
                <a href="{_escape_html(job.url or '#')}" style="color:#2563eb;text-decoration:none;font-weight:600;font-size:15px;">{_escape_html(job.title or 'Unknown Title')}</a>
            </div>
            <div style="color:#374151;font-size:14px;">
                {_escape_html(job.company or 'Unknown Company')}{location_html}
            </div>
            {pay_html}
        </div>
        '''

    board_html = (
        f'<a href="{_escape_html(board_url)}" style="display:inline-block;background:#2563eb;color:#ffffff;padding:10px 20px;border-radius:6px;text-decoration:none;font-weight:500;font-size:14px;">View All Jobs</a>'
        if board_url else ""
    )
    stats_html = f"{len(jobs)} new job{'s' if len(jobs) != 1 else ''}"

    return f'''
    <!DOCTYPE html>
    <html>
    <head><meta charset="utf-8"></head>
    <body style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;max-width:600px;margin:0 auto;padding:20px;background:#ffffff;">
        <div style="margin-bottom:24px;">
            <h1 style="color:#111827;font-size:22px;margin:0 0 8px 0;">{_escape_html(search.name or 'Your saved search')}</h1>
            <p style="color:#6b7280;font-size:13px;margin:0;">Alert run: {now}</p>
            <p style="color:#6b7280;font-size:13px;margin:4px 0 0 0;">{stats_html}</p>
        </div>

        {jobs_html}

        <div style="margin-top:24px;padding-top:16px;border-top:1px solid #e5e7eb;">
            {board_html}
        </div>
    </body>
    </html>
    '''


def _escape_html(text: Optional[str]) -> str:
    """Escape HTML special characters."""
    if not text:
        return ""
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


# ── Dispatcher ─────────────────────────────────────────────────────────────


class DeliveryDispatcher:
    """Sends queued deliveries through an injected NotificationSender."""

    def __init__(
        self,
        store: CatalogStore,
        sender: Optional[NotificationSender] = None,
        dry_run: bool = False,
        retry_failed: bool = False,
        board_url: str = "",
    ):
        if sender is None and not dry_run:
            raise ValueError("A sender is required unless dry_run is set")
        self.store = store
        self.sender = sender
        self.dry_run = dry_run
        self.retry_failed = retry_failed
        self.board_url = board_url

    def dispatch(self, now: Optional[datetime] = None) -> RunRecord:
        run = RunRecord(kind="deliver", started_at=now or utcnow())
        self.store.save_run(run)

        statuses = [DeliveryStatus.QUEUED]
        if self.retry_failed:
            statuses.append(DeliveryStatus.FAILED)

        try:
            pending = self.store.list_deliveries(statuses)
        except PersistenceError as exc:
            run.record_error(str(exc))
            run.finish(failed=True)
            self.store.save_run(run)
            raise

        logger.info("Dispatching %d deliveries (dry_run=%s)", len(pending), self.dry_run)
        for record in pending:
            try:
                status = self.deliver(record)
            except PersistenceError as exc:
                logger.error("Delivery %s could not be updated: %s", record.id, exc)
                run.record_error(f"delivery {record.id}: {exc}")
                continue
            run.incr(status.value)
            if status is DeliveryStatus.FAILED:
                run.record_error(f"delivery {record.id}: {record.error}")

        run.finish()
        self.store.save_run(run)
        return run

    def deliver(self, record: DeliveryRecord) -> DeliveryStatus:
        """Send one delivery record and persist its new status."""
        search = self.store.get_search(record.search_id)
        jobs = self.store.get_jobs(record.job_fingerprints)
        record.updated_at = utcnow()

        if self.dry_run:
            record.status = DeliveryStatus.DRY_RUN
            logger.info(
                "[dry-run] delivery %s: %d jobs for search %s",
                record.id, len(jobs), record.search_id,
            )
            self.store.update_delivery(record)
            return record.status

        record.attempts += 1
        try:
            if search is None:
                raise DeliveryError(f"saved search {record.search_id} no longer exists")
            if not search.email:
                raise DeliveryError(f"saved search {search.id} has no recipient address")
            if not jobs:
                raise DeliveryError("none of the matched jobs are in the catalog")
            self.sender.send(
                search.email,
                build_subject(search, jobs),
                build_html_body(search, jobs, self.board_url),
            )
        except DeliveryError as exc:
            record.status = DeliveryStatus.FAILED
            record.error = str(exc)
            logger.warning("Delivery %s failed: %s", record.id, exc)
        else:
            record.status = DeliveryStatus.SENT
            record.error = None
            logger.info("Delivery %s sent to %s (%d jobs)", record.id, search.email, len(jobs))

        self.store.update_delivery(record)
        return record.status
