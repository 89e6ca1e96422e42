"""Dispatcher and Reminder Scheduler.

Both group a run's pending responses by guardian so a family with several
children gets one email. A failed delivery is reported back, never fatal:
the run still advances so later actions are not blocked.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from flask import current_app, render_template_string

from continuation.runs import org_name, pending_responses
from continuation.states import target_status
from continuation.summary import recalc_summary
from continuation.errors import ValidationError
from continuation.fees import format_minor
from models import TermContinuationResponse, TermContinuationRun
from utils.audit import log_event
from utils.notifications import (
    log_outbound_message,
    mark_message,
    send_email_html,
    sender_for,
    smtp_configured,
)
from utils.timezone_helpers import format_long_date, utc_now

MESSAGE_TYPE_INITIAL = "continuation"
MESSAGE_TYPE_REMINDER = "continuation_reminder"

INITIAL_TEMPLATE = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #333; margin-bottom: 20px;">Term Continuation</h1>
  <p>Dear {{ guardian_name }},</p>
  <p>As we approach the end of {{ current_term_name }}, we'd like to confirm whether your child will be continuing music lessons into {{ next_term_name }}.</p>
  <p><strong>Please respond by {{ deadline }}.</strong></p>
  {% for child in children %}
  <div style="background: #f9fafb; padding: 16px 20px; border-radius: 8px; margin: 16px 0; border: 1px solid #e5e7eb;">
    <h3 style="margin: 0 0 12px; color: #111;">{{ child.name }}</h3>
    <table style="width: 100%; border-collapse: collapse; font-size: 14px;">
      <thead>
        <tr style="background: #f3f4f6;">
          <th style="padding: 8px 12px; text-align: left;">Day/Time</th>
          <th style="padding: 8px 12px; text-align: left;">Instrument</th>
          <th style="padding: 8px 12px; text-align: left;">Lessons</th>
          <th style="padding: 8px 12px; text-align: left;">Fee</th>
        </tr>
      </thead>
      <tbody>
        {% for lesson in child.lessons %}
        <tr>
          <td style="padding: 8px 12px; border-bottom: 1px solid #eee;">{{ lesson.day }} at {{ lesson.time }}</td>
          <td style="padding: 8px 12px; border-bottom: 1px solid #eee;">{{ lesson.instrument or "Music" }}</td>
          <td style="padding: 8px 12px; border-bottom: 1px solid #eee;">{{ lesson.lessons_next_term }} lessons</td>
          <td style="padding: 8px 12px; border-bottom: 1px solid #eee;">{{ lesson.fee }}</td>
        </tr>
        {% endfor %}
      </tbody>
    </table>
    <p style="margin: 12px 0 0; font-weight: 600;">Total for {{ next_term_name }}: {{ child.fee }}</p>
    <div style="margin-top: 16px; text-align: center;">
      <a href="{{ child.continue_url }}" style="display: inline-block; background-color: #16a34a; color: #ffffff; padding: 10px 20px; text-decoration: none; border-radius: 6px; font-weight: 600; margin-right: 8px;">Confirm Continuing</a>
      <a href="{{ child.withdraw_url }}" style="display: inline-block; background-color: #dc2626; color: #ffffff; padding: 10px 20px; text-decoration: none; border-radius: 6px; font-weight: 600;">Withdraw</a>
    </div>
  </div>
  {% endfor %}
  <p style="font-size: 13px; color: #666; margin-top: 24px;">If you do not respond by the deadline{% if assumed_continuing %}, your child will be automatically re-enrolled as per our terms and conditions{% else %}, your child's place may not be reserved{% endif %}.</p>
  <p>Thank you,<br>{{ org_name }}</p>
</div>
"""

REMINDER_TEMPLATE = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #333;">Reminder: Term Continuation</h1>
  <p>Dear {{ guardian_name }},</p>
  <p>We haven't yet received your response about continuing music lessons into {{ next_term_name }}.</p>
  <p><strong>The deadline is {{ deadline }}.</strong></p>
  <ul>
    {% for child in children %}
    <li><strong>{{ child.name }}</strong> &mdash; <a href="{{ child.respond_url }}">Respond now</a></li>
    {% endfor %}
  </ul>
  <p>Please click the link above to confirm or withdraw for each child.</p>
  <p>Thank you,<br>{{ org_name }}</p>
</div>
"""


@dataclass(frozen=True)
class FailedDelivery:
    guardian_name: str
    email: str | None
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"guardian_name": self.guardian_name, "email": self.email, "error": self.error}


@dataclass
class SendResult:
    sent_count: int = 0
    failed: list[FailedDelivery] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"sent_count": self.sent_count, "failed": [f.to_dict() for f in self.failed]}


@dataclass
class ReminderResult:
    reminded_count: int = 0
    failed: list[FailedDelivery] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"reminded_count": self.reminded_count, "failed": [f.to_dict() for f in self.failed]}
        if self.message:
            out["message"] = self.message
        return out


def group_by_guardian(responses: list[TermContinuationResponse]) -> dict[str, list[TermContinuationResponse]]:
    grouped: dict[str, list[TermContinuationResponse]] = {}
    for resp in responses:
        grouped.setdefault(resp.guardian_id, []).append(resp)
    return grouped


def respond_url(token: str, action: str | None = None) -> str:
    base = current_app.config.get("FRONTEND_URL", "").rstrip("/")
    params = {"token": token}
    if action:
        params["action"] = action
    return f"{base}/respond/continuation?{urlencode(params)}"


def _money(amount_minor: int | None) -> str:
    symbol = current_app.config.get("CURRENCY_SYMBOL", "£")
    return format_minor(amount_minor, symbol) or f"{symbol}0.00"


def _term_name(term, fallback: str) -> str:
    return term.name if term is not None and term.name else fallback


def render_initial_email(run: TermContinuationRun, guardian_name: str, rows: list[TermContinuationResponse], organisation: str) -> tuple[str, str]:
    next_term_name = _term_name(run.next_term, "Next Term")
    children = []
    for resp in rows:
        if resp.student is None:
            continue
        lessons = [
            {
                "day": item.get("day"),
                "time": item.get("time"),
                "instrument": item.get("instrument"),
                "lessons_next_term": item.get("lessons_next_term") or 0,
                "fee": _money((item.get("rate_minor") or 0) * (item.get("lessons_next_term") or 0)),
            }
            for item in (resp.lesson_summary or [])
        ]
        children.append(
            {
                "name": resp.student.full_name,
                "lessons": lessons,
                "fee": _money(resp.next_term_fee_minor) if resp.next_term_fee_minor else "",
                "continue_url": respond_url(resp.response_token, "continuing"),
                "withdraw_url": respond_url(resp.response_token, "withdrawing"),
            }
        )
    subject = f"{next_term_name} – Please confirm your child's music lessons"
    html = render_template_string(
        INITIAL_TEMPLATE,
        guardian_name=guardian_name,
        current_term_name=_term_name(run.current_term, "Current Term"),
        next_term_name=next_term_name,
        deadline=format_long_date(run.notice_deadline),
        children=children,
        assumed_continuing=bool(run.assumed_continuing),
        org_name=organisation,
    )
    return subject, html


def render_reminder_email(run: TermContinuationRun, guardian_name: str, rows: list[TermContinuationResponse], organisation: str) -> tuple[str, str]:
    next_term_name = _term_name(run.next_term, "Next Term")
    children = [
        {"name": resp.student.full_name, "respond_url": respond_url(resp.response_token)}
        for resp in rows
        if resp.student is not None
    ]
    subject = f"Reminder: Please confirm lessons for {next_term_name}"
    html = render_template_string(
        REMINDER_TEMPLATE,
        guardian_name=guardian_name,
        next_term_name=next_term_name,
        deadline=format_long_date(run.notice_deadline),
        children=children,
        org_name=organisation,
    )
    return subject, html


def _deliver(session, run, actor_user_id, guardian, subject, html, message_type, organisation) -> tuple[bool, str | None]:
    """Log the message first, then attempt delivery when SMTP is configured."""
    mail_enabled = smtp_configured()
    entry = log_outbound_message(
        session,
        org_id=run.org_id,
        subject=subject,
        body=html,
        sender_user_id=actor_user_id,
        recipient_email=guardian.email,
        recipient_name=guardian.full_name,
        recipient_id=guardian.id,
        related_id=run.id,
        message_type=message_type,
        status="pending" if mail_enabled else "logged",
    )
    if not mail_enabled:
        return True, None
    ok, error = send_email_html(guardian.email, subject, html, sender=sender_for(organisation))
    mark_message(entry, ok, error)
    return ok, error


def send_run(session, run: TermContinuationRun, actor_user_id: str | None = None) -> SendResult:
    """Send the initial continuation email to every guardian with pending responses."""
    new_status = target_status("send", run.status)
    pending = pending_responses(session, run.id)
    if not pending:
        raise ValidationError("No pending responses to send")

    organisation = org_name(session, run.org_id, current_app.config.get("ORG_FALLBACK_NAME", "Your Music Service"))
    result = SendResult()
    now = utc_now()
    # rows stamped by an earlier, interrupted attempt are not emailed again
    unsent = [resp for resp in pending if resp.initial_sent_at is None]

    for rows in group_by_guardian(unsent).values():
        guardian = rows[0].guardian
        if guardian is None or not guardian.email:
            result.failed.append(
                FailedDelivery(guardian_name=guardian.full_name if guardian else "Unknown", email=None, error="No email address")
            )
            continue

        subject, html = render_initial_email(run, guardian.full_name, rows, organisation)
        ok, error = _deliver(session, run, actor_user_id, guardian, subject, html, MESSAGE_TYPE_INITIAL, organisation)
        if ok:
            result.sent_count += 1
            for resp in rows:
                resp.initial_sent_at = now
        else:
            result.failed.append(FailedDelivery(guardian_name=guardian.full_name, email=guardian.email, error=error or "Send failed"))
        # each guardian's outcome is durable before the next send
        session.commit()

    run.status = new_status
    run.sent_at = now
    recalc_summary(session, run.id)
    log_event(
        session,
        run.org_id,
        actor_user_id,
        "continuation_run.sent",
        "term_continuation_run",
        run.id,
        after={"sent_count": result.sent_count, "failed_count": len(result.failed)},
    )
    session.commit()
    if result.failed:
        current_app.logger.warning("Continuation run %s: %d guardian(s) not reached", run.id, len(result.failed))
    return result


def send_reminders(session, run: TermContinuationRun, actor_user_id: str | None = None) -> ReminderResult:
    """Remind guardians whose responses are still pending.

    Pacing against ``run.reminder_schedule`` is the caller's job. Every call
    with pending rows counts as a round in ``run.reminder_rounds``, whether or
    not any delivery succeeds.
    """
    new_status = target_status("send_reminders", run.status)
    pending = pending_responses(session, run.id)
    if not pending:
        return ReminderResult(message="No pending responses to remind")

    organisation = org_name(session, run.org_id, current_app.config.get("ORG_FALLBACK_NAME", "Your Music Service"))
    result = ReminderResult()
    now = utc_now()
    # committed with the first guardian, so an interrupted round still counts
    run.reminder_rounds = (run.reminder_rounds or 0) + 1
    run.last_reminder_at = now

    for rows in group_by_guardian(pending).values():
        guardian = rows[0].guardian
        if guardian is None or not guardian.email:
            result.failed.append(
                FailedDelivery(guardian_name=guardian.full_name if guardian else "Unknown", email=None, error="No email address")
            )
            continue

        subject, html = render_reminder_email(run, guardian.full_name, rows, organisation)
        ok, error = _deliver(session, run, actor_user_id, guardian, subject, html, MESSAGE_TYPE_REMINDER, organisation)
        if ok:
            result.reminded_count += 1
            for resp in rows:
                resp.reminder_count = (resp.reminder_count or 0) + 1
                if resp.reminder_count == 1:
                    resp.reminder_1_sent_at = now
                elif resp.reminder_count == 2:
                    resp.reminder_2_sent_at = now
        else:
            result.failed.append(FailedDelivery(guardian_name=guardian.full_name, email=guardian.email, error=error or "Send failed"))
        session.commit()

    run.status = new_status
    recalc_summary(session, run.id)
    log_event(
        session,
        run.org_id,
        actor_user_id,
        "continuation_run.reminders_sent",
        "term_continuation_run",
        run.id,
        after={"reminded_count": result.reminded_count, "failed_count": len(result.failed)},
    )
    session.commit()
    return result
