from __future__ import annotations

from datetime import date, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from continuation import process_deadline, send_reminders
from continuation.errors import ContinuationError
from continuation.states import OPEN_STATUSES, ResponseStatus
from extensions import db
from models import TermContinuationResponse, TermContinuationRun
from utils.timezone_helpers import utc_today


def reminders_due(run: TermContinuationRun, today: date) -> int:
    """How many reminder offsets have elapsed since the run was sent."""
    if run.sent_at is None:
        return 0
    sent_on = run.sent_at.date()
    offsets = run.reminder_schedule or []
    return sum(1 for days in offsets if sent_on + timedelta(days=int(days)) <= today)


def _has_pending(session, run_id: str) -> bool:
    return session.execute(
        select(TermContinuationResponse.id)
        .where(
            TermContinuationResponse.run_id == run_id,
            TermContinuationResponse.response == ResponseStatus.PENDING.value,
        )
        .limit(1)
    ).scalar_one_or_none() is not None


def next_action(session, run: TermContinuationRun, today: date) -> str | None:
    if today > run.notice_deadline:
        return "process_deadline"
    # attempted rounds, not successful deliveries
    if reminders_due(run, today) <= (run.reminder_rounds or 0):
        return None
    if not _has_pending(session, run.id):
        return None
    return "send_reminders"


def process_due_runs(app, today: date | None = None) -> list[tuple[str, str]]:
    """Advance every open run whose deadline or reminder offset has arrived.

    Returns ``(run_id, action)`` pairs for the runs that were advanced.
    """
    with app.app_context():
        today = today or utc_today()
        session = db.session
        runs = session.execute(
            select(TermContinuationRun).where(TermContinuationRun.status.in_(OPEN_STATUSES))
        ).scalars().all()
        done: list[tuple[str, str]] = []
        for run in runs:
            action = next_action(session, run, today)
            if action is None:
                continue
            try:
                if action == "process_deadline":
                    process_deadline(session, run)
                else:
                    send_reminders(session, run)
            except (ContinuationError, SQLAlchemyError) as exc:
                session.rollback()
                current_app.logger.warning("[scheduler] %s failed for run %s: %s", action, run.id, exc)
                continue
            current_app.logger.info("[scheduler] %s for run %s", action, run.id)
            done.append((run.id, action))
        return done


def start_scheduler(app):
    scheduler = BackgroundScheduler()
    minutes = int(app.config.get("CONTINUATION_SCHEDULER_INTERVAL_MINUTES") or 60)
    scheduler.add_job(
        lambda: process_due_runs(app),
        "interval",
        minutes=minutes,
        id="continuation_due_runs",
        replace_existing=True,
    )
    scheduler.start()
    return scheduler
