from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from continuation.states import ResponseMethod, ResponseStatus, target_status
from continuation.summary import recalc_summary
from models import TermContinuationResponse, TermContinuationRun
from utils.audit import log_event
from utils.timezone_helpers import utc_now


def deadline_outcome(run: TermContinuationRun) -> str:
    if run.assumed_continuing:
        return ResponseStatus.ASSUMED_CONTINUING.value
    return ResponseStatus.NO_RESPONSE.value


def process_deadline(session, run: TermContinuationRun, actor_user_id: str | None = None) -> dict[str, int]:
    """Close the run to responses and settle every still-pending row per the run's policy.

    Rows already answered are untouched: the bulk update only matches
    ``response = 'pending'`` at the moment it runs.
    """
    new_status = target_status("process_deadline", run.status)
    outcome = deadline_outcome(run)
    now = utc_now()

    result = session.execute(
        update(TermContinuationResponse)
        .where(
            TermContinuationResponse.run_id == run.id,
            TermContinuationResponse.response == ResponseStatus.PENDING.value,
        )
        .values(
            response=outcome,
            response_at=now,
            response_method=ResponseMethod.AUTO_DEADLINE.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    settled = result.rowcount or 0

    run.status = new_status
    run.deadline_passed_at = now
    summary = recalc_summary(session, run.id)
    log_event(
        session,
        run.org_id,
        actor_user_id,
        "continuation_run.deadline_processed",
        "term_continuation_run",
        run.id,
        after={
            "assumed_continuing": bool(run.assumed_continuing),
            "auto_response": outcome,
            "auto_responded": settled,
            "summary": summary,
        },
    )
    session.commit()
    current_app.logger.info("Continuation run %s deadline processed: %d set to %s", run.id, settled, outcome)
    return summary


def complete_run(session, run: TermContinuationRun, actor_user_id: str | None = None) -> TermContinuationRun:
    """Close a settled campaign; the term pair is then free for a new run."""
    run.status = target_status("complete", run.status)
    run.completed_at = utc_now()
    log_event(
        session,
        run.org_id,
        actor_user_id,
        "continuation_run.completed",
        "term_continuation_run",
        run.id,
        after={"summary": dict(run.summary or {})},
    )
    session.commit()
    return run
