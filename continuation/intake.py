"""Response Intake: a parent's continue/withdraw decision, by email link or portal.

Both entry points share one transition: a row leaves ``pending`` exactly
once. Repeat submissions report the stored answer instead of failing, since
parents routinely click old links.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update

from continuation.errors import NotFoundError, RunClosedError, ValidationError
from continuation.states import (
    PARTICIPANT_RESPONSES,
    TERMINAL_RESPONSES,
    ResponseMethod,
    ResponseStatus,
    RunStatus,
    accepts_responses,
)
from continuation.summary import recalc_summary
from models import Guardian, Student, Term, TermContinuationResponse, TermContinuationRun
from utils.audit import log_event
from utils.timezone_helpers import format_long_date, utc_now

ALREADY_RESPONDED_MESSAGE = "You have already responded to this continuation request."
INVALID_LINK_MESSAGE = "Invalid or expired response link"
WITHDRAWAL_REASON_MAX = 100


@dataclass(frozen=True)
class IntakeResult:
    response: str
    student_name: str | None = None
    next_term_name: str | None = None
    already_responded: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.already_responded:
            return {
                "already_responded": True,
                "current_response": self.response,
                "message": ALREADY_RESPONDED_MESSAGE,
            }
        out = {"success": True, "response": self.response, "student_name": self.student_name or "Student"}
        if self.next_term_name:
            out["next_term_name"] = self.next_term_name
        return out


def validate_response_value(value: Any) -> str:
    if value not in PARTICIPANT_RESPONSES:
        raise ValidationError("response must be 'continuing' or 'withdrawing'")
    return value


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _withdrawal_reason(value: Any) -> str | None:
    reason = _clean_text(value)
    if reason and len(reason) > WITHDRAWAL_REASON_MAX:
        raise ValidationError(f"withdrawal_reason must be {WITHDRAWAL_REASON_MAX} characters or fewer")
    return reason


def _student_name(session, student_id: str) -> str:
    student = session.get(Student, student_id)
    return student.full_name if student else "Student"


def _next_term_name(session, run: TermContinuationRun) -> str:
    term = session.get(Term, run.next_term_id)
    return term.name if term and term.name else "Next Term"


def _record_decision(
    session,
    row: TermContinuationResponse,
    run: TermContinuationRun | None,
    response: str,
    method: str,
    withdrawal_reason: Any,
    withdrawal_notes: Any,
) -> IntakeResult | None:
    """Run-status check plus the conditional pending -> terminal write.

    Returns an already-responded result if another submission won the race,
    otherwise None after the write and summary refresh are committed.
    """
    if run is None or not accepts_responses(run.status):
        raise RunClosedError()

    withdrawing = response == ResponseStatus.WITHDRAWING.value
    reason = _withdrawal_reason(withdrawal_reason) if withdrawing else None
    now = utc_now()
    result = session.execute(
        update(TermContinuationResponse)
        .where(
            TermContinuationResponse.id == row.id,
            TermContinuationResponse.response == ResponseStatus.PENDING.value,
        )
        .values(
            response=response,
            response_at=now,
            response_method=method,
            withdrawal_reason=reason,
            withdrawal_notes=_clean_text(withdrawal_notes) if withdrawing else None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        current = session.execute(
            select(TermContinuationResponse.response).where(TermContinuationResponse.id == row.id)
        ).scalar_one()
        return IntakeResult(response=current, already_responded=True)

    recalc_summary(session, run.id)
    session.commit()
    return None


def respond_by_token(
    session,
    token: str | None,
    response: Any,
    withdrawal_reason: Any = None,
    withdrawal_notes: Any = None,
) -> IntakeResult:
    response = validate_response_value(response)
    if not token:
        raise NotFoundError(INVALID_LINK_MESSAGE)

    row = session.execute(
        select(TermContinuationResponse).where(TermContinuationResponse.response_token == token)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError(INVALID_LINK_MESSAGE)
    if row.response != ResponseStatus.PENDING.value:
        return IntakeResult(response=row.response, already_responded=True)

    run = session.get(TermContinuationRun, row.run_id)
    raced = _record_decision(
        session, row, run, response, ResponseMethod.EMAIL_LINK.value, withdrawal_reason, withdrawal_notes
    )
    if raced is not None:
        return raced
    return IntakeResult(
        response=response,
        student_name=_student_name(session, row.student_id),
        next_term_name=_next_term_name(session, run),
    )


def guardian_for_user(session, user_id: str) -> Guardian:
    guardian = session.execute(
        select(Guardian).where(Guardian.user_id == user_id, Guardian.deleted_at.is_(None)).limit(1)
    ).scalar_one_or_none()
    if guardian is None:
        raise NotFoundError("Guardian record not found")
    return guardian


def respond_by_portal(
    session,
    user_id: str,
    run_id: str | None,
    student_id: str | None,
    response: Any,
    withdrawal_reason: Any = None,
    withdrawal_notes: Any = None,
) -> IntakeResult:
    response = validate_response_value(response)
    if not run_id or not student_id:
        raise ValidationError("run_id and student_id are required")

    guardian = guardian_for_user(session, user_id)
    # scoped to the caller's guardian record: one family cannot answer for another's child
    row = session.execute(
        select(TermContinuationResponse).where(
            TermContinuationResponse.run_id == run_id,
            TermContinuationResponse.student_id == student_id,
            TermContinuationResponse.guardian_id == guardian.id,
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Continuation response not found for this student")
    if row.response != ResponseStatus.PENDING.value:
        return IntakeResult(response=row.response, already_responded=True)

    run = session.get(TermContinuationRun, run_id)
    raced = _record_decision(
        session, row, run, response, ResponseMethod.PORTAL.value, withdrawal_reason, withdrawal_notes
    )
    if raced is not None:
        return raced
    return IntakeResult(
        response=response,
        student_name=_student_name(session, student_id),
        next_term_name=_next_term_name(session, run),
    )


def pending_for_guardian(session, user_id: str) -> list[dict[str, Any]]:
    """The portal's "action needed" list: this guardian's unanswered rows in open runs."""
    guardian = guardian_for_user(session, user_id)
    rows = session.execute(
        select(TermContinuationResponse, TermContinuationRun)
        .join(TermContinuationRun, TermContinuationRun.id == TermContinuationResponse.run_id)
        .where(
            TermContinuationResponse.guardian_id == guardian.id,
            TermContinuationResponse.response == ResponseStatus.PENDING.value,
            TermContinuationRun.status.in_([RunStatus.SENT.value, RunStatus.REMINDING.value]),
        )
        .order_by(TermContinuationRun.notice_deadline, TermContinuationResponse.id)
    ).all()
    out = []
    for resp, run in rows:
        out.append(
            {
                "run_id": run.id,
                "student_id": resp.student_id,
                "student_name": resp.student.full_name if resp.student else "Student",
                "next_term_name": run.next_term.name if run.next_term else "Next Term",
                "notice_deadline": run.notice_deadline.isoformat(),
                "notice_deadline_label": format_long_date(run.notice_deadline),
                "assumed_continuing": bool(run.assumed_continuing),
                "lesson_summary": list(resp.lesson_summary or []),
                "next_term_fee_minor": resp.next_term_fee_minor,
            }
        )
    return out


def override_response(
    session,
    run: TermContinuationRun,
    actor_user_id: str | None,
    response_id: str | None,
    response: Any,
    withdrawal_reason: Any = None,
    withdrawal_notes: Any = None,
) -> dict[str, Any]:
    """Staff correction of a single row, e.g. a decision phoned in to the office."""
    if not response_id:
        raise ValidationError("response_id is required")
    if response not in TERMINAL_RESPONSES:
        raise ValidationError("response must be one of: " + ", ".join(sorted(TERMINAL_RESPONSES)))
    if run.status == RunStatus.COMPLETED.value:
        raise ValidationError("Completed runs cannot be changed")
    withdrawing = response == ResponseStatus.WITHDRAWING.value
    reason = _withdrawal_reason(withdrawal_reason) if withdrawing else None

    row = session.execute(
        select(TermContinuationResponse).where(
            TermContinuationResponse.id == response_id,
            TermContinuationResponse.run_id == run.id,
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Response not found")

    before = {"response": row.response, "response_method": row.response_method}
    row.response = response
    row.response_at = utc_now()
    row.response_method = ResponseMethod.ADMIN_MANUAL.value
    row.withdrawal_reason = reason
    row.withdrawal_notes = _clean_text(withdrawal_notes) if withdrawing else None
    session.flush()

    summary = recalc_summary(session, run.id)
    log_event(
        session,
        run.org_id,
        actor_user_id,
        "continuation_response.updated",
        "term_continuation_response",
        row.id,
        before=before,
        after={"response": response, "response_method": ResponseMethod.ADMIN_MANUAL.value},
    )
    session.commit()
    return {"response": response, "summary": summary}
