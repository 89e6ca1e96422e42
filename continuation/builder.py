"""Run Builder: materialise a continuation run and its response rows."""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from flask import current_app
from sqlalchemy import select

from continuation.eligibility import LessonQueryStrategy, collect
from continuation.errors import ConflictError, NotFoundError, ValidationError
from continuation.fees import FALLBACK_RATE_MINOR, rate_for_student
from continuation.recurrence import count_lessons, day_name
from continuation.records import (
    Enriched,
    GuardianInfo,
    RateCardInfo,
    RecurrenceGroup,
    Skipped,
    StudentInfo,
    TermInfo,
    rate_card_info,
    term_info,
)
from continuation.states import ResponseStatus, RunStatus
from continuation.summary import empty_summary, recalc_summary
from models import (
    ClosureDate,
    Guardian,
    Instrument,
    RateCard,
    Student,
    StudentGuardian,
    StudentInstrument,
    Teacher,
    Term,
    TermContinuationResponse,
    TermContinuationRun,
)
from utils.audit import log_event
from utils.timezone_helpers import parse_date

DEFAULT_REMINDER_SCHEDULE = [7, 14]

SKIP_NO_GUARDIAN = "no_primary_payer"
SKIP_INVALID_LESSONS = "invalid_lesson_data"


@dataclass
class BuildContext:
    """Org reference data loaded once per build."""

    next_term: TermInfo
    students: dict[str, StudentInfo]
    guardians: dict[str, GuardianInfo]  # keyed by student id
    rate_cards: list[RateCardInfo]
    teachers: dict[str, str]
    instruments: dict[str, str]
    closures: frozenset[date]
    fallback_rate_minor: int = FALLBACK_RATE_MINOR


@dataclass
class CreateRunResult:
    run_id: str
    total_students: int
    summary: dict[str, int]
    preview: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[Skipped] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total_students": self.total_students,
            "summary": self.summary,
            "preview": self.preview,
            "skipped": [s.to_dict() for s in self.skipped],
        }


def new_response_token() -> str:
    return secrets.token_urlsafe(32)


def _parse_reminder_schedule(value: Any) -> list[int]:
    if value is None:
        return list(current_app.config.get("CONTINUATION_DEFAULT_REMINDER_SCHEDULE") or DEFAULT_REMINDER_SCHEDULE)
    if not isinstance(value, (list, tuple)):
        raise ValidationError("reminder_schedule must be a list of day offsets")
    out = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int) or item < 1:
            raise ValidationError("reminder_schedule must contain positive whole numbers of days")
        out.append(item)
    return sorted(out)


def _load_term(session, org_id: str, term_id: str) -> Term | None:
    return session.execute(select(Term).where(Term.id == term_id, Term.org_id == org_id)).scalar_one_or_none()


def find_active_run(session, org_id: str, current_term_id: str, next_term_id: str) -> TermContinuationRun | None:
    return session.execute(
        select(TermContinuationRun).where(
            TermContinuationRun.org_id == org_id,
            TermContinuationRun.current_term_id == current_term_id,
            TermContinuationRun.next_term_id == next_term_id,
            TermContinuationRun.status != RunStatus.COMPLETED.value,
        ).limit(1)
    ).scalar_one_or_none()


def _ensure_no_active_run(session, org_id, current_term_id, next_term_id) -> None:
    if find_active_run(session, org_id, current_term_id, next_term_id) is not None:
        raise ConflictError("A continuation run already exists for this term pair")


def load_context(session, org_id: str, student_ids: Iterable[str], next_term: TermInfo) -> BuildContext:
    student_ids = list(student_ids)

    students = {
        s.id: StudentInfo(
            id=s.id,
            first_name=s.first_name or "",
            last_name=s.last_name or "",
            default_rate_card_id=s.default_rate_card_id,
        )
        for s in session.execute(
            select(Student).where(
                Student.id.in_(student_ids),
                Student.org_id == org_id,
                Student.status == "active",
                Student.deleted_at.is_(None),
            )
        ).scalars()
    }

    guardians: dict[str, GuardianInfo] = {}
    links = session.execute(
        select(StudentGuardian.student_id, Guardian.id, Guardian.full_name, Guardian.email)
        .join(Guardian, Guardian.id == StudentGuardian.guardian_id)
        .where(
            StudentGuardian.student_id.in_(student_ids),
            StudentGuardian.org_id == org_id,
            StudentGuardian.is_primary_payer.is_(True),
            Guardian.deleted_at.is_(None),
        )
    ).all()
    for student_id, guardian_id, full_name, email in links:
        guardians.setdefault(student_id, GuardianInfo(id=guardian_id, full_name=full_name, email=(email or "").strip() or None))

    rate_cards = [
        rate_card_info(rc)
        for rc in session.execute(select(RateCard).where(RateCard.org_id == org_id).order_by(RateCard.duration_mins, RateCard.id)).scalars()
    ]
    teachers = dict(session.execute(select(Teacher.id, Teacher.display_name).where(Teacher.org_id == org_id)).all())

    instruments: dict[str, str] = {}
    for student_id, name in session.execute(
        select(StudentInstrument.student_id, Instrument.name)
        .join(Instrument, Instrument.id == StudentInstrument.instrument_id)
        .where(StudentInstrument.student_id.in_(student_ids))
    ).all():
        if name:
            instruments.setdefault(student_id, name)

    closures = frozenset(
        session.execute(
            select(ClosureDate.date).where(
                ClosureDate.org_id == org_id,
                ClosureDate.date >= next_term.start_date,
                ClosureDate.date <= next_term.end_date,
                ClosureDate.applies_to_all_locations.is_(True),
            )
        ).scalars()
    )

    return BuildContext(
        next_term=next_term,
        students=students,
        guardians=guardians,
        rate_cards=rate_cards,
        teachers=teachers,
        instruments=instruments,
        closures=closures,
        fallback_rate_minor=int(current_app.config.get("CONTINUATION_FALLBACK_RATE_MINOR") or FALLBACK_RATE_MINOR),
    )


def summarise_recurrence(
    student: StudentInfo,
    group: RecurrenceGroup,
    ctx: BuildContext,
) -> dict[str, Any]:
    """One lesson_summary entry: when, with whom, how long, how much and how many next term.

    A recurrence is assumed to have one duration across all its weekdays;
    it is sampled from the earliest current-term lesson.
    """
    first = group.lessons[0]
    duration = first.duration_mins
    if duration <= 0:
        raise ValueError(f"lesson {first.id} has no positive duration")
    rate = rate_for_student(student.default_rate_card_id, duration, ctx.rate_cards, ctx.fallback_rate_minor)
    days = group.recurrence.days_of_week
    lessons_next_term = count_lessons(ctx.next_term.start_date, ctx.next_term.end_date, days, ctx.closures)
    return {
        "recurrence_id": group.recurrence.id,
        "day": day_name(days[0]) if days else "Unknown",
        "time": first.start_at.strftime("%H:%M"),
        "teacher_name": ctx.teachers.get(first.teacher_id) if first.teacher_id else None,
        "instrument": ctx.instruments.get(student.id),
        "duration_mins": duration,
        "rate_minor": rate,
        "lessons_next_term": lessons_next_term,
    }


def enrich_student(student_id: str, recurrences: dict[str, RecurrenceGroup], ctx: BuildContext) -> Enriched | Skipped:
    student = ctx.students.get(student_id)
    if student is None:
        return Skipped(student_id=student_id, reason="inactive_student")
    guardian = ctx.guardians.get(student_id)
    if guardian is None:
        return Skipped(student_id=student_id, reason=SKIP_NO_GUARDIAN, student_name=student.full_name)

    lesson_summary = [summarise_recurrence(student, group, ctx) for group in recurrences.values() if group.lessons]
    total = sum(item["rate_minor"] * item["lessons_next_term"] for item in lesson_summary)
    return Enriched(student=student, guardian=guardian, lesson_summary=lesson_summary, next_term_fee_minor=total)


def create_run(
    session,
    *,
    org_id: str,
    actor_user_id: str | None,
    current_term_id: str | None,
    next_term_id: str | None,
    notice_deadline: Any,
    assumed_continuing: Any = None,
    reminder_schedule: Any = None,
    strategy: LessonQueryStrategy | None = None,
) -> CreateRunResult:
    if not current_term_id or not next_term_id or not notice_deadline:
        raise ValidationError("current_term_id, next_term_id, and notice_deadline are required")
    deadline = parse_date(notice_deadline)
    if deadline is None:
        raise ValidationError("notice_deadline must be a date (YYYY-MM-DD)")
    if assumed_continuing is not None and not isinstance(assumed_continuing, bool):
        raise ValidationError("assumed_continuing must be true or false")
    schedule = _parse_reminder_schedule(reminder_schedule)

    current_row = _load_term(session, org_id, current_term_id)
    next_row = _load_term(session, org_id, next_term_id)
    if current_row is None or next_row is None:
        raise NotFoundError("Terms not found")
    current_term, next_term = term_info(current_row), term_info(next_row)
    if next_term.start_date <= current_term.end_date:
        raise ValidationError("Next term must start after current term ends")

    _ensure_no_active_run(session, org_id, current_term_id, next_term_id)

    grouped = collect(session, org_id, current_term, strategy=strategy)
    if not grouped:
        raise ValidationError("No active students with recurring lessons found in the current term")

    ctx = load_context(session, org_id, grouped.keys(), next_term)
    enriched: list[Enriched] = []
    skipped: list[Skipped] = []
    for student_id, recurrences in grouped.items():
        try:
            outcome = enrich_student(student_id, recurrences, ctx)
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as exc:
            current_app.logger.warning("Skipping student %s in continuation build: %s", student_id, exc)
            student = ctx.students.get(student_id)
            outcome = Skipped(student_id=student_id, reason=SKIP_INVALID_LESSONS, student_name=student.full_name if student else None)
        if isinstance(outcome, Skipped):
            skipped.append(outcome)
        else:
            enriched.append(outcome)

    if not enriched:
        raise ValidationError("No eligible students found: every student with recurring lessons lacks a primary payer or lesson data")

    # A concurrent create may have landed while this one was computing
    _ensure_no_active_run(session, org_id, current_term_id, next_term_id)

    run = TermContinuationRun(
        org_id=org_id,
        current_term_id=current_term_id,
        next_term_id=next_term_id,
        notice_deadline=deadline,
        assumed_continuing=True if assumed_continuing is None else assumed_continuing,
        reminder_schedule=schedule,
        status=RunStatus.DRAFT.value,
        summary=empty_summary(),
        created_by=actor_user_id,
    )
    session.add(run)
    session.flush()

    session.add_all(
        TermContinuationResponse(
            run_id=run.id,
            org_id=org_id,
            student_id=item.student.id,
            guardian_id=item.guardian.id,
            lesson_summary=item.lesson_summary,
            next_term_fee_minor=item.next_term_fee_minor,
            response=ResponseStatus.PENDING.value,
            response_token=new_response_token(),
        )
        for item in enriched
    )
    session.flush()

    summary = recalc_summary(session, run.id)
    log_event(
        session,
        org_id,
        actor_user_id,
        "continuation_run.created",
        "term_continuation_run",
        run.id,
        after={
            "current_term": current_term.name,
            "next_term": next_term.name,
            "total_students": len(enriched),
            "skipped": len(skipped),
        },
    )
    session.commit()

    current_app.logger.info(
        "Continuation run %s created: %d students, %d skipped", run.id, len(enriched), len(skipped)
    )
    return CreateRunResult(
        run_id=run.id,
        total_students=len(enriched),
        summary=summary,
        preview=[item.preview() for item in enriched],
        skipped=skipped,
    )
