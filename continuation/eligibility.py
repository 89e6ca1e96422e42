"""Find the standing weekly lessons a continuation run covers.

Two query strategies produce the same rows: one joined query, and a
sequence of narrow single-table queries for data layers that reject the
join. ``select_query_strategy`` probes the joined form once and falls back.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from continuation.records import LessonInfo, RecurrenceGroup, TermInfo, recurrence_info
from models import Lesson, LessonParticipant, RecurrenceRule, Student
from utils.timezone_helpers import day_end, day_start

CANCELLED = "cancelled"


@dataclass(frozen=True)
class LessonRow:
    student_id: str
    lesson: LessonInfo
    days_of_week: Any


class LessonQueryStrategy(Protocol):
    name: str

    def fetch(self, session, org_id: str, term: TermInfo, limit: int | None = None) -> list[LessonRow]: ...


def _window(term: TermInfo) -> tuple[datetime, datetime]:
    return day_start(term.start_date), day_end(term.end_date)


def _lesson_info(lesson_id, recurrence_id, start_at, end_at, teacher_id) -> LessonInfo:
    return LessonInfo(
        id=lesson_id,
        recurrence_id=recurrence_id,
        start_at=start_at,
        end_at=end_at,
        teacher_id=teacher_id,
    )


class JoinedLessonQuery:
    name = "joined"

    def fetch(self, session, org_id, term, limit=None):
        start, end = _window(term)
        stmt = (
            select(
                LessonParticipant.student_id,
                Lesson.id,
                Lesson.recurrence_id,
                Lesson.start_at,
                Lesson.end_at,
                Lesson.teacher_id,
                RecurrenceRule.days_of_week,
            )
            .join(Lesson, Lesson.id == LessonParticipant.lesson_id)
            .join(RecurrenceRule, RecurrenceRule.id == Lesson.recurrence_id)
            .join(Student, Student.id == LessonParticipant.student_id)
            .where(
                LessonParticipant.org_id == org_id,
                Lesson.recurrence_id.is_not(None),
                Lesson.status != CANCELLED,
                Lesson.start_at >= start,
                Lesson.start_at <= end,
                Student.org_id == org_id,
                Student.status == "active",
                Student.deleted_at.is_(None),
            )
            .order_by(Lesson.start_at, Lesson.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = session.execute(stmt).all()
        return [
            LessonRow(
                student_id=student_id,
                lesson=_lesson_info(lesson_id, rec_id, start_at, end_at, teacher_id),
                days_of_week=days,
            )
            for student_id, lesson_id, rec_id, start_at, end_at, teacher_id, days in rows
        ]


class SequentialLessonQuery:
    name = "sequential"

    def fetch(self, session, org_id, term, limit=None):
        start, end = _window(term)
        lessons = session.execute(
            select(Lesson.id, Lesson.recurrence_id, Lesson.start_at, Lesson.end_at, Lesson.teacher_id)
            .where(
                Lesson.org_id == org_id,
                Lesson.recurrence_id.is_not(None),
                Lesson.status != CANCELLED,
                Lesson.start_at >= start,
                Lesson.start_at <= end,
            )
            .order_by(Lesson.start_at, Lesson.id)
        ).all()
        if not lessons:
            return []

        lesson_map = {row[0]: _lesson_info(*row) for row in lessons}
        participants = session.execute(
            select(LessonParticipant.student_id, LessonParticipant.lesson_id).where(
                LessonParticipant.lesson_id.in_(list(lesson_map)),
                LessonParticipant.org_id == org_id,
            )
        ).all()

        recurrence_ids = {lesson.recurrence_id for lesson in lesson_map.values()}
        rules = dict(
            session.execute(
                select(RecurrenceRule.id, RecurrenceRule.days_of_week).where(RecurrenceRule.id.in_(list(recurrence_ids)))
            ).all()
        )

        student_ids = {student_id for student_id, _ in participants}
        active = set(
            session.execute(
                select(Student.id).where(
                    Student.id.in_(list(student_ids)),
                    Student.org_id == org_id,
                    Student.status == "active",
                    Student.deleted_at.is_(None),
                )
            ).scalars()
        )

        out = []
        for student_id, lesson_id in participants:
            lesson = lesson_map.get(lesson_id)
            if lesson is None or student_id not in active or lesson.recurrence_id not in rules:
                continue
            out.append(LessonRow(student_id=student_id, lesson=lesson, days_of_week=rules[lesson.recurrence_id]))
        out.sort(key=lambda r: (r.lesson.start_at, r.lesson.id))
        if limit is not None:
            out = out[:limit]
        return out


def select_query_strategy(session, org_id: str, term: TermInfo) -> LessonQueryStrategy:
    """Use the joined query unless the data layer rejects it."""
    joined = JoinedLessonQuery()
    try:
        joined.fetch(session, org_id, term, limit=1)
        return joined
    except SQLAlchemyError as exc:
        session.rollback()
        current_app.logger.warning("Joined lesson query rejected, using sequential queries: %s", exc)
        return SequentialLessonQuery()


def group_rows(rows: list[LessonRow]) -> dict[str, dict[str, RecurrenceGroup]]:
    grouped: dict[str, dict[str, RecurrenceGroup]] = {}
    for row in rows:
        by_recurrence = grouped.setdefault(row.student_id, {})
        rec_id = row.lesson.recurrence_id
        group = by_recurrence.get(rec_id)
        if group is None:
            group = RecurrenceGroup(recurrence=recurrence_info(rec_id, row.days_of_week))
            by_recurrence[rec_id] = group
        group.lessons.append(row.lesson)
    return grouped


def collect(
    session,
    org_id: str,
    current_term: TermInfo,
    strategy: LessonQueryStrategy | None = None,
) -> dict[str, dict[str, RecurrenceGroup]]:
    """Active students' current-term recurring lessons, grouped student -> recurrence.

    Returns an empty dict when nothing qualifies.
    """
    if strategy is None:
        strategy = select_query_strategy(session, org_id, current_term)
    rows = strategy.fetch(session, org_id, current_term)
    return group_rows(rows)
