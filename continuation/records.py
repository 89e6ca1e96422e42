"""Typed records the engine works with.

Query results are mapped into these once, at the edge of each component, so
the rest of the engine never handles raw rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


@dataclass(frozen=True)
class TermInfo:
    id: str
    org_id: str
    name: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class RateCardInfo:
    id: str
    duration_mins: int
    rate_amount: int
    is_default: bool = False


@dataclass(frozen=True)
class RecurrenceInfo:
    id: str
    days_of_week: tuple[int, ...]


@dataclass(frozen=True)
class LessonInfo:
    id: str
    recurrence_id: str
    start_at: datetime
    end_at: datetime
    teacher_id: str | None = None

    @property
    def duration_mins(self) -> int:
        return int(round((self.end_at - self.start_at).total_seconds() / 60))


@dataclass
class RecurrenceGroup:
    """All current-term lessons a student attends under one recurrence rule."""

    recurrence: RecurrenceInfo
    lessons: list[LessonInfo] = field(default_factory=list)


@dataclass(frozen=True)
class StudentInfo:
    id: str
    first_name: str
    last_name: str
    default_rate_card_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class GuardianInfo:
    id: str
    full_name: str
    email: str | None = None


@dataclass(frozen=True)
class Enriched:
    """A student ready to become a response row."""

    student: StudentInfo
    guardian: GuardianInfo
    lesson_summary: list[dict[str, Any]]
    next_term_fee_minor: int

    @property
    def lesson_count(self) -> int:
        return sum(int(item.get("lessons_next_term") or 0) for item in self.lesson_summary)

    def preview(self) -> dict[str, Any]:
        return {
            "student_id": self.student.id,
            "student_name": self.student.full_name,
            "guardian_name": self.guardian.full_name,
            "guardian_email": self.guardian.email,
            "lesson_count": self.lesson_count,
            "fee_minor": self.next_term_fee_minor,
            "has_email": bool(self.guardian.email),
        }


@dataclass(frozen=True)
class Skipped:
    """A student left out of the run, and why."""

    student_id: str
    reason: str
    student_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"student_id": self.student_id, "student_name": self.student_name, "reason": self.reason}


def term_info(row: Any) -> TermInfo:
    return TermInfo(
        id=row.id,
        org_id=row.org_id,
        name=row.name,
        start_date=row.start_date,
        end_date=row.end_date,
    )


def rate_card_info(row: Any) -> RateCardInfo:
    return RateCardInfo(
        id=row.id,
        duration_mins=int(row.duration_mins or 0),
        rate_amount=int(row.rate_amount or 0),
        is_default=bool(row.is_default),
    )


def recurrence_info(recurrence_id: str, days_of_week: Any) -> RecurrenceInfo:
    days = tuple(int(d) for d in (days_of_week or []))
    return RecurrenceInfo(id=recurrence_id, days_of_week=days)
