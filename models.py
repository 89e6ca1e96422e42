import uuid

from extensions import db
from utils.timezone_helpers import isoformat_or_none, utc_now


def _uuid() -> str:
    return str(uuid.uuid4())


# -----------------------------
# Organisation / people
# -----------------------------


class Organisation(db.Model):
    __tablename__ = 'organisations'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    def __repr__(self):
        return f'<Organisation {self.name}>'


class OrgMembership(db.Model):
    __tablename__ = 'org_memberships'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False)  # owner/admin/teacher/finance/parent
    status = db.Column(db.String(20), nullable=False, default='active')


class Term(db.Model):
    __tablename__ = 'terms'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    def __repr__(self):
        return f'<Term {self.name} {self.start_date}..{self.end_date}>'


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default='')
    status = db.Column(db.String(20), nullable=False, default='active')
    default_rate_card_id = db.Column(db.String(36), db.ForeignKey('rate_cards.id'), nullable=True)
    deleted_at = db.Column(db.DateTime, nullable=True)

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    def __repr__(self):
        return f'<Student {self.full_name}>'


class Guardian(db.Model):
    __tablename__ = 'guardians'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=True, index=True)  # set once the parent has a portal login
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    deleted_at = db.Column(db.DateTime, nullable=True)


class StudentGuardian(db.Model):
    __tablename__ = 'student_guardians'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)
    guardian_id = db.Column(db.String(36), db.ForeignKey('guardians.id'), nullable=False, index=True)
    is_primary_payer = db.Column(db.Boolean, nullable=False, default=False)


# -----------------------------
# Scheduling reference data
# -----------------------------


class RateCard(db.Model):
    __tablename__ = 'rate_cards'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False, default='')
    duration_mins = db.Column(db.Integer, nullable=False)
    rate_amount = db.Column(db.Integer, nullable=False)  # minor units
    is_default = db.Column(db.Boolean, nullable=False, default=False)


class Teacher(db.Model):
    __tablename__ = 'teachers'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    display_name = db.Column(db.String(200), nullable=False)


class Instrument(db.Model):
    __tablename__ = 'instruments'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=True, index=True)
    name = db.Column(db.String(100), nullable=False)


class StudentInstrument(db.Model):
    __tablename__ = 'student_instruments'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)
    instrument_id = db.Column(db.String(36), db.ForeignKey('instruments.id'), nullable=False)


class RecurrenceRule(db.Model):
    __tablename__ = 'recurrence_rules'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    # 0=Sunday .. 6=Saturday
    days_of_week = db.Column(db.JSON, nullable=False, default=list)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)


class Lesson(db.Model):
    __tablename__ = 'lessons'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    recurrence_id = db.Column(db.String(36), db.ForeignKey('recurrence_rules.id'), nullable=True, index=True)
    teacher_id = db.Column(db.String(36), db.ForeignKey('teachers.id'), nullable=True)
    start_at = db.Column(db.DateTime, nullable=False, index=True)
    end_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='scheduled')  # scheduled/completed/cancelled


class LessonParticipant(db.Model):
    __tablename__ = 'lesson_participants'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    lesson_id = db.Column(db.String(36), db.ForeignKey('lessons.id'), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)


class ClosureDate(db.Model):
    __tablename__ = 'closure_dates'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    location_id = db.Column(db.String(36), nullable=True)
    applies_to_all_locations = db.Column(db.Boolean, nullable=False, default=True)


# -----------------------------
# Term continuation
# -----------------------------


class TermContinuationRun(db.Model):
    __tablename__ = 'term_continuation_runs'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    current_term_id = db.Column(db.String(36), db.ForeignKey('terms.id'), nullable=False)
    next_term_id = db.Column(db.String(36), db.ForeignKey('terms.id'), nullable=False)
    notice_deadline = db.Column(db.Date, nullable=False)
    assumed_continuing = db.Column(db.Boolean, nullable=False, default=True)
    reminder_schedule = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default='draft')
    summary = db.Column(db.JSON, nullable=False, default=dict)
    sent_at = db.Column(db.DateTime, nullable=True)
    reminder_rounds = db.Column(db.Integer, nullable=False, default=0)
    last_reminder_at = db.Column(db.DateTime, nullable=True)
    deadline_passed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    current_term = db.relationship('Term', foreign_keys=[current_term_id])
    next_term = db.relationship('Term', foreign_keys=[next_term_id])
    responses = db.relationship('TermContinuationResponse', backref='run', lazy='dynamic')

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "current_term_id": self.current_term_id,
            "next_term_id": self.next_term_id,
            "current_term_name": self.current_term.name if self.current_term else None,
            "next_term_name": self.next_term.name if self.next_term else None,
            "notice_deadline": isoformat_or_none(self.notice_deadline),
            "assumed_continuing": bool(self.assumed_continuing),
            "reminder_schedule": list(self.reminder_schedule or []),
            "status": self.status,
            "summary": dict(self.summary or {}),
            "sent_at": isoformat_or_none(self.sent_at),
            "reminder_rounds": self.reminder_rounds or 0,
            "last_reminder_at": isoformat_or_none(self.last_reminder_at),
            "deadline_passed_at": isoformat_or_none(self.deadline_passed_at),
            "completed_at": isoformat_or_none(self.completed_at),
            "created_by": self.created_by,
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }

    def __repr__(self):
        return f'<TermContinuationRun {self.id} {self.status}>'


class TermContinuationResponse(db.Model):
    __tablename__ = 'term_continuation_responses'
    __table_args__ = (
        db.UniqueConstraint('run_id', 'student_id', 'guardian_id', name='uq_continuation_run_student_guardian'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    run_id = db.Column(db.String(36), db.ForeignKey('term_continuation_runs.id'), nullable=False, index=True)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)
    guardian_id = db.Column(db.String(36), db.ForeignKey('guardians.id'), nullable=False, index=True)
    lesson_summary = db.Column(db.JSON, nullable=False, default=list)
    next_term_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    response = db.Column(db.String(30), nullable=False, default='pending', index=True)
    response_at = db.Column(db.DateTime, nullable=True)
    response_method = db.Column(db.String(20), nullable=True)  # email_link/portal/auto_deadline/admin_manual
    response_token = db.Column(db.String(64), nullable=False, unique=True, index=True)
    withdrawal_reason = db.Column(db.String(100), nullable=True)
    withdrawal_notes = db.Column(db.Text, nullable=True)
    initial_sent_at = db.Column(db.DateTime, nullable=True)
    reminder_count = db.Column(db.Integer, nullable=False, default=0)
    reminder_1_sent_at = db.Column(db.DateTime, nullable=True)
    reminder_2_sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    student = db.relationship('Student')
    guardian = db.relationship('Guardian')

    def to_dict(self):
        # response_token is never serialised
        return {
            "id": self.id,
            "run_id": self.run_id,
            "student_id": self.student_id,
            "guardian_id": self.guardian_id,
            "student_name": self.student.full_name if self.student else None,
            "guardian_name": self.guardian.full_name if self.guardian else None,
            "guardian_email": self.guardian.email if self.guardian else None,
            "lesson_summary": list(self.lesson_summary or []),
            "next_term_fee_minor": self.next_term_fee_minor,
            "response": self.response,
            "response_at": isoformat_or_none(self.response_at),
            "response_method": self.response_method,
            "withdrawal_reason": self.withdrawal_reason,
            "withdrawal_notes": self.withdrawal_notes,
            "initial_sent_at": isoformat_or_none(self.initial_sent_at),
            "reminder_count": self.reminder_count,
            "reminder_1_sent_at": isoformat_or_none(self.reminder_1_sent_at),
            "reminder_2_sent_at": isoformat_or_none(self.reminder_2_sent_at),
        }

    def __repr__(self):
        return f'<TermContinuationResponse {self.student_id} {self.response}>'


class MessageLog(db.Model):
    __tablename__ = 'message_log'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), db.ForeignKey('organisations.id'), nullable=False, index=True)
    channel = db.Column(db.String(20), nullable=False, default='email')
    subject = db.Column(db.String(255), nullable=True)
    body = db.Column(db.Text, nullable=True)
    sender_user_id = db.Column(db.String(36), nullable=True)
    recipient_email = db.Column(db.String(255), nullable=True)
    recipient_name = db.Column(db.String(200), nullable=True)
    recipient_type = db.Column(db.String(20), nullable=True)
    recipient_id = db.Column(db.String(36), nullable=True, index=True)
    related_id = db.Column(db.String(36), nullable=True, index=True)
    message_type = db.Column(db.String(40), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending/logged/sent/failed
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)
    sent_at = db.Column(db.DateTime, nullable=True)


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(db.String(36), nullable=True, index=True)
    actor_user_id = db.Column(db.String(36), nullable=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    entity_type = db.Column(db.String(100), nullable=True)
    entity_id = db.Column(db.String(36), nullable=True)
    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)
