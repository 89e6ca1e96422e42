import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

import pytest

from app import create_app
from extensions import db, limiter
from models import (
    ClosureDate,
    Guardian,
    Instrument,
    Lesson,
    LessonParticipant,
    OrgMembership,
    Organisation,
    RateCard,
    RecurrenceRule,
    Student,
    StudentGuardian,
    StudentInstrument,
    Teacher,
    Term,
)
from utils.security import sign_user_token

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    # always explicit: the limiter instance is shared between test apps
    "RATELIMIT_ENABLED": False,
    "MAIL_SERVER": "localhost",
    "MAIL_DEFAULT_SENDER": "office@example.test",
    "NOTIFICATIONS_FROM_ADDRESS": "notifications@example.test",
    "FRONTEND_URL": "https://app.example.test",
    "CONTINUATION_SCHEDULER_ENABLED": False,
}

OWNER = "user-owner"
TEACHER_USER = "user-teacher"
JANE = "user-jane"
TOM = "user-tom"


def build_app(**overrides):
    cfg = dict(TEST_CONFIG)
    cfg.update(overrides)
    return create_app(cfg)


@pytest.fixture
def app():
    app = build_app()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def auth(app):
    def headers(user_id):
        return {"Authorization": f"Bearer {sign_user_token(user_id)}"}
    return headers


def add_weekly_lessons(session, org_id, student_id, rule, teacher_id, first_day, weeks, at=time(16, 0), minutes=30, status="scheduled"):
    lessons = []
    for i in range(weeks):
        start = datetime.combine(first_day + timedelta(days=7 * i), at)
        lesson = Lesson(
            org_id=org_id,
            recurrence_id=rule.id,
            teacher_id=teacher_id,
            start_at=start,
            end_at=start + timedelta(minutes=minutes),
            status=status,
        )
        session.add(lesson)
        session.flush()
        session.add(LessonParticipant(org_id=org_id, lesson_id=lesson.id, student_id=student_id))
        lessons.append(lesson)
    session.flush()
    return lessons


def seed_scenario(session):
    """A school with two families, one student without a payer and one inactive student.

    Spring runs 5 Jan - 27 Mar 2026; Summer runs 16 Apr - 18 Jun 2026 (ten
    Thursdays, one of which, 28 May, is a closure day). Every lesson is a
    30 minute Thursday slot and the 30 minute card is 3000, so each child's
    Summer fee is 9 x 3000 = 27000.
    """
    org = Organisation(name="Harmony Music School")
    session.add(org)
    session.flush()

    session.add_all([
        OrgMembership(org_id=org.id, user_id=OWNER, role="owner"),
        OrgMembership(org_id=org.id, user_id=TEACHER_USER, role="teacher"),
    ])

    spring = Term(org_id=org.id, name="Spring 2026", start_date=date(2026, 1, 5), end_date=date(2026, 3, 27))
    summer = Term(org_id=org.id, name="Summer 2026", start_date=date(2026, 4, 16), end_date=date(2026, 6, 18))
    session.add_all([spring, summer])

    card30 = RateCard(org_id=org.id, name="30 min", duration_mins=30, rate_amount=3000, is_default=True)
    card45 = RateCard(org_id=org.id, name="45 min", duration_mins=45, rate_amount=4000)
    session.add_all([card30, card45])

    teacher = Teacher(org_id=org.id, display_name="Ms Rivera")
    piano = Instrument(org_id=org.id, name="Piano")
    session.add_all([teacher, piano])

    session.add(ClosureDate(org_id=org.id, date=date(2026, 5, 28)))

    jane = Guardian(org_id=org.id, user_id=JANE, full_name="Jane Smith", email="jane@example.test")
    tom = Guardian(org_id=org.id, user_id=TOM, full_name="Tom Jones", email="tom@example.test")
    session.add_all([jane, tom])
    session.flush()

    def student(first, last, **kw):
        s = Student(org_id=org.id, first_name=first, last_name=last, **kw)
        session.add(s)
        session.flush()
        return s

    alice = student("Alice", "Smith")
    bob = student("Bob", "Smith")
    carol = student("Carol", "Jones")
    dan = student("Dan", "Brown")
    eve = student("Eve", "Gray", status="inactive")

    session.add_all([
        StudentGuardian(org_id=org.id, student_id=alice.id, guardian_id=jane.id, is_primary_payer=True),
        StudentGuardian(org_id=org.id, student_id=bob.id, guardian_id=jane.id, is_primary_payer=True),
        StudentGuardian(org_id=org.id, student_id=carol.id, guardian_id=tom.id, is_primary_payer=True),
        StudentGuardian(org_id=org.id, student_id=dan.id, guardian_id=tom.id, is_primary_payer=False),
        StudentInstrument(student_id=alice.id, instrument_id=piano.id),
    ])

    first_thursday = date(2026, 1, 8)
    for s, at in ((alice, time(16, 0)), (bob, time(16, 30)), (carol, time(17, 0)), (dan, time(17, 30)), (eve, time(18, 0))):
        rule = RecurrenceRule(org_id=org.id, days_of_week=[4])
        session.add(rule)
        session.flush()
        add_weekly_lessons(session, org.id, s.id, rule, teacher.id, first_thursday, weeks=3, at=at)

    session.commit()
    return SimpleNamespace(
        org_id=org.id,
        spring_id=spring.id,
        summer_id=summer.id,
        teacher_id=teacher.id,
        card30_id=card30.id,
        card45_id=card45.id,
        jane_id=jane.id,
        tom_id=tom.id,
        alice_id=alice.id,
        bob_id=bob.id,
        carol_id=carol.id,
        dan_id=dan.id,
        eve_id=eve.id,
    )


@pytest.fixture
def scenario(session):
    return seed_scenario(session)


def create_default_run(session, scenario, **kw):
    from continuation import create_run

    params = dict(
        org_id=scenario.org_id,
        actor_user_id=OWNER,
        current_term_id=scenario.spring_id,
        next_term_id=scenario.summer_id,
        notice_deadline="2026-03-20",
    )
    params.update(kw)
    return create_run(session, **params)


@pytest.fixture
def run_id(session, scenario):
    return create_default_run(session, scenario).run_id


@pytest.fixture
def sent_run(session, scenario, run_id, app):
    from continuation import send_run
    from models import TermContinuationRun

    run = session.get(TermContinuationRun, run_id)
    send_run(session, run, OWNER)
    return run


@pytest.fixture(autouse=True)
def _reset_limiter(app):
    if limiter.enabled:
        limiter.reset()
    yield
