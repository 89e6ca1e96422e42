from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from continuation import complete_run, create_run, process_deadline, send_run
from continuation.eligibility import JoinedLessonQuery, SequentialLessonQuery, collect, select_query_strategy
from continuation.errors import ConflictError, NotFoundError, ValidationError
from continuation.records import term_info
from models import AuditLog, Organisation, Term, TermContinuationResponse, TermContinuationRun

from conftest import OWNER, create_default_run


def _responses(session, run_id):
    return {r.student_id: r for r in session.query(TermContinuationResponse).filter_by(run_id=run_id)}


def test_create_builds_one_pending_row_per_eligible_student(session, scenario):
    result = create_default_run(session, scenario)

    assert result.total_students == 3
    assert result.summary["total_students"] == 3
    assert result.summary["pending"] == 3

    run = session.get(TermContinuationRun, result.run_id)
    assert run.status == "draft"
    assert run.notice_deadline == date(2026, 3, 20)
    assert run.assumed_continuing is True
    assert run.reminder_schedule == [7, 14]
    assert run.created_by == OWNER

    rows = _responses(session, result.run_id)
    assert set(rows) == {scenario.alice_id, scenario.bob_id, scenario.carol_id}
    assert all(r.response == "pending" for r in rows.values())
    assert len({r.response_token for r in rows.values()}) == 3


def test_lesson_summary_and_fee(session, scenario):
    result = create_default_run(session, scenario)
    alice = _responses(session, result.run_id)[scenario.alice_id]

    assert alice.next_term_fee_minor == 27000
    [entry] = alice.lesson_summary
    assert entry["day"] == "Thursday"
    assert entry["time"] == "16:00"
    assert entry["duration_mins"] == 30
    assert entry["rate_minor"] == 3000
    assert entry["lessons_next_term"] == 9
    assert entry["teacher_name"] == "Ms Rivera"
    assert entry["instrument"] == "Piano"

    preview = {p["student_id"]: p for p in result.preview}
    assert preview[scenario.alice_id]["lesson_count"] == 9
    assert preview[scenario.alice_id]["fee_minor"] == 27000
    assert preview[scenario.alice_id]["has_email"] is True
    assert preview[scenario.alice_id]["guardian_name"] == "Jane Smith"


def test_students_without_primary_payer_are_reported(session, scenario):
    result = create_default_run(session, scenario)
    skipped = {s.student_id: s for s in result.skipped}
    assert skipped[scenario.dan_id].reason == "no_primary_payer"
    assert skipped[scenario.dan_id].student_name == "Dan Brown"
    # inactive students never reach the build at all
    assert scenario.eve_id not in skipped
    assert result.to_dict()["skipped"][0]["reason"] == "no_primary_payer"


def test_create_writes_audit_record(session, scenario):
    result = create_default_run(session, scenario)
    entry = session.query(AuditLog).filter_by(entity_id=result.run_id).one()
    assert entry.action == "continuation_run.created"
    assert entry.actor_user_id == OWNER
    assert entry.after["total_students"] == 3
    assert entry.after["skipped"] == 1


def test_duplicate_run_for_term_pair_conflicts(session, scenario):
    create_default_run(session, scenario)
    with pytest.raises(ConflictError) as err:
        create_default_run(session, scenario)
    assert err.value.status_code == 409
    assert session.query(TermContinuationRun).count() == 1


def test_completed_run_frees_the_term_pair(session, scenario):
    first = session.get(TermContinuationRun, create_default_run(session, scenario).run_id)
    send_run(session, first, OWNER)
    process_deadline(session, first, OWNER)
    complete_run(session, first, OWNER)

    second = create_default_run(session, scenario)
    assert second.run_id != first.id


def test_next_term_must_start_after_current_ends(session, scenario):
    with pytest.raises(ValidationError) as err:
        create_default_run(session, scenario, current_term_id=scenario.summer_id, next_term_id=scenario.spring_id)
    assert err.value.message == "Next term must start after current term ends"


def test_unknown_or_foreign_terms_not_found(session, scenario):
    other = Organisation(name="Elsewhere")
    session.add(other)
    session.flush()
    foreign = Term(org_id=other.id, name="Summer", start_date=date(2026, 4, 16), end_date=date(2026, 6, 18))
    session.add(foreign)
    session.commit()

    with pytest.raises(NotFoundError) as err:
        create_default_run(session, scenario, next_term_id=foreign.id)
    assert err.value.message == "Terms not found"
    with pytest.raises(NotFoundError):
        create_default_run(session, scenario, next_term_id="missing")


@pytest.mark.parametrize("kw,message", [
    ({"notice_deadline": None}, "current_term_id, next_term_id, and notice_deadline are required"),
    ({"notice_deadline": "20/03/2026"}, "notice_deadline must be a date (YYYY-MM-DD)"),
    ({"assumed_continuing": "yes"}, "assumed_continuing must be true or false"),
    ({"reminder_schedule": [7, 0]}, "reminder_schedule must contain positive whole numbers of days"),
    ({"reminder_schedule": "7,14"}, "reminder_schedule must be a list of day offsets"),
])
def test_create_validates_input(session, scenario, kw, message):
    with pytest.raises(ValidationError) as err:
        create_default_run(session, scenario, **kw)
    assert err.value.message == message


def test_custom_policy_and_schedule_are_stored(session, scenario):
    result = create_default_run(session, scenario, assumed_continuing=False, reminder_schedule=[10, 3])
    run = session.get(TermContinuationRun, result.run_id)
    assert run.assumed_continuing is False
    assert run.reminder_schedule == [3, 10]


def test_no_recurring_lessons_is_rejected(session):
    org = Organisation(name="Empty School")
    session.add(org)
    session.flush()
    a = Term(org_id=org.id, name="A", start_date=date(2026, 1, 5), end_date=date(2026, 3, 27))
    b = Term(org_id=org.id, name="B", start_date=date(2026, 4, 16), end_date=date(2026, 6, 18))
    session.add_all([a, b])
    session.commit()

    with pytest.raises(ValidationError) as err:
        create_run(session, org_id=org.id, actor_user_id=OWNER, current_term_id=a.id, next_term_id=b.id, notice_deadline="2026-03-20")
    assert "No active students" in err.value.message
    assert session.query(TermContinuationRun).count() == 0


def test_run_with_every_student_skipped_is_rejected(session, scenario):
    from models import StudentGuardian

    session.query(StudentGuardian).update({"is_primary_payer": False})
    session.commit()
    with pytest.raises(ValidationError) as err:
        create_default_run(session, scenario)
    assert err.value.message.startswith("No eligible students found")
    assert session.query(TermContinuationRun).count() == 0


def test_sequential_strategy_matches_joined(session, scenario):
    spring = term_info(session.get(Term, scenario.spring_id))
    joined = collect(session, scenario.org_id, spring, strategy=JoinedLessonQuery())
    sequential = collect(session, scenario.org_id, spring, strategy=SequentialLessonQuery())

    assert set(joined) == set(sequential) == {scenario.alice_id, scenario.bob_id, scenario.carol_id, scenario.dan_id}
    for student_id, groups in joined.items():
        assert set(groups) == set(sequential[student_id])
        for rec_id, group in groups.items():
            assert [l.id for l in group.lessons] == [l.id for l in sequential[student_id][rec_id].lessons]


def test_strategy_falls_back_when_join_is_rejected(session, scenario):
    spring = term_info(session.get(Term, scenario.spring_id))
    assert select_query_strategy(session, scenario.org_id, spring).name == "joined"

    failure = OperationalError("SELECT", {}, Exception("join not supported"))
    with patch.object(JoinedLessonQuery, "fetch", side_effect=failure):
        assert select_query_strategy(session, scenario.org_id, spring).name == "sequential"
        result = create_default_run(session, scenario)
    assert result.total_students == 3


def test_cancelled_lessons_are_ignored(session, scenario):
    from models import Lesson

    session.query(Lesson).update({"status": "cancelled"})
    session.commit()
    with pytest.raises(ValidationError):
        create_default_run(session, scenario)


def test_bad_lesson_data_skips_only_that_student(session, scenario):
    from models import Lesson, LessonParticipant

    bob_lessons = [p.lesson_id for p in session.query(LessonParticipant).filter_by(student_id=scenario.bob_id)]
    for lesson in session.query(Lesson).filter(Lesson.id.in_(bob_lessons)):
        lesson.end_at = lesson.start_at
    session.commit()

    result = create_default_run(session, scenario)
    skipped = {s.student_id: s.reason for s in result.skipped}
    assert skipped[scenario.bob_id] == "invalid_lesson_data"
    assert result.total_students == 2


def test_race_recheck_before_insert(session, scenario):
    from continuation import builder

    calls = {"n": 0}
    real = builder.find_active_run

    def second_check_finds_run(*args):
        calls["n"] += 1
        if calls["n"] == 2:
            return object()
        return real(*args)

    with patch.object(builder, "find_active_run", side_effect=second_check_finds_run):
        with pytest.raises(ConflictError):
            create_default_run(session, scenario)
    assert session.query(TermContinuationRun).count() == 0
