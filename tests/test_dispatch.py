from unittest.mock import patch

import pytest

from continuation import process_deadline, send_reminders, send_run
from continuation import dispatch
from continuation.dispatch import respond_url
from continuation.errors import ValidationError
from extensions import mail
from models import AuditLog, Guardian, MessageLog, TermContinuationResponse, TermContinuationRun

from conftest import OWNER


def _run(session, run_id):
    return session.get(TermContinuationRun, run_id)


def test_send_emails_each_family_once(session, scenario, run_id):
    run = _run(session, run_id)
    with mail.record_messages() as outbox:
        result = send_run(session, run, OWNER)

    assert result.sent_count == 2
    assert result.failed == []
    assert sorted(m.recipients[0] for m in outbox) == ["jane@example.test", "tom@example.test"]

    jane_mail = next(m for m in outbox if m.recipients[0] == "jane@example.test")
    assert jane_mail.subject == "Summer 2026 – Please confirm your child's music lessons"
    assert jane_mail.sender == "Harmony Music School <notifications@example.test>"
    assert "Alice Smith" in jane_mail.html and "Bob Smith" in jane_mail.html
    assert "Carol Jones" not in jane_mail.html
    assert "Friday 20 March 2026" in jane_mail.html
    assert "£270.00" in jane_mail.html
    assert "automatically re-enrolled" in jane_mail.html

    rows = session.query(TermContinuationResponse).filter_by(run_id=run_id).all()
    for row in rows:
        assert row.initial_sent_at is not None
        if row.guardian_id == scenario.jane_id:
            assert f"token={row.response_token}" in jane_mail.html


def test_send_moves_run_to_sent_and_logs(session, scenario, run_id):
    run = _run(session, run_id)
    send_run(session, run, OWNER)

    assert run.status == "sent"
    assert run.sent_at is not None
    logs = session.query(MessageLog).filter_by(related_id=run_id).all()
    assert len(logs) == 2
    assert {l.status for l in logs} == {"sent"}
    assert {l.message_type for l in logs} == {"continuation"}
    audit = session.query(AuditLog).filter_by(entity_id=run_id, action="continuation_run.sent").one()
    assert audit.after == {"sent_count": 2, "failed_count": 0}


def test_send_requires_draft(session, run_id):
    run = _run(session, run_id)
    send_run(session, run, OWNER)
    with pytest.raises(ValidationError) as err:
        send_run(session, run, OWNER)
    assert err.value.message == "Run must be in draft status to send"


def test_failed_delivery_is_reported_and_run_still_advances(session, scenario, run_id):
    run = _run(session, run_id)
    with patch("utils.notifications.mail.send", side_effect=ConnectionRefusedError("smtp down")):
        result = send_run(session, run, OWNER)

    assert result.sent_count == 0
    assert len(result.failed) == 2
    assert result.failed[0].error == "smtp down"
    assert run.status == "sent"
    assert all(r.initial_sent_at is None for r in session.query(TermContinuationResponse).filter_by(run_id=run_id))
    assert {l.status for l in session.query(MessageLog).filter_by(related_id=run_id)} == {"failed"}


def test_guardian_without_email_is_skipped(session, scenario, run_id):
    session.get(Guardian, scenario.tom_id).email = None
    session.commit()
    run = _run(session, run_id)
    with mail.record_messages() as outbox:
        result = send_run(session, run, OWNER)

    assert result.sent_count == 1
    assert len(outbox) == 1
    assert result.to_dict()["failed"] == [{"guardian_name": "Tom Jones", "email": None, "error": "No email address"}]


def test_without_smtp_messages_are_logged_only(app, session, scenario, run_id):
    app.config["MAIL_SERVER"] = ""
    run = _run(session, run_id)
    with mail.record_messages() as outbox:
        result = send_run(session, run, OWNER)

    assert outbox == []
    assert result.sent_count == 2
    assert {l.status for l in session.query(MessageLog).filter_by(related_id=run_id)} == {"logged"}


def test_respond_url(app):
    assert respond_url("abc") == "https://app.example.test/respond/continuation?token=abc"
    assert respond_url("abc", "withdrawing").endswith("?token=abc&action=withdrawing")


def test_reminders_go_to_pending_families_only(session, scenario, sent_run):
    carol = session.query(TermContinuationResponse).filter_by(run_id=sent_run.id, student_id=scenario.carol_id).one()
    carol.response = "continuing"
    session.commit()

    with mail.record_messages() as outbox:
        result = send_reminders(session, sent_run, OWNER)

    assert result.reminded_count == 1
    assert [m.recipients[0] for m in outbox] == ["jane@example.test"]
    assert outbox[0].subject == "Reminder: Please confirm lessons for Summer 2026"
    assert sent_run.status == "reminding"

    rows = {r.student_id: r for r in session.query(TermContinuationResponse).filter_by(run_id=sent_run.id)}
    assert rows[scenario.alice_id].reminder_count == 1
    assert rows[scenario.alice_id].reminder_1_sent_at is not None
    assert rows[scenario.alice_id].reminder_2_sent_at is None
    assert rows[scenario.carol_id].reminder_count == 0

    send_reminders(session, sent_run, OWNER)
    assert rows[scenario.alice_id].reminder_count == 2
    assert rows[scenario.alice_id].reminder_2_sent_at is not None


def test_failed_reminder_is_not_counted(session, scenario, sent_run):
    with patch("utils.notifications.mail.send", side_effect=OSError("timeout")):
        result = send_reminders(session, sent_run, OWNER)
    assert result.reminded_count == 0
    assert len(result.failed) == 2
    assert all(r.reminder_count == 0 for r in session.query(TermContinuationResponse).filter_by(run_id=sent_run.id))
    # the attempt still counts as a round
    assert sent_run.reminder_rounds == 1
    assert sent_run.last_reminder_at is not None


def test_reminders_with_nothing_pending(session, sent_run):
    session.query(TermContinuationResponse).filter_by(run_id=sent_run.id).update({"response": "withdrawing"})
    session.commit()
    result = send_reminders(session, sent_run, OWNER)
    assert result.to_dict() == {"reminded_count": 0, "failed": [], "message": "No pending responses to remind"}
    assert sent_run.status == "sent"
    assert sent_run.reminder_rounds == 0


def test_reminders_need_an_open_run(session, run_id):
    with pytest.raises(ValidationError):
        send_reminders(session, _run(session, run_id), OWNER)


def test_reminders_after_deadline_rejected(session, sent_run):
    process_deadline(session, sent_run, OWNER)
    with pytest.raises(ValidationError):
        send_reminders(session, sent_run, OWNER)


def test_send_with_nothing_pending_is_rejected(session, run_id):
    session.query(TermContinuationResponse).filter_by(run_id=run_id).update({"response": "withdrawing"})
    session.commit()
    run = _run(session, run_id)
    with pytest.raises(ValidationError) as err:
        send_run(session, run, OWNER)
    assert err.value.message == "No pending responses to send"
    assert run.status == "draft"


def test_interrupted_send_does_not_email_reached_families_again(session, scenario, run_id):
    run = _run(session, run_id)
    real_deliver = dispatch._deliver
    calls = []

    def deliver_then_crash(*args):
        calls.append(args[3].email)
        if len(calls) == 2:
            raise RuntimeError("worker killed")
        return real_deliver(*args)

    with mail.record_messages() as outbox:
        with patch("continuation.dispatch._deliver", side_effect=deliver_then_crash):
            with pytest.raises(RuntimeError):
                send_run(session, run, OWNER)
        session.rollback()
        assert run.status == "draft"
        reached = outbox[0].recipients[0]
        assert len(outbox) == 1

        result = send_run(session, run, OWNER)

    assert run.status == "sent"
    assert result.sent_count == 1
    assert sorted(m.recipients[0] for m in outbox) == ["jane@example.test", "tom@example.test"]
    assert outbox[1].recipients[0] != reached
    rows = session.query(TermContinuationResponse).filter_by(run_id=run_id).all()
    assert all(r.initial_sent_at is not None for r in rows)
