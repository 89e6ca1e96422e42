import pytest

from continuation.errors import ValidationError
from continuation.states import accepts_responses, summary_key, target_status
from continuation.summary import SUMMARY_KEYS, empty_summary, recalc_summary
from models import TermContinuationResponse, TermContinuationRun


def test_target_status_follows_run_lifecycle():
    assert target_status("send", "draft") == "sent"
    assert target_status("send_reminders", "sent") == "reminding"
    assert target_status("send_reminders", "reminding") == "reminding"
    assert target_status("process_deadline", "reminding") == "deadline_passed"
    assert target_status("complete", "deadline_passed") == "completed"


@pytest.mark.parametrize("action,current,message", [
    ("send", "sent", "Run must be in draft status to send"),
    ("send_reminders", "draft", "Run must be in sent or reminding status"),
    ("process_deadline", "deadline_passed", "Run must be in sent or reminding status to process deadline"),
    ("complete", "sent", "Run must be in deadline_passed status to complete"),
])
def test_target_status_rejects_other_statuses(action, current, message):
    with pytest.raises(ValidationError) as err:
        target_status(action, current)
    assert err.value.message == message
    assert err.value.status_code == 400


def test_only_open_runs_accept_responses():
    assert accepts_responses("sent")
    assert accepts_responses("reminding")
    assert not accepts_responses("draft")
    assert not accepts_responses("deadline_passed")
    assert not accepts_responses("completed")


def test_summary_key_maps_continuing_to_confirmed():
    assert summary_key("continuing") == "confirmed"
    assert summary_key("assumed_continuing") == "assumed_continuing"
    assert summary_key("pending") == "pending"
    assert summary_key("maybe") is None


def test_recalc_summary_counts_rows(session, scenario, run_id):
    rows = session.query(TermContinuationResponse).filter_by(run_id=run_id).all()
    rows[0].response = "continuing"
    rows[1].response = "withdrawing"
    session.flush()

    summary = recalc_summary(session, run_id)
    assert summary == {
        "total_students": 3,
        "confirmed": 1,
        "withdrawing": 1,
        "pending": 1,
        "no_response": 0,
        "assumed_continuing": 0,
    }
    assert session.get(TermContinuationRun, run_id).summary == summary


def test_recalc_summary_for_empty_run_is_all_zero(session):
    assert recalc_summary(session, "no-such-run") == empty_summary()


def test_recalc_summary_leaves_unknown_values_out_of_the_total(session, scenario, run_id):
    rows = session.query(TermContinuationResponse).filter_by(run_id=run_id).all()
    rows[0].response = "maybe"
    session.flush()

    summary = recalc_summary(session, run_id)
    assert summary["total_students"] == 2
    assert summary["pending"] == 2
    assert sum(summary[key] for key in SUMMARY_KEYS) == summary["total_students"]
