from __future__ import annotations

from sqlalchemy import func, select

from continuation.states import summary_key
from models import TermContinuationResponse, TermContinuationRun

SUMMARY_KEYS = ("confirmed", "withdrawing", "pending", "no_response", "assumed_continuing")


def empty_summary() -> dict[str, int]:
    summary = {"total_students": 0}
    summary.update({key: 0 for key in SUMMARY_KEYS})
    return summary


def recalc_summary(session, run_id: str) -> dict[str, int]:
    """Count the run's response rows by value and store the result on the run.

    Always recomputed from the rows, never incremented, so concurrent writers
    between two calls cannot make it drift. A row holding a value with no
    counter (e.g. one written by an older release) is left out of
    ``total_students`` too, so the counters always add up to the total; the
    total can therefore be lower than the run's row count.
    """
    rows = session.execute(
        select(TermContinuationResponse.response, func.count(TermContinuationResponse.id))
        .where(TermContinuationResponse.run_id == run_id)
        .group_by(TermContinuationResponse.response)
    ).all()

    summary = empty_summary()
    for response, count in rows:
        key = summary_key(response)
        if key is None:
            continue
        summary[key] += count
        summary["total_students"] += count

    run = session.get(TermContinuationRun, run_id)
    if run is not None:
        # new dict so the JSON column registers the change
        run.summary = dict(summary)
    return summary
