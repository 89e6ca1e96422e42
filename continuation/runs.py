from __future__ import annotations

from sqlalchemy import select

from continuation.errors import NotFoundError, ValidationError
from continuation.states import ResponseStatus
from models import Organisation, TermContinuationResponse, TermContinuationRun


def get_run(session, org_id: str, run_id: str | None) -> TermContinuationRun:
    if not run_id:
        raise ValidationError("run_id is required")
    run = session.execute(
        select(TermContinuationRun).where(TermContinuationRun.id == run_id, TermContinuationRun.org_id == org_id)
    ).scalar_one_or_none()
    if run is None:
        raise NotFoundError("Run not found")
    return run


def list_runs(session, org_id: str) -> list[TermContinuationRun]:
    return list(
        session.execute(
            select(TermContinuationRun)
            .where(TermContinuationRun.org_id == org_id)
            .order_by(TermContinuationRun.created_at.desc())
        ).scalars()
    )


def list_responses(session, run: TermContinuationRun, response: str | None = None) -> list[TermContinuationResponse]:
    stmt = select(TermContinuationResponse).where(TermContinuationResponse.run_id == run.id)
    if response:
        if response not in {s.value for s in ResponseStatus}:
            raise ValidationError(f"Unknown response filter: {response}")
        stmt = stmt.where(TermContinuationResponse.response == response)
    stmt = stmt.order_by(TermContinuationResponse.created_at, TermContinuationResponse.id)
    return list(session.execute(stmt).scalars())


def pending_responses(session, run_id: str) -> list[TermContinuationResponse]:
    return list(
        session.execute(
            select(TermContinuationResponse)
            .where(
                TermContinuationResponse.run_id == run_id,
                TermContinuationResponse.response == ResponseStatus.PENDING.value,
            )
            .order_by(TermContinuationResponse.created_at, TermContinuationResponse.id)
        ).scalars()
    )


def org_name(session, org_id: str, fallback: str) -> str:
    org = session.get(Organisation, org_id)
    return (org.name if org and org.name else None) or fallback
