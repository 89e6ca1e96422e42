from __future__ import annotations

from typing import Any, Callable, Dict

from flask import Blueprint, current_app, g, jsonify, request
from flask_limiter.util import get_remote_address
from sqlalchemy import select

from continuation import (
    complete_run,
    create_run,
    override_response,
    process_deadline,
    send_reminders,
    send_run,
)
from continuation.errors import AuthorizationError, ContinuationError, ValidationError
from continuation.runs import get_run, list_responses, list_runs
from extensions import db, limiter
from models import OrgMembership
from utils import bearer_required, current_user_id
from utils.timezone_helpers import isoformat_or_none

continuation_bp = Blueprint("continuation", __name__, url_prefix="/continuation")

STAFF_ROLES = ("owner", "admin")


def _staff_rate_key() -> str:
    user_id = current_user_id()
    return f"user:{user_id}" if user_id else get_remote_address()


def _staff_rate_limit() -> str:
    return current_app.config.get("CONTINUATION_STAFF_RATE_LIMIT", "30 per minute")


@continuation_bp.errorhandler(ContinuationError)
def _continuation_error(exc: ContinuationError):
    db.session.rollback()
    return jsonify(exc.to_dict()), exc.status_code


def _require_org_role(org_id: Any) -> str:
    if not org_id:
        raise ValidationError("org_id is required")
    membership = db.session.execute(
        select(OrgMembership.id).where(
            OrgMembership.user_id == g.user_id,
            OrgMembership.org_id == org_id,
            OrgMembership.status == "active",
            OrgMembership.role.in_(STAFF_ROLES),
        ).limit(1)
    ).scalar_one_or_none()
    if membership is None:
        raise AuthorizationError("Not authorised for this organisation")
    return org_id


# -----------------------------
# Actions
# -----------------------------


def _create(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    result = create_run(
        db.session,
        org_id=org_id,
        actor_user_id=g.user_id,
        current_term_id=body.get("current_term_id"),
        next_term_id=body.get("next_term_id"),
        notice_deadline=body.get("notice_deadline"),
        assumed_continuing=body.get("assumed_continuing"),
        reminder_schedule=body.get("reminder_schedule"),
    )
    return result.to_dict()


def _send(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    run = get_run(db.session, org_id, body.get("run_id"))
    return send_run(db.session, run, g.user_id).to_dict()


def _send_reminders(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    run = get_run(db.session, org_id, body.get("run_id"))
    return send_reminders(db.session, run, g.user_id).to_dict()


def _process_deadline(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    run = get_run(db.session, org_id, body.get("run_id"))
    return {"summary": process_deadline(db.session, run, g.user_id)}


def _complete(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    run = complete_run(db.session, get_run(db.session, org_id, body.get("run_id")), g.user_id)
    return {"status": run.status, "completed_at": isoformat_or_none(run.completed_at)}


def _update_response(org_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    run = get_run(db.session, org_id, body.get("run_id"))
    return override_response(
        db.session,
        run,
        g.user_id,
        body.get("response_id"),
        body.get("response"),
        body.get("withdrawal_reason"),
        body.get("withdrawal_notes"),
    )


ACTIONS: Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]] = {
    "create": _create,
    "send": _send,
    "send_reminders": _send_reminders,
    "process_deadline": _process_deadline,
    "complete": _complete,
    "update_response": _update_response,
}


@continuation_bp.route("/run", methods=["POST"])
@limiter.limit(_staff_rate_limit, key_func=_staff_rate_key)
@bearer_required
def run_action():
    body = request.get_json(silent=True) or {}
    org_id = _require_org_role(body.get("org_id"))
    handler = ACTIONS.get(body.get("action"))
    if handler is None:
        raise ValidationError("Invalid action")
    return jsonify(handler(org_id, body))


# -----------------------------
# Staff dashboards
# -----------------------------


@continuation_bp.route("/runs", methods=["GET"])
@bearer_required
def runs_index():
    org_id = _require_org_role(request.args.get("org_id"))
    return jsonify({"runs": [run.to_dict() for run in list_runs(db.session, org_id)]})


@continuation_bp.route("/runs/<run_id>", methods=["GET"])
@bearer_required
def run_detail(run_id: str):
    org_id = _require_org_role(request.args.get("org_id"))
    return jsonify(get_run(db.session, org_id, run_id).to_dict())


@continuation_bp.route("/runs/<run_id>/responses", methods=["GET"])
@bearer_required
def run_responses(run_id: str):
    org_id = _require_org_role(request.args.get("org_id"))
    run = get_run(db.session, org_id, run_id)
    rows = list_responses(db.session, run, request.args.get("response") or None)
    return jsonify({"run_id": run.id, "responses": [row.to_dict() for row in rows]})
