from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from flask_limiter.util import get_remote_address

from continuation import pending_for_guardian, respond_by_portal, respond_by_token
from continuation.errors import AuthenticationError, ContinuationError
from continuation.intake import validate_response_value
from extensions import db, limiter
from utils import bearer_required, current_user_id
from utils.security import hash_token

respond_bp = Blueprint("continuation_respond", __name__, url_prefix="/continuation/respond")


def _respond_rate_key() -> str:
    # throttle per link (blunts token guessing) or per portal user
    body = request.get_json(silent=True) or {}
    token = body.get("token")
    if token:
        return f"token:{hash_token(str(token))}"
    user_id = current_user_id()
    if user_id:
        return f"user:{user_id}"
    return get_remote_address()


def _respond_rate_limit() -> str:
    return current_app.config.get("CONTINUATION_RESPOND_RATE_LIMIT", "10 per minute")


@respond_bp.errorhandler(ContinuationError)
def _continuation_error(exc: ContinuationError):
    db.session.rollback()
    return jsonify(exc.to_dict()), exc.status_code


@respond_bp.route("", methods=["POST"])
@limiter.limit(_respond_rate_limit, key_func=_respond_rate_key)
def respond():
    body = request.get_json(silent=True) or {}
    response = validate_response_value(body.get("response"))
    reason = body.get("withdrawal_reason")
    notes = body.get("withdrawal_notes")

    if body.get("token"):
        result = respond_by_token(db.session, str(body["token"]), response, reason, notes)
        return jsonify(result.to_dict())

    user_id = current_user_id()
    if not user_id:
        raise AuthenticationError()
    result = respond_by_portal(db.session, user_id, body.get("run_id"), body.get("student_id"), response, reason, notes)
    return jsonify(result.to_dict())


@respond_bp.route("/pending", methods=["GET"])
@bearer_required
def pending():
    return jsonify({"pending": pending_for_guardian(db.session, g.user_id)})
