from __future__ import annotations

from functools import wraps
from typing import Any, Callable, TypeVar, cast

from flask import g, jsonify, request

from utils.security import bearer_from_header, verify_user_token

F = TypeVar("F", bound=Callable[..., Any])


def current_user_id() -> str | None:
    """User id from the request's bearer token, or None."""
    return verify_user_token(bearer_from_header(request.headers.get("Authorization")))


def bearer_required(func: F) -> F:
    """Decorator that requires a valid bearer token.

    - On success the caller's id is available as ``g.user_id``.
    - Otherwise responds 401 with a JSON error.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        user_id = current_user_id()
        if not user_id:
            return jsonify({"error": "Unauthorized"}), 401
        g.user_id = user_id
        return func(*args, **kwargs)

    return cast(F, wrapper)
