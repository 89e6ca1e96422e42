from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Optional

from flask import current_app


def _secret() -> bytes:
    return (current_app.config.get("SECRET_KEY") or "secret123").encode("utf-8")


def _mac(user_id: str, ts: str) -> str:
    return hmac.new(_secret(), f"bearer:{user_id}:{ts}".encode("utf-8"), hashlib.sha256).hexdigest()[:32]


def sign_user_token(user_id: str, issued_at: int | None = None) -> str:
    """Bearer token ``<user_id>.<issued_ts>.<mac>`` for an authenticated user."""
    uid = str(user_id)
    ts = str(int(issued_at or datetime.now().timestamp()))
    return f"{uid}.{ts}.{_mac(uid, ts)}"


def verify_user_token(token: str | None) -> Optional[str]:
    """Return the user id a bearer token was issued for, or None if forged or expired."""
    if not token:
        return None
    try:
        uid, ts, mac = token.rsplit(".", 2)
        issued = int(ts)
    except ValueError:
        return None
    if not uid or not hmac.compare_digest(mac, _mac(uid, ts)):
        return None
    max_age = int(current_app.config.get("BEARER_TOKEN_MAX_AGE_SECONDS") or 0)
    if max_age and datetime.now().timestamp() - issued > max_age:
        return None
    return uid


def bearer_from_header(header: str | None) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


def hash_token(token: str) -> str:
    """Stable digest of a response token, used as a rate-limit identity."""
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()
