from __future__ import annotations

from flask import current_app
from flask_mail import Message

from extensions import mail
from models import MessageLog
from utils.timezone_helpers import utc_now


def smtp_configured() -> bool:
    """Return True if minimal SMTP settings are present for Flask-Mail.

    Without a ``MAIL_SERVER`` messages are only recorded in the message log.
    """
    cfg = current_app.config
    return bool((cfg.get("MAIL_SERVER") or "").strip())


def sender_for(org_name: str) -> str:
    address = current_app.config.get("NOTIFICATIONS_FROM_ADDRESS") or current_app.config.get("MAIL_DEFAULT_SENDER")
    return f"{org_name} <{address}>"


def send_email_html(to: str, subject: str, html_body: str, sender: str | None = None) -> tuple[bool, str | None]:
    """Send one HTML email. Returns ``(ok, error)``; never raises for delivery problems."""
    if not to:
        return False, "No email address"
    msg = Message(
        subject=subject or "",
        sender=sender or current_app.config.get("MAIL_DEFAULT_SENDER"),
        recipients=[to],
        html=html_body,
    )
    try:
        mail.send(msg)
    except Exception as exc:
        current_app.logger.warning("Email send to guardian failed: %s", exc)
        return False, str(exc) or "Send failed"
    return True, None


def log_outbound_message(
    session,
    *,
    org_id: str,
    subject: str,
    body: str,
    sender_user_id: str | None,
    recipient_email: str | None,
    recipient_name: str | None,
    recipient_id: str,
    related_id: str,
    message_type: str,
    status: str,
) -> MessageLog:
    entry = MessageLog(
        org_id=org_id,
        channel="email",
        subject=subject,
        body=body,
        sender_user_id=sender_user_id,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        recipient_type="guardian",
        recipient_id=recipient_id,
        related_id=related_id,
        message_type=message_type,
        status=status,
    )
    session.add(entry)
    session.flush()
    return entry


def mark_message(entry: MessageLog, ok: bool, error: str | None = None) -> None:
    if ok:
        entry.status = "sent"
        entry.sent_at = utc_now()
    else:
        entry.status = "failed"
        entry.error = error
