"""Run and response state machines.

Run status moves ``draft -> sent -> reminding -> deadline_passed -> completed``;
each staff action is allowed only from the statuses listed in ``ACTION_TRANSITIONS``.
Response rows leave ``pending`` exactly once.
"""
from __future__ import annotations

from enum import Enum

from continuation.errors import ValidationError


class RunStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    REMINDING = "reminding"
    DEADLINE_PASSED = "deadline_passed"
    COMPLETED = "completed"


class ResponseStatus(str, Enum):
    PENDING = "pending"
    CONTINUING = "continuing"
    WITHDRAWING = "withdrawing"
    ASSUMED_CONTINUING = "assumed_continuing"
    NO_RESPONSE = "no_response"


class ResponseMethod(str, Enum):
    EMAIL_LINK = "email_link"
    PORTAL = "portal"
    AUTO_DEADLINE = "auto_deadline"
    ADMIN_MANUAL = "admin_manual"


# Values a parent may submit; the other terminal values are set by the engine or staff
PARTICIPANT_RESPONSES = frozenset({ResponseStatus.CONTINUING.value, ResponseStatus.WITHDRAWING.value})
TERMINAL_RESPONSES = frozenset(s.value for s in ResponseStatus if s is not ResponseStatus.PENDING)

# Runs in these statuses accept parent responses
OPEN_STATUSES = frozenset({RunStatus.SENT.value, RunStatus.REMINDING.value})

# action -> (allowed source statuses, resulting status)
ACTION_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "send": (frozenset({RunStatus.DRAFT.value}), RunStatus.SENT.value),
    "send_reminders": (OPEN_STATUSES, RunStatus.REMINDING.value),
    "process_deadline": (OPEN_STATUSES, RunStatus.DEADLINE_PASSED.value),
    "complete": (frozenset({RunStatus.DEADLINE_PASSED.value}), RunStatus.COMPLETED.value),
}

_STATUS_ERRORS = {
    "send": "Run must be in draft status to send",
    "send_reminders": "Run must be in sent or reminding status",
    "process_deadline": "Run must be in sent or reminding status to process deadline",
    "complete": "Run must be in deadline_passed status to complete",
}


def target_status(action: str, current: str) -> str:
    """Return the status ``action`` moves a run to, or raise ValidationError if not allowed from ``current``."""
    allowed, target = ACTION_TRANSITIONS[action]
    if current not in allowed:
        raise ValidationError(_STATUS_ERRORS[action])
    return target


def accepts_responses(status: str) -> bool:
    return status in OPEN_STATUSES


def summary_key(response: str) -> str | None:
    """Map a response value to its counter in the run summary."""
    if response == ResponseStatus.CONTINUING.value:
        return "confirmed"
    if response in {s.value for s in ResponseStatus}:
        return response
    return None
