"""Term continuation campaigns: build a run, email families, collect answers, settle the deadline."""

from continuation.builder import create_run
from continuation.deadline import complete_run, process_deadline
from continuation.dispatch import send_reminders, send_run
from continuation.intake import override_response, pending_for_guardian, respond_by_portal, respond_by_token
from continuation.summary import recalc_summary

__all__ = [
    "complete_run",
    "create_run",
    "override_response",
    "pending_for_guardian",
    "process_deadline",
    "recalc_summary",
    "respond_by_portal",
    "respond_by_token",
    "send_reminders",
    "send_run",
]
