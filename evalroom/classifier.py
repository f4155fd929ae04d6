"""Invitation lifecycle classification.

Every calendar invitation falls into exactly one :class:`Bucket`, decided
from its stored fields only. Rules apply in priority order:

1. ``manual_assignment_needed``            -> NEEDS_ASSIGNMENT
2. rescheduled (matching_status or status) -> RESCHEDULED
3. cancelled (matching_status or status)   -> CANCELLED
4. status completed                        -> COMPLETED
5. has a start date                        -> SCHEDULED
6. otherwise                               -> PENDING

Rescheduled outranks a successful match so the new date surfaces for
re-approval.
"""
from __future__ import annotations

from collections import defaultdict
from enum import Enum
from typing import Iterable

from evalroom.models import Assignment, CalendarInvitation


class Bucket(str, Enum):
    NEEDS_ASSIGNMENT = "needs_assignment"
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def classify(invitation: CalendarInvitation) -> Bucket:
    if invitation.manual_assignment_needed:
        return Bucket.NEEDS_ASSIGNMENT
    if invitation.matching_status == "rescheduled" or invitation.status == "rescheduled":
        return Bucket.RESCHEDULED
    if invitation.matching_status == "cancelled" or invitation.status == "cancelled":
        return Bucket.CANCELLED
    if invitation.status == "completed":
        return Bucket.COMPLETED
    if invitation.event_start_date is not None:
        return Bucket.SCHEDULED
    return Bucket.PENDING


def classify_assignment(assignment: Assignment) -> Bucket:
    """Display bucket for an explicit assignment record."""
    if assignment.meeting_completed_date is not None or assignment.status == "completed":
        return Bucket.COMPLETED
    if assignment.status == "cancelled":
        return Bucket.CANCELLED
    if assignment.status == "scheduled" or assignment.meeting_scheduled_date is not None:
        return Bucket.SCHEDULED
    return Bucket.PENDING


def bucket_invitations(invitations: Iterable[CalendarInvitation]) -> dict[Bucket, list[CalendarInvitation]]:
    """Group invitations by bucket; every bucket key is present."""
    grouped: dict[Bucket, list[CalendarInvitation]] = defaultdict(list)
    for inv in invitations:
        grouped[classify(inv)].append(inv)
    return {b: grouped.get(b, []) for b in Bucket}


# ---------------------------------------------------------------------------
# Presentation labels (never fed back into classification)
# ---------------------------------------------------------------------------

_STATUS_LABELS = {
    "scheduled": "Invited",
    "rescheduled": "Rescheduled",
    "cancelled": "Cancelled",
    "conflict": "Conflict",
}

BUCKET_LABELS = {
    Bucket.NEEDS_ASSIGNMENT: "Needs Assignment",
    Bucket.PENDING: "Pending",
    Bucket.SCHEDULED: "Scheduled",
    Bucket.RESCHEDULED: "Rescheduled",
    Bucket.CANCELLED: "Cancelled",
    Bucket.COMPLETED: "Completed",
}


def display_status(status: str, *, context: str = "invitation") -> str:
    """Human label for a raw invitation ``status``.

    ``completed`` reads "Confirmed" in the invitation list and "Scheduled" in
    the meeting calendar context.
    """
    if status == "completed":
        return "Scheduled" if context == "calendar" else "Confirmed"
    return _STATUS_LABELS.get(status, status.replace("_", " ").title())
