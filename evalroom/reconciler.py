"""Assignment reconciliation.

Two record types can describe the same real-world meeting: explicit
:class:`~evalroom.models.Assignment` rows and calendar invitations that were
matched to a startup/juror pair.

- :func:`apply_match` links a human-confirmed match to exactly one active
  assignment, creating it from the invitation when none exists.
- :func:`reconcile_for_display` merges both sources into one view keyed by
  ``(startup_id, juror_id)``.
- ``create_assignment`` / ``schedule_assignment`` / ``complete_assignment`` /
  ``cancel_assignment`` are the explicit user actions on assignments.

The partial unique index on active assignments makes the lookup-then-create
sequence safe: a losing concurrent insert is rolled back to its SAVEPOINT and
the winner's row is reused.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from evalroom.classifier import Bucket, classify, classify_assignment
from evalroom.db import check_version, get_or_raise
from evalroom.errors import InvalidTransition, ReconciliationConflict
from evalroom.models import Assignment, CalendarInvitation, Juror, Startup
from evalroom.utils import as_naive_utc, utcnow

log = logging.getLogger(__name__)

DEFAULT_ROUND = "pitching"


# ---------------------------------------------------------------------------
# Lookup / insert
# ---------------------------------------------------------------------------


def find_active_assignment(
    session: Session, startup_id: int, juror_id: int, round_name: str = DEFAULT_ROUND,
) -> Assignment | None:
    return session.execute(
        select(Assignment).where(
            Assignment.startup_id == startup_id,
            Assignment.juror_id == juror_id,
            Assignment.round_name == round_name,
            Assignment.status != "cancelled",
        )
    ).scalars().first()


def _insert_assignment(session: Session, **fields) -> Assignment:
    assignment = Assignment(**fields)
    try:
        with session.begin_nested():
            session.add(assignment)
    except IntegrityError:
        existing = find_active_assignment(
            session, fields["startup_id"], fields["juror_id"], fields.get("round_name", DEFAULT_ROUND),
        )
        if existing is None:
            raise
        conflict = ReconciliationConflict(
            f"Active assignment already exists for startup {fields['startup_id']} "
            f"and juror {fields['juror_id']}",
            existing_id=existing.id,
        )
        log.info("%s; reusing assignment %d", conflict.message, existing.id)
        return existing
    return assignment


# ---------------------------------------------------------------------------
# Match application
# ---------------------------------------------------------------------------


def apply_match(
    session: Session,
    invitation_id: int,
    startup_id: int,
    juror_id: int,
    *,
    round_name: str = DEFAULT_ROUND,
) -> Assignment:
    """Link *invitation_id* to the pair and its single active assignment.

    Calling again with the same triple returns the same assignment and leaves
    the invitation unchanged. Caller must commit.
    """
    invitation = get_or_raise(session, CalendarInvitation, invitation_id, "Calendar invitation")
    get_or_raise(session, Startup, startup_id, "Startup")
    get_or_raise(session, Juror, juror_id, "Juror")
    if classify(invitation) == Bucket.CANCELLED:
        raise InvalidTransition("Cannot match a cancelled invitation")

    assignment = find_active_assignment(session, startup_id, juror_id, round_name)
    if (
        assignment is not None
        and invitation.assignment_id == assignment.id
        and invitation.startup_id == startup_id
        and invitation.juror_id == juror_id
        and invitation.matching_status == "manual_matched"
        and not invitation.manual_assignment_needed
    ):
        return assignment

    if assignment is None:
        assignment = _insert_assignment(
            session,
            startup_id=startup_id,
            juror_id=juror_id,
            round_name=round_name,
            status="scheduled",
            meeting_scheduled_date=invitation.event_start_date,
            meeting_link=invitation.event_location or "",
            meeting_notes=invitation.event_description or "",
        )
    elif assignment.meeting_scheduled_date is None and invitation.event_start_date is not None:
        assignment.meeting_scheduled_date = invitation.event_start_date
        assignment.meeting_link = assignment.meeting_link or invitation.event_location or ""
        if assignment.status == "assigned":
            assignment.status = "scheduled"
    session.flush()

    previous_status = invitation.status
    invitation.startup_id = startup_id
    invitation.juror_id = juror_id
    invitation.assignment_id = assignment.id
    invitation.matching_status = "manual_matched"
    invitation.status = "scheduled"
    invitation.sync_assignment_flag()
    invitation.set_matching_errors([])
    invitation.record_history(
        "MATCHED",
        startup_id=startup_id,
        juror_id=juror_id,
        assignment_id=assignment.id,
        status_change=f"{previous_status} -> scheduled",
    )
    session.flush()
    log.info("Invitation %d matched to startup %d / juror %d (assignment %d)",
             invitation.id, startup_id, juror_id, assignment.id)
    return assignment


# ---------------------------------------------------------------------------
# Explicit assignment actions
# ---------------------------------------------------------------------------


def create_assignment(
    session: Session, startup_id: int, juror_id: int, round_name: str = DEFAULT_ROUND,
) -> Assignment:
    get_or_raise(session, Startup, startup_id, "Startup")
    get_or_raise(session, Juror, juror_id, "Juror")
    existing = find_active_assignment(session, startup_id, juror_id, round_name)
    if existing is not None:
        return existing
    assignment = _insert_assignment(
        session, startup_id=startup_id, juror_id=juror_id, round_name=round_name, status="assigned",
    )
    session.flush()
    return assignment


def schedule_assignment(
    session: Session,
    assignment_id: int,
    scheduled_date: datetime,
    *,
    meeting_link: str | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
) -> Assignment:
    assignment = get_or_raise(session, Assignment, assignment_id, "Assignment")
    check_version(assignment, expected_version)
    if assignment.status in ("cancelled", "completed"):
        raise InvalidTransition(f"Cannot schedule a {assignment.status} assignment")
    assignment.meeting_scheduled_date = as_naive_utc(scheduled_date)
    if meeting_link is not None:
        assignment.meeting_link = meeting_link
    if notes is not None:
        assignment.meeting_notes = notes
    assignment.status = "scheduled"
    session.flush()
    return assignment


def complete_assignment(
    session: Session,
    assignment_id: int,
    *,
    completed_at: datetime | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
) -> Assignment:
    """The only path that stamps ``meeting_completed_date``."""
    assignment = get_or_raise(session, Assignment, assignment_id, "Assignment")
    check_version(assignment, expected_version)
    if assignment.status == "cancelled":
        raise InvalidTransition("Cannot complete a cancelled assignment")
    if assignment.meeting_completed_date is None:
        assignment.meeting_completed_date = as_naive_utc(completed_at) or utcnow()
    if notes is not None:
        assignment.meeting_notes = notes
    assignment.status = "completed"
    session.flush()
    return assignment


def cancel_assignment(
    session: Session, assignment_id: int, *, expected_version: int | None = None,
) -> Assignment:
    assignment = get_or_raise(session, Assignment, assignment_id, "Assignment")
    check_version(assignment, expected_version)
    if assignment.status == "completed":
        raise InvalidTransition("Completed meetings cannot be cancelled")
    assignment.status = "cancelled"
    session.flush()
    return assignment


# ---------------------------------------------------------------------------
# Display reconciliation
# ---------------------------------------------------------------------------


@dataclass
class UnifiedMeeting:
    source_type: str  # assignment | calendar_invitation
    source_id: int
    startup_id: int | None
    juror_id: int | None
    status: str
    startup_name: str = ""
    juror_name: str = ""
    scheduled_date: datetime | None = None
    completed_date: datetime | None = None
    meeting_link: str = ""
    meeting_notes: str = ""

    @property
    def key(self) -> tuple[int, int] | None:
        if self.startup_id is None or self.juror_id is None:
            return None
        return (self.startup_id, self.juror_id)


@dataclass
class MeetingView:
    meetings: list[UnifiedMeeting] = field(default_factory=list)
    unmatched: list[UnifiedMeeting] = field(default_factory=list)

    @property
    def assignment_sourced(self) -> list[UnifiedMeeting]:
        return [m for m in self.meetings if m.source_type == "assignment"]

    @property
    def invitation_sourced(self) -> list[UnifiedMeeting]:
        return [m for m in self.meetings if m.source_type == "calendar_invitation"]

    @property
    def unique_count(self) -> int:
        return len(self.meetings)


def _from_assignment(a: Assignment) -> UnifiedMeeting:
    return UnifiedMeeting(
        source_type="assignment",
        source_id=a.id,
        startup_id=a.startup_id,
        juror_id=a.juror_id,
        status=classify_assignment(a).value,
        startup_name=a.startup.name if a.startup else "",
        juror_name=a.juror.name if a.juror else "",
        scheduled_date=a.meeting_scheduled_date,
        completed_date=a.meeting_completed_date,
        meeting_link=a.meeting_link or "",
        meeting_notes=a.meeting_notes or "",
    )


def _from_invitation(inv: CalendarInvitation) -> UnifiedMeeting:
    return UnifiedMeeting(
        source_type="calendar_invitation",
        source_id=inv.id,
        startup_id=inv.startup_id,
        juror_id=inv.juror_id,
        status=classify(inv).value,
        startup_name=inv.startup.name if inv.startup else "",
        juror_name=inv.juror.name if inv.juror else "",
        scheduled_date=inv.event_start_date,
        completed_date=inv.event_end_date if inv.status == "completed" else None,
        meeting_link=inv.event_location or "",
        meeting_notes=inv.event_description or "",
    )


def reconcile_for_display(
    assignments: Iterable[Assignment], invitations: Iterable[CalendarInvitation],
) -> MeetingView:
    """One entry per ``(startup_id, juror_id)``.

    Assignments are placed first. A completed invitation for the same pair
    replaces the assignment entry; other matched invitations only fill pairs
    no assignment covers. Invitations without a full pair are listed apart in
    ``unmatched`` and do not count as meetings.
    """
    by_key: dict[tuple[int, int], UnifiedMeeting] = {}
    for a in assignments:
        meeting = _from_assignment(a)
        current = by_key.get(meeting.key)
        if current is None or current.status == Bucket.CANCELLED.value:
            by_key[meeting.key] = meeting

    unmatched: list[UnifiedMeeting] = []
    for inv in invitations:
        meeting = _from_invitation(inv)
        if meeting.key is None:
            unmatched.append(meeting)
        elif inv.status == "completed":
            by_key[meeting.key] = meeting
        elif meeting.key not in by_key:
            by_key[meeting.key] = meeting

    return MeetingView(meetings=list(by_key.values()), unmatched=unmatched)
