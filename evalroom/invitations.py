"""Calendar ingest and invitation status transitions.

:func:`ingest_calendar_event` upserts one invitation per calendar UID and
detects its lifecycle from the incoming event:

- method ``CANCEL``                 -> cancelled
- start date moved                  -> rescheduled (old date kept in ``previous_event_date``)
- same date, higher sequence number -> statuses unchanged
- a replayed event with a lower sequence number is ignored

Attendee emails that exactly equal a startup contact email or a juror email
resolve that side. A resolution, once made, is never overwritten by a later
event. A complete pair is marked ``auto_matched`` but no assignment is created
here; only :func:`evalroom.reconciler.apply_match` does that.
"""
from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from evalroom.classifier import Bucket, classify
from evalroom.db import get_or_raise
from evalroom.errors import InvalidTransition, ValidationError
from evalroom.models import CalendarInvitation, Juror, Startup
from evalroom.reconciler import complete_assignment, schedule_assignment
from evalroom.schemas import CalendarEventIn
from evalroom.utils import as_naive_utc, normalize_email

log = logging.getLogger(__name__)

NO_STARTUP_ERROR = "No matching startup found in attendees"
NO_JUROR_ERROR = "No matching juror found in attendees"


def normalize_attendees(event: CalendarEventIn) -> list[str]:
    seen: list[str] = []
    for raw in [*event.attendees, event.organizer or ""]:
        email = normalize_email(raw)
        if email and "@" in email and email not in seen:
            seen.append(email)
    return seen


def _exact_hits(session: Session, model, column, emails: list[str]) -> list[int]:
    if not emails:
        return []
    return list(session.execute(
        select(model.id).where(func.lower(func.trim(column)).in_(emails)).order_by(model.id)
    ).scalars().all())


def _resolve_sides(session: Session, invitation: CalendarInvitation, emails: list[str]) -> None:
    """Fill unresolved sides from exact email hits and refresh matching errors."""
    if invitation.startup_id is None:
        hits = _exact_hits(session, Startup, Startup.contact_email, emails)
        if len(hits) == 1:
            invitation.startup_id = hits[0]
    if invitation.juror_id is None:
        hits = _exact_hits(session, Juror, Juror.email, emails)
        if len(hits) == 1:
            invitation.juror_id = hits[0]

    errors = []
    if invitation.startup_id is None:
        errors.append(NO_STARTUP_ERROR)
    if invitation.juror_id is None:
        errors.append(NO_JUROR_ERROR)
    invitation.set_matching_errors(errors)
    invitation.sync_assignment_flag()


def ingest_calendar_event(session: Session, event: CalendarEventIn) -> CalendarInvitation:
    """Create or update the invitation for ``event.uid``. Caller must commit."""
    emails = normalize_attendees(event)
    start = as_naive_utc(event.start)
    end = as_naive_utc(event.end)

    invitation = session.execute(
        select(CalendarInvitation).where(CalendarInvitation.calendar_uid == event.uid)
    ).scalars().first()

    if invitation is None:
        cancelled = event.method == "CANCEL"
        invitation = CalendarInvitation(
            calendar_uid=event.uid,
            event_summary=event.summary,
            event_description=event.description,
            event_location=event.location,
            event_start_date=start,
            event_end_date=end,
            event_method=event.method,
            sequence_number=event.sequence,
            status="cancelled" if cancelled else "scheduled",
            matching_status="cancelled" if cancelled else "unmatched",
        )
        invitation.set_attendee_emails(emails)
        session.add(invitation)
        _resolve_sides(session, invitation, emails)
        if not cancelled and invitation.startup_id is not None and invitation.juror_id is not None:
            invitation.matching_status = "auto_matched"
        invitation.record_history("CREATED", sequence=event.sequence, status=invitation.status)
        session.flush()
        log.info("Calendar invitation %s created (%s)", event.uid, invitation.matching_status)
        return invitation

    if event.sequence < (invitation.sequence_number or 0):
        log.info("Ignoring out-of-order event %s (sequence %d < %d)",
                 event.uid, event.sequence, invitation.sequence_number)
        return invitation

    previous_status = invitation.status
    previous_date = invitation.event_start_date
    if previous_status == "cancelled" and event.method != "CANCEL":
        # cancelled is terminal; later updates are only logged
        invitation.sequence_number = event.sequence
        invitation.record_history(
            event.method,
            sequence=event.sequence,
            previous_date=previous_date.isoformat() if previous_date else None,
            new_date=start.isoformat() if start else None,
            status_change="cancelled -> cancelled",
        )
        session.flush()
        log.info("Calendar invitation %s is cancelled; %s update only recorded", event.uid, event.method)
        return invitation
    if event.method == "CANCEL":
        invitation.status = "cancelled"
        invitation.matching_status = "cancelled"
    elif start is not None and previous_date is not None and start != previous_date:
        invitation.previous_event_date = previous_date
        invitation.status = "rescheduled"
        invitation.matching_status = "rescheduled"

    invitation.event_summary = event.summary or invitation.event_summary
    invitation.event_description = event.description or invitation.event_description
    invitation.event_location = event.location or invitation.event_location
    invitation.event_start_date = start or previous_date
    invitation.event_end_date = end or invitation.event_end_date
    invitation.event_method = event.method
    invitation.sequence_number = event.sequence
    invitation.set_attendee_emails(emails)

    _resolve_sides(session, invitation, emails)
    if (
        invitation.matching_status == "unmatched"
        and invitation.startup_id is not None
        and invitation.juror_id is not None
    ):
        invitation.matching_status = "auto_matched"

    invitation.record_history(
        event.method,
        sequence=event.sequence,
        previous_date=previous_date.isoformat() if previous_date else None,
        new_date=invitation.event_start_date.isoformat() if invitation.event_start_date else None,
        status_change=f"{previous_status} -> {invitation.status}",
    )
    session.flush()
    log.info("Calendar invitation %s updated: %s -> %s", event.uid, previous_status, invitation.status)
    return invitation


# ---------------------------------------------------------------------------
# User status transitions
# ---------------------------------------------------------------------------


def cancel_invitation(session: Session, invitation_id: int) -> CalendarInvitation:
    """Mark cancelled; a linked assignment is left for the user to handle."""
    invitation = get_or_raise(session, CalendarInvitation, invitation_id, "Calendar invitation")
    if invitation.status == "cancelled":
        raise InvalidTransition("Invitation is already cancelled")
    previous_status = invitation.status
    invitation.status = "cancelled"
    invitation.matching_status = "cancelled"
    invitation.record_history("CANCELLED", status_change=f"{previous_status} -> cancelled")
    session.flush()
    return invitation


def complete_invitation(session: Session, invitation_id: int) -> CalendarInvitation:
    invitation = get_or_raise(session, CalendarInvitation, invitation_id, "Calendar invitation")
    if invitation.startup_id is None or invitation.juror_id is None:
        raise ValidationError("Match the invitation to a startup and a juror before completing it")
    if invitation.status == "cancelled":
        raise InvalidTransition("Cannot complete a cancelled invitation")
    previous_status = invitation.status
    invitation.status = "completed"
    if invitation.matching_status == "rescheduled":
        invitation.matching_status = "manual_matched"
    if invitation.assignment is not None and invitation.assignment.status != "cancelled":
        complete_assignment(session, invitation.assignment_id, completed_at=invitation.event_end_date)
    invitation.record_history("COMPLETED", status_change=f"{previous_status} -> completed")
    session.flush()
    return invitation


def confirm_reschedule(session: Session, invitation_id: int) -> CalendarInvitation:
    """Accept the new date of a rescheduled invitation."""
    invitation = get_or_raise(session, CalendarInvitation, invitation_id, "Calendar invitation")
    if classify(invitation) != Bucket.RESCHEDULED:
        raise InvalidTransition("Invitation is not awaiting reschedule confirmation")
    previous_status = invitation.status
    invitation.status = "scheduled"
    if invitation.assignment_id is not None:
        invitation.matching_status = "manual_matched"
        linked = invitation.assignment
        if (
            invitation.event_start_date is not None
            and linked is not None
            and linked.status not in ("cancelled", "completed")
        ):
            schedule_assignment(session, invitation.assignment_id, invitation.event_start_date)
    elif invitation.startup_id is not None and invitation.juror_id is not None:
        invitation.matching_status = "auto_matched"
    else:
        invitation.matching_status = "unmatched"
    invitation.record_history(
        "RESCHEDULE_CONFIRMED",
        new_date=invitation.event_start_date.isoformat() if invitation.event_start_date else None,
        status_change=f"{previous_status} -> scheduled",
    )
    session.flush()
    return invitation


def list_invitations(session: Session) -> list[CalendarInvitation]:
    return list(session.execute(
        select(CalendarInvitation).order_by(CalendarInvitation.event_start_date.desc())
    ).scalars().all())
