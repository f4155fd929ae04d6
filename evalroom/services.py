"""Shared business logic for the Evalroom API.

Every user-initiated operation goes through :func:`run_operation`, which
commits on success and turns any failure into an
:class:`~evalroom.schemas.OperationResult` instead of letting it escape.
"""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from evalroom.classifier import BUCKET_LABELS, Bucket, bucket_invitations, classify, display_status
from evalroom.db import get_or_raise
from evalroom.errors import EnhanceThrottled, EvalroomError, UpstreamGenerationError
from evalroom.lifecycle import ContentKey, ContentKind
from evalroom.llm import LLMClient
from evalroom.matcher import MatchResolution, resolve
from evalroom.models import Assignment, CalendarInvitation, Juror, Startup
from evalroom.reconciler import MeetingView, UnifiedMeeting, reconcile_for_display
from evalroom.schemas import OperationResult

log = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Something went wrong. Please try again."


# ---------------------------------------------------------------------------
# Operation boundary
# ---------------------------------------------------------------------------


async def run_operation(
    session: Session,
    action: Callable[[], Any | Awaitable[Any]],
    *,
    name: str,
    success_message: str = "",
) -> OperationResult:
    """Run *action*, commit, and report the outcome as a result value."""
    try:
        value = action()
        if inspect.isawaitable(value):
            value = await value
        session.commit()
    except EvalroomError as exc:
        session.rollback()
        level = logging.WARNING if isinstance(exc, UpstreamGenerationError) else logging.INFO
        log.log(level, "%s failed (%s): %s", name, exc.code, exc.message)
        data = None
        if isinstance(exc, EnhanceThrottled):
            data = {"retry_after": exc.retry_after}
        elif isinstance(exc, UpstreamGenerationError):
            data = {"category": exc.category}
        return OperationResult(
            success=False, message=exc.message, code=exc.code, retryable=exc.retryable, data=data,
        )
    except Exception:
        session.rollback()
        log.exception("%s failed unexpectedly", name)
        return OperationResult(success=False, message=INTERNAL_ERROR_MESSAGE, code="internal_error")
    return OperationResult(success=True, message=success_message, data=value)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def invitation_summary(inv: CalendarInvitation) -> dict:
    bucket = classify(inv)
    return {
        "id": inv.id, "calendar_uid": inv.calendar_uid,
        "startup_id": inv.startup_id, "juror_id": inv.juror_id, "assignment_id": inv.assignment_id,
        "startup_name": inv.startup.name if inv.startup else None,
        "juror_name": inv.juror.name if inv.juror else None,
        "event_summary": inv.event_summary, "event_location": inv.event_location,
        "event_start_date": _iso(inv.event_start_date), "event_end_date": _iso(inv.event_end_date),
        "attendee_emails": inv.attendee_emails,
        "status": inv.status, "display_status": display_status(inv.status),
        "matching_status": inv.matching_status,
        "manual_assignment_needed": inv.manual_assignment_needed,
        "matching_errors": inv.matching_errors,
        "sequence_number": inv.sequence_number,
        "previous_event_date": _iso(inv.previous_event_date),
        "bucket": bucket.value, "bucket_label": BUCKET_LABELS[bucket],
        "lifecycle_history": inv.lifecycle_history,
    }


def assignment_summary(a: Assignment) -> dict:
    return {
        "id": a.id, "startup_id": a.startup_id, "juror_id": a.juror_id,
        "round_name": a.round_name, "status": a.status,
        "meeting_scheduled_date": _iso(a.meeting_scheduled_date),
        "meeting_completed_date": _iso(a.meeting_completed_date),
        "meeting_link": a.meeting_link, "meeting_notes": a.meeting_notes,
        "version": a.version,
    }


def meeting_summary(m: UnifiedMeeting) -> dict:
    return {
        "key": f"{m.startup_id}:{m.juror_id}" if m.key else None,
        "source_type": m.source_type, "source_id": m.source_id,
        "startup_id": m.startup_id, "juror_id": m.juror_id,
        "startup_name": m.startup_name, "juror_name": m.juror_name,
        "status": m.status,
        "scheduled_date": _iso(m.scheduled_date), "completed_date": _iso(m.completed_date),
        "meeting_link": m.meeting_link, "meeting_notes": m.meeting_notes,
    }


def meeting_view_summary(view: MeetingView) -> dict:
    return {
        "unique_count": view.unique_count,
        "assignment_sourced": [meeting_summary(m) for m in view.assignment_sourced],
        "invitation_sourced": [meeting_summary(m) for m in view.invitation_sourced],
        "unmatched": [meeting_summary(m) for m in view.unmatched],
    }


def resolution_summary(resolution: MatchResolution) -> dict:
    return {
        "suggestions": [s.to_dict() for s in resolution.suggestions],
        "error": resolution.error,
        "error_category": resolution.error_category,
        "needs_manual_match": resolution.needs_manual_match,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def invitation_buckets(session: Session) -> dict:
    invitations = session.execute(
        select(CalendarInvitation).order_by(CalendarInvitation.event_start_date)
    ).scalars().all()
    grouped = bucket_invitations(invitations)
    return {
        b.value: {"label": BUCKET_LABELS[b], "items": [invitation_summary(i) for i in grouped[b]]}
        for b in Bucket
    }


def meetings_view(session: Session, round_name: str | None = None) -> MeetingView:
    stmt = select(Assignment).order_by(Assignment.id)
    if round_name:
        stmt = stmt.where(Assignment.round_name == round_name)
    assignments = session.execute(stmt).scalars().all()
    invitations = session.execute(
        select(CalendarInvitation).order_by(CalendarInvitation.id)
    ).scalars().all()
    return reconcile_for_display(assignments, invitations)


async def suggest_matches(
    session: Session, invitation_id: int, client: LLMClient | None,
) -> MatchResolution:
    invitation = get_or_raise(session, CalendarInvitation, invitation_id, "Calendar invitation")
    startups = session.execute(select(Startup).order_by(Startup.id)).scalars().all()
    jurors = session.execute(select(Juror).order_by(Juror.id)).scalars().all()
    return await resolve(invitation, list(startups), list(jurors), client)


def content_key(kind: str, startup_id: int, round_name: str, communication_type: str | None) -> ContentKey:
    kind = ContentKind(kind)
    if kind == ContentKind.CUSTOM_EMAIL:
        return ContentKey.email(startup_id, round_name, communication_type or "")
    return ContentKey.vc_feedback(startup_id, round_name)
