from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Generator, Literal

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from evalroom import services
from evalroom.batch import batch_approve, batch_enhance, batch_generate, preview_batch_approve
from evalroom.config import get_settings
from evalroom.db import init_db, session_generator
from evalroom.delivery import EmailSender
from evalroom.invitations import (
    cancel_invitation, complete_invitation, confirm_reschedule, ingest_calendar_event,
)
from evalroom.lifecycle import (
    ContentLifecycleManager, EmailContent, EnhanceThrottle, PlainTextContent, record_delivery_event,
)
from evalroom.llm import LLMClient
from evalroom.reconciler import (
    apply_match, cancel_assignment, complete_assignment, create_assignment, schedule_assignment,
)
from evalroom.schemas import (
    ApproveRequest,
    AssignmentCreate,
    AssignmentSchedule,
    BatchApproveConfirm,
    BatchRequest,
    CalendarEventIn,
    ContentRef,
    DeliveryEventIn,
    DraftUpdate,
    MatchRequest,
    OperationResult,
)

log = logging.getLogger(__name__)

ContentKindPath = Literal["custom_email", "vc_feedback"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Evalroom",
    version="0.1.0",
    description=(
        "Meeting reconciliation and feedback lifecycle API for startup evaluation rounds. "
        "Every operation returns an OperationResult; failures carry a stable code."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Calendar", "description": "Ingest calendar events and move invitations through their lifecycle."},
        {"name": "Matching", "description": "Suggest and apply startup/juror matches for invitations."},
        {"name": "Assignments", "description": "Explicit assignment actions and the unified meeting view."},
        {"name": "Content", "description": "Generate, edit, enhance, approve and send founder communications."},
        {"name": "Batch", "description": "Sequential best-effort operations over many startups."},
        {"name": "Delivery", "description": "Email provider webhook events."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


@lru_cache(maxsize=1)
def _cached_llm_client() -> LLMClient | None:
    settings = get_settings()
    try:
        return LLMClient(provider=settings.llm_provider, model=settings.llm_model or None)
    except Exception as exc:
        log.warning("LLM client unavailable, AI features disabled: %s", exc)
        return None


def llm_client() -> LLMClient | None:
    return _cached_llm_client()


def email_sender() -> EmailSender:
    return EmailSender(get_settings())


@lru_cache(maxsize=1)
def enhance_throttle() -> EnhanceThrottle:
    return EnhanceThrottle(get_settings().enhance_debounce_seconds)


def lifecycle_manager(
    session: Session = Depends(db_session),
    client: LLMClient | None = Depends(llm_client),
    sender: EmailSender = Depends(email_sender),
    throttle: EnhanceThrottle = Depends(enhance_throttle),
) -> ContentLifecycleManager:
    return ContentLifecycleManager(session, client, sender, throttle=throttle)


_STATUS_BY_CODE = {
    "validation_error": 400,
    "approval_rejected": 400,
    "missing_address": 400,
    "not_found": 404,
    "invalid_transition": 409,
    "stale_write": 409,
    "please_wait": 429,
    "generation_failed": 502,
    "send_failed": 502,
    "internal_error": 500,
}


def _respond(result: OperationResult) -> OperationResult:
    if result.success:
        return result
    raise HTTPException(_STATUS_BY_CODE.get(result.code, 400), detail=result.model_dump())


# ---------------------------------------------------------------------------
# Routes: Calendar
# ---------------------------------------------------------------------------


@app.post("/api/calendar/events", response_model=OperationResult,
          tags=["Calendar"], summary="Ingest one calendar event (create or update by UID)")
async def ingest_event(body: CalendarEventIn, session: Session = Depends(db_session)):
    return _respond(await services.run_operation(
        session,
        lambda: services.invitation_summary(ingest_calendar_event(session, body)),
        name="ingest_calendar_event",
    ))


@app.get("/api/invitations", tags=["Calendar"], summary="Invitations grouped by lifecycle bucket")
async def list_invitations(session: Session = Depends(db_session)):
    return services.invitation_buckets(session)


@app.post("/api/invitations/{invitation_id}/cancel", response_model=OperationResult, tags=["Calendar"])
async def cancel_invitation_route(invitation_id: int, session: Session = Depends(db_session)):
    return _respond(await services.run_operation(
        session,
        lambda: services.invitation_summary(cancel_invitation(session, invitation_id)),
        name="cancel_invitation", success_message="Invitation cancelled",
    ))


@app.post("/api/invitations/{invitation_id}/complete", response_model=OperationResult, tags=["Calendar"])
async def complete_invitation_route(invitation_id: int, session: Session = Depends(db_session)):
    return _respond(await services.run_operation(
        session,
        lambda: services.invitation_summary(complete_invitation(session, invitation_id)),
        name="complete_invitation", success_message="Meeting confirmed",
    ))


@app.post("/api/invitations/{invitation_id}/confirm-reschedule", response_model=OperationResult,
          tags=["Calendar"])
async def confirm_reschedule_route(invitation_id: int, session: Session = Depends(db_session)):
    return _respond(await services.run_operation(
        session,
        lambda: services.invitation_summary(confirm_reschedule(session, invitation_id)),
        name="confirm_reschedule", success_message="New date confirmed",
    ))


# ---------------------------------------------------------------------------
# Routes: Matching
# ---------------------------------------------------------------------------


@app.post("/api/invitations/{invitation_id}/suggestions", response_model=OperationResult,
          tags=["Matching"], summary="Ranked match suggestions (never applied automatically)")
async def suggest_route(
    invitation_id: int,
    session: Session = Depends(db_session),
    client: LLMClient | None = Depends(llm_client),
):
    async def action():
        return services.resolution_summary(
            await services.suggest_matches(session, invitation_id, client)
        )
    return _respond(await services.run_operation(session, action, name="suggest_matches"))


@app.post("/api/invitations/{invitation_id}/match", response_model=OperationResult,
          tags=["Matching"], summary="Apply a confirmed startup/juror match")
async def match_route(invitation_id: int, body: MatchRequest, session: Session = Depends(db_session)):
    def action():
        assignment = apply_match(
            session, invitation_id, body.startup_id, body.juror_id, round_name=body.round_name,
        )
        return services.assignment_summary(assignment)
    return _respond(await services.run_operation(
        session, action, name="apply_match", success_message="Match applied",
    ))


# ---------------------------------------------------------------------------
# Routes: Assignments
# ---------------------------------------------------------------------------


@app.post("/api/assignments", response_model=OperationResult, status_code=201, tags=["Assignments"])
async def create_assignment_route(body: AssignmentCreate, session: Session = Depends(db_session)):
    return _respond(await services.run_operation(
        session,
        lambda: services.assignment_summary(
            create_assignment(session, body.startup_id, body.juror_id, body.round_name)
        ),
        name="create_assignment",
    ))


@app.post("/api/assignments/{assignment_id}/schedule", response_model=OperationResult, tags=["Assignments"])
async def schedule_assignment_route(
    assignment_id: int, body: AssignmentSchedule, session: Session = Depends(db_session),
):
    return _respond(await services.run_operation(
        session,
        lambda: services.assignment_summary(schedule_assignment(
            session, assignment_id, body.scheduled_date,
            meeting_link=body.meeting_link, notes=body.notes, expected_version=body.expected_version,
        )),
        name="schedule_assignment",
    ))


@app.post("/api/assignments/{assignment_id}/complete", response_model=OperationResult, tags=["Assignments"])
async def complete_assignment_route(
    assignment_id: int, expected_version: int | None = None, session: Session = Depends(db_session),
):
    return _respond(await services.run_operation(
        session,
        lambda: services.assignment_summary(
            complete_assignment(session, assignment_id, expected_version=expected_version)
        ),
        name="complete_assignment",
    ))


@app.post("/api/assignments/{assignment_id}/cancel", response_model=OperationResult, tags=["Assignments"])
async def cancel_assignment_route(
    assignment_id: int, expected_version: int | None = None, session: Session = Depends(db_session),
):
    return _respond(await services.run_operation(
        session,
        lambda: services.assignment_summary(
            cancel_assignment(session, assignment_id, expected_version=expected_version)
        ),
        name="cancel_assignment",
    ))


@app.get("/api/meetings", tags=["Assignments"], summary="Unified meetings, one per startup/juror pair")
async def list_meetings(round_name: str | None = None, session: Session = Depends(db_session)):
    return services.meeting_view_summary(services.meetings_view(session, round_name))


# ---------------------------------------------------------------------------
# Routes: Content lifecycle
# ---------------------------------------------------------------------------


def _key(kind: str, ref: ContentRef):
    return services.content_key(kind, ref.startup_id, ref.round_name, ref.communication_type)


@app.post("/api/content/{kind}/load", response_model=OperationResult, tags=["Content"],
          summary="Read content; stale unsent content is regenerated")
async def load_content(
    kind: ContentKindPath, body: ContentRef, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    async def action():
        return (await manager.load(_key(kind, body))).to_dict()
    return _respond(await services.run_operation(manager.session, action, name="load_content"))


@app.post("/api/content/{kind}/generate", response_model=OperationResult, tags=["Content"],
          summary="Generate (or regenerate) content; replaces any existing draft")
async def generate_content(
    kind: ContentKindPath, body: ContentRef, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    async def action():
        state = await manager.generate(_key(kind, body), expected_version=body.expected_version)
        return state.to_dict()
    return _respond(await services.run_operation(
        manager.session, action, name="generate_content", success_message="Content generated",
    ))


@app.put("/api/content/{kind}/draft", response_model=OperationResult, tags=["Content"])
async def save_draft(
    kind: ContentKindPath, body: DraftUpdate, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    def action():
        if kind == "custom_email":
            content = EmailContent(subject=body.subject or "", body=body.body)
        else:
            content = PlainTextContent(body.body)
        return manager.save_draft(_key(kind, body), content, expected_version=body.expected_version).to_dict()
    return _respond(await services.run_operation(
        manager.session, action, name="save_draft", success_message="Draft saved",
    ))


@app.post("/api/content/{kind}/enhance", response_model=OperationResult, tags=["Content"])
async def enhance_content(
    kind: ContentKindPath, body: ContentRef, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    async def action():
        state = await manager.enhance(_key(kind, body), expected_version=body.expected_version)
        return state.to_dict()
    return _respond(await services.run_operation(
        manager.session, action, name="enhance_content", success_message="Content enhanced",
    ))


@app.post("/api/content/{kind}/approve", response_model=OperationResult, tags=["Content"])
async def approve_content(
    kind: ContentKindPath, body: ApproveRequest, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    return _respond(await services.run_operation(
        manager.session,
        lambda: manager.approve(
            _key(kind, body), body.approver_id, expected_version=body.expected_version,
        ).to_dict(),
        name="approve_content", success_message="Content approved",
    ))


@app.post("/api/content/custom_email/send", response_model=OperationResult, tags=["Content"],
          summary="Send an email (auto-approves a draft first)")
async def send_email(body: ApproveRequest, manager: ContentLifecycleManager = Depends(lifecycle_manager)):
    async def action():
        comm = await manager.send(
            _key("custom_email", body), body.approver_id, expected_version=body.expected_version,
        )
        return {"communication_id": comm.id, "status": comm.status,
                "message_id": comm.provider_message_id, "test_mode": comm.test_mode,
                "recipient_email": comm.recipient_email}
    return _respond(await services.run_operation(
        manager.session, action, name="send_email", success_message="Email sent",
    ))


@app.post("/api/content/{kind}/events", response_model=OperationResult, tags=["Content"],
          summary="Delivery history for one content item")
async def content_events(
    kind: ContentKindPath, body: ContentRef, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    return _respond(await services.run_operation(
        manager.session, lambda: manager.list_delivery_events(_key(kind, body)), name="list_delivery_events",
    ))


# ---------------------------------------------------------------------------
# Routes: Batch
# ---------------------------------------------------------------------------


def _batch_keys(body: BatchRequest):
    return [
        services.content_key(body.kind, sid, body.round_name, body.communication_type)
        for sid in body.startup_ids
    ]


@app.post("/api/batch/generate", response_model=OperationResult, tags=["Batch"])
async def batch_generate_route(body: BatchRequest, manager: ContentLifecycleManager = Depends(lifecycle_manager)):
    async def action():
        return (await batch_generate(manager, _batch_keys(body))).to_dict()
    return _respond(await services.run_operation(manager.session, action, name="batch_generate"))


@app.post("/api/batch/enhance", response_model=OperationResult, tags=["Batch"])
async def batch_enhance_route(body: BatchRequest, manager: ContentLifecycleManager = Depends(lifecycle_manager)):
    async def action():
        return (await batch_enhance(manager, _batch_keys(body))).to_dict()
    return _respond(await services.run_operation(manager.session, action, name="batch_enhance"))


@app.post("/api/batch/approve/preview", response_model=OperationResult, tags=["Batch"],
          summary="Dry run: count and token for a batch approve")
async def batch_approve_preview_route(
    body: BatchRequest, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    return _respond(await services.run_operation(
        manager.session,
        lambda: preview_batch_approve(manager, _batch_keys(body)).to_dict(),
        name="preview_batch_approve",
    ))


@app.post("/api/batch/approve", response_model=OperationResult, tags=["Batch"])
async def batch_approve_route(
    body: BatchApproveConfirm, manager: ContentLifecycleManager = Depends(lifecycle_manager),
):
    async def action():
        result = await batch_approve(
            manager, _batch_keys(body), body.approver_id, token=body.token, confirmed=body.confirmed,
        )
        return result.to_dict()
    return _respond(await services.run_operation(manager.session, action, name="batch_approve"))


# ---------------------------------------------------------------------------
# Routes: Delivery
# ---------------------------------------------------------------------------


@app.post("/api/delivery-events", response_model=OperationResult, tags=["Delivery"])
async def delivery_event_route(body: DeliveryEventIn, session: Session = Depends(db_session)):
    def action():
        comm = record_delivery_event(session, body.message_id, body.status)
        return {"communication_id": comm.id, "status": comm.status}
    return _respond(await services.run_operation(session, action, name="record_delivery_event"))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("evalroom.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
