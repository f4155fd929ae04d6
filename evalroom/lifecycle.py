"""Content lifecycle: generate -> draft -> enhance -> approve -> send.

Two content variants share one state machine:

- ``custom_email`` (:class:`EmailContent`, subject + HTML body), keyed by
  startup, round and communication type;
- ``vc_feedback`` (:class:`PlainTextContent`), keyed by startup and round.

States are ``not_generated``, ``draft`` and ``approved``. Saving a draft from
``approved`` is the edit re-entry and always clears approval. ``stale`` is
derived on read and never stored::

    stale = content.is_approved and dependent.updated_at > content.updated_at

The dependent record of a custom email is the VC feedback for its startup and
round; the dependent of VC feedback is the newest submitted evaluation.
Loading stale content regenerates it unless a send record in
:data:`SENT_STATUSES` exists, in which case the content is left untouched and
only flagged. A failed regeneration also keeps the stored content, flagged
stale with ``regeneration_error`` set.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from evalroom.config import Settings, get_settings
from evalroom.db import check_version, get_or_raise
from evalroom.delivery import EmailSender
from evalroom.errors import (
    ApprovalRejected,
    DeliveryError,
    EnhanceThrottled,
    MissingDeliveryAddress,
    NotFoundError,
    UpstreamGenerationError,
    ValidationError,
)
from evalroom.feedback import (
    NOT_GENERATED_PLACEHOLDER,
    describe_improvements,
    enhance_text,
    generate_vc_feedback_text,
    is_placeholder,
    plain_text_to_html,
    render_email,
    template_category,
    wrap_email_html,
)
from evalroom.llm import LLMClient
from evalroom.models import (
    CustomEmail, EmailCommunication, EmailTemplate, Evaluation, Startup, VCFeedbackDetail,
)
from evalroom.utils import utcnow

log = logging.getLogger(__name__)

SENT_STATUSES = ("sent", "delivered", "opened", "clicked")
_STATUS_RANK = {"pending": 0, "sent": 1, "delivered": 2, "opened": 3, "clicked": 4}


# ---------------------------------------------------------------------------
# Keys and variants
# ---------------------------------------------------------------------------


class ContentKind(str, Enum):
    CUSTOM_EMAIL = "custom_email"
    VC_FEEDBACK = "vc_feedback"


@dataclass(frozen=True)
class ContentKey:
    kind: ContentKind
    startup_id: int
    round_name: str
    communication_type: str | None = None

    def __post_init__(self):
        if self.kind == ContentKind.CUSTOM_EMAIL and not self.communication_type:
            raise ValidationError("communication_type is required for custom emails")

    @classmethod
    def email(cls, startup_id: int, round_name: str, communication_type: str) -> ContentKey:
        return cls(ContentKind.CUSTOM_EMAIL, startup_id, round_name, communication_type)

    @classmethod
    def vc_feedback(cls, startup_id: int, round_name: str) -> ContentKey:
        return cls(ContentKind.VC_FEEDBACK, startup_id, round_name)


@dataclass(frozen=True)
class EmailContent:
    subject: str
    body: str

    @property
    def is_empty(self) -> bool:
        return not self.subject.strip() or not self.body.strip()


@dataclass(frozen=True)
class PlainTextContent:
    body: str

    @property
    def is_empty(self) -> bool:
        return not self.body.strip() or is_placeholder(self.body)


ContentVariant = Union[EmailContent, PlainTextContent]
ContentRecord = Union[CustomEmail, VCFeedbackDetail]


def variant_of(record: ContentRecord) -> ContentVariant:
    if isinstance(record, CustomEmail):
        return EmailContent(subject=record.custom_subject or "", body=record.custom_body or "")
    return PlainTextContent(body=record.plain_text_feedback or "")


def _write_variant(record: ContentRecord, content: ContentVariant) -> None:
    if isinstance(record, CustomEmail):
        if not isinstance(content, EmailContent):
            raise ValidationError("Custom emails need a subject and a body")
        record.custom_subject = content.subject
        record.custom_body = content.body
    else:
        if not isinstance(content, PlainTextContent):
            raise ValidationError("VC feedback is plain text only")
        record.plain_text_feedback = content.body


def _clear_approval(record: ContentRecord) -> None:
    record.is_approved = False
    record.approved_by = None
    record.approved_at = None


@dataclass
class ContentState:
    key: ContentKey
    record_id: int | None
    content: ContentVariant | None
    is_approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    updated_at: datetime | None = None
    version: int | None = None
    evaluation_count: int | None = None
    stale: bool = False
    already_sent: bool = False
    regenerated: bool = False
    regeneration_error: str | None = None
    improvements: list[str] = field(default_factory=list)

    @property
    def state(self) -> str:
        if self.content is None or self.content.is_empty:
            return "not_generated"
        return "approved" if self.is_approved else "draft"

    def to_dict(self) -> dict[str, Any]:
        content: dict[str, Any] = {}
        if isinstance(self.content, EmailContent):
            content = {"subject": self.content.subject, "body": self.content.body}
        elif isinstance(self.content, PlainTextContent):
            content = {"body": self.content.body}
        return {
            "kind": self.key.kind.value, "startup_id": self.key.startup_id,
            "round_name": self.key.round_name, "communication_type": self.key.communication_type,
            "record_id": self.record_id, "state": self.state, **content,
            "is_approved": self.is_approved, "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version, "evaluation_count": self.evaluation_count,
            "stale": self.stale, "already_sent": self.already_sent,
            "regenerated": self.regenerated, "regeneration_error": self.regeneration_error,
            "improvements": self.improvements,
        }


def compute_stale(content: ContentRecord | None, dependent_updated_at: datetime | None) -> bool:
    if content is None or not content.is_approved or dependent_updated_at is None:
        return False
    return content.updated_at is not None and dependent_updated_at > content.updated_at


# ---------------------------------------------------------------------------
# Enhance debounce
# ---------------------------------------------------------------------------


class EnhanceThrottle:
    """Rejects a second enhance for the same key inside ``window`` seconds."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._last: dict[ContentKey, float] = {}

    def check(self, key: ContentKey) -> None:
        now = self._clock()
        self._last = {k: t for k, t in self._last.items() if now - t < self.window}
        last = self._last.get(key)
        if last is not None and now - last < self.window:
            raise EnhanceThrottled(
                "Please wait a moment before enhancing this content again.",
                retry_after=round(self.window - (now - last), 3),
            )
        self._last[key] = now


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ContentLifecycleManager:
    """Drives one content item at a time. Callers commit the session.

    ``client`` is required for VC feedback generation and for enhancement;
    ``sender`` for sending.
    """

    def __init__(
        self,
        session: Session,
        client: LLMClient | None = None,
        sender: EmailSender | None = None,
        *,
        settings: Settings | None = None,
        throttle: EnhanceThrottle | None = None,
    ):
        self.session = session
        self.client = client
        self.sender = sender
        self.settings = settings or get_settings()
        self.throttle = throttle or EnhanceThrottle(self.settings.enhance_debounce_seconds)

    # -- lookups ------------------------------------------------------------

    def find(self, key: ContentKey) -> ContentRecord | None:
        if key.kind == ContentKind.CUSTOM_EMAIL:
            stmt = select(CustomEmail).where(
                CustomEmail.startup_id == key.startup_id,
                CustomEmail.round_name == key.round_name,
                CustomEmail.communication_type == key.communication_type,
            )
        else:
            stmt = select(VCFeedbackDetail).where(
                VCFeedbackDetail.startup_id == key.startup_id,
                VCFeedbackDetail.round_name == key.round_name,
            )
        return self.session.execute(stmt).scalars().first()

    def _get_or_create(self, key: ContentKey) -> ContentRecord:
        record = self.find(key)
        if record is not None:
            return record
        get_or_raise(self.session, Startup, key.startup_id, "Startup")
        if key.kind == ContentKind.CUSTOM_EMAIL:
            record = CustomEmail(
                startup_id=key.startup_id, round_name=key.round_name,
                communication_type=key.communication_type,
            )
        else:
            record = VCFeedbackDetail(startup_id=key.startup_id, round_name=key.round_name)
        self.session.add(record)
        return record

    def _require(self, key: ContentKey) -> ContentRecord:
        record = self.find(key)
        if record is None:
            raise NotFoundError("No content has been generated yet")
        return record

    def submitted_evaluations(self, startup_id: int, round_name: str) -> list[Evaluation]:
        return list(self.session.execute(
            select(Evaluation)
            .options(joinedload(Evaluation.juror))
            .where(
                Evaluation.startup_id == startup_id,
                Evaluation.round_name == round_name,
                Evaluation.status == "submitted",
            )
            .order_by(Evaluation.id)
        ).scalars().all())

    def dependent_updated_at(self, key: ContentKey) -> datetime | None:
        if key.kind == ContentKind.CUSTOM_EMAIL:
            feedback = self.find(ContentKey.vc_feedback(key.startup_id, key.round_name))
            return feedback.updated_at if feedback is not None else None
        return self.session.execute(
            select(func.max(Evaluation.updated_at)).where(
                Evaluation.startup_id == key.startup_id,
                Evaluation.round_name == key.round_name,
                Evaluation.status == "submitted",
            )
        ).scalar_one_or_none()

    def is_already_sent(self, key: ContentKey) -> bool:
        """Send records, never the content row, decide "already sent"."""
        stmt = select(func.count()).select_from(EmailCommunication).where(
            EmailCommunication.startup_id == key.startup_id,
            EmailCommunication.round_name == key.round_name,
            EmailCommunication.status.in_(SENT_STATUSES),
        )
        if key.kind == ContentKind.CUSTOM_EMAIL:
            stmt = stmt.where(EmailCommunication.communication_type == key.communication_type)
        return self.session.execute(stmt).scalar_one() > 0

    def list_delivery_events(self, key: ContentKey) -> list[dict[str, Any]]:
        stmt = select(EmailCommunication).where(
            EmailCommunication.startup_id == key.startup_id,
            EmailCommunication.round_name == key.round_name,
        ).order_by(EmailCommunication.created_at)
        if key.kind == ContentKind.CUSTOM_EMAIL:
            stmt = stmt.where(EmailCommunication.communication_type == key.communication_type)
        return [
            {"id": c.id, "status": c.status, "timestamp": (c.updated_at or c.created_at).isoformat(),
             "communication_type": c.communication_type, "recipient_email": c.recipient_email,
             "test_mode": c.test_mode, "error_message": c.error_message or None}
            for c in self.session.execute(stmt).scalars().all()
        ]

    def state_of(self, key: ContentKey, record: ContentRecord | None = None) -> ContentState:
        record = record if record is not None else self.find(key)
        if record is None:
            placeholder = PlainTextContent(NOT_GENERATED_PLACEHOLDER) if key.kind == ContentKind.VC_FEEDBACK else None
            return ContentState(key=key, record_id=None, content=placeholder)
        return ContentState(
            key=key,
            record_id=record.id,
            content=variant_of(record),
            is_approved=record.is_approved,
            approved_by=record.approved_by,
            approved_at=record.approved_at,
            updated_at=record.updated_at,
            version=record.version,
            evaluation_count=getattr(record, "evaluation_count", None),
        )

    # -- operations ---------------------------------------------------------

    async def generate(self, key: ContentKey, *, expected_version: int | None = None) -> ContentState:
        """Replace any existing content for *key*; the result is never approved."""
        startup = get_or_raise(self.session, Startup, key.startup_id, "Startup")
        existing = self.find(key)
        if existing is not None:
            check_version(existing, expected_version)
        evaluations = self.submitted_evaluations(key.startup_id, key.round_name)

        if key.kind == ContentKind.VC_FEEDBACK:
            if self.client is None:
                raise UpstreamGenerationError("LLM client is not configured", retryable=False)
            content: ContentVariant = PlainTextContent(
                await generate_vc_feedback_text(self.client, startup, key.round_name, evaluations)
            )
        else:
            template = self.session.execute(
                select(EmailTemplate).where(
                    EmailTemplate.category == template_category(key.communication_type),
                    EmailTemplate.is_active.is_(True),
                ).order_by(EmailTemplate.id)
            ).scalars().first()
            if template is None:
                raise ValidationError(
                    f"No active email template for {template_category(key.communication_type)}"
                )
            feedback = self.find(ContentKey.vc_feedback(key.startup_id, key.round_name))
            approved_text = feedback.plain_text_feedback if feedback is not None and feedback.is_approved else None
            subject, body = render_email(
                template, startup, approved_feedback=approved_text, evaluations=evaluations,
            )
            content = EmailContent(subject=subject, body=body)

        record = self._get_or_create(key)
        _write_variant(record, content)
        _clear_approval(record)
        if isinstance(record, VCFeedbackDetail):
            record.evaluation_count = len(evaluations)
            record.llm_model = getattr(self.client, "model", "") or ""
        record.updated_at = utcnow()
        self.session.flush()
        log.info("Generated %s for startup %d (%s)", key.kind.value, key.startup_id, key.round_name)
        return self.state_of(key, record)

    def save_draft(
        self, key: ContentKey, content: ContentVariant, *, expected_version: int | None = None,
    ) -> ContentState:
        """Persist edits; approved content returns to draft."""
        existing = self.find(key)
        if existing is not None:
            check_version(existing, expected_version)
        record = existing or self._get_or_create(key)
        _write_variant(record, content)
        _clear_approval(record)
        record.updated_at = utcnow()
        self.session.flush()
        return self.state_of(key, record)

    async def enhance(self, key: ContentKey, *, expected_version: int | None = None) -> ContentState:
        """Rewrite the current body through the LLM; approval is not touched."""
        record = self._require(key)
        check_version(record, expected_version)
        current = variant_of(record)
        if current.is_empty:
            raise ValidationError("Generate content before enhancing it")
        if record.is_approved:
            raise ValidationError("Approved content cannot be enhanced; edit it first")
        if self.client is None:
            raise UpstreamGenerationError("LLM client is not configured", retryable=False)
        self.throttle.check(key)

        startup = get_or_raise(self.session, Startup, key.startup_id, "Startup")
        label = "VC feedback" if key.kind == ContentKind.VC_FEEDBACK else f"{key.communication_type} email"
        enhanced = await enhance_text(
            self.client, current.body,
            startup_name=startup.name, round_name=key.round_name, label=label,
            html=isinstance(current, EmailContent),
        )
        if isinstance(current, EmailContent):
            _write_variant(record, EmailContent(subject=current.subject, body=enhanced))
        else:
            _write_variant(record, PlainTextContent(enhanced))
        record.updated_at = utcnow()
        self.session.flush()
        state = self.state_of(key, record)
        state.improvements = describe_improvements(current.body, enhanced)
        return state

    def approve(
        self, key: ContentKey, approver_id: str, *, expected_version: int | None = None,
    ) -> ContentState:
        record = self._require(key)
        check_version(record, expected_version)
        if variant_of(record).is_empty:
            raise ApprovalRejected("Cannot approve empty content")
        now = utcnow()
        record.is_approved = True
        record.approved_by = approver_id
        record.approved_at = now
        record.updated_at = now
        self.session.flush()
        log.info("Approved %s for startup %d by %s", key.kind.value, key.startup_id, approver_id)
        return self.state_of(key, record)

    async def load(self, key: ContentKey) -> ContentState:
        """Read content, regenerating it when stale and not yet sent.

        A custom email without a record is generated on first load; VC
        feedback without a record reads as the not-generated placeholder.
        """
        record = self.find(key)
        if record is None:
            if key.kind == ContentKind.CUSTOM_EMAIL:
                state = await self.generate(key)
                state.regenerated = True
                return state
            return self.state_of(key)

        if not compute_stale(record, self.dependent_updated_at(key)):
            return self.state_of(key, record)

        if self.is_already_sent(key):
            state = self.state_of(key, record)
            state.stale = True
            state.already_sent = True
            return state

        log.info("Regenerating stale %s for startup %d", key.kind.value, key.startup_id)
        try:
            state = await self.generate(key)
        except UpstreamGenerationError as exc:
            log.warning("Regeneration of stale %s for startup %d failed: %s",
                        key.kind.value, key.startup_id, exc.message)
            state = self.state_of(key, record)
            state.stale = True
            state.regeneration_error = exc.message
            return state
        state.regenerated = True
        return state

    async def send(
        self, key: ContentKey, approver_id: str, *, expected_version: int | None = None,
    ) -> EmailCommunication:
        """Deliver an approved custom email and record the attempt.

        The send record is committed before and after the provider call so a
        failed attempt stays visible.
        """
        if key.kind != ContentKind.CUSTOM_EMAIL:
            raise ValidationError("Only custom emails can be sent")
        if self.sender is None:
            raise DeliveryError("Email delivery is not configured")
        record = self._require(key)
        check_version(record, expected_version)
        if not record.is_approved:
            self.approve(key, approver_id)

        startup = get_or_raise(self.session, Startup, key.startup_id, "Startup")
        address = (startup.contact_email or "").strip()
        if not address:
            raise MissingDeliveryAddress(f"{startup.name} has no contact email")

        test_mode = self.settings.email_test_mode
        if not test_mode and self.is_already_sent(key):
            raise ValidationError(f"{key.communication_type} email already sent for this round")
        recipient = self.settings.sandbox_email if test_mode else address

        comm = EmailCommunication(
            startup_id=key.startup_id,
            round_name=key.round_name,
            communication_type=key.communication_type,
            recipient_email=recipient,
            subject=record.custom_subject,
            status="pending",
            test_mode=test_mode,
        )
        self.session.add(comm)
        self.session.commit()

        result = await self.sender.send(
            recipient, record.custom_subject, wrap_email_html(plain_text_to_html(record.custom_body)),
        )
        if not result.success:
            comm.status = "failed"
            comm.error_message = result.error or "Unknown delivery error"
            self.session.commit()
            log.warning("Send of %s email to startup %d failed: %s",
                        key.communication_type, key.startup_id, comm.error_message)
            raise DeliveryError(comm.error_message)

        comm.status = "sent"
        comm.provider_message_id = result.message_id
        comm.sent_at = utcnow()
        self.session.commit()
        log.info("Sent %s email to startup %d (%s)%s", key.communication_type, key.startup_id,
                 result.message_id, " [test mode]" if test_mode else "")
        return comm


def record_delivery_event(session: Session, message_id: str, status: str) -> EmailCommunication:
    """Apply a provider webhook event; progress statuses never move backwards."""
    comm = session.execute(
        select(EmailCommunication).where(EmailCommunication.provider_message_id == message_id)
    ).scalars().first()
    if comm is None:
        raise NotFoundError(f"No send record for message {message_id}")
    if status in ("bounced", "failed"):
        comm.status = status
    elif _STATUS_RANK.get(status, -1) > _STATUS_RANK.get(comm.status, -1):
        comm.status = status
    session.flush()
    return comm
