"""Tests for the content lifecycle manager (generate, draft, enhance, approve, send)."""
from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from evalroom.config import Settings
from evalroom.db import configure_sqlite, seed_email_templates
from evalroom.delivery import EmailResult, EmailSender
from evalroom.errors import (
    ApprovalRejected, DeliveryError, EnhanceThrottled, GenerationFailed, MissingDeliveryAddress,
    NotFoundError, StaleWriteError, UpstreamGenerationError, ValidationError,
)
from evalroom.feedback import NO_EVALUATIONS_MESSAGE, NOT_GENERATED_PLACEHOLDER, split_into_chunks
from evalroom.lifecycle import (
    ContentKey, ContentLifecycleManager, EmailContent, EnhanceThrottle, PlainTextContent,
    record_delivery_event,
)
from evalroom.llm import LLMClient
from evalroom.models import (
    Base, CustomEmail, EmailCommunication, Evaluation, Juror, Startup, VCFeedbackDetail,
)

FEEDBACK_ARGS = {
    "overall_summary": "A focused team with early traction.",
    "strengths": ["Experienced founders", "Clear wedge"],
    "challenges": ["Sales cycle is long"],
    "next_steps": ["Run three paid pilots"],
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    configure_sqlite(eng)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    seed_email_templates(sess)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def startup(session):
    s = Startup(name="Acme Robotics", contact_email="founder@acme.io", founder_first_name="Ada")
    session.add(s)
    session.flush()
    return s


@pytest.fixture()
def evaluations(session, startup):
    jurors = [Juror(name="Ivy", email="ivy@fund.com", company="Fund Capital"),
              Juror(name="Max", email="max@vc.vc", company="VC Partners")]
    session.add_all(jurors)
    session.flush()
    evs = [
        Evaluation(startup_id=startup.id, juror_id=jurors[0].id, round_name="pitching",
                   status="submitted", overall_score=8.0,
                   strengths_json=json.dumps(["Strong team"]), improvement_areas="Go-to-market"),
        Evaluation(startup_id=startup.id, juror_id=jurors[1].id, round_name="pitching",
                   status="submitted", overall_score=6.5, recommendation="Revisit pricing"),
        Evaluation(startup_id=startup.id, juror_id=jurors[1].id, round_name="pitching",
                   status="draft", overall_score=2.0),
    ]
    session.add_all(evs)
    session.flush()
    return evs


@pytest.fixture()
def client():
    c = MagicMock(spec=LLMClient)
    c.model = "test-model"
    c.call_tool = AsyncMock(return_value=FEEDBACK_ARGS)
    c.complete = AsyncMock(return_value="Enhanced: specific, actionable feedback.")
    return c


@pytest.fixture()
def sender():
    s = MagicMock(spec=EmailSender)
    s.send = AsyncMock(return_value=EmailResult(success=True, message_id="msg-1"))
    return s


@pytest.fixture()
def manager(session, client, sender):
    return ContentLifecycleManager(session, client, sender, settings=Settings())


def _vc(startup):
    return ContentKey.vc_feedback(startup.id, "pitching")


def _email(startup, communication_type="selected"):
    return ContentKey.email(startup.id, "pitching", communication_type)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestContentKey:
    def test_email_key_needs_type(self):
        with pytest.raises(ValidationError):
            ContentKey.email(1, "pitching", "")

    def test_keys_are_hashable(self):
        assert {ContentKey.vc_feedback(1, "pitching"), ContentKey.vc_feedback(1, "pitching")} == {
            ContentKey.vc_feedback(1, "pitching")
        }


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_vc_feedback_from_submitted_evaluations(self, manager, client, startup, evaluations):
        state = await manager.generate(_vc(startup))

        assert state.state == "draft"
        assert state.evaluation_count == 2
        assert state.content.body.startswith("**Overall Summary:**")
        assert "- Run three paid pilots" in state.content.body
        prompt = client.call_tool.await_args.args[1]
        assert "VC fund #1 - Fund Capital" in prompt
        assert "• Strong team" in prompt

    @pytest.mark.asyncio
    async def test_no_evaluations_is_not_retryable(self, manager, session, startup):
        with pytest.raises(GenerationFailed) as exc:
            await manager.generate(_vc(startup))
        assert exc.value.message == NO_EVALUATIONS_MESSAGE
        assert exc.value.retryable is False
        assert session.execute(select(VCFeedbackDetail)).scalars().first() is None

    @pytest.mark.asyncio
    async def test_regenerate_clears_approval(self, manager, startup, evaluations):
        key = _vc(startup)
        await manager.generate(key)
        manager.approve(key, "reviewer@evalroom.io")
        state = await manager.generate(key)
        assert state.is_approved is False
        assert state.approved_by is None

    @pytest.mark.asyncio
    async def test_email_uses_template_and_evaluations(self, manager, startup, evaluations):
        state = await manager.generate(_email(startup))
        assert "Acme Robotics" in state.content.subject
        assert "Ada" in state.content.body
        assert "VC Fund #1 - Fund Capital" in state.content.body

    @pytest.mark.asyncio
    async def test_email_prefers_approved_vc_feedback(self, manager, startup, evaluations):
        await manager.generate(_vc(startup))
        manager.approve(_vc(startup), "reviewer@evalroom.io")
        state = await manager.generate(_email(startup, "top-100-feedback"))
        assert "Overall Summary" in state.content.body
        assert "VC Fund #1" not in state.content.body

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, manager, startup, evaluations):
        key = _vc(startup)
        first = await manager.generate(key)
        manager.save_draft(key, PlainTextContent("Edited"), expected_version=first.version)
        with pytest.raises(StaleWriteError):
            await manager.generate(key, expected_version=first.version)


# ---------------------------------------------------------------------------
# Draft / approve
# ---------------------------------------------------------------------------


class TestApprove:
    def test_empty_content_rejected_without_mutation(self, manager, session, startup):
        key = _vc(startup)
        saved = manager.save_draft(key, PlainTextContent("   "))
        with pytest.raises(ApprovalRejected):
            manager.approve(key, "reviewer@evalroom.io")
        record = manager.find(key)
        assert record.is_approved is False
        assert record.approved_by is None
        assert record.version == saved.version

    def test_placeholder_counts_as_empty(self, manager, startup):
        key = _vc(startup)
        manager.save_draft(key, PlainTextContent(NOT_GENERATED_PLACEHOLDER))
        with pytest.raises(ApprovalRejected):
            manager.approve(key, "reviewer@evalroom.io")

    def test_email_without_subject_is_empty(self, manager, startup):
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="", body="<p>Hi</p>"))
        with pytest.raises(ApprovalRejected):
            manager.approve(key, "reviewer@evalroom.io")

    def test_approve_then_edit_returns_to_draft(self, manager, startup):
        key = _vc(startup)
        manager.save_draft(key, PlainTextContent("Solid pitch."))
        approved = manager.approve(key, "reviewer@evalroom.io")
        assert approved.state == "approved"
        assert approved.approved_by == "reviewer@evalroom.io"

        edited = manager.save_draft(key, PlainTextContent("Solid pitch, clearer ask."))
        assert edited.state == "draft"
        assert edited.approved_at is None

    def test_approve_missing_record(self, manager, startup):
        with pytest.raises(NotFoundError):
            manager.approve(_vc(startup), "reviewer@evalroom.io")

    def test_wrong_variant_rejected(self, manager, startup):
        with pytest.raises(ValidationError):
            manager.save_draft(_vc(startup), EmailContent(subject="s", body="b"))


# ---------------------------------------------------------------------------
# Load and staleness
# ---------------------------------------------------------------------------


class TestLoad:
    @pytest.mark.asyncio
    async def test_vc_feedback_without_record_reads_placeholder(self, manager, startup):
        state = await manager.load(_vc(startup))
        assert state.record_id is None
        assert state.content.body == NOT_GENERATED_PLACEHOLDER
        assert state.state == "not_generated"

    @pytest.mark.asyncio
    async def test_email_without_record_is_generated(self, manager, startup, evaluations):
        state = await manager.load(_email(startup))
        assert state.regenerated is True
        assert state.record_id is not None
        assert state.state == "draft"

    @pytest.mark.asyncio
    async def test_fresh_approved_content_untouched(self, manager, startup, evaluations):
        key = _email(startup)
        await manager.generate(key)
        manager.approve(key, "reviewer@evalroom.io")
        state = await manager.load(key)
        assert state.stale is False
        assert state.regenerated is False
        assert state.is_approved is True

    @pytest.mark.asyncio
    async def test_stale_unsent_email_is_regenerated(self, manager, session, startup, evaluations):
        key = _email(startup)
        await manager.generate(key)
        approved = manager.approve(key, "reviewer@evalroom.io")
        manager.save_draft(_vc(startup), PlainTextContent("New VC notes"))
        manager.find(_vc(startup)).updated_at = approved.updated_at + timedelta(minutes=1)
        session.flush()

        state = await manager.load(key)
        assert state.regenerated is True
        assert state.is_approved is False
        assert state.state == "draft"

    @pytest.mark.asyncio
    async def test_failed_regeneration_keeps_approved_text(self, manager, session, client, startup, evaluations):
        key = _vc(startup)
        await manager.generate(key)
        approved = manager.approve(key, "reviewer@evalroom.io")
        evaluations[0].updated_at = approved.updated_at + timedelta(minutes=5)
        session.flush()
        client.call_tool.side_effect = UpstreamGenerationError("LLM rate limit exceeded", category="rate_limit")

        state = await manager.load(key)
        assert state.stale is True
        assert state.regenerated is False
        assert state.is_approved is True
        assert state.content.body == approved.content.body
        assert state.to_dict()["regeneration_error"] == "LLM rate limit exceeded"

    @pytest.mark.asyncio
    async def test_stale_sent_email_is_only_flagged(self, manager, session, startup, evaluations):
        key = _email(startup)
        await manager.generate(key)
        approved = manager.approve(key, "reviewer@evalroom.io")
        before = (approved.content, approved.version)
        manager.save_draft(_vc(startup), PlainTextContent("New VC notes"))
        manager.find(_vc(startup)).updated_at = approved.updated_at + timedelta(minutes=1)
        session.add(EmailCommunication(startup_id=startup.id, round_name="pitching",
                                       communication_type="selected", status="delivered"))
        session.flush()

        state = await manager.load(key)
        assert state.stale is True
        assert state.already_sent is True
        assert state.regenerated is False
        assert state.is_approved is True
        assert (state.content, state.version) == before

    @pytest.mark.asyncio
    async def test_failed_send_does_not_count_as_sent(self, manager, session, startup, evaluations):
        key = _email(startup)
        await manager.generate(key)
        approved = manager.approve(key, "reviewer@evalroom.io")
        manager.save_draft(_vc(startup), PlainTextContent("New VC notes"))
        manager.find(_vc(startup)).updated_at = approved.updated_at + timedelta(minutes=1)
        session.add(EmailCommunication(startup_id=startup.id, round_name="pitching",
                                       communication_type="selected", status="failed"))
        session.flush()

        state = await manager.load(key)
        assert state.regenerated is True

    @pytest.mark.asyncio
    async def test_vc_feedback_stale_after_new_evaluation(self, manager, session, startup, evaluations):
        key = _vc(startup)
        await manager.generate(key)
        approved = manager.approve(key, "reviewer@evalroom.io")
        evaluations[0].updated_at = approved.updated_at + timedelta(minutes=5)
        session.flush()

        state = await manager.load(key)
        assert state.regenerated is True
        assert state.is_approved is False


# ---------------------------------------------------------------------------
# Enhance
# ---------------------------------------------------------------------------


class TestEnhance:
    @pytest.mark.asyncio
    async def test_enhance_keeps_subject_and_reports_improvements(self, manager, client, startup):
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Hello", body="Good team. Nice product."))
        state = await manager.enhance(key)
        assert state.content.subject == "Hello"
        assert state.content.body == "Enhanced: specific, actionable feedback."
        assert "Replaced vague language with specific descriptions" in state.improvements
        assert state.state == "draft"

    @pytest.mark.asyncio
    async def test_second_enhance_inside_window_rejected(self, session, client, sender, startup):
        now = [100.0]
        throttle = EnhanceThrottle(2.0, clock=lambda: now[0])
        manager = ContentLifecycleManager(session, client, sender, settings=Settings(), throttle=throttle)
        key = _vc(startup)
        manager.save_draft(key, PlainTextContent("Solid pitch."))

        await manager.enhance(key)
        now[0] += 0.5
        with pytest.raises(EnhanceThrottled) as exc:
            await manager.enhance(key)
        assert exc.value.retry_after == pytest.approx(1.5)
        assert client.complete.await_count == 1

        now[0] += 2.0
        await manager.enhance(key)
        assert client.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_approved_content_cannot_be_enhanced(self, manager, client, startup):
        key = _vc(startup)
        manager.save_draft(key, PlainTextContent("Solid pitch."))
        manager.approve(key, "reviewer@evalroom.io")
        with pytest.raises(ValidationError):
            await manager.enhance(key)
        client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_content_cannot_be_enhanced(self, manager, startup):
        key = _vc(startup)
        manager.save_draft(key, PlainTextContent(""))
        with pytest.raises(ValidationError):
            await manager.enhance(key)

    @pytest.mark.asyncio
    async def test_long_email_is_enhanced_block_by_block(self, manager, client, startup):
        items = "".join(f'<li style="margin:5px 0;">Point number {i}: {"detail " * 12}</li>' for i in range(90))
        body = f"<div><ul>{items}</ul></div>"
        assert len(body) > 8000
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Hello", body=body))
        client.complete.return_value = "<p>Sharper.</p>"

        state = await manager.enhance(key)
        chunks = split_into_chunks(body, html=True)
        assert "".join(chunks) == body
        assert all(c.count("<") == c.count(">") for c in chunks)
        assert client.complete.await_count == len(chunks)
        assert state.content.body == "<p>Sharper.</p>" * len(chunks)
        assert "Keep every HTML tag" in client.complete.await_args.args[1]

    def test_throttle_forgets_keys_outside_window(self, startup):
        now = [0.0]
        throttle = EnhanceThrottle(2.0, clock=lambda: now[0])
        throttle.check(ContentKey.vc_feedback(startup.id, "pitching"))
        throttle.check(ContentKey.vc_feedback(startup.id, "finals"))
        now[0] += 5.0
        throttle.check(ContentKey.vc_feedback(startup.id, "semis"))
        assert list(throttle._last) == [ContentKey.vc_feedback(startup.id, "semis")]


# ---------------------------------------------------------------------------
# Send and delivery events
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_send_auto_approves_and_records(self, manager, session, sender, startup):
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))
        comm = await manager.send(key, "reviewer@evalroom.io")

        assert comm.status == "sent"
        assert comm.provider_message_id == "msg-1"
        assert comm.recipient_email == "founder@acme.io"
        assert comm.sent_at is not None
        assert manager.find(key).is_approved is True
        to, subject, html = sender.send.await_args.args
        assert (to, subject) == ("founder@acme.io", "Welcome")
        assert "<p>Congrats</p>" in html

    @pytest.mark.asyncio
    async def test_duplicate_send_blocked(self, manager, sender, startup):
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))
        await manager.send(key, "reviewer@evalroom.io")
        with pytest.raises(ValidationError, match="already sent"):
            await manager.send(key, "reviewer@evalroom.io")
        assert sender.send.await_count == 1

    @pytest.mark.asyncio
    async def test_test_mode_uses_sandbox_and_allows_resend(self, session, client, sender, startup):
        settings = Settings(email_test_mode=True, sandbox_email="sandbox@example.test")
        manager = ContentLifecycleManager(session, client, sender, settings=settings)
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))

        first = await manager.send(key, "reviewer@evalroom.io")
        second = await manager.send(key, "reviewer@evalroom.io")
        assert first.recipient_email == second.recipient_email == "sandbox@example.test"
        assert first.test_mode is True

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_raised(self, manager, session, sender, startup):
        sender.send.return_value = EmailResult(success=False, error="Resend API error: 422 - bad")
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))

        with pytest.raises(DeliveryError):
            await manager.send(key, "reviewer@evalroom.io")
        comm = session.execute(select(EmailCommunication)).scalars().one()
        assert comm.status == "failed"
        assert "422" in comm.error_message
        assert manager.is_already_sent(key) is False

    @pytest.mark.asyncio
    async def test_missing_address(self, manager, session, sender, startup):
        startup.contact_email = ""
        session.flush()
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))
        with pytest.raises(MissingDeliveryAddress):
            await manager.send(key, "reviewer@evalroom.io")
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_vc_feedback_cannot_be_sent(self, manager, startup):
        with pytest.raises(ValidationError):
            await manager.send(_vc(startup), "reviewer@evalroom.io")


class TestDeliveryEvents:
    @pytest.mark.asyncio
    async def test_status_progress_never_regresses(self, manager, session, startup):
        key = _email(startup)
        manager.save_draft(key, EmailContent(subject="Welcome", body="<p>Congrats</p>"))
        await manager.send(key, "reviewer@evalroom.io")

        assert record_delivery_event(session, "msg-1", "opened").status == "opened"
        assert record_delivery_event(session, "msg-1", "delivered").status == "opened"
        assert record_delivery_event(session, "msg-1", "bounced").status == "bounced"
        events = manager.list_delivery_events(key)
        assert [e["status"] for e in events] == ["bounced"]

    def test_unknown_message(self, session):
        with pytest.raises(NotFoundError):
            record_delivery_event(session, "nope", "delivered")


def test_custom_email_rows_are_unique_per_key(manager, session, startup):
    key = _email(startup)
    manager.save_draft(key, EmailContent(subject="a", body="b"))
    manager.save_draft(key, EmailContent(subject="c", body="d"))
    assert len(session.execute(select(CustomEmail)).scalars().all()) == 1
