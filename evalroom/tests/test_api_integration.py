"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database and fake LLM / email capabilities.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from evalroom.config import get_settings
from evalroom.db import configure_sqlite, seed_email_templates
from evalroom.delivery import EmailResult, EmailSender
from evalroom.lifecycle import EnhanceThrottle
from evalroom.llm import LLMClient
from evalroom.models import Base, Juror, Startup

EVENT = {
    "uid": "acme-ivy@calendar",
    "summary": "Acme x Ivy",
    "start": "2025-05-02T10:00:00Z",
    "end": "2025-05-02T11:00:00Z",
    "attendees": ["startup@acme.io", "investor@fund.com"],
}


@pytest.fixture()
def test_db():
    """In-memory database shared by every connection via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestSession()
    seed_email_templates(session)
    session.add_all([
        Startup(name="Acme", contact_email="startup@acme.io", founder_first_name="Ada"),
        Juror(name="Ivy", email="investor@fund.com", company="Fund"),
    ])
    session.commit()
    session.close()
    return engine, TestSession


@pytest.fixture()
def fakes():
    llm = MagicMock(spec=LLMClient)
    llm.model = "test-model"
    llm.call_tool = AsyncMock(return_value={"suggestions": []})
    llm.complete = AsyncMock(return_value="Sharper feedback.")
    sender = MagicMock(spec=EmailSender)
    sender.send = AsyncMock(return_value=EmailResult(success=True, message_id="msg-42"))
    return llm, sender


@pytest.fixture()
def client(test_db, fakes, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("EVALROOM_DB_PATH", str(tmp_path / "lifespan.db"))
    get_settings.cache_clear()
    engine, TestSession = test_db
    llm, sender = fakes
    from evalroom.app import app, db_session, email_sender, enhance_throttle, llm_client

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    throttle = EnhanceThrottle(2.0)
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[llm_client] = lambda: llm
    app.dependency_overrides[email_sender] = lambda: sender
    app.dependency_overrides[enhance_throttle] = lambda: throttle
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _ids(client):
    resp = client.post("/api/calendar/events", json=EVENT)
    assert resp.status_code == 200
    data = resp.json()["data"]
    return data["id"], data["startup_id"], data["juror_id"]


class TestCalendarEndpoints:
    def test_ingest_auto_matches_exact_attendees(self, client):
        resp = client.post("/api/calendar/events", json=EVENT)
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["matching_status"] == "auto_matched"
        assert body["data"]["bucket"] == "scheduled"
        assert body["data"]["event_start_date"] == "2025-05-02T10:00:00"

    def test_blank_uid_rejected(self, client):
        resp = client.post("/api/calendar/events", json={**EVENT, "uid": "  "})
        assert resp.status_code == 422

    def test_buckets_listing(self, client):
        _ids(client)
        buckets = client.get("/api/invitations").json()
        assert len(buckets["scheduled"]["items"]) == 1
        assert buckets["needs_assignment"]["items"] == []

    def test_double_cancel_is_conflict(self, client):
        inv_id, _, _ = _ids(client)
        assert client.post(f"/api/invitations/{inv_id}/cancel").status_code == 200
        resp = client.post(f"/api/invitations/{inv_id}/cancel")
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "invalid_transition"

    def test_unknown_invitation(self, client):
        resp = client.post("/api/invitations/999/complete")
        assert resp.status_code == 404
        assert resp.json()["detail"]["success"] is False


class TestMatchingEndpoints:
    def test_suggest_then_match_is_idempotent(self, client, fakes):
        inv_id, startup_id, juror_id = _ids(client)
        suggestions = client.post(f"/api/invitations/{inv_id}/suggestions").json()["data"]["suggestions"]
        assert len(suggestions) == 1
        assert suggestions[0]["combined_confidence"] == 100
        fakes[0].call_tool.assert_not_awaited()

        payload = {"startup_id": startup_id, "juror_id": juror_id}
        first = client.post(f"/api/invitations/{inv_id}/match", json=payload).json()["data"]
        second = client.post(f"/api/invitations/{inv_id}/match", json=payload).json()["data"]
        assert first["id"] == second["id"]
        assert first["status"] == "scheduled"

        meetings = client.get("/api/meetings").json()
        assert meetings["unique_count"] == 1


class TestAssignmentEndpoints:
    def test_stale_version_is_conflict(self, client):
        _, startup_id, juror_id = _ids(client)
        resp = client.post("/api/assignments", json={"startup_id": startup_id, "juror_id": juror_id})
        assert resp.status_code == 201
        assignment = resp.json()["data"]

        ok = client.post(f"/api/assignments/{assignment['id']}/schedule", json={
            "scheduled_date": "2025-06-01T14:00:00", "expected_version": assignment["version"],
        })
        assert ok.status_code == 200
        stale = client.post(f"/api/assignments/{assignment['id']}/cancel",
                            params={"expected_version": assignment["version"]})
        assert stale.status_code == 409
        assert stale.json()["detail"]["code"] == "stale_write"


class TestContentEndpoints:
    def test_approve_empty_rejected(self, client):
        _, startup_id, _ = _ids(client)
        ref = {"startup_id": startup_id, "round_name": "pitching"}
        client.put("/api/content/vc_feedback/draft", json={**ref, "body": ""})
        resp = client.post("/api/content/vc_feedback/approve", json={**ref, "approver_id": "rev"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "approval_rejected"

    def test_second_enhance_please_wait(self, client, fakes):
        _, startup_id, _ = _ids(client)
        ref = {"startup_id": startup_id, "round_name": "pitching"}
        client.put("/api/content/vc_feedback/draft", json={**ref, "body": "Good team."})

        assert client.post("/api/content/vc_feedback/enhance", json=ref).status_code == 200
        resp = client.post("/api/content/vc_feedback/enhance", json=ref)
        assert resp.status_code == 429
        assert resp.json()["detail"]["code"] == "please_wait"
        assert fakes[0].complete.await_count == 1

    def test_load_missing_email_generates_from_template(self, client):
        _, startup_id, _ = _ids(client)
        resp = client.post("/api/content/custom_email/load", json={
            "startup_id": startup_id, "round_name": "pitching", "communication_type": "rejected",
        })
        data = resp.json()["data"]
        assert data["state"] == "draft"
        assert "Acme" in data["subject"]

    def test_send_and_delivery_event(self, client, fakes):
        _, startup_id, _ = _ids(client)
        ref = {"startup_id": startup_id, "round_name": "pitching", "communication_type": "selected"}
        client.put("/api/content/custom_email/draft", json={**ref, "subject": "Welcome", "body": "<p>Hi</p>"})

        sent = client.post("/api/content/custom_email/send", json={**ref, "approver_id": "rev"})
        assert sent.status_code == 200
        assert sent.json()["data"]["message_id"] == "msg-42"

        event = client.post("/api/delivery-events", json={"message_id": "msg-42", "status": "delivered"})
        assert event.json()["data"]["status"] == "delivered"
        history = client.post("/api/content/custom_email/events", json=ref).json()["data"]
        assert [h["status"] for h in history] == ["delivered"]

        again = client.post("/api/content/custom_email/send", json={**ref, "approver_id": "rev"})
        assert again.status_code == 400

    def test_send_failure_surfaces_provider_message(self, client, fakes):
        fakes[1].send.return_value = EmailResult(success=False, error="Resend API error: 403 - forbidden")
        _, startup_id, _ = _ids(client)
        ref = {"startup_id": startup_id, "round_name": "pitching", "communication_type": "selected"}
        client.put("/api/content/custom_email/draft", json={**ref, "subject": "Welcome", "body": "<p>Hi</p>"})
        resp = client.post("/api/content/custom_email/send", json={**ref, "approver_id": "rev"})
        assert resp.status_code == 502
        assert resp.json()["detail"]["message"] == "Resend API error: 403 - forbidden"


class TestBatchEndpoints:
    def test_approve_needs_preview_token(self, client):
        _, startup_id, _ = _ids(client)
        client.put("/api/content/vc_feedback/draft",
                   json={"startup_id": startup_id, "round_name": "pitching", "body": "Draft"})
        batch = {"kind": "vc_feedback", "round_name": "pitching", "startup_ids": [startup_id]}

        preview = client.post("/api/batch/approve/preview", json=batch).json()["data"]
        assert preview["count"] == 1

        unconfirmed = client.post("/api/batch/approve", json={**batch, "approver_id": "rev",
                                                               "token": preview["token"]})
        assert unconfirmed.status_code == 400

        done = client.post("/api/batch/approve", json={**batch, "approver_id": "rev",
                                                       "token": preview["token"], "confirmed": True})
        assert done.json()["data"]["success_count"] == 1
