from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from evalroom.utils import json_parse, utcnow


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Directory records (startups, jurors, evaluations)
# ---------------------------------------------------------------------------


class Startup(Base):
    __tablename__ = "startups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    contact_email: Mapped[str] = mapped_column(String(300), default="")
    founder_first_name: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    verticals: Mapped[str] = mapped_column(Text, default="")  # comma separated
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Juror(Base):
    __tablename__ = "jurors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), default="")
    company: Mapped[str] = mapped_column(String(300), default="")
    job_title: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    juror_id: Mapped[int] = mapped_column(Integer, ForeignKey("jurors.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(20), nullable=False)  # screening | pitching
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | submitted
    overall_score: Mapped[float | None] = mapped_column(default=None)
    strengths_json: Mapped[str] = mapped_column(Text, default="[]")
    improvement_areas: Mapped[str] = mapped_column(Text, default="")
    pitch_development_aspects: Mapped[str] = mapped_column(Text, default="")
    overall_notes: Mapped[str] = mapped_column(Text, default="")
    recommendation: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    juror: Mapped[Juror] = relationship("Juror")

    @property
    def strengths(self) -> list[str]:
        return [str(s) for s in json_parse(self.strengths_json, []) if s]


# ---------------------------------------------------------------------------
# Meetings: assignments and calendar invitations
# ---------------------------------------------------------------------------


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        # At most one non-cancelled assignment per pair and round
        Index(
            "uq_assignment_active_pair", "startup_id", "juror_id", "round_name",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    juror_id: Mapped[int] = mapped_column(Integer, ForeignKey("jurors.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(20), default="pitching")
    status: Mapped[str] = mapped_column(String(20), default="assigned")  # assigned | scheduled | confirmed | completed | cancelled
    meeting_scheduled_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    meeting_completed_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    meeting_notes: Mapped[str] = mapped_column(Text, default="")
    meeting_link: Mapped[str] = mapped_column(String(500), default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    startup: Mapped[Startup] = relationship("Startup")
    juror: Mapped[Juror] = relationship("Juror")

    __mapper_args__ = {"version_id_col": version}


class CalendarInvitation(Base):
    __tablename__ = "calendar_invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_uid: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    startup_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("startups.id"), default=None)
    juror_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("jurors.id"), default=None)
    assignment_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("assignments.id"), default=None)
    event_summary: Mapped[str] = mapped_column(Text, default="")
    event_description: Mapped[str] = mapped_column(Text, default="")
    event_location: Mapped[str] = mapped_column(Text, default="")
    event_start_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    event_end_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    event_method: Mapped[str] = mapped_column(String(20), default="REQUEST")
    attendee_emails_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(20), default="scheduled")  # scheduled | completed | cancelled | rescheduled | conflict
    matching_status: Mapped[str] = mapped_column(String(20), default="unmatched")  # unmatched | auto_matched | manual_matched | rescheduled | cancelled | conflict
    manual_assignment_needed: Mapped[bool] = mapped_column(Boolean, default=True)
    matching_errors_json: Mapped[str] = mapped_column(Text, default="[]")
    sequence_number: Mapped[int] = mapped_column(Integer, default=0)
    previous_event_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    lifecycle_history_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    startup: Mapped[Startup | None] = relationship("Startup")
    juror: Mapped[Juror | None] = relationship("Juror")
    assignment: Mapped[Assignment | None] = relationship("Assignment")

    @property
    def attendee_emails(self) -> list[str]:
        return [str(e) for e in json_parse(self.attendee_emails_json, [])]

    @property
    def matching_errors(self) -> list[str]:
        return [str(e) for e in json_parse(self.matching_errors_json, [])]

    @property
    def lifecycle_history(self) -> list[dict]:
        return list(json_parse(self.lifecycle_history_json, []))

    def set_attendee_emails(self, emails: list[str]) -> None:
        self.attendee_emails_json = json.dumps(emails)

    def set_matching_errors(self, errors: list[str]) -> None:
        self.matching_errors_json = json.dumps(errors)

    def record_history(self, action: str, **details) -> dict:
        """Append one entry to the append-only lifecycle log."""
        entry = {"timestamp": utcnow().isoformat(), "action": action, **details}
        self.lifecycle_history_json = json.dumps([*self.lifecycle_history, entry], default=str)
        return entry

    def sync_assignment_flag(self) -> None:
        self.manual_assignment_needed = self.startup_id is None and self.juror_id is None


# ---------------------------------------------------------------------------
# Feedback content (two variants) and send records
# ---------------------------------------------------------------------------


class VCFeedbackDetail(Base):
    __tablename__ = "vc_feedback_details"
    __table_args__ = (UniqueConstraint("startup_id", "round_name", name="uq_vc_feedback_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(20), nullable=False)
    plain_text_feedback: Mapped[str] = mapped_column(Text, default="")
    evaluation_count: Mapped[int] = mapped_column(Integer, default=0)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_by: Mapped[str | None] = mapped_column(String(200), default=None)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __mapper_args__ = {"version_id_col": version}


class CustomEmail(Base):
    __tablename__ = "custom_emails"
    __table_args__ = (
        UniqueConstraint("startup_id", "round_name", "communication_type", name="uq_custom_email_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(20), nullable=False)
    communication_type: Mapped[str] = mapped_column(String(30), nullable=False)
    custom_subject: Mapped[str] = mapped_column(Text, default="")
    custom_body: Mapped[str] = mapped_column(Text, default="")
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_by: Mapped[str | None] = mapped_column(String(200), default=None)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __mapper_args__ = {"version_id_col": version}


class EmailCommunication(Base):
    __tablename__ = "email_communications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(20), nullable=False)
    communication_type: Mapped[str] = mapped_column(String(30), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(300), default="")
    subject: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | sent | delivered | opened | clicked | bounced | failed
    provider_message_id: Mapped[str | None] = mapped_column(String(200), default=None, index=True)
    error_message: Mapped[str] = mapped_column(Text, default="")
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    label: Mapped[str] = mapped_column(String(200), default="")
    subject_template: Mapped[str] = mapped_column(Text, default="")
    body_template: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
