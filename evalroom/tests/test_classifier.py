"""Tests for invitation lifecycle classification and display labels."""
from __future__ import annotations

import itertools
from datetime import datetime

import pytest

from evalroom.classifier import (
    BUCKET_LABELS, Bucket, bucket_invitations, classify, classify_assignment, display_status,
)
from evalroom.models import Assignment, CalendarInvitation

INVITATION_STATUSES = ("scheduled", "completed", "cancelled", "rescheduled", "conflict")
MATCHING_STATUSES = ("unmatched", "auto_matched", "manual_matched", "rescheduled", "cancelled", "conflict")


def _inv(**kwargs) -> CalendarInvitation:
    defaults = dict(
        calendar_uid="uid", status="scheduled", matching_status="unmatched",
        manual_assignment_needed=False, event_start_date=datetime(2025, 3, 1, 10),
    )
    defaults.update(kwargs)
    return CalendarInvitation(**defaults)


class TestClassify:
    def test_every_combination_yields_one_bucket(self):
        for status, matching, needed, start in itertools.product(
            INVITATION_STATUSES, MATCHING_STATUSES, (True, False), (None, datetime(2025, 1, 1)),
        ):
            inv = _inv(status=status, matching_status=matching,
                       manual_assignment_needed=needed, event_start_date=start)
            assert isinstance(classify(inv), Bucket)

    def test_needs_assignment_overrides_completed(self):
        inv = _inv(manual_assignment_needed=True, status="completed")
        assert classify(inv) == Bucket.NEEDS_ASSIGNMENT

    def test_needs_assignment_overrides_cancelled(self):
        inv = _inv(manual_assignment_needed=True, status="cancelled", matching_status="cancelled")
        assert classify(inv) == Bucket.NEEDS_ASSIGNMENT

    def test_rescheduled_outranks_matched(self):
        inv = _inv(matching_status="rescheduled", status="scheduled")
        assert classify(inv) == Bucket.RESCHEDULED

    def test_rescheduled_status_alone(self):
        inv = _inv(matching_status="manual_matched", status="rescheduled")
        assert classify(inv) == Bucket.RESCHEDULED

    def test_rescheduled_outranks_cancelled(self):
        inv = _inv(matching_status="rescheduled", status="cancelled")
        assert classify(inv) == Bucket.RESCHEDULED

    @pytest.mark.parametrize("status,matching", [
        ("cancelled", "manual_matched"),
        ("scheduled", "cancelled"),
    ])
    def test_cancelled(self, status, matching):
        assert classify(_inv(status=status, matching_status=matching)) == Bucket.CANCELLED

    def test_cancelled_outranks_completed(self):
        inv = _inv(status="completed", matching_status="cancelled")
        assert classify(inv) == Bucket.CANCELLED

    def test_completed(self):
        assert classify(_inv(status="completed", matching_status="manual_matched")) == Bucket.COMPLETED

    def test_scheduled_needs_a_date(self):
        assert classify(_inv(matching_status="auto_matched")) == Bucket.SCHEDULED
        assert classify(_inv(event_start_date=None)) == Bucket.PENDING

    def test_conflict_status_with_date_is_scheduled(self):
        assert classify(_inv(status="conflict", matching_status="conflict")) == Bucket.SCHEDULED


class TestBucketInvitations:
    def test_all_buckets_present(self):
        grouped = bucket_invitations([])
        assert set(grouped) == set(Bucket)
        assert all(v == [] for v in grouped.values())

    def test_groups_by_bucket(self):
        a = _inv(calendar_uid="a", manual_assignment_needed=True)
        b = _inv(calendar_uid="b", status="completed")
        c = _inv(calendar_uid="c")
        grouped = bucket_invitations([a, b, c])
        assert grouped[Bucket.NEEDS_ASSIGNMENT] == [a]
        assert grouped[Bucket.COMPLETED] == [b]
        assert grouped[Bucket.SCHEDULED] == [c]


class TestAssignmentDisplay:
    def test_completed_date_wins(self):
        a = Assignment(status="scheduled", meeting_completed_date=datetime(2025, 1, 2))
        assert classify_assignment(a) == Bucket.COMPLETED

    def test_cancelled(self):
        assert classify_assignment(Assignment(status="cancelled")) == Bucket.CANCELLED

    def test_date_means_scheduled(self):
        a = Assignment(status="assigned", meeting_scheduled_date=datetime(2025, 1, 2))
        assert classify_assignment(a) == Bucket.SCHEDULED

    def test_plain_assignment_is_pending(self):
        assert classify_assignment(Assignment(status="assigned")) == Bucket.PENDING


class TestDisplayStatus:
    def test_scheduled_reads_invited(self):
        assert display_status("scheduled") == "Invited"

    def test_completed_depends_on_context(self):
        assert display_status("completed") == "Confirmed"
        assert display_status("completed", context="calendar") == "Scheduled"

    def test_labels_do_not_change_classification(self):
        inv = _inv(status="completed", matching_status="manual_matched")
        display_status(inv.status, context="calendar")
        assert classify(inv) == Bucket.COMPLETED

    def test_every_bucket_has_label(self):
        assert set(BUCKET_LABELS) == set(Bucket)
