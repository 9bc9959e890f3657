"""
Tests for reviewer roles and organisation-wide participation analytics.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from participation.analytics import participation_analytics
from participation.models import EntryStatus, Member, MemberRole, ParticipationCategory
from participation.roles import can_approve, has_permission, is_admin
from participation.service import ParticipationLedger, ValidationError


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
ALICE = UUID("550e8400-e29b-41d4-a716-446655440000")
BOB = UUID("660e8400-e29b-41d4-a716-446655440001")


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestRoles:
    """Tests for the reviewer role hierarchy."""

    @pytest.mark.parametrize("role", [MemberRole.WEB_STEWARD, MemberRole.BOARD_CHAIR])
    def test_admin_roles(self, role):
        """Test board chair and above are admins."""
        assert is_admin(role)

    @pytest.mark.parametrize("role", [MemberRole.COMMITTEE_LEADER, MemberRole.STEWARD, MemberRole.RESIDENT])
    def test_non_admin_roles(self, role):
        """Test roles below board chair are not admins."""
        assert not is_admin(role)

    def test_hierarchy(self):
        """Test higher roles inherit lower permissions."""
        assert has_permission(MemberRole.COMMITTEE_LEADER, MemberRole.CONTENT_MODERATOR)
        assert not has_permission(MemberRole.PARTNER, MemberRole.STEWARD)

    def test_admin_cannot_approve_own_entry(self):
        """Test admins may not approve their own entries."""
        ledger = ParticipationLedger()
        entry = ledger.record_entry(ALICE, 2, "Other", "Self report")

        assert not can_approve(Member(id=ALICE, role=MemberRole.WEB_STEWARD), entry)
        assert can_approve(Member(id=BOB, role=MemberRole.WEB_STEWARD), entry)


class TestParticipationAnalytics:
    """Tests for organisation-wide analytics."""

    def _ledger(self):
        clock = FixedClock(NOW - timedelta(days=60))
        ledger = ParticipationLedger(clock=clock)

        # Outside a 30 day window.
        old = ledger.record_entry(ALICE, 20, "Outreach", "Old campaign")
        ledger.approve(old.id)

        clock.now = NOW - timedelta(days=5)
        for member_id, hours, category in [
            (ALICE, 4, "Mentoring"),
            (ALICE, 3, "Outreach"),
            (BOB, 8, "Mentoring"),
        ]:
            entry = ledger.record_entry(member_id, hours, category, "Recent work")
            ledger.approve(entry.id)
        ledger.record_entry(BOB, 6, "Other", "Awaiting review")
        rejected = ledger.record_entry(ALICE, 2, "Other", "Duplicate")
        ledger.reject(rejected.id)
        return ledger

    def test_totals_count_approved_entries_in_window(self):
        """Test totals only count approved entries in the period."""
        result = participation_analytics(self._ledger(), period_days=30, now=NOW)

        assert result.period == 30
        assert result.total_hours == Decimal("15")
        assert result.total_logs == 3

    def test_hours_by_category(self):
        """Test approved hours are grouped by category."""
        result = participation_analytics(self._ledger(), period_days=30, now=NOW)

        by_category = {c.category: (c.hours, c.count) for c in result.hours_by_category}
        assert by_category == {
            ParticipationCategory.MENTORING: (Decimal("12"), 2),
            ParticipationCategory.OUTREACH: (Decimal("3"), 1),
        }

    def test_count_by_status_includes_every_entry(self):
        """Test status counts include every entry in the period."""
        result = participation_analytics(self._ledger(), period_days=30, now=NOW)

        counts = {s.status: s.count for s in result.count_by_status}
        assert counts == {EntryStatus.APPROVED: 3, EntryStatus.PENDING: 1, EntryStatus.REJECTED: 1}

    def test_top_contributors_ordered_by_hours(self):
        """Test contributors are ranked by approved hours."""
        result = participation_analytics(self._ledger(), period_days=30, now=NOW)

        assert [(c.member_id, c.total_hours) for c in result.top_contributors] == [
            (BOB, Decimal("8")),
            (ALICE, Decimal("7")),
        ]

    def test_wider_window_includes_older_entries(self):
        """Test a longer period reaches older entries."""
        result = participation_analytics(self._ledger(), period_days=90, now=NOW)

        assert result.total_hours == Decimal("35")
        assert result.top_contributors[0].member_id == ALICE

    def test_recent_logs_capped(self):
        """Test recent logs are capped at ten."""
        ledger = ParticipationLedger(clock=FixedClock(NOW))
        for _ in range(12):
            ledger.record_entry(uuid4(), 1, "Other", "Bulk")

        result = participation_analytics(ledger, period_days=1, now=NOW)

        assert len(result.recent_logs) == 10
        assert result.total_logs == 0

    def test_period_must_be_positive(self):
        """Test a zero-day period is rejected."""
        with pytest.raises(ValidationError):
            participation_analytics(ParticipationLedger(), period_days=0)

    @pytest.mark.parametrize("period", [3651, 1000000])
    def test_period_capped(self, period):
        """Test periods beyond ten years are rejected instead of overflowing the date."""
        with pytest.raises(ValidationError) as exc_info:
            participation_analytics(ParticipationLedger(), period_days=period, now=NOW)

        assert "period" in exc_info.value.errors
