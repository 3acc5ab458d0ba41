"""
Tests for the expiry policy.

Validates:
- Whole-day countdown with floor rounding
- Warning level thresholds
- Grace period boundaries and monitoring
- Annual review for agreements with and without expiry
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from family_compact.charter.schema import Agreement, GracePeriodStatus, WarningLevel
from family_compact.governance.expiry import ExpiryPolicy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return ExpiryPolicy(warning_days=30, critical_days=7, grace_period_days=14, annual_review_days=365)


class TestDaysUntilExpiry:

    def test_no_expiry(self, policy):
        assert policy.days_until_expiry(None, NOW) is None

    @pytest.mark.parametrize(
        "delta, expected",
        [
            (timedelta(days=10), 10),
            (timedelta(hours=36), 1),
            (timedelta(hours=1), 0),
            (timedelta(0), 0),
            (timedelta(hours=-1), -1),
            (timedelta(days=-3, hours=-1), -4),
        ],
    )
    def test_floor_rounding(self, policy, delta, expected):
        assert policy.days_until_expiry(NOW + delta, NOW) == expected


class TestWarningLevel:

    @pytest.mark.parametrize(
        "days, level",
        [
            (60, WarningLevel.NONE),
            (31, WarningLevel.NONE),
            (30, WarningLevel.WARNING),
            (8, WarningLevel.WARNING),
            (7, WarningLevel.CRITICAL),
            (0, WarningLevel.CRITICAL),
            (-1, WarningLevel.EXPIRED),
        ],
    )
    def test_thresholds(self, policy, days, level):
        assert policy.warning_level(NOW + timedelta(days=days), NOW) == level

    def test_no_expiry_never_warns(self, policy):
        assert policy.warning_level(None, NOW) == WarningLevel.NONE

    def test_custom_thresholds(self):
        strict = ExpiryPolicy(warning_days=60, critical_days=14)
        assert strict.warning_level(NOW + timedelta(days=45), NOW) == WarningLevel.WARNING
        assert strict.warning_level(NOW + timedelta(days=10), NOW) == WarningLevel.CRITICAL


class TestGracePeriod:

    def test_before_expiry(self, policy):
        expiry = NOW + timedelta(days=1)
        assert policy.grace_period_status(expiry, NOW) == GracePeriodStatus.NOT_STARTED
        assert policy.grace_period_status(NOW, NOW) == GracePeriodStatus.NOT_STARTED

    def test_within_grace(self, policy):
        expiry = NOW - timedelta(days=3)
        assert policy.grace_period_status(expiry, NOW) == GracePeriodStatus.ACTIVE
        assert policy.is_monitoring_active(expiry, NOW)

    def test_last_day_of_grace_is_inclusive(self, policy):
        expiry = NOW - timedelta(days=14)
        assert policy.grace_period_status(expiry, NOW) == GracePeriodStatus.ACTIVE

    def test_after_grace(self, policy):
        expiry = NOW - timedelta(days=14, seconds=1)
        assert policy.grace_period_status(expiry, NOW) == GracePeriodStatus.EXPIRED
        assert not policy.is_monitoring_active(expiry, NOW)

    def test_no_expiry_monitors_forever(self, policy):
        assert policy.grace_period_status(None, NOW) == GracePeriodStatus.NOT_STARTED
        assert policy.is_monitoring_active(None, NOW)


class TestAnnualReview:

    def make(self, **kwargs) -> Agreement:
        return Agreement(family_id="fam-1", created_by="parent-a", **kwargs)

    def test_due_a_year_after_creation(self, policy):
        agreement = self.make(created_at=NOW - timedelta(days=365))
        assert policy.annual_review_due(agreement, NOW)

    def test_not_due_before_a_year(self, policy):
        agreement = self.make(created_at=NOW - timedelta(days=364))
        assert not policy.annual_review_due(agreement, NOW)

    def test_last_review_resets_clock(self, policy):
        agreement = self.make(
            created_at=NOW - timedelta(days=800),
            last_review_date=NOW - timedelta(days=100),
        )
        assert not policy.annual_review_due(agreement, NOW)

    def test_applies_without_expiry(self, policy):
        agreement = self.make(created_at=NOW - timedelta(days=400), expiry_date=None)
        assert policy.warning_level(agreement.expiry_date, NOW) == WarningLevel.NONE
        assert policy.annual_review_due(agreement, NOW)
