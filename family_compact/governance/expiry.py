"""
Expiry Policy — When an agreement warns, lapses and needs review.

Pure decisions over an agreement's ``expiry_date`` and
``last_review_date``; nothing here reads or writes the store. Every
function takes an optional ``now`` so callers and tests can pin the clock.

Timeline for an agreement with an expiry date E:

    ... E-30d ──── warning ──── E-7d ── critical ── E ── grace (14d) ── lapsed
                                                     │                  │
                                       monitoring continues      monitoring stops

A "no expiry" agreement never warns or lapses, but still comes up for
annual review.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from family_compact.charter.schema import Agreement, GracePeriodStatus, WarningLevel, utc_now
from family_compact.config import settings

SECONDS_PER_DAY = 86400


class ExpiryPolicy:
    """
    Expiry thresholds and the decisions derived from them.

    Thresholds default to configuration and can be overridden per instance.
    """

    def __init__(
        self,
        warning_days: int | None = None,
        critical_days: int | None = None,
        grace_period_days: int | None = None,
        annual_review_days: int | None = None,
    ) -> None:
        self.warning_days = settings.expiry_warning_days if warning_days is None else warning_days
        self.critical_days = settings.expiry_critical_days if critical_days is None else critical_days
        self.grace_period_days = (
            settings.grace_period_days if grace_period_days is None else grace_period_days
        )
        self.annual_review_days = (
            settings.annual_review_days if annual_review_days is None else annual_review_days
        )

    def days_until_expiry(self, expiry_date: datetime | None, now: datetime | None = None) -> int | None:
        """
        Signed whole days until expiry, negative once past.

        Partial days round down, so an agreement that expired an hour ago
        is at -1 and one expiring in 36 hours is at 1. None means no expiry.
        """
        if expiry_date is None:
            return None
        now = now or utc_now()
        return math.floor((expiry_date - now).total_seconds() / SECONDS_PER_DAY)

    def warning_level(self, expiry_date: datetime | None, now: datetime | None = None) -> WarningLevel:
        days = self.days_until_expiry(expiry_date, now)
        if days is None:
            return WarningLevel.NONE
        if days < 0:
            return WarningLevel.EXPIRED
        if days <= self.critical_days:
            return WarningLevel.CRITICAL
        if days <= self.warning_days:
            return WarningLevel.WARNING
        return WarningLevel.NONE

    def grace_period_status(
        self, expiry_date: datetime | None, now: datetime | None = None
    ) -> GracePeriodStatus:
        """
        Position relative to the grace period that follows expiry.

        ``active`` covers the first ``grace_period_days`` after expiry
        (inclusive); anything later is ``expired``.
        """
        if expiry_date is None:
            return GracePeriodStatus.NOT_STARTED
        now = now or utc_now()
        if now <= expiry_date:
            return GracePeriodStatus.NOT_STARTED
        if now - expiry_date <= timedelta(days=self.grace_period_days):
            return GracePeriodStatus.ACTIVE
        return GracePeriodStatus.EXPIRED

    def is_monitoring_active(self, expiry_date: datetime | None, now: datetime | None = None) -> bool:
        """Monitoring runs through the grace period and stops once it ends."""
        return self.grace_period_status(expiry_date, now) != GracePeriodStatus.EXPIRED

    def annual_review_due(self, agreement: Agreement, now: datetime | None = None) -> bool:
        """True once a year has passed since the last review (or creation)."""
        now = now or utc_now()
        reviewed = agreement.last_review_date or agreement.created_at
        return now - reviewed >= timedelta(days=self.annual_review_days)
