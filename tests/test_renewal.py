"""
Tests for renewals.

Validates:
- Pure transitions: consent ordering, write-once, premature completion
- New expiry computed from the current expiry (or now), month-end clamping
- Cancelled and completed renewals are frozen
- Store-backed service updates the agreement on completion
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from family_compact.charter.schema import (
    AgreementStatus,
    NotificationType,
    RenewalDuration,
    RenewalMode,
    RenewalStatus,
    RenewalStep,
)
from family_compact.governance import renewal
from family_compact.governance.errors import NotActivatable, NotFound

from conftest import CHILD, FAMILY, PARENT_A, signed_draft

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestNewExpiry:

    def test_extends_from_current_expiry(self):
        current = datetime(2026, 6, 30, tzinfo=timezone.utc)
        state = renewal.initiate("agr-1", RenewalMode.RENEW_AS_IS, RenewalDuration.SIX_MONTHS, current, NOW)
        assert state.new_expiry_date == datetime(2026, 12, 30, tzinfo=timezone.utc)

    def test_extends_from_now_without_current_expiry(self):
        state = renewal.initiate("agr-1", RenewalMode.RENEW_AS_IS, RenewalDuration.ONE_YEAR, None, NOW)
        assert state.new_expiry_date == NOW.replace(year=2027)

    def test_no_expiry_duration(self):
        state = renewal.initiate(
            "agr-1", RenewalMode.RENEW_WITH_CHANGES, RenewalDuration.NO_EXPIRY, NOW, NOW,
        )
        assert state.new_expiry_date is None
        assert state.status == RenewalStatus.PARENT_INITIATED

    @pytest.mark.parametrize(
        "start, months, expected",
        [
            (datetime(2026, 1, 31), 1, datetime(2026, 2, 28)),
            (datetime(2028, 1, 31), 1, datetime(2028, 2, 29)),
            (datetime(2026, 11, 30), 3, datetime(2027, 2, 28)),
            (datetime(2026, 8, 31), 12, datetime(2027, 8, 31)),
        ],
    )
    def test_add_months_clamps_day(self, start, months, expected):
        assert renewal.add_months(start, months) == expected

    def test_accepts_raw_string_values(self):
        state = renewal.initiate("agr-1", "renew-as-is", "3-months", None, NOW)
        assert state.mode == RenewalMode.RENEW_AS_IS
        assert state.new_expiry_date == datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


class TestConsent:

    @pytest.fixture
    def started(self):
        return renewal.initiate("agr-1", RenewalMode.RENEW_AS_IS, RenewalDuration.ONE_YEAR, None, NOW)

    def test_parent_then_child_then_complete(self, started):
        assert renewal.next_step(started) == RenewalStep.PARENT_SIGN

        signed = renewal.process_parent_consent(started, "Alex", NOW)
        assert signed.status == RenewalStatus.CHILD_CONSENTING
        assert renewal.next_step(signed) == RenewalStep.CHILD_CONSENT

        both = renewal.process_child_consent(signed, "Kai", NOW)
        assert renewal.can_complete(both)
        assert renewal.next_step(both) == RenewalStep.COMPLETE

        done = renewal.complete(both, NOW)
        assert done.status == RenewalStatus.COMPLETED
        assert done.completed_at == NOW
        assert renewal.next_step(done) == RenewalStep.DONE

    def test_child_consent_before_parent_is_noop(self, started):
        assert renewal.process_child_consent(started, "Kai", NOW) is started

    def test_parent_consent_is_write_once(self, started):
        signed = renewal.process_parent_consent(started, "Alex", NOW)
        again = renewal.process_parent_consent(signed, "Someone else", NOW + timedelta(hours=1))
        assert again is signed
        assert again.parent_consent.signature == "Alex"

    def test_child_consent_is_write_once(self, started):
        both = renewal.process_child_consent(renewal.process_parent_consent(started, "Alex"), "Kai")
        assert renewal.process_child_consent(both, "Other") is both

    def test_premature_complete_is_noop(self, started):
        assert renewal.complete(started, NOW) is started
        signed = renewal.process_parent_consent(started, "Alex", NOW)
        assert renewal.complete(signed, NOW) is signed

    def test_transitions_do_not_mutate_input(self, started):
        renewal.process_parent_consent(started, "Alex", NOW)
        assert started.parent_consent is None
        assert started.status == RenewalStatus.PARENT_INITIATED

    def test_cancelled_renewal_is_frozen(self, started):
        cancelled = renewal.cancel(started, NOW)
        assert cancelled.status == RenewalStatus.CANCELLED
        assert renewal.next_step(cancelled) == RenewalStep.CANCELLED
        assert renewal.process_parent_consent(cancelled, "Alex") is cancelled
        assert renewal.cancel(cancelled) is cancelled

    def test_completed_renewal_cannot_be_cancelled(self, started):
        done = renewal.complete(
            renewal.process_child_consent(renewal.process_parent_consent(started, "Alex"), "Kai"),
        )
        assert renewal.cancel(done) is done


class TestRenewalService:

    async def active_agreement(self, services, **kwargs):
        draft = await signed_draft(services, **kwargs)
        return await services.activation.activate(FAMILY, draft.id)

    @pytest.mark.asyncio
    async def test_full_renewal_updates_agreement(self, services, clock):
        expiry = clock() + timedelta(days=20)
        agreement = await self.active_agreement(services, expiry_date=expiry)

        started = await services.renewals.start(FAMILY, agreement.id, duration=RenewalDuration.THREE_MONTHS)
        assert started.new_expiry_date == renewal.add_months(expiry, 3)

        await services.renewals.parent_consent(started.id, "Alex")
        to_child = await services.notifier.for_recipient(CHILD, FAMILY)
        assert [n.type for n in to_child] == [NotificationType.RENEWAL_REQUESTED]

        await services.renewals.child_consent(started.id, "Kai")
        clock.advance(days=1)
        done = await services.renewals.complete(started.id, actor_id=PARENT_A)
        assert done.status == RenewalStatus.COMPLETED

        updated = await services.activation.get(FAMILY, agreement.id)
        assert updated.status == AgreementStatus.ACTIVE
        assert updated.expiry_date == renewal.add_months(expiry, 3)
        assert updated.last_review_date == clock()

        entries = services.ledger.get_entries_by_type(FAMILY, "agreement_renewed")
        assert len(entries) == 1
        assert entries[0].actor_id == PARENT_A

        renewed_notes = [
            n for n in await services.notifier.for_recipient(PARENT_A, FAMILY)
            if n.type == NotificationType.AGREEMENT_RENEWED
        ]
        assert len(renewed_notes) == 1

    @pytest.mark.asyncio
    async def test_no_expiry_renewal_clears_expiry(self, services, clock):
        agreement = await self.active_agreement(services, expiry_date=clock() + timedelta(days=5))
        started = await services.renewals.start(
            FAMILY, agreement.id, duration=RenewalDuration.NO_EXPIRY,
        )
        await services.renewals.parent_consent(started.id, "Alex")
        await services.renewals.child_consent(started.id, "Kai")
        await services.renewals.complete(started.id)

        updated = await services.activation.get(FAMILY, agreement.id)
        assert updated.expiry_date is None
        assert not services.expiry.annual_review_due(updated, clock())

    @pytest.mark.asyncio
    async def test_complete_before_consents_changes_nothing(self, services):
        agreement = await self.active_agreement(services)
        started = await services.renewals.start(FAMILY, agreement.id)
        await services.renewals.child_consent(started.id, "Kai")

        result = await services.renewals.complete(started.id)
        assert result.status == RenewalStatus.PARENT_INITIATED
        assert result.child_consent is None
        assert (await services.activation.get(FAMILY, agreement.id)).last_review_date is None
        assert services.ledger.get_entries_by_type(FAMILY, "agreement_renewed") == []

    @pytest.mark.asyncio
    async def test_renewal_allowed_during_grace_period(self, services, clock):
        agreement = await self.active_agreement(services, expiry_date=clock() + timedelta(days=1))
        clock.advance(days=5)
        started = await services.renewals.start(FAMILY, agreement.id)
        assert started.status == RenewalStatus.PARENT_INITIATED

    @pytest.mark.asyncio
    async def test_only_active_agreements_renew(self, services):
        draft = await signed_draft(services)
        with pytest.raises(NotActivatable):
            await services.renewals.start(FAMILY, draft.id)
        with pytest.raises(NotFound):
            await services.renewals.start(FAMILY, "missing")

    @pytest.mark.asyncio
    async def test_cancel_persists(self, services):
        agreement = await self.active_agreement(services)
        started = await services.renewals.start(FAMILY, agreement.id)
        await services.renewals.cancel(started.id)
        stored = await services.renewals.get(started.id)
        assert stored.status == RenewalStatus.CANCELLED

        after = await services.renewals.parent_consent(started.id, "Alex")
        assert after.parent_consent is None

    @pytest.mark.asyncio
    async def test_superseded_agreement_is_not_renewed(self, services, clock):
        expiry = clock() + timedelta(days=20)
        agreement = await self.active_agreement(services, expiry_date=expiry)
        started = await services.renewals.start(FAMILY, agreement.id)
        await services.renewals.parent_consent(started.id, "Alex")
        await services.renewals.child_consent(started.id, "Kai")

        replacement = await signed_draft(services)
        await services.activation.activate(FAMILY, replacement.id)

        with pytest.raises(NotActivatable):
            await services.renewals.complete(started.id, actor_id=PARENT_A)

        superseded = await services.activation.get(FAMILY, agreement.id)
        assert superseded.status == AgreementStatus.SUPERSEDED
        assert superseded.expiry_date == expiry
        assert superseded.last_review_date is None
        assert (await services.renewals.get(started.id)).status == RenewalStatus.CANCELLED
        assert services.ledger.get_entries_by_type(FAMILY, "agreement_renewed") == []

    @pytest.mark.asyncio
    async def test_renew_with_changes_extends_terms_unchanged(self, services, clock):
        agreement = await self.active_agreement(services)
        started = await services.renewals.start(
            FAMILY, agreement.id, mode=RenewalMode.RENEW_WITH_CHANGES,
        )
        assert (await services.renewals.get(started.id)).mode == RenewalMode.RENEW_WITH_CHANGES

        await services.renewals.parent_consent(started.id, "Alex")
        await services.renewals.child_consent(started.id, "Kai")
        await services.renewals.complete(started.id)

        renewed = await services.activation.get(FAMILY, agreement.id)
        assert renewed.status == AgreementStatus.ACTIVE
        assert renewed.terms == agreement.terms
        assert renewed.expiry_date == started.new_expiry_date
