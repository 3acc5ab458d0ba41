"""Shared fixtures: in-memory database, services and a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from family_compact.charter.schema import ProposalChange
from family_compact.ledger.models import create_store_engine, initialize
from family_compact.ledger.service import AuditLedger
from family_compact.ledger.store import CHILDREN, DocumentStore
from family_compact.orchestrator import build_services

FAMILY = "fam-1"
CHILD = "child-1"
PARENT_A = "parent-a"
PARENT_B = "parent-b"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingLedger:
    """Audit sink that always fails."""

    def append(self, **kwargs):
        raise RuntimeError("ledger unavailable")


class FailingNotifier:
    """Notification sink that always fails."""

    async def notify(self, **kwargs):
        raise RuntimeError("notifications unavailable")


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine():
    engine = create_store_engine("sqlite://")
    initialize(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return DocumentStore(engine)


@pytest.fixture
def ledger(engine, clock):
    return AuditLedger(engine, clock=clock)


@pytest.fixture
def services(clock):
    services = build_services("sqlite://", clock=clock)
    yield services
    services.store.engine.dispose()


async def seed_child(
    store: DocumentStore,
    custody_type: str = "shared",
    guardians: list[tuple[str, str]] | None = None,
    child_id: str = CHILD,
    family_id: str = FAMILY,
) -> None:
    if guardians is None:
        guardians = [(PARENT_A, "Alex"), (PARENT_B, "Blair")]
    await store.set(CHILDREN, child_id, {
        "family_id": family_id,
        "custody_arrangement": {"custody_type": custody_type},
        "guardians": [{"uid": uid, "display_name": name} for uid, name in guardians],
    })


async def signed_draft(services, family_id: str = FAMILY, **kwargs):
    draft = await services.activation.create_draft(
        family_id, created_by=PARENT_A, child_id=CHILD, terms={"daily_minutes": 90}, **kwargs,
    )
    return await services.activation.record_signing_status(family_id, draft.id, "complete")


def screen_time_change(new_value: int = 90) -> list[ProposalChange]:
    return [
        ProposalChange(
            section_id="screen-time",
            section_name="Screen time",
            field_path="daily_minutes",
            old_value=60,
            new_value=new_value,
        )
    ]
