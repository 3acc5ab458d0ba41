"""
Family Compact — Composition root and maintenance sweeps.

Builds every workflow once, with its collaborators passed in explicitly:
1. Document store and audit ledger on a shared engine
2. Notification dispatcher and custody lookup
3. Activation engine, co-parent gate, rejection tracker
4. Proposal workflow, renewal service and review requests

Nothing here runs on a timer. The proposal 14-day window, the agreement
grace period and the review request window are applied by the ``sweep``
command, which is safe to re-run:

    python -m family_compact.orchestrator sweep --family-id fam-1 --family-id fam-2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from family_compact.charter.schema import utc_now
from family_compact.config import settings
from family_compact.governance.activation import AgreementActivationEngine
from family_compact.governance.coparent import CoParentApprovalGate, StoreCustodyLookup
from family_compact.governance.escalation import EscalationHandler, RejectionEscalationTracker
from family_compact.governance.expiry import ExpiryPolicy
from family_compact.governance.notifications import NotificationDispatcher
from family_compact.governance.proposals import ProposalWorkflow
from family_compact.governance.renewal import RenewalService
from family_compact.governance.review_requests import AgreementReviewService
from family_compact.ledger.models import create_store_engine, initialize
from family_compact.ledger.service import AuditLedger
from family_compact.ledger.store import DocumentStore

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")


@dataclass
class CompactServices:
    """Every workflow, wired to the same store, ledger and clock."""

    store: DocumentStore
    ledger: AuditLedger
    notifier: NotificationDispatcher
    activation: AgreementActivationEngine
    gate: CoParentApprovalGate
    escalation: RejectionEscalationTracker
    proposals: ProposalWorkflow
    renewals: RenewalService
    reviews: AgreementReviewService
    expiry: ExpiryPolicy


def build_services(
    database_url: str | None = None,
    clock: Callable[[], datetime] = utc_now,
    escalation_handler: EscalationHandler | None = None,
) -> CompactServices:
    """Create the engine and tables, then construct each service once."""
    engine = create_store_engine(database_url or settings.database_url, echo=settings.database_echo)
    initialize(engine)

    store = DocumentStore(engine)
    ledger = AuditLedger(engine, clock=clock)
    notifier = NotificationDispatcher(store, clock=clock)
    expiry = ExpiryPolicy()

    activation = AgreementActivationEngine(
        store, ledger=ledger, notifier=notifier, clock=clock, expiry_policy=expiry,
    )
    gate = CoParentApprovalGate(
        store, StoreCustodyLookup(store), ledger=ledger, notifier=notifier, clock=clock,
    )
    escalation = RejectionEscalationTracker(
        store, ledger=ledger, notifier=notifier, clock=clock,
        escalation_handler=escalation_handler,
    )
    proposals = ProposalWorkflow(
        store, gate, activation, escalation, ledger=ledger, notifier=notifier, clock=clock,
    )
    renewals = RenewalService(store, activation, ledger=ledger, notifier=notifier, clock=clock)
    reviews = AgreementReviewService(
        store, gate.custody, activation, escalation, ledger=ledger, notifier=notifier, clock=clock,
    )

    return CompactServices(
        store=store,
        ledger=ledger,
        notifier=notifier,
        activation=activation,
        gate=gate,
        escalation=escalation,
        proposals=proposals,
        renewals=renewals,
        reviews=reviews,
        expiry=expiry,
    )


async def run_sweep(services: CompactServices, family_ids: list[str]) -> dict[str, dict[str, int]]:
    """
    Expire overdue proposals, lapsed agreements and unanswered review
    requests for each family.

    A failing family is logged and skipped so the others still run.

    Returns:
        Per-family counts:
        {"fam-1": {"proposals": 2, "agreements": 0, "review_requests": 0}}.
    """
    log = structlog.get_logger()
    results: dict[str, dict[str, int]] = {}

    for family_id in family_ids:
        structlog.contextvars.bind_contextvars(family_id=family_id)
        try:
            proposals = await services.proposals.expire_sweep(family_id)
            agreements = await services.activation.expire_lapsed(family_id)
            review_requests = await services.reviews.expire_sweep(family_id)
        except Exception as e:
            log.exception("family_compact.sweep.family_failed", error=str(e))
            continue
        finally:
            structlog.contextvars.unbind_contextvars("family_id")

        results[family_id] = {
            "proposals": proposals,
            "agreements": agreements,
            "review_requests": review_requests,
        }
        log.info(
            "family_compact.sweep.family_done",
            family_id=family_id,
            proposals_expired=proposals,
            agreements_expired=agreements,
            review_requests_expired=review_requests,
        )

    return results


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Family Compact maintenance commands")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    sweep = subcommands.add_parser(
        "sweep", help="Expire overdue proposals, lapsed agreements and review requests",
    )
    sweep.add_argument(
        "--family-id",
        action="append",
        required=True,
        dest="family_ids",
        help="Family to sweep (repeatable)",
    )
    args = parser.parse_args(argv)

    configure_logging()
    log = structlog.get_logger()

    services = build_services(args.database_url)
    log.info("family_compact.sweep.started", families=len(args.family_ids))

    results = await run_sweep(services, args.family_ids)

    log.info(
        "family_compact.sweep.finished",
        families_swept=len(results),
        families_failed=len(args.family_ids) - len(results),
        proposals_expired=sum(r["proposals"] for r in results.values()),
        agreements_expired=sum(r["agreements"] for r in results.values()),
        review_requests_expired=sum(r["review_requests"] for r in results.values()),
    )
    return 0 if len(results) == len(args.family_ids) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
