"""
Lifecycle Service Base — Shared plumbing for the agreement workflows.

Every workflow writes its primary state change to the document store
first and only then records side effects: an audit entry in the family's
activity feed and notifications for the people involved. Side effects are
best-effort. A failing sink is logged and never undoes or fails the
primary write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from family_compact.charter.schema import AuditEntry, Notification, NotificationType, utc_now
from family_compact.governance.errors import NotFound
from family_compact.ledger.store import DocumentStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class LifecycleService:
    """
    Base class for store-backed workflows.

    Subclasses receive every collaborator explicitly; none are looked up
    from module globals.
    """

    def __init__(
        self,
        store: DocumentStore,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

    async def _load(self, collection: str, doc_id: str, model: type[ModelT], label: str) -> ModelT:
        """Read and validate one document, raising NotFound when it is missing."""
        doc = await self.store.get(collection, doc_id) if doc_id else None
        if doc is None:
            raise NotFound(f"{label} not found")
        return model.model_validate(doc)

    def _record(
        self,
        family_id: str,
        entry_type: str,
        actor_id: str | None,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """Append to the activity feed. Returns None when the ledger is unavailable."""
        if self.ledger is None:
            logger.warning("No audit ledger configured, %s not recorded", entry_type)
            return None

        try:
            return self.ledger.append(
                family_id=family_id,
                entry_type=entry_type,
                actor_id=actor_id,
                description=description,
                metadata=metadata,
            )
        except Exception as e:
            logger.error("Failed to record %s for family %s: %s", entry_type, family_id, e)
            return None

    async def _notify(
        self,
        family_id: str,
        recipient_id: str | None,
        type: NotificationType,
        message: tuple[str, str],
        data: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Queue a notification; failures are logged, not raised."""
        if self.notifier is None or not recipient_id:
            return None

        title, body = message
        try:
            return await self.notifier.notify(
                family_id=family_id,
                recipient_id=recipient_id,
                type=type,
                title=title,
                body=body,
                data=data,
            )
        except Exception as e:
            logger.error(
                "Failed to notify %s (%s) in family %s: %s",
                recipient_id, type.value, family_id, e,
            )
            return None
