"""
Document Store — Family-scoped JSON documents with transactional updates.

The workflows persist every aggregate (agreements, proposals, renewals,
rejection patterns, notifications) as a JSON document in a named
collection. The store offers:

- get / set / add / update on single documents (last write wins)
- query by collection and family with simple field filters
- ``transaction()`` for multi-document read-modify-write

All operations are serialised within the process by an ``asyncio.Lock``;
across processes the database's own transaction isolation applies. Inside
a transaction use only the ``Transaction`` handle, never the store itself.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import operator
import re
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, NamedTuple
from uuid import uuid4

from pydantic_core import to_jsonable_python
from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from family_compact.governance.errors import StoreError
from family_compact.ledger.models import DocumentDB

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Collections
# ════════════════════════════════════════════════════════════════

AGREEMENTS = "agreements"
PROPOSALS = "proposals"
PROPOSAL_RESPONSES = "proposalResponses"
RENEWALS = "renewals"
REJECTION_PATTERNS = "rejectionPatterns"
REJECTION_EVENTS = "rejectionEvents"
ESCALATION_EVENTS = "escalationEvents"
NOTIFICATIONS = "notifications"
CHILDREN = "children"
REVIEW_REQUESTS = "agreementReviewRequests"


# ════════════════════════════════════════════════════════════════
# Filters
# ════════════════════════════════════════════════════════════════

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda stored, values: stored in values,
}

_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T")


class FieldFilter(NamedTuple):
    """A single ``field op value`` condition; dotted fields reach into sub-documents."""

    field: str
    op: str
    value: Any


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _normalize(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in value]
    return value


def _resolve(doc: dict[str, Any], field: str) -> Any:
    current: Any = doc
    for part in field.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _matches(doc: dict[str, Any], flt: FieldFilter) -> bool:
    if flt.op not in _OPERATORS:
        raise ValueError(f"Unsupported filter operator: {flt.op}")

    stored = _resolve(doc, flt.field)
    expected = _normalize(flt.value)

    if isinstance(expected, datetime):
        if not isinstance(stored, str):
            return False
        stored = _parse_datetime(stored)
    elif stored is None and flt.op not in ("==", "!=", "in"):
        return False

    try:
        return bool(_OPERATORS[flt.op](stored, expected))
    except TypeError:
        return False


def _sort_key(field: str) -> Callable[[dict[str, Any]], tuple[int, Any]]:
    def key(doc: dict[str, Any]) -> tuple[int, Any]:
        value = _resolve(doc, field)
        if isinstance(value, str) and _ISO_DATETIME.match(value):
            value = _parse_datetime(value)
        return (value is None, value)
    return key


def _to_document(data: Any) -> dict[str, Any]:
    document = to_jsonable_python(data)
    if not isinstance(document, dict):
        raise StoreError(f"Documents must serialise to an object, got {type(data).__name__}")
    return document


def _read(row: DocumentDB) -> dict[str, Any]:
    return {**row.data, "id": row.doc_id}


# ════════════════════════════════════════════════════════════════
# Session-level operations (shared by store and transaction)
# ════════════════════════════════════════════════════════════════


def _get(session: Session, collection: str, doc_id: str) -> dict[str, Any] | None:
    row = session.get(DocumentDB, (collection, doc_id))
    return _read(row) if row is not None else None


def _set(session: Session, collection: str, doc_id: str, data: Any) -> None:
    document = _to_document(data)
    document.pop("id", None)
    row = session.get(DocumentDB, (collection, doc_id))
    if row is None:
        session.add(DocumentDB(
            collection=collection,
            doc_id=doc_id,
            family_id=document.get("family_id"),
            data=document,
        ))
    else:
        row.data = document
        row.family_id = document.get("family_id")


def _update(session: Session, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
    row = session.get(DocumentDB, (collection, doc_id))
    if row is None:
        raise StoreError(f"Cannot update missing document {collection}/{doc_id}")
    changes = _to_document(fields)
    changes.pop("id", None)
    row.data = {**row.data, **changes}


def _query(
    session: Session,
    collection: str,
    family_id: str | None,
    filters: Iterable[FieldFilter],
    order_by: str | None,
    descending: bool,
    limit: int | None,
) -> list[dict[str, Any]]:
    stmt = select(DocumentDB).where(DocumentDB.collection == collection)
    if family_id is not None:
        stmt = stmt.where(DocumentDB.family_id == family_id)

    docs = [_read(row) for row in session.execute(stmt).scalars().all()]
    for flt in filters:
        docs = [doc for doc in docs if _matches(doc, flt)]

    if order_by:
        present = [d for d in docs if _resolve(d, order_by) is not None]
        missing = [d for d in docs if _resolve(d, order_by) is None]
        present.sort(key=_sort_key(order_by), reverse=descending)
        docs = present + missing

    if limit is not None:
        docs = docs[:limit]
    return docs


# ════════════════════════════════════════════════════════════════
# Public API
# ════════════════════════════════════════════════════════════════


class Transaction:
    """Handle for reads and writes inside ``DocumentStore.transaction()``."""

    def __init__(self, session: Session) -> None:
        self._session = session

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return _get(self._session, collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: Any) -> None:
        _set(self._session, collection, doc_id, data)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        _update(self._session, collection, doc_id, fields)

    async def query(
        self,
        collection: str,
        family_id: str | None = None,
        filters: Iterable[FieldFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return _query(self._session, collection, family_id, filters, order_by, descending, limit)


class DocumentStore:
    """
    SQLAlchemy-backed document store.

    The methods are coroutines so the workflows can await them, but each
    call runs a synchronous SQLAlchemy session on the event loop thread
    and blocks it until the database answers, as ``AuditLedger`` does. That
    suits SQLite and a local Postgres behind a CLI or a sweep. A server
    handling many families at once should run the workflows off the loop
    (``asyncio.to_thread``) or swap in an ``AsyncEngine``-backed store.

    Usage:
        store = DocumentStore(engine)
        await store.set("agreements", agreement.id, agreement.model_dump(mode="json"))

        async with store.transaction() as tx:
            doc = await tx.get("agreements", agreement.id)
            await tx.update("agreements", agreement.id, {"status": "active"})
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the document with its ``id`` injected, or None."""
        async with self._lock:
            return self._run(lambda s: _get(s, collection, doc_id), write=False)

    async def set(self, collection: str, doc_id: str, data: Any) -> None:
        """Create or replace a document."""
        async with self._lock:
            self._run(lambda s: _set(s, collection, doc_id, data))

    async def add(self, collection: str, data: Any) -> str:
        """
        Store a new document and return its id.

        The document's own ``id`` is used when present, otherwise one is
        generated.
        """
        document = _to_document(data)
        doc_id = str(document.get("id") or uuid4().hex)
        async with self._lock:
            self._run(lambda s: _set(s, collection, doc_id, document))
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into an existing document."""
        async with self._lock:
            self._run(lambda s: _update(s, collection, doc_id, fields))

    async def query(
        self,
        collection: str,
        family_id: str | None = None,
        filters: Iterable[FieldFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Return documents in ``collection`` matching every filter.

        Documents missing the ``order_by`` field sort last in either
        direction.
        """
        filters = list(filters)
        async with self._lock:
            return self._run(
                lambda s: _query(s, collection, family_id, filters, order_by, descending, limit),
                write=False,
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Run a multi-document read-modify-write atomically.

        Commits when the block exits normally; any exception rolls back
        every staged write and propagates unchanged (SQLAlchemy failures
        are wrapped in ``StoreError``).
        """
        async with self._lock:
            session = self.SessionLocal()
            try:
                with session.begin():
                    yield Transaction(session)
            except SQLAlchemyError as e:
                logger.error("Store transaction failed: %s", e)
                raise StoreError(str(e)) from e
            finally:
                session.close()

    # ── Internal ────────────────────────────────────────────────

    def _run(self, operation: Callable[[Session], Any], write: bool = True) -> Any:
        try:
            with self.SessionLocal() as session:
                result = operation(session)
                if write:
                    session.commit()
                return result
        except SQLAlchemyError as e:
            logger.error("Store operation failed: %s", e)
            raise StoreError(str(e)) from e
