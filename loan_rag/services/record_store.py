# =============================================================================
# Record Store — System of Record for Loan Applications and Chat History
# =============================================================================
#
# Three interchangeable backends satisfy one async contract:
#   get_all / get_by_id / get_by_field / create / update
#   create_chat_message / get_chat_messages
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Same pattern as SearchIndex and LLMProvider. The retrieval engine's scan
# tier and the orchestrator only see RecordStore.
#
# DESIGN DECISION: The backend assigns identifiers.
#   - memory:        itertools.count (atomic under the GIL, store-owned)
#   - sql:           database autoincrement
#   - elasticsearch: uuid4 hex
# No process-wide mutable counters shared between stores.
#
# DESIGN DECISION: Not-found is a value, not an exception.
# get_by_id() and update() return None for unknown ids. Driver failures
# (connection refused, timeouts, server errors) are re-raised as
# BackendUnavailableError so the retrieval engine can advance tiers.
#
# ARCHITECTURE:
#   RecordStore (Protocol)
#   ├── InMemoryRecordStore       — dicts, development and tests
#   ├── SqlRecordStore            — async SQLAlchemy (PostgreSQL / SQLite)
#   ├── ElasticsearchRecordStore  — the search engine as system of record
#   ├── build_record_store()      — backend selected by config
#   └── reindex_from_store()      — bulk copy records into the search index
# =============================================================================

from __future__ import annotations

import itertools
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from loan_rag.config import Settings, settings
from loan_rag.db.engine import (
    build_async_engine,
    create_session_factory,
    get_async_engine,
    session_scope,
)
from loan_rag.db.models import Base, ChatMessageRow, LoanApplicationRow
from loan_rag.exceptions import (
    BackendUnavailableError,
    DuplicateApplicationError,
    ImmutableFieldError,
)
from loan_rag.models.records import ChatMessage, LoanRecord, NewLoanRecord
from loan_rag.services.search_index import SearchIndex, create_elasticsearch_client

logger = logging.getLogger(__name__)

# Maximum window Elasticsearch serves from a single search request.
_ES_MAX_WINDOW = 10_000

# Record attribute → search-index document field.
DOCUMENT_FIELDS: dict[str, str] = {
    "id": "id",
    "application_id": "applicationId",
    "customer_id": "customerId",
    "customer_name": "customerName",
    "customer_email": "customerEmail",
    "loan_type": "loanType",
    "amount": "amount",
    "term": "term",
    "interest_rate": "interestRate",
    "status": "status",
    "risk_score": "riskScore",
    "risk_level": "riskLevel",
    "purpose": "purpose",
    "description": "description",
    "notes": "notes",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}

# Analysed (full-text) fields; everything else is matched exactly.
_TEXT_FIELDS = {"customerName", "purpose", "description", "notes"}

_SERVER_FIELDS = {"id", "created_at", "updated_at"}


# ---------------------------------------------------------------------------
# Shared Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _check_field(field: str) -> None:
    if field not in DOCUMENT_FIELDS:
        raise ValueError(f"Unknown loan record field: {field}")


def apply_update(record: LoanRecord, partial: dict[str, Any]) -> LoanRecord:
    """
    Merge a partial update into a record and re-validate it.

    application_id is immutable. Server-assigned fields in `partial` are
    ignored. updated_at never moves backwards. A new risk_score without an
    explicit risk_level clears the stored level so it is derived again.
    """
    changes = {k: v for k, v in partial.items() if k not in _SERVER_FIELDS}
    for name in changes:
        _check_field(name)

    new_application_id = changes.get("application_id")
    if new_application_id is not None and new_application_id != record.application_id:
        raise ImmutableFieldError(
            f"application_id is immutable ({record.application_id!r})"
        )

    data = record.model_dump()
    data.update(changes)
    if "risk_score" in changes and "risk_level" not in changes:
        data["risk_level"] = None
    data["updated_at"] = max(_utcnow(), _aware(record.updated_at))
    return LoanRecord.model_validate(data)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class RecordStore(Protocol):
    """
    Protocol defining the record store interface.

    Concurrent reads are safe on every backend. Writes overwrite with
    last-write-wins semantics; there is no optimistic locking.
    """

    async def get_all(self, limit: int | None = None) -> list[LoanRecord]:
        """Return up to `limit` records (default: settings.record_scan_limit)."""
        ...

    async def get_by_id(self, record_id: str) -> LoanRecord | None:
        ...

    async def get_by_field(self, field: str, value: Any) -> list[LoanRecord]:
        """Exact-match lookup on one LoanRecord attribute."""
        ...

    async def create(self, record: NewLoanRecord) -> LoanRecord:
        """Raises DuplicateApplicationError if the application id is taken."""
        ...

    async def update(self, record_id: str, partial: dict[str, Any]) -> LoanRecord | None:
        """Raises ImmutableFieldError when changing application_id."""
        ...

    async def create_chat_message(
        self,
        user_id: str,
        message: str,
        response: str | None = None,
        context: list[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        ...

    async def get_chat_messages(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        """Chat history for one user, oldest first."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Dict-backed store. Optional seed records are created in order."""

    def __init__(self, records: Iterable[NewLoanRecord] | None = None) -> None:
        self._records: dict[str, LoanRecord] = {}
        self._application_ids: dict[str, str] = {}
        self._chat: list[ChatMessage] = []
        self._record_ids = itertools.count(1)
        self._chat_ids = itertools.count(1)

        for record in records or ():
            self._insert(record)

    def _insert(self, record: NewLoanRecord) -> LoanRecord:
        if record.application_id in self._application_ids:
            raise DuplicateApplicationError(
                f"Application {record.application_id} already exists"
            )
        now = _utcnow()
        data = record.model_dump(exclude={"id", "created_at", "updated_at"})
        stored = LoanRecord(
            id=str(next(self._record_ids)),
            created_at=getattr(record, "created_at", now),
            updated_at=getattr(record, "updated_at", now),
            **data,
        )
        self._records[stored.id] = stored
        self._application_ids[stored.application_id] = stored.id
        return stored

    async def get_all(self, limit: int | None = None) -> list[LoanRecord]:
        limit = settings.record_scan_limit if limit is None else limit
        return list(itertools.islice(self._records.values(), limit))

    async def get_by_id(self, record_id: str) -> LoanRecord | None:
        return self._records.get(str(record_id))

    async def get_by_field(self, field: str, value: Any) -> list[LoanRecord]:
        _check_field(field)
        return [r for r in self._records.values() if getattr(r, field) == value]

    async def create(self, record: NewLoanRecord) -> LoanRecord:
        stored = self._insert(record)
        logger.info("Created application %s (id=%s)", stored.application_id, stored.id)
        return stored

    async def update(self, record_id: str, partial: dict[str, Any]) -> LoanRecord | None:
        current = self._records.get(str(record_id))
        if current is None:
            return None
        updated = apply_update(current, partial)
        self._records[updated.id] = updated
        return updated

    async def create_chat_message(
        self,
        user_id: str,
        message: str,
        response: str | None = None,
        context: list[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        chat = ChatMessage(
            id=next(self._chat_ids),
            user_id=user_id,
            message=message,
            response=response,
            context=context or [],
        )
        self._chat.append(chat)
        return chat

    async def get_chat_messages(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        history = [m for m in self._chat if m.user_id == str(user_id)]
        return history[-limit:]


# ---------------------------------------------------------------------------
# Implementation 2: SQL (async SQLAlchemy)
# ---------------------------------------------------------------------------

_ROW_COLUMNS = (
    "application_id", "customer_id", "customer_name", "customer_email",
    "loan_type", "amount", "term", "interest_rate", "status", "risk_score",
    "risk_level", "purpose", "description", "notes",
)


def _row_to_record(row: LoanApplicationRow) -> LoanRecord:
    return LoanRecord(
        id=row.id,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        **{name: getattr(row, name) for name in _ROW_COLUMNS},
    )


def _row_to_chat(row: ChatMessageRow) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        user_id=row.user_id,
        message=row.message,
        response=row.response,
        context=row.context or [],
        timestamp=_aware(row.timestamp),
    )


class SqlRecordStore:
    """
    Relational store over async SQLAlchemy.

    One session per operation via session_scope(): commit on success,
    rollback on failure. Driver errors become BackendUnavailableError.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine or get_async_engine()
        self._session_factory = create_session_factory(self._engine)

    async def create_schema(self) -> None:
        """Create the tables if they do not exist."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def get_all(self, limit: int | None = None) -> list[LoanRecord]:
        limit = settings.record_scan_limit if limit is None else limit
        stmt = (
            select(LoanApplicationRow)
            .order_by(LoanApplicationRow.created_at.desc(), LoanApplicationRow.id.desc())
            .limit(limit)
        )
        try:
            async with session_scope(self._session_factory) as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_record(row) for row in rows]
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def get_by_id(self, record_id: str) -> LoanRecord | None:
        if not str(record_id).isdigit():
            return None
        try:
            async with session_scope(self._session_factory) as session:
                row = await session.get(LoanApplicationRow, int(record_id))
                return _row_to_record(row) if row else None
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def get_by_field(self, field: str, value: Any) -> list[LoanRecord]:
        _check_field(field)
        if field == "id":
            record = await self.get_by_id(value)
            return [record] if record else []
        column = getattr(LoanApplicationRow, field)
        stmt = select(LoanApplicationRow).where(column == value)
        try:
            async with session_scope(self._session_factory) as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_record(row) for row in rows]
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def create(self, record: NewLoanRecord) -> LoanRecord:
        now = _utcnow()
        row = LoanApplicationRow(
            created_at=now,
            updated_at=now,
            **{name: getattr(record, name) for name in _ROW_COLUMNS},
        )
        try:
            async with session_scope(self._session_factory) as session:
                existing = await session.execute(
                    select(LoanApplicationRow.id).where(
                        LoanApplicationRow.application_id == record.application_id,
                    )
                )
                if existing.first() is not None:
                    raise DuplicateApplicationError(
                        f"Application {record.application_id} already exists"
                    )
                session.add(row)
                await session.flush()
                stored = _row_to_record(row)
        except IntegrityError as e:
            raise DuplicateApplicationError(
                f"Application {record.application_id} already exists"
            ) from e
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

        logger.info("Created application %s (id=%s)", stored.application_id, stored.id)
        return stored

    async def update(self, record_id: str, partial: dict[str, Any]) -> LoanRecord | None:
        if not str(record_id).isdigit():
            return None
        try:
            async with session_scope(self._session_factory) as session:
                row = await session.get(LoanApplicationRow, int(record_id))
                if row is None:
                    return None
                updated = apply_update(_row_to_record(row), partial)
                for name in _ROW_COLUMNS:
                    setattr(row, name, getattr(updated, name))
                row.updated_at = updated.updated_at
                await session.flush()
                return updated
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def create_chat_message(
        self,
        user_id: str,
        message: str,
        response: str | None = None,
        context: list[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        row = ChatMessageRow(
            user_id=str(user_id),
            message=message,
            response=response,
            context=context or [],
            timestamp=_utcnow(),
        )
        try:
            async with session_scope(self._session_factory) as session:
                session.add(row)
                await session.flush()
                return _row_to_chat(row)
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e

    async def get_chat_messages(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        stmt = (
            select(ChatMessageRow)
            .where(ChatMessageRow.user_id == str(user_id))
            .order_by(ChatMessageRow.timestamp.desc(), ChatMessageRow.id.desc())
            .limit(limit)
        )
        try:
            async with session_scope(self._session_factory) as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_chat(row) for row in reversed(rows)]
        except (SQLAlchemyError, OSError) as e:
            raise BackendUnavailableError("sql", str(e)) from e


# ---------------------------------------------------------------------------
# Implementation 3: Elasticsearch
# ---------------------------------------------------------------------------


class ElasticsearchRecordStore:
    """
    Elasticsearch as the system of record.

    Records are stored as camelCase documents (LoanRecord.to_document),
    so the same index also serves the search tiers. Writes wait for the
    refresh so a created record is immediately searchable.
    """

    def __init__(
        self,
        client: AsyncElasticsearch,
        index_name: str | None = None,
        chat_index_name: str | None = None,
    ) -> None:
        self._client = client
        self._index = index_name or settings.loan_index_name
        self._chat_index = chat_index_name or settings.chat_index_name

    async def _search(self, index: str, **body: Any) -> list[dict[str, Any]]:
        try:
            response = await self._client.search(index=index, **body)
        except NotFoundError:
            # Index not created yet: nothing stored.
            return []
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e
        return response["hits"]["hits"]

    def _to_record(self, hit: dict[str, Any]) -> LoanRecord:
        return LoanRecord.from_document(hit["_source"], str(hit["_id"]))

    async def get_all(self, limit: int | None = None) -> list[LoanRecord]:
        limit = settings.record_scan_limit if limit is None else limit
        hits = await self._search(
            self._index,
            query={"match_all": {}},
            size=min(limit, _ES_MAX_WINDOW),
            sort=[{"createdAt": {"order": "desc", "unmapped_type": "date"}}],
        )
        return [self._to_record(hit) for hit in hits]

    async def get_by_id(self, record_id: str) -> LoanRecord | None:
        try:
            response = await self._client.get(index=self._index, id=str(record_id))
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e
        return LoanRecord.from_document(response["_source"], str(response["_id"]))

    async def get_by_field(self, field: str, value: Any) -> list[LoanRecord]:
        _check_field(field)
        doc_field = DOCUMENT_FIELDS[field]
        clause = "match_phrase" if doc_field in _TEXT_FIELDS else "term"
        hits = await self._search(
            self._index,
            query={clause: {doc_field: value}},
            size=_ES_MAX_WINDOW,
        )
        return [self._to_record(hit) for hit in hits]

    async def _put(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        try:
            await self._client.index(
                index=index, id=doc_id, document=document, refresh="wait_for",
            )
        except (ApiError, TransportError) as e:
            raise BackendUnavailableError("elasticsearch", str(e)) from e

    async def create(self, record: NewLoanRecord) -> LoanRecord:
        existing = await self._search(
            self._index,
            query={"term": {"applicationId": record.application_id}},
            size=1,
        )
        if existing:
            raise DuplicateApplicationError(
                f"Application {record.application_id} already exists"
            )

        now = _utcnow()
        stored = LoanRecord(
            id=uuid.uuid4().hex,
            created_at=now,
            updated_at=now,
            **record.model_dump(exclude={"id", "created_at", "updated_at"}),
        )
        await self._put(self._index, stored.id, stored.to_document())
        logger.info("Created application %s (id=%s)", stored.application_id, stored.id)
        return stored

    async def update(self, record_id: str, partial: dict[str, Any]) -> LoanRecord | None:
        current = await self.get_by_id(record_id)
        if current is None:
            return None
        updated = apply_update(current, partial)
        await self._put(self._index, updated.id, updated.to_document())
        return updated

    async def create_chat_message(
        self,
        user_id: str,
        message: str,
        response: str | None = None,
        context: list[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        chat = ChatMessage(
            id=uuid.uuid4().hex,
            user_id=user_id,
            message=message,
            response=response,
            context=context or [],
        )
        await self._put(self._chat_index, chat.id, {
            "id": chat.id,
            "userId": chat.user_id,
            "message": chat.message,
            "response": chat.response,
            "context": chat.context,
            "timestamp": chat.timestamp.isoformat(),
        })
        return chat

    async def get_chat_messages(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        hits = await self._search(
            self._chat_index,
            query={"term": {"userId": str(user_id)}},
            size=limit,
            sort=[{"timestamp": {"order": "desc", "unmapped_type": "date"}}],
        )
        history = [
            ChatMessage(
                id=hit["_id"],
                user_id=hit["_source"]["userId"],
                message=hit["_source"]["message"],
                response=hit["_source"].get("response"),
                context=hit["_source"].get("context") or [],
                timestamp=hit["_source"]["timestamp"],
            )
            for hit in hits
        ]
        return list(reversed(history))


# ---------------------------------------------------------------------------
# Factory + Maintenance
# ---------------------------------------------------------------------------


def build_record_store(config: Settings | None = None) -> RecordStore:
    """
    Build the record store selected by `record_store_backend`.

    Raises:
        ValueError: If the backend name is unknown.
    """
    config = config or settings
    backend = config.record_store_backend
    if backend == "memory":
        store: RecordStore = InMemoryRecordStore()
    elif backend == "sql":
        store = SqlRecordStore(
            build_async_engine(config.database_url, echo=config.debug),
        )
    elif backend == "elasticsearch":
        store = ElasticsearchRecordStore(
            create_elasticsearch_client(config),
            index_name=config.loan_index_name,
            chat_index_name=config.chat_index_name,
        )
    else:
        raise ValueError(
            f"Unknown record store backend '{backend}'. "
            "Supported: memory, sql, elasticsearch"
        )
    logger.info("Using %s record store", backend)
    return store


async def reindex_from_store(
    store: RecordStore,
    index: SearchIndex,
    limit: int | None = None,
) -> int:
    """Copy every record from the store into the search index."""
    records = await store.get_all(limit)
    indexed = await index.bulk_upsert([record.to_document() for record in records])
    logger.info("Reindexed %d of %d records", indexed, len(records))
    return indexed
