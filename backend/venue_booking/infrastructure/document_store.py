from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..domain.errors import StoreUnavailableError
from ..domain.repositories import Transaction
from ..models import Document

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]


class TransactionConflict(Exception):
    """A document read inside the transaction changed before commit."""


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _matches(data: Mapping[str, Any], where: Optional[Mapping[str, Any]]) -> bool:
    if not where:
        return True
    return all(data.get(field) == value for field, value in where.items())


async def run_with_retries(
    attempt: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    backoff_seconds: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransactionConflict,),
) -> T:
    """Run `attempt`, retrying write conflicts with exponential backoff.

    Raises StoreUnavailableError once the retries are exhausted.
    """
    last_exc: BaseException | None = None
    for attempt_no in range(max_retries):
        try:
            return await attempt()
        except retry_on as exc:
            last_exc = exc
            logger.info("store transaction attempt %d/%d failed: %s", attempt_no + 1, max_retries, exc)
            if attempt_no + 1 < max_retries and backoff_seconds > 0:
                await asyncio.sleep(backoff_seconds * (2**attempt_no))
    logger.error("store transaction gave up after %d attempts", max_retries)
    raise StoreUnavailableError("store transaction failed") from last_exc


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class _MemoryTransaction:
    def __init__(self, store: "InMemoryDocumentStore") -> None:
        self._store = store
        self.read_versions: Dict[DocKey, int] = {}
        self.writes: Dict[DocKey, Tuple[Dict[str, Any], bool]] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        # Yield so concurrent transactions interleave the way they would against a real store.
        await asyncio.sleep(0)
        key = (collection, doc_id)
        version, data = self._store._docs.get(key, (0, None))
        self.read_versions.setdefault(key, version)
        return copy.deepcopy(data)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        key = (collection, doc_id)
        pending = self.writes.get(key)
        if pending is not None and merge:
            data = deep_merge(pending[0], data)
            merge = pending[1]
        self.writes[key] = (copy.deepcopy(data), merge)


class InMemoryDocumentStore:
    """Process-local store with optimistic concurrency (read versions checked at commit)."""

    def __init__(self, *, max_retries: int = 5, backoff_seconds: float = 0.0) -> None:
        self._docs: Dict[DocKey, Tuple[int, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        _, data = self._docs.get((collection, doc_id), (0, None))
        return copy.deepcopy(data)

    async def upsert(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        async with self._lock:
            self._write((collection, doc_id), data, merge)

    async def list(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        return [
            (doc_id, copy.deepcopy(data))
            for (coll, doc_id), (_, data) in sorted(self._docs.items())
            if coll == collection and _matches(data, where)
        ]

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async def attempt() -> T:
            txn = _MemoryTransaction(self)
            result = await fn(txn)
            async with self._lock:
                for key, version in txn.read_versions.items():
                    current, _ = self._docs.get(key, (0, None))
                    if current != version:
                        raise TransactionConflict(f"{key[0]}/{key[1]} changed during transaction")
                for key, (data, merge) in txn.writes.items():
                    self._write(key, data, merge)
            return result

        return await run_with_retries(attempt, max_retries=self.max_retries, backoff_seconds=self.backoff_seconds)

    def _write(self, key: DocKey, data: Mapping[str, Any], merge: bool) -> None:
        version, existing = self._docs.get(key, (0, None))
        if merge and existing is not None:
            new_data = deep_merge(existing, data)
        else:
            new_data = copy.deepcopy(dict(data))
        self._docs[key] = (version + 1, new_data)


class _SqlTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._rows: Dict[DocKey, Optional[Document]] = {}
        self._writes: Dict[DocKey, Tuple[Dict[str, Any], bool]] = {}

    async def _load(self, key: DocKey) -> Optional[Document]:
        if key not in self._rows:
            collection, doc_id = key
            result = await self.session.scalar(
                select(Document)
                .where(Document.collection == collection, Document.doc_id == doc_id)
                .with_for_update()
            )
            self._rows[key] = result if isinstance(result, Document) else None
        return self._rows[key]

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = await self._load((collection, doc_id))
        return copy.deepcopy(row.data) if row is not None else None

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        key = (collection, doc_id)
        pending = self._writes.get(key)
        if pending is not None and merge:
            data = deep_merge(pending[0], data)
            merge = pending[1]
        self._writes[key] = (copy.deepcopy(data), merge)

    async def flush(self) -> None:
        now = _utc_now_naive()
        for key, (data, merge) in self._writes.items():
            row = await self._load(key)
            if row is None:
                collection, doc_id = key
                self.session.add(
                    Document(
                        collection=collection,
                        doc_id=doc_id,
                        data=data,
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                row.data = deep_merge(row.data, data) if merge else data
                row.version += 1
                row.updated_at = now
        await self.session.flush()


class SqlAlchemyDocumentStore:
    """Documents in one SQL table; transactions lock the rows they read (SELECT ... FOR UPDATE).

    Two writers creating the same new document collide on the primary key; the
    loser's IntegrityError is retried like any other write conflict.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_retries: int = 5,
        backoff_seconds: float = 0.05,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(Document).where(Document.collection == collection, Document.doc_id == doc_id)
            )
            return copy.deepcopy(row.data) if isinstance(row, Document) else None

    async def upsert(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        async def write(txn: Transaction) -> None:
            txn.set(collection, doc_id, data, merge=merge)

        await self.run_transaction(write)

    async def list(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(Document).where(Document.collection == collection).order_by(Document.doc_id)
            )
            return [(row.doc_id, copy.deepcopy(row.data)) for row in rows if _matches(row.data, where)]

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async def attempt() -> T:
            async with self.session_factory() as session:
                async with session.begin():
                    txn = _SqlTransaction(session)
                    result = await fn(txn)
                    await txn.flush()
                return result

        return await run_with_retries(
            attempt,
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            retry_on=(TransactionConflict, IntegrityError, DBAPIError),
        )
