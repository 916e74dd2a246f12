"""
Abstract Document Store Interface

DESIGN DECISION: We define an abstract interface for the remote store.
This allows us to:
1. Run against Google Sheets in production
2. Use in-memory storage for testing (with failure injection)
3. Keep the mutation framework decoupled from the backend

The interface models a small document database: collections of JSON
documents, field-filtered queries, atomic multi-document batches and
realtime subscriptions. Those are exactly the primitives the ledger and
the mutation framework need, nothing more.

Every batch carries a commit id. A backend records applied commit ids in
the same atomic write, and silently skips a batch it has already applied.
That is what makes balance increments safe to retry.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import AbstractSet, Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from zerosum.models.audit import AuditEvent
from zerosum.models.budget import new_id


logger = structlog.get_logger(__name__)

OnlineListener = Callable[[], Awaitable[None]]


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class TransientRemoteError(StorageError):
    """A write or commit failed and may succeed if retried."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


# =============================================================================
# QUERIES
# =============================================================================

class FilterOp(str, Enum):
    EQ = "=="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    IN = "in"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any

    def matches(self, data: dict) -> bool:
        if self.field not in data:
            return False
        current = data[self.field]
        if self.op == FilterOp.EQ:
            return current == self.value
        if self.op == FilterOp.IN:
            return current in self.value
        if current is None:
            return False
        try:
            if self.op == FilterOp.LT:
                return current < self.value
            if self.op == FilterOp.LTE:
                return current <= self.value
            if self.op == FilterOp.GT:
                return current > self.value
            return current >= self.value
        except TypeError:
            return False


@dataclass
class Document:
    """A stored document: its id and its JSON-compatible fields."""

    id: str
    data: dict[str, Any]

    def to_record(self) -> dict[str, Any]:
        """Fields plus id, ready for model_validate."""
        return {**self.data, "id": self.id}


@dataclass(frozen=True)
class Query:
    """
    An immutable query over one collection.

    Builder methods return new queries:
        Query("users/u1/transactions").where("date", ">=", "2025-01-01").ordered("date", True)

    Ordered results break ties by document id, in the same direction, so
    start_after(value, doc_id) resumes exactly behind the last document of
    a previous page.
    """

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    cursor: Optional[tuple[Any, str]] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        return replace(self, filters=self.filters + (FieldFilter(field_name, FilterOp(op), value),))

    def ordered(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_by=field_name, descending=descending)

    def limited(self, count: int) -> "Query":
        return replace(self, limit=count)

    def start_after(self, value: Any, doc_id: str) -> "Query":
        if self.order_by is None:
            raise ValueError("start_after needs an ordered query")
        return replace(self, cursor=(value, doc_id))

    def matches(self, data: dict) -> bool:
        return all(f.matches(data) for f in self.filters)

    def _sort_key(self, value: Any, doc_id: str) -> tuple:
        # Documents missing the order field sort first, as in most document stores
        return (value is not None, value or "", doc_id)

    def apply(self, documents: list[Document]) -> list[Document]:
        """Filter, order, page and limit documents of this query's collection."""
        result = [d for d in documents if self.matches(d.data)]
        if self.order_by:
            key = self.order_by
            result.sort(key=lambda d: self._sort_key(d.data.get(key), d.id), reverse=self.descending)
            if self.cursor is not None:
                cursor = self._sort_key(*self.cursor)
                if self.descending:
                    result = [d for d in result if self._sort_key(d.data.get(key), d.id) < cursor]
                else:
                    result = [d for d in result if self._sort_key(d.data.get(key), d.id) > cursor]
        if self.limit is not None:
            result = result[: self.limit]
        return result


# =============================================================================
# ATOMIC BATCHES
# =============================================================================

class WriteKind(str, Enum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class WriteOp:
    kind: WriteKind
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    increments: dict[str, Any] = field(default_factory=dict)


def add_increment(current: Any, delta: Any) -> Any:
    """
    Add a delta to a stored numeric value.

    Ints stay ints; anything else is summed as Decimal and stored as a
    string, which is how money is persisted.
    """
    if current is None or current == "":
        current = 0
    if isinstance(current, int) and isinstance(delta, int) and not isinstance(current, bool):
        return current + delta
    total = Decimal(str(current)) + Decimal(str(delta))
    return str(total)


@dataclass
class WriteBatch:
    """
    A group of writes committed atomically: all of them or none.

    The commit id doubles as an idempotency key. Replaying a batch with
    the same commit id after it already landed is a no-op.
    """

    commit_id: str = field(default_factory=new_id)
    ops: list[WriteOp] = field(default_factory=list)

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> "WriteBatch":
        self.ops.append(WriteOp(WriteKind.SET, collection, doc_id, dict(data)))
        return self

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Optional[dict[str, Any]] = None,
        increments: Optional[dict[str, Any]] = None,
    ) -> "WriteBatch":
        self.ops.append(
            WriteOp(WriteKind.UPDATE, collection, doc_id, dict(data or {}), dict(increments or {}))
        )
        return self

    def increment(self, collection: str, doc_id: str, field_name: str, delta: Any) -> "WriteBatch":
        return self.update(collection, doc_id, increments={field_name: delta})

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self.ops.append(WriteOp(WriteKind.DELETE, collection, doc_id))
        return self

    @property
    def is_empty(self) -> bool:
        return not self.ops

    @property
    def collections(self) -> AbstractSet[str]:
        return {op.collection for op in self.ops}

    def apply_to(self, collections: dict[str, dict[str, dict[str, Any]]]) -> None:
        """
        Apply every op to an in-memory image of the store, in order.

        Mutates `collections` in place; callers pass a copy when the
        batch must be all-or-nothing. Updates of missing documents raise
        NotFoundError, failing the whole batch.
        """
        for op in self.ops:
            docs = collections.setdefault(op.collection, {})
            if op.kind == WriteKind.SET:
                docs[op.doc_id] = copy.deepcopy(op.data)
            elif op.kind == WriteKind.DELETE:
                docs.pop(op.doc_id, None)
            else:
                if op.doc_id not in docs:
                    raise NotFoundError(f"No document {op.collection}/{op.doc_id} to update")
                target = docs[op.doc_id]
                target.update(copy.deepcopy(op.data))
                for name, delta in op.increments.items():
                    target[name] = add_increment(target.get(name), delta)


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

@dataclass(frozen=True)
class Snapshot:
    """
    Result set of a subscribed query at one point in time.

    has_pending_writes: the result includes local writes not yet confirmed
    from_cache: the backend could not confirm the result with the server
    """

    query: Query
    documents: list[Document]
    has_pending_writes: bool = False
    from_cache: bool = False


class Subscription:
    """
    A live query: an async iterator of snapshots.

    The caller owns the lifecycle and must call unsubscribe() when done;
    iteration ends once the subscription is closed.
    """

    def __init__(self, store: "DocumentStore", query: Query):
        self.query = query
        self._store = store
        self._queue: asyncio.Queue[Optional[Snapshot]] = asyncio.Queue()
        self._closed = False
        self.latest: Optional[Snapshot] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: Snapshot) -> None:
        if self._closed:
            return
        self.latest = snapshot
        self._queue.put_nowait(snapshot)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)
        self._queue.put_nowait(None)

    async def next(self) -> Optional[Snapshot]:
        """Wait for the next snapshot; None once closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Snapshot]:
        while True:
            snapshot = await self.next()
            if snapshot is None:
                return
            yield snapshot


# =============================================================================
# STORE
# =============================================================================

class DocumentStore(ABC):
    """
    Abstract document store.

    Concrete stores implement reads and the atomic application of a batch.
    Snapshot fan-out to subscribers is shared: before a commit, subscribers
    of the touched collections see the batch overlaid and flagged
    has_pending_writes; after it, they see the confirmed state (or the
    unchanged state if the commit failed).
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._online = True
        self._online_listeners: list[OnlineListener] = []
        self._listener_tasks: set[asyncio.Task] = set()

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """
        Read one document.

        Returns:
            The document, or None if it does not exist
        """
        pass

    @abstractmethod
    async def query(self, query: Query) -> list[Document]:
        """
        Run a query against confirmed data.

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    async def _apply_batch(self, batch: WriteBatch) -> bool:
        """
        Apply a batch atomically.

        Returns:
            False if the batch's commit id was already applied (nothing written)

        Raises:
            TransientRemoteError: If the write failed; nothing was written
            NotFoundError: If an update targets a missing document
        """
        pass

    @property
    def is_online(self) -> bool:
        return self._online

    def on_online(self, listener: OnlineListener) -> Callable[[], None]:
        """
        Run `listener` every time the store goes from offline to online.

        Returns a function that removes the listener.
        """
        self._online_listeners.append(listener)

        def remove() -> None:
            if listener in self._online_listeners:
                self._online_listeners.remove(listener)

        return remove

    def _set_online(self, online: bool) -> None:
        restored = online and not self._online
        self._online = online
        if not restored:
            return
        logger.info("store_back_online", listeners=len(self._online_listeners))
        for listener in list(self._online_listeners):
            task = asyncio.create_task(self._run_listener(listener))
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_tasks.discard)

    async def _run_listener(self, listener: OnlineListener) -> None:
        try:
            await listener()
        except Exception as e:
            logger.error("online_listener_failed", error=str(e))

    async def commit(self, batch: WriteBatch) -> bool:
        """
        Commit a batch atomically and notify subscribers.

        Returns:
            True if written, False if the commit id was a duplicate
        """
        if batch.is_empty:
            return False
        collections = batch.collections
        await self._publish(collections, pending=batch)
        try:
            written = await self._apply_batch(batch)
        except StorageError:
            await self._publish(collections)
            raise
        except Exception as e:
            await self._publish(collections)
            raise TransientRemoteError(f"Commit {batch.commit_id} failed: {e}") from e
        await self._publish(collections)
        return written

    async def subscribe(self, query: Query) -> Subscription:
        """Start a live query; the current result is delivered immediately."""
        subscription = Subscription(self, query)
        self._subscriptions.append(subscription)
        subscription.push(await self._snapshot(query))
        return subscription

    async def refresh(self) -> None:
        """Re-deliver every subscribed query, e.g. after polling the backend."""
        await self._publish({s.query.collection for s in self._subscriptions})

    def close_subscriptions(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _snapshot(self, query: Query, pending: Optional[WriteBatch] = None) -> Snapshot:
        from_cache = not self.is_online
        if pending is None:
            documents = await self.query(query)
            return Snapshot(query, documents, has_pending_writes=False, from_cache=from_cache)

        # Overlay the uncommitted batch on the whole collection, then re-query
        base = await self.query(Query(query.collection))
        image = {query.collection: {d.id: copy.deepcopy(d.data) for d in base}}
        own = WriteBatch(pending.commit_id, [op for op in pending.ops if op.collection == query.collection])
        try:
            own.apply_to(image)
        except NotFoundError:
            pass
        overlaid = [Document(doc_id, data) for doc_id, data in image[query.collection].items()]
        return Snapshot(query, query.apply(overlaid), has_pending_writes=True, from_cache=from_cache)

    async def _publish(self, collections: set[str], pending: Optional[WriteBatch] = None) -> None:
        for subscription in list(self._subscriptions):
            if subscription.query.collection not in collections:
                continue
            try:
                snapshot = await self._snapshot(subscription.query, pending)
            except StorageError:
                continue
            subscription.push(snapshot)


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(self, correlation_id) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one edit and its retries).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass
