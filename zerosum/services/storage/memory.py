"""
In-Memory Storage Implementation

Used by the test suite and for running the app without a spreadsheet.

Failure injection lets tests drive the rollback path deterministically:
- fail_next_commits(n) makes the next n commits raise TransientRemoteError
- set_online(False) makes every commit fail and flags snapshots from_cache
- commit_delay keeps commits in flight long enough to observe pending state
"""

import asyncio
import copy
from typing import Optional
from uuid import UUID

from zerosum.models.audit import AuditEvent
from zerosum.services.storage.interface import (
    AuditStorageInterface,
    Document,
    DocumentStore,
    Query,
    TransientRemoteError,
    WriteBatch,
)


class InMemoryDocumentStore(DocumentStore):
    """Document store backed by nested dicts."""

    def __init__(self, commit_delay: float = 0.0):
        super().__init__()
        self._collections: dict[str, dict[str, dict]] = {}
        self._applied_commits: set[str] = set()
        self._failures_remaining = 0
        self._failure_message = "Simulated commit failure"
        self.commit_delay = commit_delay
        self.commit_attempts = 0

    # -------------------------------------------------------------------------
    # Failure injection
    # -------------------------------------------------------------------------

    def fail_next_commits(self, count: int = 1, message: str = "Simulated commit failure") -> None:
        self._failures_remaining = count
        self._failure_message = message

    def set_online(self, online: bool) -> None:
        """Going back online runs the on_online listeners."""
        self._set_online(online)

    @property
    def applied_commits(self) -> set[str]:
        return set(self._applied_commits)

    # -------------------------------------------------------------------------
    # DocumentStore
    # -------------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return Document(doc_id, copy.deepcopy(data))

    async def query(self, query: Query) -> list[Document]:
        docs = [
            Document(doc_id, copy.deepcopy(data))
            for doc_id, data in self._collections.get(query.collection, {}).items()
        ]
        return query.apply(docs)

    async def _apply_batch(self, batch: WriteBatch) -> bool:
        self.commit_attempts += 1
        if self.commit_delay:
            await asyncio.sleep(self.commit_delay)
        if not self._online:
            raise TransientRemoteError("Store is offline")
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise TransientRemoteError(self._failure_message)
        if batch.commit_id in self._applied_commits:
            return False

        # Apply to a copy so a failing op leaves nothing behind
        image = copy.deepcopy(self._collections)
        batch.apply_to(image)
        self._collections = image
        self._applied_commits.add(batch.commit_id)
        return True

    def load(self, collection: str, documents: dict[str, dict]) -> None:
        """Seed a collection directly, bypassing commits and subscribers."""
        self._collections.setdefault(collection, {}).update(copy.deepcopy(documents))


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit storage in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
