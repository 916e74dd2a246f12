"""
Durable Pending-Mutation Log

Failed commits land here and stay until a retry succeeds or the user
dismisses them. The log is a JSON file rewritten atomically on every
change, so it survives restarts; without a path it lives in memory only.

Each entry is keyed by mutation id. Re-queueing an id that is already
present updates that entry (attempts, error) instead of appending a
second one.
"""

import asyncio
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from zerosum.models.budget import PendingMutation


logger = structlog.get_logger(__name__)

_ADAPTER = TypeAdapter(list[PendingMutation])


class PendingMutationLog:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path) if path else None
        self._entries: dict[str, PendingMutation] = {}
        self._lock = asyncio.Lock()
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, mutation_id: str) -> bool:
        return mutation_id in self._entries

    @property
    def entries(self) -> list[PendingMutation]:
        """Queued mutations, oldest first."""
        return sorted(self._entries.values(), key=lambda m: m.timestamp)

    def get(self, mutation_id: str) -> Optional[PendingMutation]:
        return self._entries.get(mutation_id)

    async def upsert(self, mutation: PendingMutation) -> PendingMutation:
        async with self._lock:
            self._entries[mutation.id] = mutation
            await self._save()
        return mutation

    async def remove(self, mutation_id: str) -> Optional[PendingMutation]:
        async with self._lock:
            removed = self._entries.pop(mutation_id, None)
            if removed is not None:
                await self._save()
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            await self._save()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            entries = _ADAPTER.validate_json(self._path.read_bytes())
        except (OSError, ValidationError) as e:
            # An unreadable log is preserved for inspection, never overwritten silently
            backup = self._path.with_suffix(".corrupt")
            logger.error("pending_log_unreadable", path=str(self._path), backup=str(backup), error=str(e))
            self._path.replace(backup)
            return
        self._entries = {m.id: m for m in entries}

    def _write(self, payload: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_bytes(payload)
        tmp.replace(self._path)

    async def _save(self) -> None:
        if self._path is None:
            return
        payload = _ADAPTER.dump_json(self.entries, indent=2)
        await asyncio.to_thread(self._write, payload)
