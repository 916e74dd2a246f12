"""
Month-Window Subscription Pool

Keeps live subscriptions (allocations + transactions) for the month being
viewed and the months on either side of it, so paging back or forward shows
data immediately and the app can tell whether a month is confirmed by the
server.

DESIGN DECISION: Prefetching waits for an idle delay. Paging quickly
through months only attaches subscriptions for the month the user settles
on; every month that leaves the window is unsubscribed.

Per-month status:
    loading -> synced   once BOTH queries delivered a snapshot that was not
                        served from cache (readiness is sticky)
    * -> error          a subscription could not be opened or broke; the
                        next rebalance over a window holding the month
                        tries again
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

from zerosum.config import get_settings
from zerosum.models.budget import MonthlyAllocation, Transaction, adjacent_months
from zerosum.services.storage import (
    BudgetRepository,
    Snapshot,
    StorageError,
    Subscription,
    parse_documents,
    transactions_from_snapshot,
)


logger = structlog.get_logger(__name__)


class MonthSyncStatus(str, Enum):
    LOADING = "loading"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class PooledMonth:
    month: str
    allocations: list[MonthlyAllocation] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    status: MonthSyncStatus = MonthSyncStatus.LOADING
    allocations_ready: bool = False
    transactions_ready: bool = False

    def refresh_status(self) -> None:
        if self.status == MonthSyncStatus.ERROR:
            return
        if self.allocations_ready and self.transactions_ready:
            self.status = MonthSyncStatus.SYNCED
        else:
            self.status = MonthSyncStatus.LOADING


class SubscriptionPool:
    """
    Usage:
        pool = SubscriptionPool(repository)
        pool.set_base_month("2024-05")   # prefetch starts after the idle delay
        ...
        pool.get("2024-04").status
        await pool.close()
    """

    def __init__(
        self,
        repository: BudgetRepository,
        prefetch_delay: Optional[float] = None,
        on_update: Optional[Callable[[PooledMonth], None]] = None,
    ):
        if prefetch_delay is None:
            prefetch_delay = get_settings().sync.prefetch_delay_seconds
        self._repo = repository
        self._delay = prefetch_delay
        self._on_update = on_update
        self._months: dict[str, PooledMonth] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._feeders: dict[str, list[asyncio.Task]] = {}
        self._timer: Optional[asyncio.Task] = None
        self.base_month: Optional[str] = None

    @property
    def months(self) -> dict[str, PooledMonth]:
        return dict(self._months)

    def get(self, month: str) -> Optional[PooledMonth]:
        return self._months.get(month)

    def set_base_month(self, month: str) -> asyncio.Task:
        """Restart the idle timer for a new base month."""
        self.base_month = month
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._prefetch_after_delay(month))
        return self._timer

    def status(self, month: str) -> Optional[MonthSyncStatus]:
        pooled = self._months.get(month)
        return pooled.status if pooled is not None else None

    async def close(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        for month in set(self._months) | set(self._subscriptions):
            await self._drop(month)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _prefetch_after_delay(self, month: str) -> None:
        await asyncio.sleep(self._delay)
        await self.rebalance(month)

    async def rebalance(self, month: str) -> None:
        """Drop months outside the window, retry failed ones and attach the missing ones."""
        window = [month] + adjacent_months(month)
        for pooled in set(self._months) | set(self._subscriptions):
            if pooled not in window:
                await self._drop(pooled)
        for target in window:
            if self.status(target) == MonthSyncStatus.ERROR:
                await self._drop(target)
            if target not in self._subscriptions:
                await self._attach(target)

    async def _attach(self, month: str) -> None:
        pooled = PooledMonth(month=month)
        self._months[month] = pooled
        opened: list[Subscription] = []
        store = self._repo.store

        try:
            allocations = await store.subscribe(self._repo.allocations_query(month))
            opened.append(allocations)
            transactions = await store.subscribe(self._repo.transactions_query(month))
            opened.append(transactions)
        except StorageError as e:
            logger.warning("pool_subscribe_failed", month=month, error=str(e))
            for subscription in opened:
                subscription.unsubscribe()
            pooled.status = MonthSyncStatus.ERROR
            self._emit(pooled)
            return

        self._subscriptions[month] = opened
        self._feeders[month] = [
            asyncio.create_task(self._feed(pooled, allocations, self._apply_allocations)),
            asyncio.create_task(self._feed(pooled, transactions, self._apply_transactions)),
        ]
        logger.debug("pool_month_attached", month=month)

    async def _drop(self, month: str) -> None:
        for subscription in self._subscriptions.pop(month, []):
            subscription.unsubscribe()
        feeders = self._feeders.pop(month, [])
        for task in feeders:
            task.cancel()
        if feeders:
            await asyncio.gather(*feeders, return_exceptions=True)
        self._months.pop(month, None)
        logger.debug("pool_month_dropped", month=month)

    async def _feed(
        self,
        pooled: PooledMonth,
        subscription: Subscription,
        apply: Callable[[PooledMonth, Snapshot], None],
    ) -> None:
        try:
            async for snapshot in subscription:
                apply(pooled, snapshot)
                pooled.refresh_status()
                self._emit(pooled)
        except StorageError as e:
            logger.warning("pool_subscription_broken", month=pooled.month, error=str(e))
            pooled.status = MonthSyncStatus.ERROR
            self._emit(pooled)

    @staticmethod
    def _apply_allocations(pooled: PooledMonth, snapshot: Snapshot) -> None:
        pooled.allocations = parse_documents(MonthlyAllocation, snapshot.documents)
        pooled.allocations_ready = pooled.allocations_ready or not snapshot.from_cache

    @staticmethod
    def _apply_transactions(pooled: PooledMonth, snapshot: Snapshot) -> None:
        pooled.transactions = transactions_from_snapshot(snapshot)
        pooled.transactions_ready = pooled.transactions_ready or not snapshot.from_cache

    def _emit(self, pooled: PooledMonth) -> None:
        if self._on_update is not None:
            self._on_update(pooled)
