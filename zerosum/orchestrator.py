"""
Main Orchestrator for ZeroSum

This module ties together all the components and defines the
end-to-end flows:
1. Startup (cold start -> payment categories -> live subscriptions -> scan queue)
2. Remote push (snapshot -> local view -> ledger recompute on demand)
3. Month window (viewed month and its neighbours pooled with a sync status)
4. Reconnect (retry queued edits -> sweep the scan queue)

DESIGN DECISION: The local view is fed ONLY by subscriptions and by the
mutation manager. Nothing else writes to it, so the ledger always derives
from one consistent set of raw entities.

Everything here is wiring; the rules live in the components.
"""

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional

import structlog

from zerosum.audit import AuditLogger, configure_logging
from zerosum.bootstrap import cold_start, ensure_cc_payment_categories
from zerosum.config import get_settings
from zerosum.config.settings import Settings
from zerosum.ledger import MonthView, MonthViewCache
from zerosum.models.budget import Account, CategoryMetadata, MonthlyAllocation, month_of
from zerosum.queries import MonthlyReport, ReportExecutor
from zerosum.scanning import ScanQueue
from zerosum.services.cache import ImageCache, image_cache_from_directory
from zerosum.services.ocr import GeminiReceiptScanner, ReceiptScanner
from zerosum.services.storage import (
    BudgetRepository,
    DocumentStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
    Query,
    Snapshot,
    StorageError,
    Subscription,
    parse_documents,
    transactions_from_snapshot,
)
from zerosum.sync import (
    LocalBudgetView,
    MonthSyncStatus,
    MutationManager,
    NotificationCenter,
    PendingMutationLog,
    PooledMonth,
    SubscriptionPool,
)


logger = structlog.get_logger(__name__)

SnapshotHandler = Callable[[Snapshot], Awaitable[None]]


@dataclass
class AppComponents:
    store: DocumentStore
    repository: BudgetRepository
    view: LocalBudgetView
    manager: MutationManager
    pool: SubscriptionPool
    reports: ReportExecutor
    audit_logger: AuditLogger
    notifications: NotificationCenter
    scan_queue: Optional[ScanQueue] = None


class BudgetApp:
    """
    A running budget for one user.

    Usage:
        app = BudgetApp(create_app_components())
        await app.start()
        view = app.month_view()
        await app.manager.add_transaction(...)
        await app.stop()
    """

    def __init__(self, components: AppComponents, month: Optional[str] = None):
        self.components = components
        self.month = month or month_of(date.today())
        self._subscriptions: list[Subscription] = []
        self._feeders: list[asyncio.Task] = []
        self._remove_online_listener: Optional[Callable[[], None]] = None
        self._started = False

    @property
    def view(self) -> LocalBudgetView:
        return self.components.view

    @property
    def manager(self) -> MutationManager:
        return self.components.manager

    @property
    def scan_queue(self) -> Optional[ScanQueue]:
        return self.components.scan_queue

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, seed: bool = True) -> None:
        """
        Seed if new, attach subscriptions and start background work.

        Returns once the local view holds the first snapshot of every
        collection.
        """
        if self._started:
            return
        c = self.components
        if seed:
            await cold_start(c.repository, self.month, c.audit_logger)
        await ensure_cc_payment_categories(c.repository, c.audit_logger)

        await self._attach(c.repository.accounts_query(), self._on_accounts)
        await self._attach(c.repository.categories_query(), self._on_categories)
        await self._attach(c.repository.allocations_query(), self._on_allocations)
        await self._attach(c.repository.transactions_query(), self._on_transactions)

        if isinstance(c.store, GoogleSheetsDocumentStore):
            c.store.start_polling()
        c.pool.set_base_month(self.month)
        self._remove_online_listener = c.store.on_online(self.on_connectivity_restored)
        if c.scan_queue is not None:
            c.scan_queue.start()
        self._started = True
        logger.info("budget_app_started", user_id=c.repository.user_id, month=self.month)

    async def stop(self) -> None:
        c = self.components
        if self._remove_online_listener is not None:
            self._remove_online_listener()
            self._remove_online_listener = None
        if c.scan_queue is not None:
            await c.scan_queue.stop()
        await c.pool.close()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        for task in self._feeders:
            task.cancel()
        await asyncio.gather(*self._feeders, return_exceptions=True)
        self._subscriptions.clear()
        self._feeders.clear()
        if isinstance(c.store, GoogleSheetsDocumentStore):
            await c.store.stop_polling()
        self._started = False
        logger.info("budget_app_stopped")

    async def on_connectivity_restored(self) -> None:
        """
        Replay queued edits, then drain the scan queue.

        Runs by itself whenever the store comes back online.
        """
        await self.manager.retry_all()
        if self.scan_queue is not None:
            await self.scan_queue.on_connectivity_restored()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def set_month(self, month: str) -> None:
        self.month = month
        self.components.pool.set_base_month(month)

    def month_view(self, month: Optional[str] = None) -> MonthView:
        return self.view.month_view(month or self.month)

    def report(self, month: Optional[str] = None) -> MonthlyReport:
        return self.components.reports.monthly_report(month or self.month)

    def month_status(self, month: Optional[str] = None) -> MonthSyncStatus:
        """Whether the server has confirmed a month; LOADING outside the pooled window."""
        status = self.components.pool.status(month or self.month)
        return status if status is not None else MonthSyncStatus.LOADING

    def synced_month(self, month: Optional[str] = None) -> Optional[PooledMonth]:
        """
        Server-confirmed allocations and transactions of a month.

        None outside the pooled window. Unlike month_view, this leaves out
        optimistic edits the server has not acknowledged yet.
        """
        return self.components.pool.get(month or self.month)

    # -------------------------------------------------------------------------
    # Subscription feeders
    # -------------------------------------------------------------------------

    async def _attach(self, query: Query, handler: SnapshotHandler) -> None:
        subscription = await self.components.store.subscribe(query)
        self._subscriptions.append(subscription)
        initial = await subscription.next()
        if initial is not None:
            await handler(initial)
        self._feeders.append(asyncio.create_task(self._feed(subscription, handler)))

    async def _feed(self, subscription: Subscription, handler: SnapshotHandler) -> None:
        async for snapshot in subscription:
            try:
                await handler(snapshot)
            except StorageError as e:
                logger.warning("snapshot_handler_failed", collection=subscription.query.collection, error=str(e))
                await self.components.audit_logger.log_external_service_error("document_store", str(e))

    async def _on_accounts(self, snapshot: Snapshot) -> None:
        accounts = parse_documents(Account, snapshot.documents)
        self.view.replace_accounts(accounts)
        # A credit card seen for the first time gets its payment category
        if any(a.is_credit_card and self.view.payment_category_for(a.id) is None for a in accounts):
            await ensure_cc_payment_categories(self.components.repository, self.components.audit_logger)

    async def _on_categories(self, snapshot: Snapshot) -> None:
        self.view.replace_categories(parse_documents(CategoryMetadata, snapshot.documents))

    async def _on_allocations(self, snapshot: Snapshot) -> None:
        self.view.replace_allocations(parse_documents(MonthlyAllocation, snapshot.documents))

    async def _on_transactions(self, snapshot: Snapshot) -> None:
        self.view.replace_transactions(transactions_from_snapshot(snapshot))
        await self.audit_diagnostics()

    async def audit_diagnostics(self) -> int:
        """Write ledger diagnostics for the current month to the audit log."""
        diagnostics = self.month_view().diagnostics
        return await self.components.audit_logger.log_ledger_diagnostics(diagnostics, self.month)


# =============================================================================
# FACTORY
# =============================================================================

def create_app_components(
    use_storage: bool = True,
    store: Optional[DocumentStore] = None,
    scanner: Optional[ReceiptScanner] = None,
    image_cache: Optional[ImageCache] = None,
    settings: Optional[Settings] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to use Google Sheets. Without it (or when it is
                    not configured) an in-memory store is used.
        store: Explicit document store, overriding use_storage
        scanner: Receipt scanner; defaults to Gemini when configured
        image_cache: Receipt image cache; defaults to the configured directory
    """
    settings = settings or get_settings()
    configure_logging(debug=settings.app.debug_mode, json=settings.app.log_json)
    audit_logger = None

    if store is None and use_storage:
        try:
            client = GoogleSheetsClient(settings.google_sheets)
            store = GoogleSheetsDocumentStore(client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            store = None
    if store is None:
        store = InMemoryDocumentStore()
    if audit_logger is None:
        audit_logger = AuditLogger()  # Local-only logging

    if scanner is None:
        try:
            scanner = GeminiReceiptScanner(settings.gemini)
        except Exception as e:
            logger.warning("scanner_not_configured", error=str(e))

    sync_settings = settings.sync
    app_settings = settings.app
    repository = BudgetRepository(store, app_settings.user_id)
    view = LocalBudgetView(MonthViewCache(app_settings.month_view_cache_size))
    notifications = NotificationCenter(
        window_seconds=sync_settings.notification_window_seconds,
        ttl_seconds=sync_settings.toast_ttl_seconds,
    )
    manager = MutationManager(
        repository,
        view,
        pending_log=PendingMutationLog(sync_settings.pending_log_path),
        notifications=notifications,
        audit_logger=audit_logger,
        settings=sync_settings,
    )

    scan_queue = None
    if scanner is not None:
        scan_settings = settings.scan
        scan_queue = ScanQueue(
            manager,
            scanner,
            image_cache or image_cache_from_directory(scan_settings.image_cache_dir),
            audit_logger=audit_logger,
            settings=scan_settings,
        )

    return AppComponents(
        store=store,
        repository=repository,
        view=view,
        manager=manager,
        pool=SubscriptionPool(repository, prefetch_delay=sync_settings.prefetch_delay_seconds),
        reports=ReportExecutor(view),
        audit_logger=audit_logger,
        notifications=notifications,
        scan_queue=scan_queue,
    )
