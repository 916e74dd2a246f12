"""
Offline Receipt Scan Queue

Receipts photographed while offline (or simply queued for later) become a
placeholder transaction plus a cached image. The queue drains them through
the OCR service whenever it can.

Flow per item:
    pending -> scanning -> completed   (fields filled in, image deleted)
                        -> failed      (retry count + sanitized error kept,
                                        image kept for the next attempt)

DESIGN DECISION: Every state change is an ordinary transaction update
through the mutation manager. A scan result therefore moves the account
balance in the same atomic batch as the transaction fields, exactly like a
manual edit.

DESIGN DECISION: Retries are bounded. Timeouts, service errors and missing
images all count; after the bound an item stays failed until the user acts.

Triggers: once at start(), on a fixed interval, and when connectivity comes
back. Sweeps never overlap and are skipped while offline.
"""

import asyncio
from datetime import date
from typing import Callable, Optional, Union

import structlog

from zerosum.audit import AuditLogger
from zerosum.config import get_settings
from zerosum.config.settings import ScanSettings
from zerosum.models.audit import AuditEventBuilder
from zerosum.models.budget import (
    QUEUED_RECEIPT_PAYEE,
    ReceiptData,
    ScanErrorCode,
    ScanStatus,
    Transaction,
    TransactionStatus,
)
from zerosum.services.cache import ImageCache
from zerosum.services.ocr import (
    OCRError,
    ReceiptScanner,
    prepare_candidate_categories,
    sanitize_error_message,
)
from zerosum.services.storage import NotFoundError
from zerosum.sync import MutationManager, MutationOutcome
from zerosum.validation import ValidationError


logger = structlog.get_logger(__name__)


class ScanQueue:
    """
    Usage:
        queue = ScanQueue(manager, GeminiReceiptScanner(), FileImageCache(path))
        await queue.queue_receipt(account_id, image_bytes)
        queue.start()
        ...
        await queue.stop()
    """

    def __init__(
        self,
        manager: MutationManager,
        scanner: ReceiptScanner,
        image_cache: ImageCache,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[ScanSettings] = None,
        is_online: Optional[Callable[[], bool]] = None,
    ):
        self._settings = settings or get_settings().scan
        self._manager = manager
        self._scanner = scanner
        self._images = image_cache
        self._audit = audit_logger or AuditLogger()
        self._is_online = is_online or (lambda: manager.repository.store.is_online)
        self._sweeping = False
        self._task: Optional[asyncio.Task] = None
        # Failures whose FAILED state could not be saved: txn id -> (attempts, error)
        self._unsaved_failures: dict[str, tuple[int, str]] = {}

    @property
    def is_sweeping(self) -> bool:
        return self._sweeping

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Sweep now, then every sweep interval."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def on_connectivity_restored(self) -> int:
        return await self.sweep()

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as e:
                # The loop must outlive a broken sweep
                logger.error("scan_sweep_crashed", error=str(e))
            await asyncio.sleep(self._settings.sweep_interval_seconds)

    # -------------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------------

    async def queue_receipt(
        self,
        account_id: str,
        image: Union[bytes, str],
        on_date: Optional[date] = None,
    ) -> MutationOutcome:
        """
        Cache a receipt image and create its placeholder transaction.

        The placeholder sits in Ready to Assign with a zero amount until the
        scan fills it in.

        Raises:
            ValidationError: Unknown account, or no Ready to Assign category
        """
        view = self._manager.view
        rta = view.rta_category
        if rta is None:
            raise ValidationError("Cannot queue a receipt without a Ready to Assign category")

        placeholder = Transaction(
            date=on_date or date.today(),
            payee=QUEUED_RECEIPT_PAYEE,
            category_id=rta.id,
            category=rta.name,
            amount=0,
            account_id=account_id,
            status=TransactionStatus.UNCLEARED,
            scan_status=ScanStatus.PENDING,
        )
        size = await self._images.put(placeholder.id, image)
        try:
            outcome = await self._manager.add_transaction(placeholder)
        except ValidationError:
            await self._images.delete(placeholder.id)
            raise
        await self._audit.log(AuditEventBuilder.scan_queued(placeholder.id, size))
        return outcome

    # -------------------------------------------------------------------------
    # Sweeping
    # -------------------------------------------------------------------------

    def eligible(self) -> list[Transaction]:
        """
        Transactions the next sweep will process, oldest first.

        An item still marked scanning outside a sweep was interrupted
        (e.g. by a restart) and is picked up again like a pending one.
        """
        max_retries = self._settings.max_retries
        items = [
            t for t in self._manager.view.transactions
            if t.scan_status in (ScanStatus.PENDING, ScanStatus.SCANNING)
            or (t.scan_status == ScanStatus.FAILED and self.attempts(t) < max_retries)
        ]
        return sorted(items, key=lambda t: (t.date, t.id))

    async def sweep(self) -> int:
        """
        Process every eligible item once.

        Returns:
            Number of items processed (0 when skipped)
        """
        if self._sweeping:
            logger.debug("scan_sweep_skipped", reason="already_running")
            return 0
        if not self._is_online():
            logger.debug("scan_sweep_skipped", reason="offline")
            return 0

        self._sweeping = True
        processed = 0
        try:
            for txn in self.eligible():
                if not await self._process(txn):
                    logger.warning("scan_sweep_interrupted", transaction_id=txn.id)
                    break
                processed += 1
        finally:
            self._sweeping = False
        return processed

    def attempts(self, txn: Transaction) -> int:
        """Failed attempts so far, including any whose state was never saved."""
        unsaved = self._unsaved_failures.get(txn.id)
        return max(txn.scan_retry_count, unsaved[0] if unsaved else 0)

    async def _save_scan_state(self, txn: Transaction, changes: dict) -> bool:
        """
        Write scan bookkeeping without queueing it for replay.

        The next sweep re-derives a lost write, so a failed commit is
        simply rolled back.
        """
        outcome = await self._manager.update_transaction(txn.id, changes, queue_on_failure=False)
        return outcome.committed

    async def _process(self, txn: Transaction) -> bool:
        """Scan one item. Returns False if its state could not be saved."""
        attempts = self.attempts(txn)
        if attempts >= self._settings.max_retries:
            # Out of attempts, but the last failure never reached the store
            _, message = self._unsaved_failures.get(txn.id, (attempts, txn.scan_last_error or ""))
            return await self._save_failure(txn, attempts, message)

        if not await self._save_scan_state(txn, {"scan_status": ScanStatus.SCANNING}):
            return False
        await self._audit.log(AuditEventBuilder.scan_started(txn.id, attempts + 1))

        code = None
        message = ""
        data: Optional[ReceiptData] = None
        try:
            image = await self._images.get(txn.id)
            result = await asyncio.wait_for(
                self._scanner.scan(image, self._candidate_categories()),
                timeout=self._settings.timeout_seconds,
            )
            if result.success:
                data = result.data
            else:
                code, message = result.error.code, result.error.message
        except NotFoundError as e:
            code, message = ScanErrorCode.IMAGE_NOT_FOUND, str(e)
        except asyncio.TimeoutError:
            code = ScanErrorCode.TIMEOUT
            message = f"Scan timed out after {self._settings.timeout_seconds:g}s"
        except OCRError as e:
            code, message = e.code, str(e)
        except Exception as e:
            code, message = ScanErrorCode.SERVER_ERROR, str(e)

        if data is not None:
            return await self._complete(txn, data)
        return await self._fail(txn, code, sanitize_error_message(message))

    async def _complete(self, txn: Transaction, data: ReceiptData) -> bool:
        changes = self._normalize(txn, data)
        changes.update(
            scan_status=ScanStatus.COMPLETED,
            scan_retry_count=0,
            scan_last_error=None,
        )
        if not await self._save_scan_state(txn, changes):
            return False
        self._unsaved_failures.pop(txn.id, None)
        await self._images.delete(txn.id)
        await self._audit.log(AuditEventBuilder.scan_completed(
            txn.id, changes["payee"], str(changes["amount"]), changes["category"] or None
        ))
        return True

    async def _fail(self, txn: Transaction, code: ScanErrorCode, message: str) -> bool:
        retry_count = self.attempts(txn) + 1
        await self._audit.log_scan_failed(
            transaction_id=txn.id,
            error_code=code.value,
            error_message=message,
            retry_count=retry_count,
            exhausted=retry_count >= self._settings.max_retries,
        )
        return await self._save_failure(txn, retry_count, message)

    async def _save_failure(self, txn: Transaction, retry_count: int, message: str) -> bool:
        saved = await self._save_scan_state(txn, {
            "scan_status": ScanStatus.FAILED,
            "scan_retry_count": retry_count,
            "scan_last_error": message,
        })
        if saved:
            self._unsaved_failures.pop(txn.id, None)
        else:
            self._unsaved_failures[txn.id] = (retry_count, message)
        return saved

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def _candidate_categories(self) -> list[str]:
        names = [
            c.name for c in self._manager.view.categories
            if not c.is_cc_payment
        ]
        return prepare_candidate_categories(names, limit=self._settings.max_candidate_categories)

    def _normalize(self, txn: Transaction, data: ReceiptData) -> dict:
        """
        Turn proposed OCR fields into transaction changes.

        Receipts are spending: the amount becomes an outflow unless the
        suggested category is Ready to Assign, which makes it income. A
        suggestion that matches no category keeps the current category.
        """
        view = self._manager.view
        category = view.category_by_name(data.category) if data.category else None
        if category is None:
            category = view.get_category(txn.category_id) if txn.category_id else None
            suggested_rta = False
        else:
            suggested_rta = category.is_rta

        amount = txn.amount
        if data.amount is not None:
            amount = abs(data.amount) if suggested_rta else -abs(data.amount)

        return {
            "payee": data.payee or txn.payee,
            "date": data.date or txn.date,
            "amount": amount,
            "category_id": category.id if category else txn.category_id,
            "category": category.name if category else txn.category,
        }
