"""
Tests for the offline receipt scan queue.

The OCR service is replaced by fake scanners; the image cache is in memory.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from zerosum.config.settings import ScanSettings
from zerosum.models.audit import AuditEventType
from zerosum.models.budget import (
    QUEUED_RECEIPT_PAYEE,
    ReceiptData,
    ScanErrorCode,
    ScanResult,
    ScanStatus,
    Transaction,
)
from zerosum.scanning import ScanQueue
from zerosum.services.cache import InMemoryImageCache
from zerosum.services.ocr import ReceiptScanner, ScanServiceError
from zerosum.validation import ValidationError


class FakeScanner(ReceiptScanner):
    """Returns a fixed result, or raises a fixed error, after an optional delay."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[list[str]] = []

    async def scan(self, image_base64: str, categories: list[str]) -> ScanResult:
        self.calls.append(categories)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def receipt(**fields) -> ScanResult:
    fields.setdefault("payee", "Corner Cafe")
    fields.setdefault("date", "2024-05-03")
    fields.setdefault("amount", "12.50")
    return ScanResult.ok(ReceiptData(**fields))


def make_queue(harness, scanner, timeout=1.0, max_retries=3):
    settings = ScanSettings(timeout_seconds=timeout, max_retries=max_retries, sweep_interval_seconds=60)
    return ScanQueue(
        harness.manager,
        scanner,
        InMemoryImageCache(),
        audit_logger=harness.audit,
        settings=settings,
    )


async def queued(queue, harness, image=b"receipt-bytes") -> Transaction:
    outcome = await queue.queue_receipt(harness.checking.id, image, on_date=date(2024, 5, 1))
    return harness.view.get_transaction(outcome.entity_id)


class TestQueueReceipt:
    """Tests for placeholder creation."""

    @pytest.mark.asyncio
    async def test_placeholder_transaction(self, harness):
        """A queued receipt is a zero-amount pending placeholder in Ready to Assign."""
        queue = make_queue(harness, FakeScanner(receipt()))

        txn = await queued(queue, harness)

        assert txn.payee == QUEUED_RECEIPT_PAYEE
        assert txn.amount == 0
        assert txn.category_id == harness.rta.id
        assert txn.scan_status == ScanStatus.PENDING
        assert txn.scan_retry_count == 0
        assert await queue._images.exists(txn.id)
        assert len(harness.audit.of_type(AuditEventType.SCAN_QUEUED)) == 1
        assert [t.id for t in queue.eligible()] == [txn.id]

    @pytest.mark.asyncio
    async def test_unknown_account_drops_image(self, harness):
        queue = make_queue(harness, FakeScanner(receipt()))

        with pytest.raises(ValidationError):
            await queue.queue_receipt("no-such-account", b"x")

        assert queue._images._images == {}

    @pytest.mark.asyncio
    async def test_requires_ready_to_assign(self, bare_harness):
        bare_harness.seed(categories=[bare_harness.groceries])
        queue = make_queue(bare_harness, FakeScanner(receipt()))

        with pytest.raises(ValidationError):
            await queue.queue_receipt(bare_harness.checking.id, b"x")


class TestSweepSuccess:
    """Tests for completed scans."""

    @pytest.mark.asyncio
    async def test_receipt_becomes_outflow(self, harness):
        """Amounts are stored negative and the suggested category is linked."""
        queue = make_queue(harness, FakeScanner(receipt(category="dining out")))
        txn = await queued(queue, harness)

        processed = await queue.sweep()

        done = await harness.repository.get_transaction(txn.id)
        assert processed == 1
        assert done.scan_status == ScanStatus.COMPLETED
        assert done.amount == Decimal("-12.50")
        assert done.category_id == harness.dining.id
        assert done.category == "Dining Out"
        assert done.payee == "Corner Cafe"
        assert done.date == date(2024, 5, 3)
        assert done.scan_retry_count == 0
        assert done.scan_last_error is None
        assert not await queue._images.exists(txn.id)
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("987.50")
        assert queue.eligible() == []

    @pytest.mark.asyncio
    async def test_negative_ocr_amount_is_still_an_outflow(self, harness):
        queue = make_queue(harness, FakeScanner(receipt(amount="-8", category="Groceries")))
        txn = await queued(queue, harness)

        await queue.sweep()

        assert harness.view.get_transaction(txn.id).amount == Decimal("-8.00")

    @pytest.mark.asyncio
    async def test_ready_to_assign_suggestion_is_income(self, harness):
        """A receipt classified as Ready to Assign is an inflow."""
        queue = make_queue(harness, FakeScanner(receipt(amount="500", category="Ready to Assign")))
        txn = await queued(queue, harness)

        await queue.sweep()

        done = harness.view.get_transaction(txn.id)
        assert done.amount == Decimal("500.00")
        assert done.category_id == harness.rta.id

    @pytest.mark.asyncio
    async def test_unknown_suggestion_keeps_category(self, harness):
        """An unmatched category keeps the placeholder's and spends."""
        queue = make_queue(harness, FakeScanner(receipt(category="Pet Supplies")))
        txn = await queued(queue, harness)

        await queue.sweep()

        done = harness.view.get_transaction(txn.id)
        assert done.category_id == harness.rta.id
        assert done.amount == Decimal("-12.50")

    @pytest.mark.asyncio
    async def test_payment_categories_are_not_offered(self, harness):
        scanner = FakeScanner(receipt())
        queue = make_queue(harness, scanner)
        await queued(queue, harness)

        await queue.sweep()

        assert "Visa Payment" not in scanner.calls[0]
        assert "Groceries" in scanner.calls[0]

    @pytest.mark.asyncio
    async def test_interrupted_scan_is_resumed(self, harness):
        """An item left in scanning by a crash is picked up again."""
        queue = make_queue(harness, FakeScanner(receipt()))
        txn = await queued(queue, harness)
        await harness.manager.update_transaction(txn.id, {"scan_status": ScanStatus.SCANNING})

        assert await queue.sweep() == 1
        assert harness.view.get_transaction(txn.id).scan_status == ScanStatus.COMPLETED


class TestSweepFailure:
    """Tests for failed scans and the retry bound."""

    @pytest.mark.asyncio
    async def test_failures_stop_after_three_attempts(self, harness):
        """Exactly three attempts: the fourth sweep leaves the item alone."""
        scanner = FakeScanner(ScanResult.fail(ScanErrorCode.UNSCANNABLE, "Blurry"))
        queue = make_queue(harness, scanner)
        txn = await queued(queue, harness)

        counts = []
        for _ in range(3):
            assert await queue.sweep() == 1
            counts.append(harness.view.get_transaction(txn.id).scan_retry_count)

        assert counts == [1, 2, 3]
        assert queue.eligible() == []
        assert await queue.sweep() == 0
        assert len(scanner.calls) == 3
        failed = harness.view.get_transaction(txn.id)
        assert failed.scan_status == ScanStatus.FAILED
        assert failed.scan_last_error == "Blurry"
        assert await queue._images.exists(txn.id)
        assert len(harness.audit.of_type(AuditEventType.SCAN_FAILED)) == 2
        assert len(harness.audit.of_type(AuditEventType.SCAN_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, harness):
        queue = make_queue(harness, FakeScanner(receipt(), delay=1.0), timeout=0.05)
        txn = await queued(queue, harness)

        await queue.sweep()

        failed = harness.view.get_transaction(txn.id)
        assert failed.scan_status == ScanStatus.FAILED
        assert failed.scan_retry_count == 1
        assert failed.scan_last_error == "Scan timed out after 0.05s"
        event = harness.audit.of_type(AuditEventType.SCAN_FAILED)[0]
        assert event.error_code == ScanErrorCode.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_missing_image_counts_as_failure(self, harness):
        queue = make_queue(harness, FakeScanner(receipt()))
        txn = await queued(queue, harness)
        await queue._images.delete(txn.id)

        await queue.sweep()

        failed = harness.view.get_transaction(txn.id)
        assert failed.scan_status == ScanStatus.FAILED
        assert failed.scan_retry_count == 1
        event = harness.audit.of_type(AuditEventType.SCAN_FAILED)[0]
        assert event.error_code == ScanErrorCode.IMAGE_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_service_errors_are_sanitized(self, harness):
        """Image payloads echoed back in errors are never stored."""
        leaked = "data:image/png;base64," + "A" * 200
        queue = make_queue(harness, FakeScanner(error=ScanServiceError(f"bad request {leaked}")))
        txn = await queued(queue, harness)

        await queue.sweep()

        error = harness.view.get_transaction(txn.id).scan_last_error
        assert "AAAA" not in error
        assert "[IMAGE_DATA]" in error

    @pytest.mark.asyncio
    async def test_unexpected_scanner_crash(self, harness):
        queue = make_queue(harness, FakeScanner(error=RuntimeError("boom")))
        txn = await queued(queue, harness)

        await queue.sweep()

        assert harness.view.get_transaction(txn.id).scan_last_error == "boom"
        event = harness.audit.of_type(AuditEventType.SCAN_FAILED)[0]
        assert event.error_code == ScanErrorCode.SERVER_ERROR.value


class TestSweepScheduling:
    """Tests for overlap, connectivity and the background loop."""

    @pytest.mark.asyncio
    async def test_sweeps_do_not_overlap(self, harness):
        scanner = FakeScanner(receipt(), delay=0.05)
        queue = make_queue(harness, scanner)
        await queued(queue, harness)

        first = asyncio.create_task(queue.sweep())
        await asyncio.sleep(0.01)
        second = await queue.sweep()

        assert queue.is_sweeping
        assert second == 0
        assert await first == 1
        assert len(scanner.calls) == 1

    @pytest.mark.asyncio
    async def test_offline_sweep_is_skipped(self, harness):
        scanner = FakeScanner(receipt())
        queue = make_queue(harness, scanner)
        txn = await queued(queue, harness)
        harness.store.set_online(False)

        assert await queue.sweep() == 0
        assert scanner.calls == []
        assert harness.view.get_transaction(txn.id).scan_status == ScanStatus.PENDING

    @pytest.mark.asyncio
    async def test_connectivity_restored_triggers_sweep(self, harness):
        queue = make_queue(harness, FakeScanner(receipt()))
        await queued(queue, harness)

        assert await queue.on_connectivity_restored() == 1

    @pytest.mark.asyncio
    async def test_unsaved_status_stops_the_sweep(self, harness):
        """If marking an item fails, the sweep ends without scanning or queueing the mark."""
        scanner = FakeScanner(receipt())
        queue = make_queue(harness, scanner)
        txn = await queued(queue, harness)
        harness.store.fail_next_commits(1)

        assert await queue.sweep() == 0
        assert scanner.calls == []
        assert harness.view.get_transaction(txn.id).scan_status == ScanStatus.PENDING
        assert harness.manager.pending_mutations == []

    @pytest.mark.asyncio
    async def test_start_runs_an_initial_sweep(self, harness):
        queue = make_queue(harness, FakeScanner(receipt()))
        txn = await queued(queue, harness)

        queue.start()
        assert queue.is_running
        for _ in range(50):
            if harness.view.get_transaction(txn.id).scan_status == ScanStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await queue.stop()

        assert harness.view.get_transaction(txn.id).scan_status == ScanStatus.COMPLETED
        assert not queue.is_running


class StoreDropsFailures(FakeScanner):
    """
    Fails while the store rejects the next commit, so the FAILED state of
    the attempt is never saved. After `failures` calls it returns `result`.
    """

    def __init__(self, store, result=None, failures=1):
        super().__init__(result=result)
        self.store = store
        self.failures = failures

    async def scan(self, image_base64: str, categories: list[str]) -> ScanResult:
        self.calls.append(categories)
        if len(self.calls) <= self.failures:
            self.store.fail_next_commits(1)
            raise ScanServiceError("model overloaded")
        return self.result


class TestUnsavedScanState:
    """Scan bookkeeping that never reached the store."""

    @pytest.mark.asyncio
    async def test_lost_failure_is_not_replayed_over_a_completed_scan(self, harness):
        queue = make_queue(harness, StoreDropsFailures(harness.store, receipt()))
        txn = await queued(queue, harness)

        assert await queue.sweep() == 0
        assert harness.view.get_transaction(txn.id).scan_status == ScanStatus.SCANNING
        assert harness.manager.pending_mutations == []

        assert await queue.sweep() == 1
        await harness.manager.retry_all()

        scanned = harness.view.get_transaction(txn.id)
        assert scanned.scan_status == ScanStatus.COMPLETED
        assert scanned.amount == Decimal("-12.50")
        assert scanned.scan_last_error is None
        assert queue.eligible() == []

    @pytest.mark.asyncio
    async def test_lost_failures_still_count_toward_the_bound(self, harness):
        """Three scans, then the exhausted state is saved without a fourth."""
        scanner = StoreDropsFailures(harness.store, failures=99)
        queue = make_queue(harness, scanner)
        txn = await queued(queue, harness)

        for _ in range(3):
            assert await queue.sweep() == 0
        assert await queue.sweep() == 1

        failed = harness.view.get_transaction(txn.id)
        assert len(scanner.calls) == 3
        assert failed.scan_status == ScanStatus.FAILED
        assert failed.scan_retry_count == 3
        assert failed.scan_last_error == "model overloaded"
        assert queue.eligible() == []
        assert harness.manager.pending_mutations == []
