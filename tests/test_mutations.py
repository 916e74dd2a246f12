"""
Tests for the mutation framework: optimistic apply, atomic commit,
exact rollback, the durable retry queue and the guard checks.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from zerosum.models.audit import AuditEventType
from zerosum.models.budget import (
    CategoryMetadata,
    MutationEntity,
    MutationType,
    PendingMutation,
    TransactionStatus,
)
from zerosum.services.storage import TransientRemoteError
from zerosum.sync import MutationManager, MutationStatus, PendingMutationLog
from zerosum.validation import ValidationError


MONTH = "2024-05"


class TestCommit:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_add_transaction_moves_balance_in_one_batch(self, harness):
        """The transaction and its balance increment land together."""
        txn = harness.spend("-25", harness.groceries)

        outcome = await harness.manager.add_transaction(txn)

        assert outcome.status == MutationStatus.COMMITTED
        assert outcome.entity_id == txn.id
        assert harness.store.commit_attempts == 1
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("975.00")
        assert await harness.repository.get_transaction(txn.id) is not None
        assert harness.view.get_account(harness.checking.id).balance == Decimal("975.00")
        assert not harness.view.get_transaction(txn.id).is_pending

    @pytest.mark.asyncio
    async def test_ledger_sees_the_edit(self, harness):
        """The month view reflects the edit immediately."""
        await harness.manager.assign_budget(MONTH, harness.groceries.id, "100")
        await harness.manager.add_transaction(harness.spend("-30", harness.groceries))

        view = harness.view.month_view(MONTH)

        assert view.category(harness.groceries.id).available == Decimal("70.00")
        assert view.ready_to_assign == Decimal("900.00")

    @pytest.mark.asyncio
    async def test_category_name_is_resolved_to_id(self, harness):
        """A transaction given only a category name is linked by id."""
        txn = harness.spend("-5", harness.dining).model_copy(update={"category_id": None, "category": "dining out"})

        await harness.manager.add_transaction(txn)

        stored = await harness.repository.get_transaction(txn.id)
        assert stored.category_id == harness.dining.id
        assert stored.category == "Dining Out"

    @pytest.mark.asyncio
    async def test_audit_trail(self, harness):
        await harness.manager.add_transaction(harness.spend("-5", harness.groceries))

        assert len(harness.audit.of_type(AuditEventType.MUTATION_APPLIED)) == 1
        assert len(harness.audit.of_type(AuditEventType.MUTATION_COMMITTED)) == 1


class TestRollback:
    """Tests for failed commits."""

    @pytest.mark.asyncio
    async def test_failure_restores_exact_snapshot(self, harness):
        """The local view is exactly what it was before the edit."""
        before = harness.view.snapshot()
        harness.store.fail_next_commits(1)

        outcome = await harness.manager.add_transaction(harness.spend("-25", harness.groceries))

        assert outcome.status == MutationStatus.QUEUED
        assert harness.view.snapshot() == before
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_failure_queues_exactly_one_entry_and_notifies(self, harness):
        harness.store.fail_next_commits(1)

        outcome = await harness.manager.add_transaction(harness.spend("-25", harness.groceries))

        pending = harness.manager.pending_mutations
        assert [p.id for p in pending] == [outcome.mutation_id]
        assert pending[0].type == MutationType.ADD
        assert pending[0].entity == MutationEntity.TRANSACTION
        assert pending[0].attempts == 1
        active = harness.notifications.active()
        assert len(active) == 1
        assert active[0].message.startswith("Could not add transaction")
        assert len(harness.audit.of_type(AuditEventType.MUTATION_ROLLED_BACK)) == 1

    @pytest.mark.asyncio
    async def test_failures_in_window_coalesce(self, harness):
        """Several failures in a burst produce one growing notification."""
        harness.store.fail_next_commits(3)

        for amount in ("-1", "-2", "-3"):
            await harness.manager.add_transaction(harness.spend(amount, harness.groceries))

        active = harness.notifications.active()
        assert len(active) == 1
        assert active[0].count == 3
        assert len(harness.manager.pending_mutations) == 3

    @pytest.mark.asyncio
    async def test_retry_success_clears_entry(self, harness):
        harness.store.fail_next_commits(1)
        outcome = await harness.manager.add_transaction(harness.spend("-25", harness.groceries))

        retried = await harness.manager.retry(outcome.mutation_id)

        assert retried.status == MutationStatus.COMMITTED
        assert retried.mutation_id == outcome.mutation_id
        assert harness.manager.pending_mutations == []
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("975.00")
        assert harness.view.get_account(harness.checking.id).balance == Decimal("975.00")

    @pytest.mark.asyncio
    async def test_retry_failure_bumps_attempts(self, harness):
        """A failed retry updates the same entry instead of adding one."""
        harness.store.fail_next_commits(1)
        outcome = await harness.manager.add_transaction(harness.spend("-25", harness.groceries))
        harness.store.fail_next_commits(1)

        retried = await harness.manager.retry(outcome.mutation_id)

        assert retried.status == MutationStatus.QUEUED
        pending = harness.manager.pending_mutations
        assert len(pending) == 1
        assert pending[0].attempts == 2

    @pytest.mark.asyncio
    async def test_lost_acknowledgement_is_not_applied_twice(self, harness, monkeypatch):
        """A batch that landed before its ack was lost is skipped on retry."""
        original = harness.store._apply_batch

        async def ack_lost(batch):
            await original(batch)
            raise TransientRemoteError("connection reset")

        monkeypatch.setattr(harness.store, "_apply_batch", ack_lost)
        outcome = await harness.manager.add_transaction(harness.spend("-25", harness.groceries))
        monkeypatch.undo()
        assert outcome.status == MutationStatus.QUEUED

        retried = await harness.manager.retry(outcome.mutation_id)

        assert retried.committed
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("975.00")

    @pytest.mark.asyncio
    async def test_retry_unknown_id(self, harness):
        assert await harness.manager.retry("missing") is None

    @pytest.mark.asyncio
    async def test_retry_all_replays_oldest_first(self, harness):
        harness.store.fail_next_commits(2)
        first = await harness.manager.add_transaction(harness.spend("-1", harness.groceries))
        second = await harness.manager.add_transaction(harness.spend("-2", harness.groceries))

        outcomes = await harness.manager.retry_all()

        assert [o.mutation_id for o in outcomes] == [first.mutation_id, second.mutation_id]
        assert all(o.committed for o in outcomes)
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("997.00")

    @pytest.mark.asyncio
    async def test_retry_that_no_longer_validates_is_rejected(self, harness):
        """A queued edit that now breaks a guard stays queued with the reason."""
        harness.store.fail_next_commits(1)
        outcome = await harness.manager.add_category(CategoryMetadata(name="Travel"))
        await harness.manager.add_category(CategoryMetadata(name="travel"))

        retried = await harness.manager.retry(outcome.mutation_id)

        assert retried.status == MutationStatus.REJECTED
        entry = harness.manager.pending_mutations[0]
        assert "already exists" in entry.error

    @pytest.mark.asyncio
    async def test_unqueued_edit_only_rolls_back(self, bare_harness):
        """An edit made without the queue is restored and then forgotten."""
        harness = bare_harness
        txn = harness.spend("-30", harness.groceries)
        harness.seed(transactions=[txn])
        before = harness.view.snapshot()
        harness.store.fail_next_commits(1)

        outcome = await harness.manager.update_transaction(
            txn.id, {"payee": "Lunch"}, queue_on_failure=False
        )

        assert outcome.status == MutationStatus.ROLLED_BACK
        assert not outcome.committed
        assert harness.view.snapshot() == before
        assert harness.manager.pending_mutations == []
        assert harness.notifications.active() == []

    @pytest.mark.asyncio
    async def test_dismiss(self, harness):
        harness.store.fail_next_commits(1)
        outcome = await harness.manager.delete_category(harness.dining.id)

        assert await harness.manager.dismiss(outcome.mutation_id)
        assert not await harness.manager.dismiss(outcome.mutation_id)
        assert harness.manager.pending_mutations == []
        assert harness.view.get_category(harness.dining.id) is not None


class TestGuards:
    """Rejected edits never apply, commit or queue."""

    async def _rejects(self, harness, call):
        before = harness.view.snapshot()
        with pytest.raises(ValidationError):
            await call
        assert harness.store.commit_attempts == 0
        assert harness.manager.pending_mutations == []
        assert harness.view.snapshot() == before

    @pytest.mark.asyncio
    async def test_rta_cannot_be_renamed(self, harness):
        await self._rejects(harness, harness.manager.update_category(harness.rta.id, {"name": "Money"}))

    @pytest.mark.asyncio
    async def test_rta_cannot_be_deleted(self, harness):
        await self._rejects(harness, harness.manager.delete_category(harness.rta.id))

    @pytest.mark.asyncio
    async def test_referenced_category_cannot_be_deleted(self, bare_harness):
        harness = bare_harness
        harness.seed(transactions=[harness.spend("-10", harness.groceries)])
        await self._rejects(harness, harness.manager.delete_category(harness.groceries.id))

    @pytest.mark.asyncio
    async def test_oversized_amount_edit(self, bare_harness):
        harness = bare_harness
        txn = harness.spend("-10", harness.groceries)
        harness.seed(transactions=[txn])
        await self._rejects(harness, harness.manager.update_transaction(txn.id, {"amount": "-999999999"}))
        assert harness.view.get_account(harness.checking.id).balance == harness.checking.balance

    @pytest.mark.asyncio
    async def test_duplicate_category_name(self, harness):
        await self._rejects(harness, harness.manager.add_category(CategoryMetadata(name=" groceries ")))

    @pytest.mark.asyncio
    async def test_transfer_requires_credit_card(self, harness):
        savings_like = harness.checking
        await self._rejects(
            harness,
            harness.manager.transfer_to_credit_card(harness.card.id, savings_like.id, "50"),
        )

    @pytest.mark.asyncio
    async def test_budget_cannot_target_rta(self, harness):
        await self._rejects(harness, harness.manager.assign_budget(MONTH, harness.rta.id, "10"))

    @pytest.mark.asyncio
    async def test_unknown_account(self, harness):
        txn = harness.spend("-5", harness.groceries).model_copy(update={"account_id": "nope"})
        await self._rejects(harness, harness.manager.add_transaction(txn))

    @pytest.mark.asyncio
    async def test_malformed_update(self, harness):
        """Model validation failures surface as ValidationError."""
        await self._rejects(harness, harness.manager.update_category(harness.dining.id, {"hex": "orange"}))

    @pytest.mark.asyncio
    async def test_rejections_are_audited(self, harness):
        with pytest.raises(ValidationError):
            await harness.manager.delete_category(harness.rta.id)
        assert len(harness.audit.of_type(AuditEventType.MUTATION_REJECTED)) == 1


class TestOperations:
    """Tests for the individual edit operations."""

    @pytest.mark.asyncio
    async def test_card_payment_writes_both_legs(self, harness):
        """Both legs and both increments are one commit."""
        outcome = await harness.manager.transfer_to_credit_card(
            harness.checking.id, harness.card.id, "50", on_date=date(2024, 5, 20)
        )

        assert outcome.committed
        assert harness.store.commit_attempts == 1
        legs = await harness.repository.list_transactions(MONTH)
        assert len(legs) == 2
        assert len({t.transfer_id for t in legs}) == 1
        outflow = next(t for t in legs if t.amount < 0)
        inflow = next(t for t in legs if t.amount > 0)
        assert outflow.account_id == harness.checking.id
        assert outflow.category_id == harness.card_payment.id
        assert inflow.account_id == harness.card.id
        assert inflow.category_id is None
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("950.00")
        assert (await harness.stored_account(harness.card.id)).balance == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_card_purchase_then_payment_keeps_zero_sum(self, bare_harness):
        """Spend on the card, pay it off: the payment envelope ends empty."""
        harness = bare_harness
        harness.seed(allocations=[harness.allocation(MONTH, harness.dining, "100")])
        await harness.manager.add_transaction(harness.spend("-50", harness.dining, harness.card))

        funded = harness.view.month_view(MONTH)
        assert funded.category(harness.card_payment.id).available == Decimal("50.00")

        await harness.manager.transfer_to_credit_card(
            harness.checking.id, harness.card.id, "50", on_date=date(2024, 5, 20)
        )
        paid = harness.view.month_view(MONTH)

        assert paid.category(harness.card_payment.id).available == Decimal("0.00")
        assert paid.category(harness.dining.id).available == Decimal("50.00")
        assert paid.total_available == sum(a.balance for a in harness.view.accounts)

    @pytest.mark.asyncio
    async def test_assign_budget_upserts(self, harness):
        await harness.manager.assign_budget(MONTH, harness.groceries.id, "40")
        await harness.manager.assign_budget(MONTH, harness.groceries.id, "75")

        stored = await harness.repository.list_allocations(MONTH)

        assert len(stored) == 1
        assert stored[0].budgeted == Decimal("75.00")
        assert harness.view.month_view(MONTH).category(harness.groceries.id).budgeted == Decimal("75.00")

    @pytest.mark.asyncio
    async def test_update_moves_balance_between_accounts(self, bare_harness):
        harness = bare_harness
        txn = harness.spend("-30", harness.groceries)
        harness.seed(transactions=[txn])

        outcome = await harness.manager.update_transaction(txn.id, {"account_id": harness.card.id})

        assert outcome.committed
        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("1030.00")
        assert (await harness.stored_account(harness.card.id)).balance == Decimal("-30.00")

    @pytest.mark.asyncio
    async def test_update_amount_applies_delta(self, bare_harness):
        harness = bare_harness
        txn = harness.spend("-30", harness.groceries)
        harness.seed(transactions=[txn])

        await harness.manager.update_transaction(txn.id, {"amount": Decimal("-45")})

        assert (await harness.stored_account(harness.checking.id)).balance == Decimal("985.00")
        assert (await harness.repository.get_transaction(txn.id)).amount == Decimal("-45.00")

    @pytest.mark.asyncio
    async def test_update_category_by_name(self, bare_harness):
        harness = bare_harness
        txn = harness.spend("-30", harness.groceries)
        harness.seed(transactions=[txn])

        await harness.manager.update_transaction(txn.id, {"category": "dining out"})

        stored = await harness.repository.get_transaction(txn.id)
        assert stored.category_id == harness.dining.id
        assert stored.category == "Dining Out"

    @pytest.mark.asyncio
    async def test_rename_relinks_legacy_transactions(self, bare_harness):
        """Name-only transactions follow a renamed category."""
        harness = bare_harness
        legacy = harness.spend("-12", harness.groceries).model_copy(update={"category_id": None})
        harness.seed(transactions=[legacy])

        await harness.manager.update_category(harness.groceries.id, {"name": "Food"})

        stored = await harness.repository.get_transaction(legacy.id)
        assert stored.category_id == harness.groceries.id
        assert stored.category == "Food"
        assert harness.view.month_view(MONTH).by_name("Food").activity == Decimal("-12.00")

    @pytest.mark.asyncio
    async def test_reconcile_locks_cleared_transactions(self, bare_harness):
        harness = bare_harness
        cleared = harness.spend("-10", harness.groceries, status=TransactionStatus.CLEARED)
        uncleared = harness.spend("-20", harness.groceries)
        harness.seed(transactions=[cleared, uncleared])

        await harness.manager.reconcile_account(harness.checking.id)

        assert (await harness.repository.get_transaction(cleared.id)).status == TransactionStatus.RECONCILED
        assert (await harness.repository.get_transaction(uncleared.id)).status == TransactionStatus.UNCLEARED
        with pytest.raises(ValidationError):
            await harness.manager.update_transaction(cleared.id, {"amount": "-11"})

    @pytest.mark.asyncio
    async def test_nothing_to_reconcile_is_committed(self, harness):
        outcome = await harness.manager.reconcile_account(harness.checking.id)

        assert outcome.committed
        assert harness.store.commit_attempts == 0

    @pytest.mark.asyncio
    async def test_delete_unused_category(self, harness):
        await harness.manager.delete_category(harness.dining.id)

        assert harness.view.get_category(harness.dining.id) is None
        assert all(c.id != harness.dining.id for c in await harness.repository.list_categories())


class TestPendingWrites:
    """Tests for in-flight tracking."""

    @pytest.mark.asyncio
    async def test_wait_for_pending_writes(self, harness):
        harness.store.commit_delay = 0.05
        txn = harness.spend("-5", harness.groceries)

        task = asyncio.create_task(harness.manager.add_transaction(txn))
        await asyncio.sleep(0.01)

        assert harness.manager.is_syncing
        assert harness.view.get_transaction(txn.id).is_pending
        assert await harness.manager.wait_for_pending_writes(1.0)
        assert not harness.manager.is_syncing
        assert (await task).committed

    @pytest.mark.asyncio
    async def test_wait_times_out(self, harness):
        harness.store.commit_delay = 0.3
        task = asyncio.create_task(harness.manager.add_transaction(harness.spend("-5", harness.groceries)))
        await asyncio.sleep(0.01)

        assert not await harness.manager.wait_for_pending_writes(0.01)
        await task


class TestPendingMutationLog:
    """Tests for the durable retry log."""

    def _entry(self, **kwargs):
        return PendingMutation(
            type=MutationType.ADD,
            entity=MutationEntity.TRANSACTION,
            operation="add_transaction",
            payload={"transaction": {"amount": "-5.00"}},
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "pending.json"
        log = PendingMutationLog(path)
        entry = await log.upsert(self._entry(error="offline"))

        reopened = PendingMutationLog(path)

        assert entry.id in reopened
        assert reopened.get(entry.id).payload == {"transaction": {"amount": "-5.00"}}

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_id(self):
        log = PendingMutationLog()
        entry = await log.upsert(self._entry())
        await log.upsert(entry.model_copy(update={"attempts": 2}))

        assert len(log) == 1
        assert log.get(entry.id).attempts == 2

    def test_corrupt_file_is_set_aside(self, tmp_path):
        path = tmp_path / "pending.json"
        path.write_text("{not json", encoding="utf-8")

        log = PendingMutationLog(path)

        assert len(log) == 0
        assert (tmp_path / "pending.corrupt").exists()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_manager_persists_failures(self, harness, tmp_path):
        manager = MutationManager(
            harness.repository,
            harness.view,
            pending_log=PendingMutationLog(tmp_path / "pending.json"),
            notifications=harness.notifications,
        )
        harness.store.fail_next_commits(1)

        outcome = await manager.assign_budget(MONTH, harness.groceries.id, "10")

        reopened = PendingMutationLog(tmp_path / "pending.json")
        assert reopened.get(outcome.mutation_id).operation == "assign_budget"
