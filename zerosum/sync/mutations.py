"""
Mutation Manager

Every user edit goes through one discipline:

1. GUARD    - synchronous rule checks; a rejected edit raises
              ValidationError and touches nothing
2. APPLY    - the local view changes immediately (optimistic), so the
              ledger reflects the edit before the store confirms it
3. COMMIT   - one atomic WriteBatch: the document plus any coupled balance
              increments. The batch's commit id is the mutation id, so a
              replay of a batch that already landed is skipped by the store
4. RECOVER  - on a storage failure the exact pre-edit snapshot is restored,
              the edit is written to the durable pending log and the user
              gets a (coalesced) notification. Nothing is raised.

State machine:
    applied-local -> committed
    applied-local -> rolled-back + queued -> retrying -> committed | queued
    queued -> dismissed
    applied-local -> rolled-back        (edits made with queue_on_failure=False)

Bookkeeping writes that their owner re-derives on its next run (the scan
queue's status updates) opt out of the queue. Replaying such a write
later would overwrite whatever the owner has written since.

DESIGN DECISION: Edits are serialized. Each one holds a lock from guard to
commit, which is what makes restoring a snapshot exact: no other edit can
have been applied on top of it in the meantime.

Every operation is replayable from its JSON payload alone. Retrying a
queued edit re-plans it against the CURRENT local state (so balance deltas
are recomputed, not replayed blindly) under the original mutation id.
"""

import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from zerosum.audit import AuditLogger, create_correlation_id
from zerosum.config import get_settings
from zerosum.config.settings import SyncSettings
from zerosum.models.audit import AuditEventBuilder
from zerosum.models.budget import (
    CategoryMetadata,
    MonthlyAllocation,
    MutationEntity,
    MutationType,
    PendingMutation,
    Transaction,
    TransactionStatus,
    new_id,
    to_money,
)
from zerosum.services.ocr import sanitize_error_message
from zerosum.services.storage import BudgetRepository, StorageError, WriteBatch
from zerosum.sync.local_view import LocalBudgetView
from zerosum.sync.notifications import NotificationCenter, NotificationType
from zerosum.sync.pending_log import PendingMutationLog
from zerosum.validation import MutationValidator, ValidationError


class MutationStatus(str, Enum):
    COMMITTED = "committed"
    QUEUED = "queued"
    REJECTED = "rejected"  # a queued edit that no longer passes its guards
    ROLLED_BACK = "rolled_back"  # failed and deliberately not queued


@dataclass
class MutationOutcome:
    mutation_id: str
    status: MutationStatus
    entity_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.status == MutationStatus.COMMITTED


@dataclass
class _Plan:
    """A validated edit, ready to apply and commit."""

    type: MutationType
    entity: MutationEntity
    entity_id: Optional[str]
    apply: Callable[[], None]
    batch: WriteBatch
    confirm: Optional[Callable[[], None]] = None


Planner = Callable[[dict, str], _Plan]


class MutationManager:
    """
    Applies, commits and recovers user edits.

    Usage:
        manager = MutationManager(repository, view)
        outcome = await manager.add_transaction(txn)
        if not outcome.committed:
            ...  # edit is in manager.pending_mutations, user was notified
    """

    def __init__(
        self,
        repository: BudgetRepository,
        view: LocalBudgetView,
        validator: Optional[MutationValidator] = None,
        pending_log: Optional[PendingMutationLog] = None,
        notifications: Optional[NotificationCenter] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
    ):
        self._settings = settings or get_settings().sync
        self._repo = repository
        self._view = view
        self._validator = validator or MutationValidator(view)
        self._pending = pending_log if pending_log is not None else PendingMutationLog()
        self._notifications = notifications or NotificationCenter(
            window_seconds=self._settings.notification_window_seconds,
            ttl_seconds=self._settings.toast_ttl_seconds,
        )
        self._audit = audit_logger or AuditLogger()
        self._lock = asyncio.Lock()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.retrying_ids: set[str] = set()

        self._planners: dict[str, Planner] = {
            "add_transaction": self._plan_add_transaction,
            "update_transaction": self._plan_update_transaction,
            "add_category": self._plan_add_category,
            "update_category": self._plan_update_category,
            "delete_category": self._plan_delete_category,
            "assign_budget": self._plan_assign_budget,
            "reconcile_account": self._plan_reconcile_account,
            "transfer_to_credit_card": self._plan_transfer,
        }

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def view(self) -> LocalBudgetView:
        return self._view

    @property
    def repository(self) -> BudgetRepository:
        return self._repo

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    @property
    def pending_mutations(self) -> list[PendingMutation]:
        return self._pending.entries

    @property
    def is_syncing(self) -> bool:
        return self._in_flight > 0

    async def wait_for_pending_writes(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no commit is in flight.

        Returns:
            False if the timeout expired first
        """
        if timeout is None:
            timeout = self._settings.pending_writes_timeout_seconds
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def add_transaction(self, transaction: Union[Transaction, dict]) -> MutationOutcome:
        if isinstance(transaction, dict):
            transaction = Transaction.model_validate(transaction)
        payload = {"transaction": transaction.model_dump(mode="json")}
        return await self._execute("add_transaction", payload)

    async def update_transaction(
        self,
        transaction_id: str,
        changes: dict[str, Any],
        queue_on_failure: bool = True,
    ) -> MutationOutcome:
        payload = {"transaction_id": transaction_id, "changes": _jsonable(changes)}
        return await self._execute("update_transaction", payload, queue_on_failure=queue_on_failure)

    async def add_category(self, category: Union[CategoryMetadata, dict]) -> MutationOutcome:
        if isinstance(category, dict):
            category = CategoryMetadata.model_validate(category)
        payload = {"category": category.model_dump(mode="json")}
        return await self._execute("add_category", payload)

    async def update_category(self, category_id: str, changes: dict[str, Any]) -> MutationOutcome:
        payload = {"category_id": category_id, "changes": _jsonable(changes)}
        return await self._execute("update_category", payload)

    async def delete_category(self, category_id: str) -> MutationOutcome:
        return await self._execute("delete_category", {"category_id": category_id})

    async def assign_budget(self, month: str, category_id: str, amount: Any) -> MutationOutcome:
        payload = {"month": month, "category_id": category_id, "amount": str(to_money(amount))}
        return await self._execute("assign_budget", payload)

    async def reconcile_account(self, account_id: str) -> MutationOutcome:
        return await self._execute("reconcile_account", {"account_id": account_id})

    async def transfer_to_credit_card(
        self,
        from_account_id: str,
        card_account_id: str,
        amount: Any,
        on_date: Optional[date] = None,
    ) -> MutationOutcome:
        payload = {
            "from_account_id": from_account_id,
            "card_account_id": card_account_id,
            "amount": str(to_money(amount)),
            "date": (on_date or date.today()).isoformat(),
            "transfer_id": new_id(),
            "outflow_id": new_id(),
            "inflow_id": new_id(),
        }
        return await self._execute("transfer_to_credit_card", payload)

    async def retry(self, mutation_id: str) -> Optional[MutationOutcome]:
        """Replay a queued edit. Returns None if no such entry exists."""
        entry = self._pending.get(mutation_id)
        if entry is None or mutation_id in self.retrying_ids:
            return None
        self.retrying_ids.add(mutation_id)
        try:
            outcome = await self._execute(entry.operation, entry.payload, existing=entry)
        finally:
            self.retrying_ids.discard(mutation_id)
        await self._audit.log(AuditEventBuilder.mutation_retried(mutation_id, outcome.committed))
        if outcome.committed:
            self._notifications.notify("Change saved", NotificationType.SUCCESS)
        return outcome

    async def retry_all(self) -> list[MutationOutcome]:
        """Replay every queued edit, oldest first."""
        outcomes = []
        for entry in self._pending.entries:
            outcome = await self.retry(entry.id)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def dismiss(self, mutation_id: str) -> bool:
        """Abandon a queued edit."""
        removed = await self._pending.remove(mutation_id)
        if removed is None:
            return False
        await self._audit.log(AuditEventBuilder.mutation_dismissed(mutation_id))
        return True

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        payload: dict,
        existing: Optional[PendingMutation] = None,
        queue_on_failure: bool = True,
    ) -> MutationOutcome:
        planner = self._planners[operation]
        mutation_id = existing.id if existing else new_id()
        correlation_id = create_correlation_id()

        async with self._lock:
            try:
                plan = self._plan(planner, payload, mutation_id)
            except ValidationError as e:
                await self._audit.log(AuditEventBuilder.mutation_rejected(operation, mutation_id, str(e)))
                if existing is None:
                    raise
                await self._pending.upsert(existing.model_copy(update={"error": str(e)}))
                return MutationOutcome(mutation_id, MutationStatus.REJECTED, error=str(e))

            snapshot = self._view.snapshot()
            with self._view.changing():
                plan.apply()
            await self._audit.log(AuditEventBuilder.mutation_applied(
                operation, plan.entity.value, plan.entity_id, correlation_id
            ))

            if plan.batch.is_empty:
                if existing is not None:
                    await self._pending.remove(mutation_id)
                return MutationOutcome(mutation_id, MutationStatus.COMMITTED, plan.entity_id)

            self._begin_write()
            try:
                await self._repo.store.commit(plan.batch)
            except StorageError as e:
                error = sanitize_error_message(str(e))
                self._view.restore(snapshot)
                await self._audit.log(AuditEventBuilder.mutation_rolled_back(
                    operation, plan.entity.value, plan.entity_id, error, correlation_id
                ))
                if not queue_on_failure:
                    return MutationOutcome(mutation_id, MutationStatus.ROLLED_BACK, plan.entity_id, error)
                await self._enqueue(operation, payload, plan, mutation_id, error, existing, correlation_id)
                return MutationOutcome(mutation_id, MutationStatus.QUEUED, plan.entity_id, error)
            finally:
                self._end_write()

            if plan.confirm is not None:
                with self._view.changing():
                    plan.confirm()
            if existing is not None:
                await self._pending.remove(mutation_id)
            await self._audit.log(AuditEventBuilder.mutation_committed(
                operation, plan.entity.value, plan.entity_id, plan.batch.commit_id, correlation_id
            ))
            return MutationOutcome(mutation_id, MutationStatus.COMMITTED, plan.entity_id)

    async def _enqueue(
        self,
        operation: str,
        payload: dict,
        plan: _Plan,
        mutation_id: str,
        error: str,
        existing: Optional[PendingMutation],
        correlation_id: UUID,
    ) -> PendingMutation:
        if existing is not None:
            entry = existing.model_copy(update={"attempts": existing.attempts + 1, "error": error})
        else:
            entry = PendingMutation(
                id=mutation_id,
                type=plan.type,
                entity=plan.entity,
                operation=operation,
                payload=payload,
                error=error,
            )
        await self._pending.upsert(entry)
        await self._audit.log_mutation_queued(
            mutation_id, plan.entity.value, entry.attempts, error, correlation_id
        )
        self._notifications.notify_failure(entry.description)
        return entry

    @staticmethod
    def _plan(planner: Planner, payload: dict, mutation_id: str) -> _Plan:
        try:
            return planner(payload, mutation_id)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    def _begin_write(self) -> None:
        self._in_flight += 1
        self._idle.clear()

    def _end_write(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()

    # -------------------------------------------------------------------------
    # Planners: payload -> validated plan. Must not touch the view.
    # -------------------------------------------------------------------------

    def _with_category_link(self, txn: Transaction) -> Transaction:
        """Fill category_id from a display name, and the display name from the id."""
        if txn.category_id is None and txn.category:
            match = self._view.category_by_name(txn.category)
            if match is None:
                raise ValidationError(f"Unknown category: {txn.category!r}", field="category")
            return txn.model_copy(update={"category_id": match.id, "category": match.name})
        if txn.category_id is not None:
            match = self._view.get_category(txn.category_id)
            if match is not None and txn.category != match.name:
                return txn.model_copy(update={"category": match.name})
        return txn

    def _plan_add_transaction(self, payload: dict, mutation_id: str) -> _Plan:
        txn = self._with_category_link(Transaction.model_validate(payload["transaction"]))
        self._validator.validate_new_transaction(txn)

        batch = WriteBatch(commit_id=mutation_id)
        self._repo.put_transaction(batch, txn)
        if txn.amount != 0:
            self._repo.increment_balance(batch, txn.account_id, txn.amount)

        def apply() -> None:
            self._view.upsert_transaction(txn.model_copy(update={"is_pending": True}))
            self._view.adjust_balance(txn.account_id, txn.amount)

        def confirm() -> None:
            self._view.upsert_transaction(txn)

        return _Plan(MutationType.ADD, MutationEntity.TRANSACTION, txn.id, apply, batch, confirm)

    def _plan_update_transaction(self, payload: dict, mutation_id: str) -> _Plan:
        transaction_id = payload["transaction_id"]
        changes = {
            name: value for name, value in payload["changes"].items()
            if name in Transaction.model_fields and name != "is_pending"
        }
        current = self._view.get_transaction(transaction_id)
        if current is None:
            raise ValidationError(f"Unknown transaction: {transaction_id}", field="id")

        # A display-name-only category change is resolved to an id
        if "category" in changes and "category_id" not in changes:
            changes["category_id"] = None
        merged = Transaction.model_validate({**current.model_dump(), **changes})
        merged = self._with_category_link(merged)
        if merged.category_id != current.category_id:
            changes["category_id"] = merged.category_id
            changes["category"] = merged.category

        normalized = {name: getattr(merged, name) for name in changes}
        self._validator.validate_transaction_update(transaction_id, normalized)

        batch = WriteBatch(commit_id=mutation_id)
        fields = merged.model_dump(mode="json", include=set(changes))
        deltas: list[tuple[str, Decimal]] = []
        if merged.account_id == current.account_id:
            if merged.amount != current.amount:
                deltas.append((current.account_id, merged.amount - current.amount))
        else:
            deltas.append((current.account_id, -current.amount))
            deltas.append((merged.account_id, merged.amount))
        batch.update(self._repo.transactions_path, transaction_id, fields)
        for account_id, delta in deltas:
            if delta != 0:
                self._repo.increment_balance(batch, account_id, delta)

        def apply() -> None:
            self._view.upsert_transaction(merged.model_copy(update={"is_pending": True}))
            for account_id, delta in deltas:
                self._view.adjust_balance(account_id, delta)

        def confirm() -> None:
            self._view.upsert_transaction(merged)

        return _Plan(MutationType.UPDATE, MutationEntity.TRANSACTION, transaction_id, apply, batch, confirm)

    def _plan_add_category(self, payload: dict, mutation_id: str) -> _Plan:
        category = CategoryMetadata.model_validate(payload["category"])
        self._validator.validate_new_category(category)

        batch = WriteBatch(commit_id=mutation_id)
        self._repo.put_category(batch, category)

        def apply() -> None:
            self._view.upsert_category(category)

        return _Plan(MutationType.ADD, MutationEntity.CATEGORY, category.id, apply, batch)

    def _plan_update_category(self, payload: dict, mutation_id: str) -> _Plan:
        category_id = payload["category_id"]
        current = self._view.get_category(category_id)
        if current is None:
            raise ValidationError(f"Unknown category: {category_id}", field="category_id")
        changes = {
            name: value for name, value in payload["changes"].items()
            if name in CategoryMetadata.model_fields
        }
        merged = CategoryMetadata.model_validate({**current.model_dump(), **changes})
        normalized = {name: getattr(merged, name) for name in changes}
        self._validator.validate_category_update(category_id, normalized)

        batch = WriteBatch(commit_id=mutation_id)
        batch.update(
            self._repo.categories_path,
            category_id,
            merged.model_dump(mode="json", include=set(changes)),
        )

        # Renaming links name-only legacy transactions to the id first,
        # otherwise they would be orphaned by the new name.
        relinked = []
        if merged.name != current.name:
            for txn in self._view.transactions_referencing(current):
                if txn.category_id is None:
                    relinked.append(txn.model_copy(update={"category_id": category_id, "category": merged.name}))
            for txn in relinked:
                batch.update(
                    self._repo.transactions_path,
                    txn.id,
                    {"category_id": category_id, "category": merged.name},
                )

        def apply() -> None:
            self._view.upsert_category(merged)
            for txn in relinked:
                self._view.upsert_transaction(txn)

        return _Plan(MutationType.UPDATE, MutationEntity.CATEGORY, category_id, apply, batch)

    def _plan_delete_category(self, payload: dict, mutation_id: str) -> _Plan:
        category_id = payload["category_id"]
        self._validator.validate_category_delete(category_id)

        batch = WriteBatch(commit_id=mutation_id)
        batch.delete(self._repo.categories_path, category_id)

        def apply() -> None:
            self._view.remove_category(category_id)

        return _Plan(MutationType.DELETE, MutationEntity.CATEGORY, category_id, apply, batch)

    def _plan_assign_budget(self, payload: dict, mutation_id: str) -> _Plan:
        amount = to_money(payload["amount"])
        self._validator.validate_allocation(payload["month"], payload["category_id"], amount)
        allocation = MonthlyAllocation(
            month=payload["month"],
            category_id=payload["category_id"],
            budgeted=amount,
        )
        batch = WriteBatch(commit_id=mutation_id)
        self._repo.put_allocation(batch, allocation)

        def apply() -> None:
            self._view.upsert_allocation(allocation)

        return _Plan(MutationType.UPDATE, MutationEntity.ALLOCATION, allocation.id, apply, batch)

    def _plan_reconcile_account(self, payload: dict, mutation_id: str) -> _Plan:
        account_id = payload["account_id"]
        self._validator.validate_reconcile(account_id)
        cleared = [
            t for t in self._view.transactions
            if t.account_id == account_id and t.status == TransactionStatus.CLEARED
        ]
        batch = WriteBatch(commit_id=mutation_id)
        for txn in cleared:
            batch.update(self._repo.transactions_path, txn.id, {"status": TransactionStatus.RECONCILED.value})

        def apply() -> None:
            for txn in cleared:
                self._view.upsert_transaction(txn.model_copy(update={"status": TransactionStatus.RECONCILED}))

        return _Plan(MutationType.UPDATE, MutationEntity.ACCOUNT, account_id, apply, batch)

    def _plan_transfer(self, payload: dict, mutation_id: str) -> _Plan:
        amount = to_money(payload["amount"])
        source_id = payload["from_account_id"]
        card_id = payload["card_account_id"]
        payment = self._validator.validate_transfer(source_id, card_id, amount)
        source = self._view.get_account(source_id)
        card = self._view.get_account(card_id)
        on_date = date.fromisoformat(payload["date"])

        # The outflow is categorized to the payment category, spending its reserve.
        # The card-side inflow is an uncategorized transfer leg.
        outflow = Transaction(
            id=payload["outflow_id"],
            date=on_date,
            payee=f"Payment to {card.name}",
            category_id=payment.id,
            category=payment.name,
            amount=-amount,
            account_id=source_id,
            transfer_id=payload["transfer_id"],
        )
        inflow = Transaction(
            id=payload["inflow_id"],
            date=on_date,
            payee=f"Payment from {source.name}",
            amount=amount,
            account_id=card_id,
            transfer_id=payload["transfer_id"],
        )
        batch = WriteBatch(commit_id=mutation_id)
        self._repo.put_transaction(batch, outflow)
        self._repo.put_transaction(batch, inflow)
        self._repo.increment_balance(batch, source_id, -amount)
        self._repo.increment_balance(batch, card_id, amount)

        def apply() -> None:
            self._view.upsert_transaction(outflow.model_copy(update={"is_pending": True}))
            self._view.upsert_transaction(inflow.model_copy(update={"is_pending": True}))
            self._view.adjust_balance(source_id, -amount)
            self._view.adjust_balance(card_id, amount)

        def confirm() -> None:
            self._view.upsert_transaction(outflow)
            self._view.upsert_transaction(inflow)

        return _Plan(
            MutationType.ADD, MutationEntity.TRANSACTION, payload["transfer_id"], apply, batch, confirm
        )


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    """Payload-safe copy of a change set (dates, decimals and enums as JSON values)."""
    result = {}
    for name, value in changes.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        result[name] = value
    return result
