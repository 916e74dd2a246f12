"""
Local Budget View

The in-memory copy of the user's entity sets that everything local reads:
the ledger recomputes from it, the validator checks against it, and the
mutation manager applies optimistic edits to it.

DESIGN DECISION: Rollback is snapshot/restore, not inverse operations.
Before an edit is applied the manager takes a deep snapshot; if the
commit fails the snapshot is restored verbatim. Inverse operations drift
as soon as two edits interleave, a snapshot cannot.

Listeners are notified after every change (or once at the end of a
`changing()` block) so derived views can recompute.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterator, Optional

import structlog

from zerosum.ledger import MonthView, MonthViewCache, compute_ledger, ledger_fingerprint
from zerosum.models.budget import (
    Account,
    CategoryMetadata,
    MonthlyAllocation,
    Transaction,
)


logger = structlog.get_logger(__name__)

Listener = Callable[["LocalBudgetView"], None]


@dataclass
class BudgetState:
    accounts: dict[str, Account] = field(default_factory=dict)
    categories: dict[str, CategoryMetadata] = field(default_factory=dict)
    allocations: dict[str, MonthlyAllocation] = field(default_factory=dict)
    transactions: dict[str, Transaction] = field(default_factory=dict)

    def copy(self) -> "BudgetState":
        return BudgetState(
            accounts={k: v.model_copy(deep=True) for k, v in self.accounts.items()},
            categories={k: v.model_copy(deep=True) for k, v in self.categories.items()},
            allocations={k: v.model_copy(deep=True) for k, v in self.allocations.items()},
            transactions={k: v.model_copy(deep=True) for k, v in self.transactions.items()},
        )


class LocalBudgetView:
    def __init__(self, cache: Optional[MonthViewCache] = None):
        self._state = BudgetState()
        self._listeners: list[Listener] = []
        self._defer_depth = 0
        self._dirty = False
        self.cache = cache if cache is not None else MonthViewCache()

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def accounts(self) -> list[Account]:
        return list(self._state.accounts.values())

    @property
    def categories(self) -> list[CategoryMetadata]:
        return list(self._state.categories.values())

    @property
    def allocations(self) -> list[MonthlyAllocation]:
        return list(self._state.allocations.values())

    @property
    def transactions(self) -> list[Transaction]:
        return list(self._state.transactions.values())

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._state.accounts.get(account_id)

    def get_category(self, category_id: str) -> Optional[CategoryMetadata]:
        return self._state.categories.get(category_id)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._state.transactions.get(transaction_id)

    def get_allocation(self, allocation_id: str) -> Optional[MonthlyAllocation]:
        return self._state.allocations.get(allocation_id)

    def category_by_name(self, name: str) -> Optional[CategoryMetadata]:
        key = name.strip().casefold()
        return next((c for c in self._state.categories.values() if c.name.casefold() == key), None)

    @property
    def rta_category(self) -> Optional[CategoryMetadata]:
        return next((c for c in self._state.categories.values() if c.is_rta), None)

    def payment_category_for(self, account_id: str) -> Optional[CategoryMetadata]:
        return next(
            (c for c in self._state.categories.values()
             if c.is_cc_payment and c.linked_account_id == account_id),
            None,
        )

    def transactions_referencing(self, category: CategoryMetadata) -> list[Transaction]:
        """Transactions linked to a category by id, or by name for legacy rows."""
        name = category.name.casefold()
        return [
            t for t in self._state.transactions.values()
            if t.category_id == category.id
            or (t.category_id is None and t.category and t.category.casefold() == name)
        ]

    def transactions_in_month(self, month: str) -> list[Transaction]:
        return [t for t in self._state.transactions.values() if t.month == month]

    # -------------------------------------------------------------------------
    # Snapshot / restore
    # -------------------------------------------------------------------------

    def snapshot(self) -> BudgetState:
        return self._state.copy()

    def restore(self, state: BudgetState) -> None:
        self._state = state.copy()
        self._changed()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_account(self, account: Account) -> None:
        self._state.accounts[account.id] = account
        self._changed()

    def upsert_category(self, category: CategoryMetadata) -> None:
        self._state.categories[category.id] = category
        self._changed()

    def remove_category(self, category_id: str) -> None:
        self._state.categories.pop(category_id, None)
        self._changed()

    def upsert_allocation(self, allocation: MonthlyAllocation) -> None:
        self._state.allocations[allocation.id] = allocation
        self._changed()

    def upsert_transaction(self, transaction: Transaction) -> None:
        self._state.transactions[transaction.id] = transaction
        self._changed()

    def adjust_balance(self, account_id: str, delta: Decimal) -> None:
        account = self._state.accounts.get(account_id)
        if account is None:
            return
        self._state.accounts[account_id] = account.model_copy(update={"balance": account.balance + delta})
        self._changed()

    def replace_accounts(self, accounts: list[Account]) -> None:
        self._state.accounts = {a.id: a for a in accounts}
        self._changed()

    def replace_categories(self, categories: list[CategoryMetadata]) -> None:
        self._state.categories = {c.id: c for c in categories}
        self._changed()

    def replace_allocations(self, allocations: list[MonthlyAllocation]) -> None:
        self._state.allocations = {a.id: a for a in allocations}
        self._changed()

    def replace_transactions(self, transactions: list[Transaction]) -> None:
        self._state.transactions = {t.id: t for t in transactions}
        self._changed()

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    @contextmanager
    def changing(self) -> Iterator["LocalBudgetView"]:
        """Group several writes into one notification."""
        self._defer_depth += 1
        try:
            yield self
        finally:
            self._defer_depth -= 1
            if self._defer_depth == 0 and self._dirty:
                self._notify()

    def _changed(self) -> None:
        if self._defer_depth:
            self._dirty = True
            return
        self._notify()

    def _notify(self) -> None:
        self._dirty = False
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("view_listener_failed", error=str(e))

    # -------------------------------------------------------------------------
    # Derived data
    # -------------------------------------------------------------------------

    def fingerprint(self) -> str:
        return ledger_fingerprint(self.categories, self.allocations, self.transactions, self.accounts)

    def month_view(self, month: str) -> MonthView:
        """The ledger view of a month, served from the LRU cache when inputs are unchanged."""
        return self.cache.get_or_compute(
            month,
            self.fingerprint(),
            lambda: compute_ledger(
                self.categories, self.allocations, self.transactions, self.accounts, month
            ).view(month),
        )
