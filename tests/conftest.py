"""
Shared fixtures for ZeroSum tests.

No network: every test runs against the in-memory document store, an
in-memory image cache and fake scanners.
"""

from datetime import date
from decimal import Decimal

import pytest

from zerosum.audit import AuditLogger
from zerosum.config.settings import SyncSettings
from zerosum.models.budget import (
    Account,
    AccountType,
    CategoryMetadata,
    MonthlyAllocation,
    RTA_CATEGORY_NAME,
    Transaction,
)
from zerosum.services.storage import BudgetRepository, InMemoryDocumentStore, to_document
from zerosum.sync import LocalBudgetView, MutationManager, NotificationCenter, PendingMutationLog
from zerosum.validation import MutationValidator


USER_ID = "test-user"
MONTH = "2024-05"


class FakeClock:
    """Monotonic clock stepped by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BudgetHarness:
    """A mutation manager over an in-memory store, with a standard budget."""

    def __init__(self):
        self.clock = FakeClock()
        self.store = InMemoryDocumentStore()
        self.repository = BudgetRepository(self.store, USER_ID)
        self.view = LocalBudgetView()
        self.audit = AuditLogger()
        self.notifications = NotificationCenter(window_seconds=2.0, ttl_seconds=5.0, clock=self.clock)
        self.pending_log = PendingMutationLog()
        self.manager = MutationManager(
            self.repository,
            self.view,
            validator=MutationValidator(self.view, max_amount=Decimal("1000000")),
            pending_log=self.pending_log,
            notifications=self.notifications,
            audit_logger=self.audit,
            settings=SyncSettings(pending_writes_timeout_seconds=1.0),
        )

        self.checking = Account(name="Checking", type=AccountType.CHECKING, balance="1000")
        self.card = Account(name="Visa", type=AccountType.CREDIT_CARD, balance="0")
        self.rta = CategoryMetadata(name=RTA_CATEGORY_NAME, is_rta=True)
        self.groceries = CategoryMetadata(name="Groceries")
        self.dining = CategoryMetadata(name="Dining Out")
        self.card_payment = CategoryMetadata(
            name="Visa Payment", is_cc_payment=True, linked_account_id=self.card.id
        )

    def seed(self, accounts=None, categories=None, allocations=(), transactions=()) -> "BudgetHarness":
        """Load the same entities into the store and the local view."""
        if accounts is None:
            accounts = [self.checking, self.card]
        if categories is None:
            categories = [self.rta, self.groceries, self.dining, self.card_payment]
        repo = self.repository
        self.store.load(repo.accounts_path, {a.id: to_document(a) for a in accounts})
        self.store.load(repo.categories_path, {c.id: to_document(c) for c in categories})
        self.store.load(repo.allocations_path, {a.id: to_document(a) for a in allocations})
        self.store.load(repo.transactions_path, {t.id: to_document(t) for t in transactions})
        self.view.replace_accounts(list(accounts))
        self.view.replace_categories(list(categories))
        self.view.replace_allocations(list(allocations))
        self.view.replace_transactions(list(transactions))
        return self

    def allocation(self, month: str, category: CategoryMetadata, amount: str) -> MonthlyAllocation:
        return MonthlyAllocation(month=month, category_id=category.id, budgeted=amount)

    async def stored_account(self, account_id: str) -> Account:
        return await self.repository.get_account(account_id)

    def spend(self, amount: str, category: CategoryMetadata, account: Account = None, **fields) -> Transaction:
        account = account or self.checking
        return Transaction(
            date=fields.pop("date", date(2024, 5, 10)),
            payee=fields.pop("payee", "Store"),
            category_id=category.id,
            category=category.name,
            amount=Decimal(amount),
            account_id=account.id,
            **fields,
        )


@pytest.fixture
def harness() -> BudgetHarness:
    return BudgetHarness().seed()


@pytest.fixture
def bare_harness() -> BudgetHarness:
    """A harness whose store and view are still empty; call seed() yourself."""
    return BudgetHarness()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
