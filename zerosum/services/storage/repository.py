"""
Budget Repository

Typed access to one user's budget collections:

    users/{uid}/accounts
    users/{uid}/categories
    users/{uid}/monthly_allocations
    users/{uid}/transactions

The repository converts between pydantic models and JSON documents and
builds the queries the rest of the system subscribes to. It never writes
by itself: writes are assembled into WriteBatch objects by the mutation
framework so that every user edit is one atomic commit.

Money is persisted as strings ("12.50") and dates as ISO strings, so
ISO date range filters sort and compare correctly as plain strings.
"""

from dataclasses import dataclass
from typing import Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from zerosum.models.budget import (
    Account,
    CategoryMetadata,
    MonthlyAllocation,
    Transaction,
    month_bounds,
)
from zerosum.services.storage.interface import (
    Document,
    DocumentStore,
    Query,
    Snapshot,
    WriteBatch,
)


logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def to_document(model: BaseModel) -> dict:
    """JSON-safe document fields for a model (the id lives in the key)."""
    return model.model_dump(mode="json", exclude={"id"})


def from_document(model_cls: Type[ModelT], doc: Document) -> Optional[ModelT]:
    """Parse a document, skipping (and logging) malformed ones."""
    try:
        return model_cls.model_validate(doc.to_record())
    except ValidationError as e:
        logger.warning(
            "malformed_document",
            model=model_cls.__name__,
            doc_id=doc.id,
            error=str(e),
        )
        return None


def parse_documents(model_cls: Type[ModelT], documents: list[Document]) -> list[ModelT]:
    parsed = (from_document(model_cls, d) for d in documents)
    return [m for m in parsed if m is not None]


def transactions_from_snapshot(snapshot: Snapshot) -> list[Transaction]:
    """Transactions of a snapshot, flagged pending while writes are unconfirmed."""
    transactions = parse_documents(Transaction, snapshot.documents)
    if snapshot.has_pending_writes:
        for txn in transactions:
            txn.is_pending = True
    return transactions


@dataclass
class TransactionPage:
    """One page of a month's transactions, newest first."""

    transactions: list[Transaction]
    has_more: bool

    @property
    def last(self) -> Optional[Transaction]:
        """Pass as `after` to fetch the next page."""
        return self.transactions[-1] if self.transactions else None


class BudgetRepository:
    """Collections and queries for one user."""

    def __init__(self, store: DocumentStore, user_id: str):
        self.store = store
        self.user_id = user_id

    # -------------------------------------------------------------------------
    # Collection paths
    # -------------------------------------------------------------------------

    def _path(self, name: str) -> str:
        return f"users/{self.user_id}/{name}"

    @property
    def accounts_path(self) -> str:
        return self._path("accounts")

    @property
    def categories_path(self) -> str:
        return self._path("categories")

    @property
    def allocations_path(self) -> str:
        return self._path("monthly_allocations")

    @property
    def transactions_path(self) -> str:
        return self._path("transactions")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def accounts_query(self) -> Query:
        return Query(self.accounts_path)

    def categories_query(self) -> Query:
        return Query(self.categories_path)

    def allocations_query(self, month: Optional[str] = None) -> Query:
        query = Query(self.allocations_path)
        if month is not None:
            query = query.where("month", "==", month)
        return query

    def transactions_query(self, month: Optional[str] = None) -> Query:
        """All transactions, or one month's, newest first."""
        query = Query(self.transactions_path)
        if month is not None:
            start, end = month_bounds(month)
            query = query.where("date", ">=", start.isoformat()).where("date", "<", end.isoformat())
        return query.ordered("date", descending=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_accounts(self) -> list[Account]:
        return parse_documents(Account, await self.store.query(self.accounts_query()))

    async def list_categories(self) -> list[CategoryMetadata]:
        return parse_documents(CategoryMetadata, await self.store.query(self.categories_query()))

    async def list_allocations(self, month: Optional[str] = None) -> list[MonthlyAllocation]:
        return parse_documents(MonthlyAllocation, await self.store.query(self.allocations_query(month)))

    async def list_transactions(self, month: Optional[str] = None) -> list[Transaction]:
        return parse_documents(Transaction, await self.store.query(self.transactions_query(month)))

    async def list_transactions_page(
        self,
        month: str,
        account_id: Optional[str] = None,
        page_size: int = 20,
        after: Optional[Transaction] = None,
    ) -> TransactionPage:
        """
        A page of a month's transactions for the register, optionally for one account.

        Pages are cursor based: `after` is the last transaction of the
        previous page, and the next page starts right behind it even if
        rows were added in between. One extra row is read to know whether
        another page exists.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")
        query = self.transactions_query(month)
        if account_id is not None:
            query = query.where("account_id", "==", account_id)
        if after is not None:
            query = query.start_after(after.date.isoformat(), after.id)
        documents = await self.store.query(query.limited(page_size + 1))
        return TransactionPage(
            transactions=parse_documents(Transaction, documents[:page_size]),
            has_more=len(documents) > page_size,
        )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        doc = await self.store.get(self.transactions_path, transaction_id)
        return from_document(Transaction, doc) if doc else None

    async def get_account(self, account_id: str) -> Optional[Account]:
        doc = await self.store.get(self.accounts_path, account_id)
        return from_document(Account, doc) if doc else None

    # -------------------------------------------------------------------------
    # Batch helpers
    # -------------------------------------------------------------------------

    def put_account(self, batch: WriteBatch, account: Account) -> WriteBatch:
        return batch.set(self.accounts_path, account.id, to_document(account))

    def put_category(self, batch: WriteBatch, category: CategoryMetadata) -> WriteBatch:
        return batch.set(self.categories_path, category.id, to_document(category))

    def put_allocation(self, batch: WriteBatch, allocation: MonthlyAllocation) -> WriteBatch:
        return batch.set(self.allocations_path, allocation.id, to_document(allocation))

    def put_transaction(self, batch: WriteBatch, transaction: Transaction) -> WriteBatch:
        return batch.set(self.transactions_path, transaction.id, to_document(transaction))

    def increment_balance(self, batch: WriteBatch, account_id: str, delta) -> WriteBatch:
        return batch.increment(self.accounts_path, account_id, "balance", str(delta))
