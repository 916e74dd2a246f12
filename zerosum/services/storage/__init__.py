"""
Storage Services Package

Provides the abstract document store and its implementations.
Google Sheets is the production backend; the in-memory store backs tests
and offline runs.
"""

from zerosum.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    Document,
    DocumentStore,
    FieldFilter,
    FilterOp,
    NotFoundError,
    Query,
    Snapshot,
    StorageError,
    Subscription,
    TransientRemoteError,
    WriteBatch,
)
from zerosum.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
)
from zerosum.services.storage.memory import InMemoryAuditStorage, InMemoryDocumentStore
from zerosum.services.storage.repository import (
    BudgetRepository,
    TransactionPage,
    from_document,
    parse_documents,
    to_document,
    transactions_from_snapshot,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "DocumentStore",
    # Query and write primitives
    "Document",
    "FieldFilter",
    "FilterOp",
    "Query",
    "Snapshot",
    "Subscription",
    "WriteBatch",
    # Exceptions
    "ConnectionError",
    "NotFoundError",
    "StorageError",
    "TransientRemoteError",
    # Implementations
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    "InMemoryAuditStorage",
    "InMemoryDocumentStore",
    # Repository
    "BudgetRepository",
    "TransactionPage",
    "from_document",
    "parse_documents",
    "to_document",
    "transactions_from_snapshot",
]
