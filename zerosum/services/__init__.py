"""Services package."""

from zerosum.services.cache import (
    FileImageCache,
    ImageCache,
    InMemoryImageCache,
)
from zerosum.services.ocr import (
    GeminiReceiptScanner,
    OCRError,
    ReceiptScanner,
    ScanServiceError,
    ScanTimeoutError,
)
from zerosum.services.storage import (
    AuditStorageInterface,
    BudgetRepository,
    ConnectionError,
    DocumentStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
    NotFoundError,
    StorageError,
    TransientRemoteError,
)

__all__ = [
    # Image cache
    "FileImageCache",
    "ImageCache",
    "InMemoryImageCache",
    # OCR services
    "GeminiReceiptScanner",
    "OCRError",
    "ReceiptScanner",
    "ScanServiceError",
    "ScanTimeoutError",
    # Storage services
    "AuditStorageInterface",
    "BudgetRepository",
    "ConnectionError",
    "DocumentStore",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    "InMemoryDocumentStore",
    "NotFoundError",
    "StorageError",
    "TransientRemoteError",
]
