"""
Receipt Scanner Contract

DESIGN DECISION: The OCR service is a boundary we do not trust.
1. Candidate category names sent to it are sanitized and capped
2. Everything it returns is PROPOSED data, normalized later by the scan queue
3. Error messages coming back are scrubbed before they are stored or logged,
   because provider errors can echo the request (including the image)
"""

import re
from abc import ABC, abstractmethod
from typing import Iterable

from zerosum.models.budget import ScanErrorCode, ScanResult


DEFAULT_CANDIDATE_CATEGORIES = ["Dining Out", "Groceries", "Utilities", "Rent", "Entertainment"]

_DATA_URI = re.compile(r"data:image/[^;]+;base64,[a-zA-Z0-9+/=]+")
_LONG_BASE64 = re.compile(r"[a-zA-Z0-9+/]{100,}")
_SAFE_CATEGORY = re.compile(r"^[\w &/'.,()+\-]+$", re.UNICODE)
MAX_CATEGORY_NAME_LENGTH = 100


class OCRError(Exception):
    """Base exception for OCR errors."""

    code = ScanErrorCode.SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(sanitize_error_message(message))


class ScanTimeoutError(OCRError):
    """The OCR call did not answer within the hard timeout."""

    code = ScanErrorCode.TIMEOUT


class ScanServiceError(OCRError):
    """The OCR service failed or returned something unusable."""

    def __init__(self, message: str, code: ScanErrorCode = ScanErrorCode.SERVER_ERROR):
        super().__init__(message)
        self.code = code


def sanitize_error_message(message: str) -> str:
    """Strip embedded image payloads and long base64 runs from an error message."""
    sanitized = _DATA_URI.sub("[IMAGE_DATA]", message)
    return _LONG_BASE64.sub("[SENSITIVE_DATA]", sanitized)


def prepare_candidate_categories(names: Iterable[str], limit: int = 50) -> list[str]:
    """
    Clean the category names offered to the OCR service.

    Keeps first occurrences only (case-insensitive), drops names outside
    the safe character set, and caps the list. Falls back to a default
    list when nothing usable remains.
    """
    seen = set()
    result = []
    for name in names:
        cleaned = " ".join(str(name).split())
        if not cleaned or len(cleaned) > MAX_CATEGORY_NAME_LENGTH:
            continue
        if not _SAFE_CATEGORY.match(cleaned):
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
        if len(result) >= limit:
            break
    return result or list(DEFAULT_CANDIDATE_CATEGORIES)


class ReceiptScanner(ABC):
    """
    Extracts payee, date, amount and a suggested category from a receipt photo.

    Implementations return a ScanResult for every outcome the service
    reports (including "this is not a receipt"); they raise OCRError only
    for transport-level failures.
    """

    @abstractmethod
    async def scan(self, image_base64: str, categories: list[str]) -> ScanResult:
        pass
