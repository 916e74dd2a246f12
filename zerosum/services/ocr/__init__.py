"""OCR services package."""

from zerosum.services.ocr.base import (
    DEFAULT_CANDIDATE_CATEGORIES,
    OCRError,
    ReceiptScanner,
    ScanServiceError,
    ScanTimeoutError,
    prepare_candidate_categories,
    sanitize_error_message,
)
from zerosum.services.ocr.gemini_service import GeminiReceiptScanner, detect_mime_type

__all__ = [
    "DEFAULT_CANDIDATE_CATEGORIES",
    "GeminiReceiptScanner",
    "OCRError",
    "ReceiptScanner",
    "ScanServiceError",
    "ScanTimeoutError",
    "detect_mime_type",
    "prepare_candidate_categories",
    "sanitize_error_message",
]
