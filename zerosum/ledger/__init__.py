"""Ledger engine package."""

from zerosum.ledger.cache import MonthViewCache
from zerosum.ledger.engine import (
    CategoryBalance,
    DiagnosticCode,
    LedgerDiagnostic,
    LedgerResult,
    MonthView,
    compute_ledger,
    compute_month_view,
    ledger_fingerprint,
)

__all__ = [
    "CategoryBalance",
    "DiagnosticCode",
    "LedgerDiagnostic",
    "LedgerResult",
    "MonthView",
    "MonthViewCache",
    "compute_ledger",
    "compute_month_view",
    "ledger_fingerprint",
]
