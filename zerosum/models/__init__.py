"""
Data Models Package

This package contains all Pydantic models used in ZeroSum.
All data flowing through the system must conform to these schemas.
"""

from zerosum.models.budget import (
    MONEY_QUANT,
    QUEUED_RECEIPT_PAYEE,
    RTA_CATEGORY_NAME,
    Account,
    AccountType,
    CategoryMetadata,
    DerivedCategory,
    MonthlyAllocation,
    MutationEntity,
    MutationType,
    PendingMutation,
    ReceiptData,
    ScanError,
    ScanErrorCode,
    ScanResult,
    ScanStatus,
    TargetType,
    Transaction,
    TransactionStatus,
    adjacent_months,
    allocation_id,
    month_bounds,
    month_of,
    new_id,
    shift_month,
    to_money,
)
from zerosum.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Budget models
    "MONEY_QUANT",
    "QUEUED_RECEIPT_PAYEE",
    "RTA_CATEGORY_NAME",
    "Account",
    "AccountType",
    "CategoryMetadata",
    "DerivedCategory",
    "MonthlyAllocation",
    "MutationEntity",
    "MutationType",
    "PendingMutation",
    "ReceiptData",
    "ScanError",
    "ScanErrorCode",
    "ScanResult",
    "ScanStatus",
    "TargetType",
    "Transaction",
    "TransactionStatus",
    "adjacent_months",
    "allocation_id",
    "month_bounds",
    "month_of",
    "new_id",
    "shift_month",
    "to_money",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
