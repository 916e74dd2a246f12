"""
Audit Models for ZeroSum

One event per state change of an optimistic edit or a receipt scan, plus
ledger anomalies and bootstrap steps. Events are written to the local log
and appended to the audit worksheet, one row each.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    # Mutation framework
    MUTATION_APPLIED = "mutation_applied"
    MUTATION_COMMITTED = "mutation_committed"
    MUTATION_ROLLED_BACK = "mutation_rolled_back"
    MUTATION_QUEUED = "mutation_queued"
    MUTATION_RETRIED = "mutation_retried"
    MUTATION_DISMISSED = "mutation_dismissed"
    MUTATION_REJECTED = "mutation_rejected"

    # Scan queue
    SCAN_QUEUED = "scan_queued"
    SCAN_STARTED = "scan_started"
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"
    SCAN_EXHAUSTED = "scan_exhausted"

    LEDGER_DIAGNOSTIC = "ledger_diagnostic"

    # Bootstrap
    DATA_SEEDED = "data_seeded"
    CC_CATEGORY_CREATED = "cc_category_created"

    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Column order of the audit worksheet
SHEET_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details",
    "error_message",
    "is_user_action",
]


class AuditEvent(BaseModel):
    """
    A single audit event.

    entity_type/entity_id point at the document the event is about
    ("mutation", "transaction", "category", "ledger"). Events of one user
    action share a correlation_id.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """Flat JSON-safe dict for structured logging."""
        return self.model_dump(mode="json")

    def to_sheets_row(self) -> list:
        """Cell values in SHEET_COLUMNS order; empty strings for missing values."""
        data = self.model_dump(mode="json")
        data["details"] = json.dumps(self.details, default=str) if self.details else ""
        data["timestamp"] = self.timestamp.isoformat()
        data["is_user_action"] = str(self.is_user_action)
        return ["" if data[column] is None else data[column] for column in SHEET_COLUMNS]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_queued(mutation_id, "transaction", error)
        event = AuditEventBuilder.scan_completed(transaction_id, payee, amount)
    """

    @staticmethod
    def mutation_applied(
        operation: str,
        entity: str,
        entity_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_APPLIED,
            severity=AuditSeverity.DEBUG,
            entity_type=entity,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Applied {operation} locally",
            details={"operation": operation},
            is_user_action=True,
        )

    @staticmethod
    def mutation_committed(
        operation: str,
        entity: str,
        entity_id: Optional[str],
        commit_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_COMMITTED,
            entity_type=entity,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Committed {operation}",
            details={"operation": operation, "commit_id": commit_id},
        )

    @staticmethod
    def mutation_rolled_back(
        operation: str,
        entity: str,
        entity_id: Optional[str],
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            entity_type=entity,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Rolled back {operation} after a failed commit",
            details={"operation": operation},
            error_message=error,
        )

    @staticmethod
    def mutation_queued(
        mutation_id: str,
        entity: str,
        attempts: int,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_QUEUED,
            severity=AuditSeverity.WARNING,
            entity_type="mutation",
            entity_id=mutation_id,
            correlation_id=correlation_id,
            description=f"Queued failed {entity} mutation for retry",
            details={"entity": entity, "attempts": attempts},
            error_message=error,
        )

    @staticmethod
    def mutation_retried(
        mutation_id: str,
        succeeded: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_RETRIED,
            severity=AuditSeverity.INFO if succeeded else AuditSeverity.WARNING,
            entity_type="mutation",
            entity_id=mutation_id,
            correlation_id=correlation_id,
            description="Retry succeeded" if succeeded else "Retry failed",
            details={"succeeded": succeeded},
            is_user_action=True,
        )

    @staticmethod
    def mutation_dismissed(mutation_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_DISMISSED,
            entity_type="mutation",
            entity_id=mutation_id,
            description="User abandoned a failed mutation",
            is_user_action=True,
        )

    @staticmethod
    def mutation_rejected(
        operation: str,
        entity_id: Optional[str],
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_id=entity_id,
            description=f"Rejected {operation}: {reason}"[:500],
            details={"operation": operation},
            error_code="VALIDATION_ERROR",
            error_message=reason,
            is_user_action=True,
        )

    @staticmethod
    def scan_queued(transaction_id: str, image_size: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCAN_QUEUED,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Receipt queued for scanning",
            details={"image_size_bytes": image_size},
            is_user_action=True,
        )

    @staticmethod
    def scan_started(transaction_id: str, attempt: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCAN_STARTED,
            severity=AuditSeverity.DEBUG,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Scan attempt {attempt} started",
            details={"attempt": attempt},
        )

    @staticmethod
    def scan_completed(
        transaction_id: str,
        payee: str,
        amount: str,
        category: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCAN_COMPLETED,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Receipt scanned: {payee}"[:500],
            details={"payee": payee, "amount": amount, "category": category},
        )

    @staticmethod
    def scan_failed(
        transaction_id: str,
        error_code: str,
        error_message: str,
        retry_count: int,
        exhausted: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCAN_EXHAUSTED if exhausted else AuditEventType.SCAN_FAILED,
            severity=AuditSeverity.ERROR if exhausted else AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            description=(
                "Receipt scan failed permanently" if exhausted
                else f"Receipt scan failed (attempt {retry_count})"
            ),
            details={"retry_count": retry_count},
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def ledger_diagnostic(
        code: str,
        message: str,
        month: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_DIAGNOSTIC,
            severity=AuditSeverity.WARNING,
            entity_type="ledger",
            description=message[:500],
            details={"month": month},
            error_code=code,
        )

    @staticmethod
    def data_seeded(kind: str, accounts: int, categories: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DATA_SEEDED,
            description=f"Seeded {kind} data",
            details={"accounts": accounts, "categories": categories},
        )

    @staticmethod
    def cc_category_created(account_id: str, category_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CC_CATEGORY_CREATED,
            entity_type="category",
            entity_id=category_id,
            description="Created credit-card payment category",
            details={"account_id": account_id},
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"External service error: {service}",
            details={"service": service},
            error_message=error_message,
        )
