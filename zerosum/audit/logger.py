"""
Audit Logger

DESIGN DECISION: The audit trail records what happened to the user's
data, not how the code got there. An optimistic edit that is committed,
rolled back, queued, retried or dismissed leaves one event each; a scan
leaves one event per attempt. Debug chatter goes to the module loggers.

Persistence is best effort. A failing audit store is logged locally and
never propagates into the edit or scan that produced the event.
"""

import logging
from collections import deque
from typing import Iterable, Optional
from uuid import UUID, uuid4

import structlog

from zerosum.models.audit import AuditEvent, AuditEventBuilder, AuditEventType, AuditSeverity
from zerosum.services.storage import AuditStorageInterface


_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}

_configured = False


def configure_logging(debug: bool = False, json: bool = True, force: bool = False) -> None:
    """
    Set up structlog for the whole process.

    Called once by the orchestrator with the loaded settings; the first
    AuditLogger falls back to the defaults if nobody did.
    """
    global _configured
    if _configured and not force:
        return

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    logging.basicConfig(format="%(message)s", level=logging.DEBUG if debug else logging.INFO)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


class AuditLogger:
    """
    Writes audit events to the local log and, when configured, to an
    audit store (the "Audit Log" worksheet in production).

    The most recent events stay in memory so callers and tests can ask
    what happened without a round trip to the store.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
        max_history: int = 1000,
    ):
        configure_logging()
        self._storage = storage
        self._logger = structlog.get_logger("zerosum.audit")
        self._history: deque[AuditEvent] = deque(maxlen=max_history)
        self._reported: set[tuple[str, str, Optional[str]]] = set()

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._history)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self._history if e.event_type == event_type]

    async def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        Returns False only when a configured store refused the event.
        """
        self._history.append(event)
        emit = getattr(self._logger, _LEVELS.get(event.severity, "info"))
        emit(event.event_type.value, **event.to_log_dict())

        if self._storage is None:
            return True
        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False

    # -------------------------------------------------------------------------
    # Shorthands for events with more than a couple of fields
    # -------------------------------------------------------------------------

    async def log_mutation_queued(
        self,
        mutation_id: str,
        entity: str,
        attempts: int,
        error: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.mutation_queued(
            mutation_id=mutation_id,
            entity=entity,
            attempts=attempts,
            error=error,
            correlation_id=correlation_id,
        ))

    async def log_scan_failed(
        self,
        transaction_id: str,
        error_code: str,
        error_message: str,
        retry_count: int,
        exhausted: bool,
    ) -> None:
        await self.log(AuditEventBuilder.scan_failed(
            transaction_id=transaction_id,
            error_code=error_code,
            error_message=error_message,
            retry_count=retry_count,
            exhausted=exhausted,
        ))

    async def log_ledger_diagnostics(self, diagnostics: Iterable, month: str) -> int:
        """
        Record ledger diagnostics not reported before.

        The same problem shows up on every recompute until the data is
        fixed, so each (code, message, month) is logged once per logger.
        Returns how many new events were written.
        """
        written = 0
        for diagnostic in diagnostics:
            code = getattr(diagnostic.code, "value", str(diagnostic.code))
            key = (code, diagnostic.message, diagnostic.month or month)
            if key in self._reported:
                continue
            self._reported.add(key)
            await self.log(AuditEventBuilder.ledger_diagnostic(code, diagnostic.message, key[2]))
            written += 1
        return written

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    New id shared by every event of one user action (apply, commit or
    rollback, queueing).
    """
    return uuid4()
