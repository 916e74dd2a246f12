"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the remote store because:
1. Users can view their budget data directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

Layout: one worksheet per collection, one row per document:
    [id, data_json, updated_at]

TRADEOFFS:
- Sheets has no transactions. A batch is computed against a fresh read of
  every touched worksheet and written back with ONE values_batch_update
  call, which the Sheets API applies as a single request. The commit id is
  appended to a commits worksheet in that same request, so a replayed batch
  is detected and skipped.
- Sheets has no realtime listeners. Subscriptions are refreshed by polling.
- Limited query capabilities (we filter in Python)

gspread is synchronous; every call runs in a worker thread so the event
loop (and the scan queue sweeping on it) never blocks.
"""

import asyncio
import copy
import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from zerosum.config import get_settings
from zerosum.config.settings import GoogleSheetsSettings
from zerosum.models.audit import SHEET_COLUMNS, AuditEvent, AuditEventType, AuditSeverity
from zerosum.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    Document,
    DocumentStore,
    Query,
    StorageError,
    TransientRemoteError,
    WriteBatch,
)


logger = structlog.get_logger(__name__)


DOCUMENT_COLUMNS = ["id", "data", "updated_at"]
COMMIT_COLUMNS = ["commit_id", "committed_at"]
COMMITS_SHEET_NAME = "_commits"

AUDIT_COLUMNS = SHEET_COLUMNS


def sheet_title(collection: str) -> str:
    """Worksheet title for a collection path (users/u1/accounts -> users.u1.accounts)."""
    return collection.replace("/", ".")


def _column_letter(count: int) -> str:
    return chr(ord("A") + count - 1)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, headers: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet, writing headers on creation."""
        if title in self._worksheets:
            return self._worksheets[title]
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(headers),
            )
            sheet.append_row(headers)
        self._worksheets[title] = sheet
        return sheet

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self.get_worksheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


class GoogleSheetsDocumentStore(DocumentStore):
    """
    Document store on top of a spreadsheet.

    Reads are retried with exponential backoff. Commits are not: the
    mutation framework owns commit retry. Each commit re-reads the commits
    sheet first, so a replay whose earlier response was lost but whose
    write landed is not applied twice.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        super().__init__()
        self._client = client or GoogleSheetsClient()
        self._poll_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_document(row: list) -> Optional[Document]:
        if not row or not row[0]:
            return None
        try:
            data = json.loads(row[1]) if len(row) > 1 and row[1] else {}
        except json.JSONDecodeError:
            logger.warning("malformed_document_row", doc_id=row[0])
            return None
        return Document(row[0], data)

    @staticmethod
    def _document_to_row(doc_id: str, data: dict, updated_at: str) -> list:
        return [doc_id, json.dumps(data, default=str, sort_keys=True), updated_at]

    # -------------------------------------------------------------------------
    # Synchronous gspread calls (run in worker threads)
    # -------------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _read_collection_sync(self, collection: str) -> dict[str, dict]:
        sheet = self._client.get_worksheet(sheet_title(collection), DOCUMENT_COLUMNS)
        documents = {}
        for row in sheet.get_all_values()[1:]:
            doc = self._row_to_document(row)
            if doc is not None:
                documents[doc.id] = doc.data
        return documents

    def _read_commits_sync(self) -> list[str]:
        sheet = self._client.get_worksheet(COMMITS_SHEET_NAME, COMMIT_COLUMNS, rows=5000)
        return [row[0] for row in sheet.get_all_values()[1:] if row and row[0]]

    def _write_batch_sync(self, batch: WriteBatch) -> bool:
        commits = self._read_commits_sync()
        if batch.commit_id in commits:
            return False

        collections = sorted(batch.collections)
        before = {name: self._read_collection_sync(name) for name in collections}
        after = copy.deepcopy(before)
        batch.apply_to(after)

        now = datetime.now(timezone.utc).isoformat()
        width = _column_letter(len(DOCUMENT_COLUMNS))
        data = []
        for name in collections:
            rows = [
                self._document_to_row(doc_id, doc, now)
                for doc_id, doc in after[name].items()
            ]
            # Blank out rows left over from deleted documents
            stale = max(0, len(before[name]) - len(rows))
            rows.extend([[""] * len(DOCUMENT_COLUMNS)] * stale)
            sheet = self._client.get_worksheet(sheet_title(name), DOCUMENT_COLUMNS)
            if len(rows) + 1 > sheet.row_count:
                sheet.add_rows(len(rows) + 1 - sheet.row_count)
            if rows:
                data.append({
                    "range": f"'{sheet.title}'!A2:{width}{len(rows) + 1}",
                    "values": rows,
                })

        commit_row = len(commits) + 2
        commits_sheet = self._client.get_worksheet(COMMITS_SHEET_NAME, COMMIT_COLUMNS, rows=5000)
        if commit_row > commits_sheet.row_count:
            commits_sheet.add_rows(1000)
        data.append({
            "range": f"'{COMMITS_SHEET_NAME}'!A{commit_row}:B{commit_row}",
            "values": [[batch.commit_id, now]],
        })

        self._client.get_spreadsheet().values_batch_update(
            {"valueInputOption": "RAW", "data": data}
        )
        return True

    # -------------------------------------------------------------------------
    # DocumentStore
    # -------------------------------------------------------------------------

    async def _read_collection(self, collection: str) -> dict[str, dict]:
        try:
            documents = await asyncio.to_thread(self._read_collection_sync, collection)
        except StorageError:
            self._set_online(False)
            raise
        except Exception as e:
            self._set_online(False)
            raise StorageError(f"Failed to read {collection}: {e}") from e
        self._set_online(True)
        return documents

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        documents = await self._read_collection(collection)
        if doc_id not in documents:
            return None
        return Document(doc_id, documents[doc_id])

    async def query(self, query: Query) -> list[Document]:
        documents = await self._read_collection(query.collection)
        return query.apply([Document(doc_id, data) for doc_id, data in documents.items()])

    async def _apply_batch(self, batch: WriteBatch) -> bool:
        try:
            written = await asyncio.to_thread(self._write_batch_sync, batch)
        except StorageError:
            raise
        except Exception as e:
            self._set_online(False)
            raise TransientRemoteError(f"Failed to commit batch {batch.commit_id}: {e}") from e
        self._set_online(True)
        logger.debug("batch_committed", commit_id=batch.commit_id, written=written)
        return written

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def start_polling(self) -> None:
        """Refresh subscriptions every poll interval until stop_polling()."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    async def _poll_loop(self) -> None:
        interval = self._client.settings.poll_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except StorageError as e:
                logger.warning("poll_failed", error=str(e))


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=safe_get(5) or None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_message=safe_get(9) or None,
            is_user_action=safe_get(10).lower() == "true",
        )

    def _all_events_sync(self) -> list[AuditEvent]:
        events = []
        for row in self._client.get_audit_sheet().get_all_values()[1:]:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except (ValueError, json.JSONDecodeError):
                    continue  # Skip malformed rows
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append_sync(self, event: AuditEvent) -> None:
        self._client.get_audit_sheet().append_row(event.to_sheets_row(), value_input_option="RAW")

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await asyncio.to_thread(self._append_sync, event)
            return True
        except Exception as e:
            # Audit logging must not break the main flow
            logger.warning("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        """Get events by correlation ID."""
        try:
            events = await asyncio.to_thread(self._all_events_sync)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        related = [e for e in events if e.correlation_id == correlation_id]
        related.sort(key=lambda e: e.timestamp)
        return related

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Get recent events."""
        try:
            events = await asyncio.to_thread(self._all_events_sync)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
