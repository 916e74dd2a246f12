"""
Core Data Models for ZeroSum

These models define the schemas for every entity the ledger engine,
the mutation framework and the scan queue exchange:

1. Accounts, category metadata, monthly allocations and transactions
   (the raw, persisted entity sets)
2. Derived categories (ledger output, never persisted)
3. Pending mutations (the durable retry log)
4. Receipt scan results (OCR boundary)

DESIGN DECISION: Money is always Decimal quantized to cents. Floats never
enter the ledger, so repeated recomputation cannot drift.

DESIGN DECISION: Transactions link to categories by id. The category name
on a transaction is a display projection only; renaming a category must
never orphan its history.
"""

import datetime as dt
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


MONEY_QUANT = Decimal("0.01")
MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

RTA_CATEGORY_NAME = "Ready to Assign"
QUEUED_RECEIPT_PAYEE = "Queued Receipt"


def new_id() -> str:
    """Generate a document id."""
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: Any) -> Decimal:
    """Coerce a number or numeric string to a cent-quantized Decimal."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Not a monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


# =============================================================================
# MONTH HELPERS - months are YYYY-MM strings, which sort chronologically
# =============================================================================

def month_of(day: date) -> str:
    """Return the YYYY-MM month key for a date."""
    return f"{day.year:04d}-{day.month:02d}"


def shift_month(month: str, offset: int) -> str:
    """Move a YYYY-MM key by a number of months."""
    year, mon = (int(part) for part in month.split("-"))
    index = year * 12 + (mon - 1) + offset
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def adjacent_months(month: str) -> list[str]:
    """Previous and next month of a YYYY-MM key."""
    return [shift_month(month, -1), shift_month(month, 1)]


def month_bounds(month: str) -> tuple[date, date]:
    """First day of the month and first day of the following month."""
    start = date.fromisoformat(f"{month}-01")
    end = date.fromisoformat(f"{shift_month(month, 1)}-01")
    return start, end


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Supported account types."""
    CHECKING = "Checking"
    SAVINGS = "Savings"
    CREDIT_CARD = "Credit Card"
    CASH = "Cash"


class TransactionStatus(str, Enum):
    """Clearing status of a transaction."""
    UNCLEARED = "uncleared"
    CLEARED = "cleared"
    RECONCILED = "reconciled"  # Locked in by an account reconciliation


class ScanStatus(str, Enum):
    """
    Receipt scan lifecycle.

    pending -> scanning -> completed | failed
    """
    PENDING = "pending"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"


class TargetType(str, Enum):
    """Funding target kinds a category can carry."""
    MONTHLY = "monthly"
    BALANCE = "balance"
    BALANCE_BY_DATE = "balance_by_date"


class MutationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class MutationEntity(str, Enum):
    TRANSACTION = "transaction"
    CATEGORY = "category"
    ALLOCATION = "allocation"
    ACCOUNT = "account"


class ScanErrorCode(str, Enum):
    """Standardized scan error codes."""
    TIMEOUT = "SCAN_TIMEOUT"
    UNSCANNABLE = "SCAN_FAILED_UNSCANNABLE"
    NOT_A_RECEIPT = "SCAN_FAILED_NOT_RECEIPT"
    SERVER_ERROR = "SCAN_SERVER_ERROR"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"


# =============================================================================
# PERSISTED ENTITIES
# =============================================================================

class Account(BaseModel):
    """
    A real-world money container.

    The balance is a signed running total. It only moves through
    balance-affecting operations (transaction add/update and
    credit-card payment transfers), always as an increment committed
    in the same batch as the transaction that caused it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.CHECKING
    balance: Decimal = Field(default=Decimal("0.00"))

    @field_validator("balance", mode="before")
    @classmethod
    def quantize_balance(cls, v: Any) -> Decimal:
        return to_money(v)

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.CREDIT_CARD


class CategoryMetadata(BaseModel):
    """
    An envelope's static description.

    Balances are NOT stored here; they are derived per month by the
    ledger engine from allocations and transactions.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="bg-blue-500", max_length=50)
    hex: str = Field(default="#3b82f6", pattern=r"^#[0-9a-fA-F]{6}$")

    # Exactly one RTA category per user - the residual envelope
    is_rta: bool = False

    # Shadow envelope for one credit-card account
    is_cc_payment: bool = False
    linked_account_id: Optional[str] = None

    # Optional funding target
    target_type: Optional[TargetType] = None
    target_amount: Optional[Decimal] = Field(default=None, ge=0)
    target_date: Optional[date] = None

    @field_validator("target_amount", mode="before")
    @classmethod
    def quantize_target(cls, v: Any) -> Optional[Decimal]:
        return None if v is None else to_money(v)

    @model_validator(mode="after")
    def validate_flags(self) -> "CategoryMetadata":
        """Validate flag and target combinations."""
        if self.is_rta and self.is_cc_payment:
            raise ValueError("A category cannot be both RTA and a credit-card payment category")
        if self.is_cc_payment and not self.linked_account_id:
            raise ValueError("Credit-card payment categories must link an account")
        if self.target_type == TargetType.BALANCE_BY_DATE and self.target_date is None:
            raise ValueError("balance_by_date targets require a target date")
        return self


class MonthlyAllocation(BaseModel):
    """
    Budgeted amount for one category in one month.

    Document id is "{month}_{category_id}" so an upsert is a plain set.
    Rows are never pruned: rollover needs the full history.
    """

    month: str = Field(..., pattern=MONTH_PATTERN)
    category_id: str = Field(..., min_length=1)
    budgeted: Decimal = Field(default=Decimal("0.00"))

    @field_validator("budgeted", mode="before")
    @classmethod
    def quantize_budgeted(cls, v: Any) -> Decimal:
        return to_money(v)

    @property
    def id(self) -> str:
        return allocation_id(self.month, self.category_id)


def allocation_id(month: str, category_id: str) -> str:
    return f"{month}_{category_id}"


class Transaction(BaseModel):
    """
    A single signed money movement on one account.

    Negative amounts are outflows, positive amounts are inflows.
    A transaction with no category_id is one leg of a transfer.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    date: dt.date
    payee: str = Field(default="", max_length=200)

    category_id: Optional[str] = None
    category: str = Field(
        default="",
        max_length=100,
        description="Category display name (projection only, never used for linkage)"
    )

    amount: Decimal
    account_id: str = Field(..., min_length=1)
    status: TransactionStatus = TransactionStatus.UNCLEARED
    transfer_id: Optional[str] = Field(
        default=None,
        description="Shared id of both legs of a transfer"
    )

    # Receipt scanning
    scan_status: Optional[ScanStatus] = None
    scan_retry_count: int = Field(default=0, ge=0)
    scan_last_error: Optional[str] = None

    # Local-write-not-yet-confirmed flag, never persisted
    is_pending: bool = Field(default=False, exclude=True)

    @field_validator("amount", mode="before")
    @classmethod
    def quantize_amount(cls, v: Any) -> Decimal:
        return to_money(v)

    @property
    def month(self) -> str:
        return month_of(self.date)

    @property
    def is_outflow(self) -> bool:
        return self.amount < 0


# =============================================================================
# DERIVED ENTITIES (ledger output)
# =============================================================================

class DerivedCategory(CategoryMetadata):
    """
    Category metadata merged with its balances for one month.

    Produced by the ledger engine, never persisted.
    """

    model_config = ConfigDict(frozen=True)

    month: str = Field(..., pattern=MONTH_PATTERN)
    budgeted: Decimal = Decimal("0.00")
    activity: Decimal = Decimal("0.00")
    available: Decimal = Decimal("0.00")
    spent: Decimal = Field(
        default=Decimal("0.00"),
        description="Total outflows this month as a positive number"
    )

    @property
    def is_overspent(self) -> bool:
        return self.available < 0


# =============================================================================
# SYNC MODELS
# =============================================================================

class PendingMutation(BaseModel):
    """
    A user edit whose remote commit failed.

    The payload is everything needed to replay the mutation, so it must
    stay JSON-serializable: the log is written to disk and survives restarts.
    """

    id: str = Field(default_factory=new_id)
    type: MutationType
    entity: MutationEntity
    operation: str = Field(
        ...,
        description="Name of the mutation manager operation to replay"
    )
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    attempts: int = Field(default=1, ge=1)
    error: Optional[str] = None

    @property
    def description(self) -> str:
        verb = {
            MutationType.ADD: "add",
            MutationType.UPDATE: "update",
            MutationType.DELETE: "delete",
        }[self.type]
        return f"Could not {verb} {self.entity.value}"


# =============================================================================
# RECEIPT SCAN MODELS
# =============================================================================

class ReceiptData(BaseModel):
    """
    Fields extracted from a receipt.

    This is PROPOSED data from the OCR service. It is only trusted after
    the scan queue has normalized it (sign convention, category lookup).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    payee: str = Field(default="", max_length=200)
    date: Optional[dt.date] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("amount", mode="before")
    @classmethod
    def quantize_amount(cls, v: Any) -> Optional[Decimal]:
        if v is None or v == "":
            return None
        return to_money(v)

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v: Any) -> Optional[dt.date]:
        """OCR dates are YYYY-MM-DD strings; anything unparsable is dropped."""
        if v is None or isinstance(v, date):
            return v
        try:
            return date.fromisoformat(str(v).strip()[:10])
        except ValueError:
            return None


class ScanError(BaseModel):
    code: ScanErrorCode
    message: str = ""


class ScanResult(BaseModel):
    """
    Outcome of one OCR call.

    Mirrors the service contract: success with data, or failure with
    an error code and a sanitized message.
    """

    success: bool
    data: Optional[ReceiptData] = None
    error: Optional[ScanError] = None

    @classmethod
    def ok(cls, data: ReceiptData) -> "ScanResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ScanErrorCode, message: str) -> "ScanResult":
        return cls(success=False, error=ScanError(code=code, message=message))

    @model_validator(mode="after")
    def validate_shape(self) -> "ScanResult":
        if self.success and self.data is None:
            raise ValueError("Successful scan results must carry data")
        if not self.success and self.error is None:
            raise ValueError("Failed scan results must carry an error")
        return self
