"""
Mutation Guard Checks

DESIGN DECISION: Budget rule violations are rejected BEFORE anything is
applied or sent. A rejected edit never touches the local view, never
makes a network trip and never enters the retry queue.

Guards cover:
- The Ready to Assign category cannot be renamed, unflagged or deleted
- A category still referenced by a transaction cannot be deleted
- Category names are unique (case-insensitive)
- Referenced accounts and categories must exist
- Credit-card payment transfers must target a credit-card account
- Amounts stay within the configured maximum, on add and on edit
- A completed receipt scan is final

IMPORTANT: Validation NEVER silently fixes issues. It raises.
"""

import re
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from zerosum.config import get_settings
from zerosum.models.budget import (
    MONTH_PATTERN,
    CategoryMetadata,
    ScanStatus,
    Transaction,
    TransactionStatus,
)

if TYPE_CHECKING:
    from zerosum.sync.local_view import LocalBudgetView


_MONTH = re.compile(MONTH_PATTERN)

# Fields a reconciled transaction keeps frozen
RECONCILED_LOCKED_FIELDS = ("amount", "account_id", "date")


class ValidationError(Exception):
    """A mutation would break a budget rule."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class MutationValidator:
    """Synchronous guard checks against the local view."""

    def __init__(self, view: "LocalBudgetView", max_amount: Optional[Decimal] = None):
        self._view = view
        if max_amount is None:
            max_amount = Decimal(str(get_settings().app.max_transaction_amount))
        self._max_amount = max_amount

    # -------------------------------------------------------------------------
    # Shared checks
    # -------------------------------------------------------------------------

    def _require_account(self, account_id: str):
        account = self._view.get_account(account_id)
        if account is None:
            raise ValidationError(f"Unknown account: {account_id}", field="account_id")
        return account

    def _require_category(self, category_id: str) -> CategoryMetadata:
        category = self._view.get_category(category_id)
        if category is None:
            raise ValidationError(f"Unknown category: {category_id}", field="category_id")
        return category

    def _check_amount(self, amount: Decimal) -> None:
        if abs(amount) > self._max_amount:
            raise ValidationError(
                f"Amount {amount} exceeds the maximum of {self._max_amount}",
                field="amount",
            )

    def _check_unique_name(self, name: str, exclude_id: Optional[str] = None) -> None:
        existing = self._view.category_by_name(name)
        if existing is not None and existing.id != exclude_id:
            raise ValidationError(f"A category named {name!r} already exists", field="name")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def validate_new_transaction(self, transaction: Transaction) -> None:
        if self._view.get_transaction(transaction.id) is not None:
            raise ValidationError(f"Transaction {transaction.id} already exists", field="id")
        self._require_account(transaction.account_id)
        if transaction.category_id is not None:
            self._require_category(transaction.category_id)
        self._check_amount(transaction.amount)

    def validate_transaction_update(self, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        current = self._view.get_transaction(transaction_id)
        if current is None:
            raise ValidationError(f"Unknown transaction: {transaction_id}", field="id")
        if "id" in changes and changes["id"] != transaction_id:
            raise ValidationError("A transaction id cannot be changed", field="id")
        if "account_id" in changes:
            self._require_account(changes["account_id"])
        if changes.get("category_id") is not None:
            self._require_category(changes["category_id"])
        if "amount" in changes:
            self._check_amount(changes["amount"])
        if (
            current.scan_status == ScanStatus.COMPLETED
            and changes.get("scan_status", ScanStatus.COMPLETED) != ScanStatus.COMPLETED
        ):
            raise ValidationError("A completed scan cannot be reopened", field="scan_status")
        if current.status == TransactionStatus.RECONCILED:
            for name in RECONCILED_LOCKED_FIELDS:
                if name in changes and changes[name] != getattr(current, name):
                    raise ValidationError(
                        f"Reconciled transactions cannot change {name}",
                        field=name,
                    )
        return current

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def validate_new_category(self, category: CategoryMetadata) -> None:
        if self._view.get_category(category.id) is not None:
            raise ValidationError(f"Category {category.id} already exists", field="id")
        self._check_unique_name(category.name)
        if category.is_rta and self._view.rta_category is not None:
            raise ValidationError("There is already a Ready to Assign category", field="is_rta")
        if category.is_cc_payment:
            account = self._require_account(category.linked_account_id)
            if not account.is_credit_card:
                raise ValidationError(
                    "Payment categories can only link credit-card accounts",
                    field="linked_account_id",
                )
            if self._view.payment_category_for(account.id) is not None:
                raise ValidationError(
                    f"Account {account.name!r} already has a payment category",
                    field="linked_account_id",
                )

    def validate_category_update(self, category_id: str, changes: dict[str, Any]) -> CategoryMetadata:
        current = self._require_category(category_id)
        if "id" in changes and changes["id"] != category_id:
            raise ValidationError("A category id cannot be changed", field="id")
        if current.is_rta:
            if "name" in changes and changes["name"] != current.name:
                raise ValidationError("The Ready to Assign category cannot be renamed", field="name")
            if changes.get("is_rta") is False:
                raise ValidationError("The Ready to Assign category must stay Ready to Assign", field="is_rta")
        elif changes.get("is_rta"):
            raise ValidationError("There can only be one Ready to Assign category", field="is_rta")
        for name in ("is_cc_payment", "linked_account_id"):
            if name in changes and changes[name] != getattr(current, name):
                raise ValidationError(
                    "Credit-card payment links are managed automatically",
                    field=name,
                )
        if "name" in changes:
            self._check_unique_name(changes["name"], exclude_id=category_id)
        return current

    def validate_category_delete(self, category_id: str) -> CategoryMetadata:
        current = self._require_category(category_id)
        if current.is_rta:
            raise ValidationError("The Ready to Assign category cannot be deleted")
        referenced = self._view.transactions_referencing(current)
        if referenced:
            raise ValidationError(
                f"Category {current.name!r} is used by {len(referenced)} transaction(s)"
            )
        if current.is_cc_payment and current.linked_account_id:
            if self._view.get_account(current.linked_account_id) is not None:
                raise ValidationError(
                    "A payment category cannot be deleted while its credit card exists"
                )
        return current

    # -------------------------------------------------------------------------
    # Allocations, accounts, transfers
    # -------------------------------------------------------------------------

    def validate_allocation(self, month: str, category_id: str, amount: Decimal) -> CategoryMetadata:
        if not _MONTH.match(month):
            raise ValidationError(f"Invalid month: {month!r}", field="month")
        category = self._require_category(category_id)
        if category.is_rta:
            raise ValidationError("Ready to Assign cannot be budgeted directly", field="category_id")
        self._check_amount(amount)
        return category

    def validate_reconcile(self, account_id: str) -> None:
        self._require_account(account_id)

    def validate_transfer(self, from_account_id: str, card_account_id: str, amount: Decimal) -> CategoryMetadata:
        """Validate a card payment; returns the card's payment category."""
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        self._check_amount(amount)
        source = self._require_account(from_account_id)
        card = self._require_account(card_account_id)
        if not card.is_credit_card:
            raise ValidationError(f"Account {card.name!r} is not a credit card", field="card_account_id")
        if source.id == card.id:
            raise ValidationError("Cannot pay a card from itself", field="from_account_id")
        payment = self._view.payment_category_for(card.id)
        if payment is None:
            raise ValidationError(
                f"Credit card {card.name!r} has no payment category",
                field="card_account_id",
            )
        return payment
