"""
Ledger Engine

Derives every category's budgeted / activity / available / spent figures
for every month from the raw entity sets. This is a PURE function: no I/O,
no clock, no mutation of its inputs. It is cheap enough to call on every
upstream change.

THE ALGORITHM (per month, oldest first, carrying available forward):

1. activity[m][c] = sum of transaction amounts in month m linked to c
2. budgeted[m][c] = the allocation for (m, c)
3. Regular categories:   available = carried + budgeted + activity
4. Credit-card funding:  each outflow on a credit-card account from a
   regular category moves min(max(0, spending_available + |amount|), |amount|)
   into the payment category linked to that card. The spending category
   keeps its own debit; the payment category gains the shift.
5. Payment categories:   available = carried + budgeted + activity + shifts
6. Ready to Assign:      available = carried + income + opening - total budgeted
   where income is activity posted to RTA itself and opening is the part of
   account balances not explained by any transaction (first month only).

DESIGN DECISION: Transactions link to categories by id. A transaction that
only carries a name (legacy data) is resolved by name and reported. Missing
metadata never silently drops figures: it produces a LedgerDiagnostic.

ZERO-SUM: for the latest month,
    sum(available) - card_reserve == sum(account balances)
card_reserve is the funding moved into payment categories that has not yet
left the budget (card payments are uncategorized card-side legs). Without
credit-card spending it is zero and the identity is the plain envelope one.
"""

import hashlib
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from zerosum.models.budget import (
    Account,
    CategoryMetadata,
    DerivedCategory,
    MonthlyAllocation,
    Transaction,
)


ZERO = Decimal("0.00")


class DiagnosticCode(str, Enum):
    MISSING_RTA = "MISSING_RTA"
    DUPLICATE_RTA = "DUPLICATE_RTA"
    MISSING_CC_PAYMENT_CATEGORY = "MISSING_CC_PAYMENT_CATEGORY"
    DUPLICATE_CC_PAYMENT_CATEGORY = "DUPLICATE_CC_PAYMENT_CATEGORY"
    UNKNOWN_CATEGORY = "UNKNOWN_CATEGORY"
    UNLINKED_CATEGORY = "UNLINKED_CATEGORY"
    UNCATEGORIZED = "UNCATEGORIZED"
    UNKNOWN_ACCOUNT = "UNKNOWN_ACCOUNT"


@dataclass(frozen=True)
class LedgerDiagnostic:
    """Something the ledger could not account for cleanly."""

    code: DiagnosticCode
    message: str
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    month: Optional[str] = None


@dataclass(frozen=True)
class CategoryBalance:
    budgeted: Decimal = ZERO
    activity: Decimal = ZERO
    available: Decimal = ZERO
    spent: Decimal = ZERO
    funded: Decimal = ZERO  # credit-card shift received (payment categories only)


@dataclass(frozen=True)
class MonthView:
    """
    Merged category view for one month, ready for presentation.

    Immutable: cached views are shared by every caller.
    """

    month: str
    categories: tuple[DerivedCategory, ...]
    diagnostics: tuple[LedgerDiagnostic, ...] = ()

    @property
    def rta(self) -> Optional[DerivedCategory]:
        return next((c for c in self.categories if c.is_rta), None)

    @property
    def ready_to_assign(self) -> Decimal:
        rta = self.rta
        return rta.available if rta else ZERO

    @property
    def total_budgeted(self) -> Decimal:
        return sum((c.budgeted for c in self.categories if not c.is_rta), ZERO)

    @property
    def total_activity(self) -> Decimal:
        return sum((c.activity for c in self.categories), ZERO)

    @property
    def total_available(self) -> Decimal:
        return sum((c.available for c in self.categories), ZERO)

    @property
    def total_spent(self) -> Decimal:
        return sum((c.spent for c in self.categories if not c.is_rta), ZERO)

    def category(self, category_id: str) -> Optional[DerivedCategory]:
        return next((c for c in self.categories if c.id == category_id), None)

    def by_name(self, name: str) -> Optional[DerivedCategory]:
        key = name.strip().casefold()
        return next((c for c in self.categories if c.name.casefold() == key), None)


@dataclass
class LedgerResult:
    """
    Output of compute_ledger.

    months maps every walked month to its per-category balances. Months
    outside the walk are derived on demand by view(): before the first
    month everything is zero, after the last one balances carry forward.
    """

    categories: list[CategoryMetadata]
    months: dict[str, dict[str, CategoryBalance]]
    card_reserve: dict[str, Decimal]
    opening_balance: Decimal
    diagnostics: list[LedgerDiagnostic]

    @property
    def month_order(self) -> list[str]:
        return sorted(self.months)

    def balances(self, month: str) -> dict[str, CategoryBalance]:
        if month in self.months:
            return self.months[month]
        earlier = [m for m in self.month_order if m < month]
        if not earlier:
            return {}
        carried = self.months[earlier[-1]]
        return {cid: CategoryBalance(available=b.available) for cid, b in carried.items()}

    def reserve(self, month: str) -> Decimal:
        earlier = [m for m in self.month_order if m <= month]
        return self.card_reserve[earlier[-1]] if earlier else ZERO

    def view(self, month: str) -> MonthView:
        balances = self.balances(month)
        derived = []
        for meta in self.categories:
            b = balances.get(meta.id, CategoryBalance())
            derived.append(DerivedCategory(
                **meta.model_dump(),
                month=month,
                budgeted=b.budgeted,
                activity=b.activity,
                available=b.available,
                spent=b.spent,
            ))
        relevant = tuple(d for d in self.diagnostics if d.month in (None, month))
        return MonthView(month=month, categories=tuple(derived), diagnostics=relevant)

    def zero_sum_gap(self, accounts: Iterable[Account]) -> Decimal:
        """sum(available) - card_reserve - sum(balances) at the latest month; zero when consistent."""
        last = self.month_order[-1]
        total_available = sum((b.available for b in self.months[last].values()), ZERO)
        total_balance = sum((a.balance for a in accounts), ZERO)
        return total_available - self.card_reserve[last] - total_balance


# =============================================================================
# ENGINE
# =============================================================================

class _Resolver:
    """Maps transactions to category ids, collecting diagnostics."""

    def __init__(self, categories: list[CategoryMetadata], diagnostics: list[LedgerDiagnostic]):
        self._by_id = {c.id: c for c in categories}
        self._by_name: dict[str, CategoryMetadata] = {}
        for c in categories:
            self._by_name.setdefault(c.name.casefold(), c)
        self._diagnostics = diagnostics

    def resolve(self, txn: Transaction) -> Optional[str]:
        if txn.category_id:
            if txn.category_id in self._by_id:
                return txn.category_id
            self._diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.UNKNOWN_CATEGORY,
                f"Transaction {txn.id} references unknown category {txn.category_id}",
                category_id=txn.category_id,
                transaction_id=txn.id,
                month=txn.month,
            ))
            return None
        if txn.category:
            match = self._by_name.get(txn.category.casefold())
            if match is not None:
                self._diagnostics.append(LedgerDiagnostic(
                    DiagnosticCode.UNLINKED_CATEGORY,
                    f"Transaction {txn.id} is linked by name only ({txn.category!r})",
                    category_id=match.id,
                    transaction_id=txn.id,
                    month=txn.month,
                ))
                return match.id
            self._diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.UNKNOWN_CATEGORY,
                f"Transaction {txn.id} names unknown category {txn.category!r}",
                transaction_id=txn.id,
                month=txn.month,
            ))
            return None
        if txn.transfer_id is None and txn.amount != 0:
            self._diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.UNCATEGORIZED,
                f"Transaction {txn.id} has no category and is not a transfer",
                transaction_id=txn.id,
                account_id=txn.account_id,
                month=txn.month,
            ))
        return None


def _find_rta(categories: list[CategoryMetadata], diagnostics: list[LedgerDiagnostic]) -> Optional[CategoryMetadata]:
    rtas = [c for c in categories if c.is_rta]
    if not rtas:
        diagnostics.append(LedgerDiagnostic(
            DiagnosticCode.MISSING_RTA,
            "No Ready to Assign category; unassigned money is not reported",
        ))
        return None
    if len(rtas) > 1:
        diagnostics.append(LedgerDiagnostic(
            DiagnosticCode.DUPLICATE_RTA,
            f"{len(rtas)} Ready to Assign categories; using {rtas[0].name!r}",
            category_id=rtas[0].id,
        ))
    return rtas[0]


def _link_cards(
    categories: list[CategoryMetadata],
    accounts: list[Account],
    diagnostics: list[LedgerDiagnostic],
) -> dict[str, str]:
    """Credit-card account id -> its payment category id."""
    links: dict[str, str] = {}
    for c in categories:
        if not c.is_cc_payment or not c.linked_account_id:
            continue
        if c.linked_account_id in links:
            diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.DUPLICATE_CC_PAYMENT_CATEGORY,
                f"Extra payment category {c.name!r} for account {c.linked_account_id} is not funded",
                category_id=c.id,
                account_id=c.linked_account_id,
            ))
            continue
        links[c.linked_account_id] = c.id
    for account in accounts:
        if account.is_credit_card and account.id not in links:
            diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.MISSING_CC_PAYMENT_CATEGORY,
                f"Credit card {account.name!r} has no payment category; its spending is not reserved",
                account_id=account.id,
            ))
    return links


def compute_ledger(
    categories: list[CategoryMetadata],
    allocations: list[MonthlyAllocation],
    transactions: list[Transaction],
    accounts: list[Account],
    month: str,
) -> LedgerResult:
    """
    Compute balances for every month up to and including the data's extent.

    Args:
        categories: All category metadata
        allocations: The FULL allocation history (rollover needs it)
        transactions: All transactions
        accounts: All accounts (balances feed the opening amount)
        month: The month the caller is about to view (always walked)

    Returns:
        LedgerResult; call .view(month) for the merged category list
    """
    diagnostics: list[LedgerDiagnostic] = []
    rta = _find_rta(categories, diagnostics)
    card_links = _link_cards(categories, accounts, diagnostics)
    resolver = _Resolver(categories, diagnostics)
    accounts_by_id = {a.id: a for a in accounts}
    cc_ids = {c.id for c in categories if c.is_cc_payment}
    rta_id = rta.id if rta else None

    activity: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    spent: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    card_outflows: dict[str, list[tuple[Transaction, str, str]]] = defaultdict(list)
    unattributed: dict[str, Decimal] = defaultdict(lambda: ZERO)
    explained: dict[str, Decimal] = defaultdict(lambda: ZERO)

    for txn in sorted(transactions, key=lambda t: (t.date, t.id)):
        m = txn.month
        if txn.account_id in accounts_by_id:
            explained[txn.account_id] += txn.amount
        else:
            diagnostics.append(LedgerDiagnostic(
                DiagnosticCode.UNKNOWN_ACCOUNT,
                f"Transaction {txn.id} references unknown account {txn.account_id}",
                account_id=txn.account_id,
                transaction_id=txn.id,
                month=m,
            ))
        category_id = resolver.resolve(txn)
        if category_id is None:
            unattributed[m] += txn.amount
            continue
        activity[m][category_id] += txn.amount
        if txn.amount < 0:
            spent[m][category_id] += -txn.amount
            account = accounts_by_id.get(txn.account_id)
            payment_id = card_links.get(txn.account_id)
            if (
                account is not None and account.is_credit_card and payment_id
                and category_id != rta_id and category_id not in cc_ids
            ):
                card_outflows[m].append((txn, category_id, payment_id))

    budgeted: dict[str, dict[str, Decimal]] = defaultdict(dict)
    for alloc in allocations:
        budgeted[alloc.month][alloc.category_id] = alloc.budgeted

    opening = sum(
        (a.balance - explained[a.id] for a in accounts),
        ZERO,
    )

    month_order = sorted(set(activity) | set(budgeted) | {month})
    running: dict[str, Decimal] = defaultdict(lambda: ZERO)
    reserve = ZERO
    months: dict[str, dict[str, CategoryBalance]] = {}
    reserves: dict[str, Decimal] = {}

    for index, m in enumerate(month_order):
        act = activity.get(m, {})
        bud = budgeted.get(m, {})
        available: dict[str, Decimal] = {}
        total_budgeted = ZERO

        # Regular categories
        for c in categories:
            if c.id == rta_id or c.is_cc_payment:
                continue
            b = bud.get(c.id, ZERO)
            available[c.id] = running[c.id] + b + act.get(c.id, ZERO)
            total_budgeted += b

        # Credit-card funding, oldest outflow first
        shifts: dict[str, Decimal] = defaultdict(lambda: ZERO)
        cursor: dict[str, Decimal] = {}
        for txn, spending_id, _ in card_outflows.get(m, []):
            cursor[spending_id] = cursor.get(spending_id, available[spending_id]) + (-txn.amount)
        for txn, spending_id, payment_id in card_outflows.get(m, []):
            magnitude = -txn.amount
            cursor[spending_id] -= magnitude
            shift = min(max(ZERO, cursor[spending_id] + magnitude), magnitude)
            shifts[payment_id] += shift
        month_shift = sum(shifts.values(), ZERO)

        # Payment categories
        for c in categories:
            if not c.is_cc_payment or c.id == rta_id:
                continue
            b = bud.get(c.id, ZERO)
            available[c.id] = running[c.id] + b + act.get(c.id, ZERO) + shifts.get(c.id, ZERO)
            total_budgeted += b

        # Ready to Assign
        if rta_id is not None:
            income = act.get(rta_id, ZERO)
            carried_in = opening if index == 0 else ZERO
            available[rta_id] = running[rta_id] + income + carried_in - total_budgeted

        reserve += month_shift - unattributed.get(m, ZERO)
        reserves[m] = reserve

        months[m] = {
            cid: CategoryBalance(
                budgeted=ZERO if cid == rta_id else bud.get(cid, ZERO),
                activity=act.get(cid, ZERO),
                available=value,
                spent=spent.get(m, {}).get(cid, ZERO),
                funded=shifts.get(cid, ZERO),
            )
            for cid, value in available.items()
        }
        running.update(available)

    return LedgerResult(
        categories=list(categories),
        months=months,
        card_reserve=reserves,
        opening_balance=opening,
        diagnostics=diagnostics,
    )


def compute_month_view(
    categories: list[CategoryMetadata],
    allocations: list[MonthlyAllocation],
    transactions: list[Transaction],
    accounts: list[Account],
    month: str,
) -> MonthView:
    """Shorthand for compute_ledger(...).view(month)."""
    return compute_ledger(categories, allocations, transactions, accounts, month).view(month)


def ledger_fingerprint(
    categories: list[CategoryMetadata],
    allocations: list[MonthlyAllocation],
    transactions: list[Transaction],
    accounts: list[Account],
) -> str:
    """Stable digest of the ledger inputs, order-insensitive within each set."""
    digest = hashlib.sha256()
    for label, items, key in (
        ("categories", categories, lambda m: m.id),
        ("allocations", allocations, lambda m: m.id),
        ("transactions", transactions, lambda m: m.id),
        ("accounts", accounts, lambda m: m.id),
    ):
        digest.update(label.encode())
        for item in sorted(items, key=key):
            digest.update(item.model_dump_json().encode())
    return digest.hexdigest()
