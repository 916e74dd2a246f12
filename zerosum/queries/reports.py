"""
Monthly Report Queries

DESIGN DECISION: Reports are DETERMINISTIC reads of the computed ledger.
Every figure comes from the month view or the transactions of that month;
nothing is estimated. A month with no data yields zeros, not an error.

Figures:
- income / expenses: sum of inflows / outflows posted in the month,
  excluding both legs of transfers between the user's own accounts
- savings rate: (income - expenses) / income * 100, 0 without income
- category spending: each category's share of the month's spending
- target progress: how far each category with a target is funded
- net worth: sum of account balances (credit-card debt is negative)
"""

from datetime import date
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, Field

from zerosum.ledger import MonthView
from zerosum.models.budget import (
    MONEY_QUANT,
    Account,
    AccountType,
    DerivedCategory,
    TargetType,
    TransactionStatus,
    month_of,
)
from zerosum.sync.local_view import LocalBudgetView


ZERO = Decimal("0.00")
PERCENT_QUANT = Decimal("0.1")


class ReportError(Exception):
    """A report was requested for input it cannot describe."""
    pass


# =============================================================================
# RESULT MODELS
# =============================================================================

class CategorySpending(BaseModel):
    category_id: str
    name: str
    hex: str
    amount: Decimal
    percent: Decimal


class TargetProgress(BaseModel):
    category_id: str
    name: str
    target_type: TargetType
    target_amount: Decimal
    funded: Decimal = Field(description="Amount counted toward the target")
    needed_this_month: Decimal = Field(description="Further budgeting needed this month to stay on track")
    percent: Decimal = Field(description="Funded share of the target, capped at 100")
    months_remaining: Optional[int] = None

    @property
    def is_met(self) -> bool:
        return self.needed_this_month == ZERO and self.funded >= self.target_amount


class AccountSummary(BaseModel):
    account_id: str
    name: str
    type: AccountType
    balance: Decimal
    uncleared: Decimal = Field(description="Sum of transactions not yet cleared")


class MonthlyReport(BaseModel):
    month: str
    income: Decimal = ZERO
    expenses: Decimal = ZERO
    savings_rate: Decimal = ZERO
    ready_to_assign: Decimal = ZERO
    total_budgeted: Decimal = ZERO
    total_spent: Decimal = ZERO
    category_spending: list[CategorySpending] = Field(default_factory=list)
    targets: list[TargetProgress] = Field(default_factory=list)
    accounts: list[AccountSummary] = Field(default_factory=list)
    net_worth: Decimal = ZERO
    diagnostics: list[str] = Field(default_factory=list)


# =============================================================================
# QUERIES
# =============================================================================

def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal("0.0")
    return (part / whole * 100).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def _months_between(month: str, target: date) -> int:
    """Months from `month` up to the target date's month, inclusive (at least 1)."""
    start_year, start_month = (int(p) for p in month.split("-"))
    return max(1, (target.year - start_year) * 12 + (target.month - start_month) + 1)


def category_spending(view: MonthView) -> list[CategorySpending]:
    """Categories that spent money this month, largest first."""
    total = view.total_spent
    rows = [
        CategorySpending(
            category_id=c.id,
            name=c.name,
            hex=c.hex,
            amount=c.spent,
            percent=_percent(c.spent, total),
        )
        for c in view.categories
        if not c.is_rta and c.spent > 0
    ]
    return sorted(rows, key=lambda r: r.amount, reverse=True)


def target_progress(category: DerivedCategory) -> Optional[TargetProgress]:
    """
    Progress toward a category's target, or None if it has none.

    monthly          - this month's budgeted amount vs the target
    balance          - available vs the target
    balance_by_date  - available vs the target, with the remainder spread
                       evenly over the months left until the target month
    """
    if category.target_type is None or category.target_amount is None:
        return None
    target = category.target_amount
    months_remaining = None

    if category.target_type == TargetType.MONTHLY:
        funded = category.budgeted
        needed = max(ZERO, target - funded)
    elif category.target_type == TargetType.BALANCE:
        funded = category.available
        needed = max(ZERO, target - funded)
    else:
        funded = category.available
        months_remaining = _months_between(category.month, category.target_date)
        # What was there before this month's budgeting, spread over the remaining months
        start = category.available - category.budgeted
        share = max(ZERO, target - start) / months_remaining
        share = share.quantize(MONEY_QUANT, rounding=ROUND_CEILING)
        needed = max(ZERO, share - category.budgeted)

    percent = Decimal("100.0") if target == 0 else min(Decimal("100.0"), _percent(max(funded, ZERO), target))
    return TargetProgress(
        category_id=category.id,
        name=category.name,
        target_type=category.target_type,
        target_amount=target,
        funded=funded,
        needed_this_month=needed,
        percent=percent,
        months_remaining=months_remaining,
    )


class ReportExecutor:
    """
    Builds reports from the local view.

    GUARANTEES:
    - Only reports data present in the view
    - Never writes
    """

    def __init__(self, view: LocalBudgetView):
        self._view = view

    def account_summaries(self) -> list[AccountSummary]:
        uncleared: dict[str, Decimal] = {}
        for txn in self._view.transactions:
            if txn.status == TransactionStatus.UNCLEARED:
                uncleared[txn.account_id] = uncleared.get(txn.account_id, ZERO) + txn.amount
        return [
            AccountSummary(
                account_id=a.id,
                name=a.name,
                type=a.type,
                balance=a.balance,
                uncleared=uncleared.get(a.id, ZERO),
            )
            for a in sorted(self._view.accounts, key=lambda a: a.name.casefold())
        ]

    def net_worth(self, accounts: Optional[list[Account]] = None) -> Decimal:
        accounts = self._view.accounts if accounts is None else accounts
        return sum((a.balance for a in accounts), ZERO)

    def income_and_expenses(self, month: str) -> tuple[Decimal, Decimal]:
        income = ZERO
        expenses = ZERO
        for txn in self._view.transactions_in_month(month):
            if txn.transfer_id is not None:
                continue
            if txn.amount > 0:
                income += txn.amount
            else:
                expenses += -txn.amount
        return income, expenses

    def monthly_report(self, month: str) -> MonthlyReport:
        try:
            view = self._view.month_view(month)
        except ValueError as e:
            raise ReportError(f"Cannot report on month {month!r}: {e}") from e

        income, expenses = self.income_and_expenses(month)
        savings_rate = _percent(income - expenses, income) if income > 0 else Decimal("0.0")
        targets = [p for p in (target_progress(c) for c in view.categories) if p is not None]

        return MonthlyReport(
            month=month,
            income=income,
            expenses=expenses,
            savings_rate=savings_rate,
            ready_to_assign=view.ready_to_assign,
            total_budgeted=view.total_budgeted,
            total_spent=view.total_spent,
            category_spending=category_spending(view),
            targets=targets,
            accounts=self.account_summaries(),
            net_worth=self.net_worth(),
            diagnostics=[d.message for d in view.diagnostics],
        )

    def current_report(self) -> MonthlyReport:
        return self.monthly_report(month_of(date.today()))
