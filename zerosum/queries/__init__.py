"""Report queries over the computed ledger."""

from zerosum.queries.reports import (
    AccountSummary,
    CategorySpending,
    MonthlyReport,
    ReportError,
    ReportExecutor,
    TargetProgress,
    category_spending,
    target_progress,
)

__all__ = [
    # Executor
    "ReportExecutor",
    "ReportError",
    # Result models
    "AccountSummary",
    "CategorySpending",
    "MonthlyReport",
    "TargetProgress",
    # Helpers
    "category_spending",
    "target_progress",
]
