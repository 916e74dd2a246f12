"""
Mutation Framework

Optimistic local apply, atomic remote commit, rollback and durable retry
for every user edit, plus the live subscriptions that feed the local view.
"""

from zerosum.sync.local_view import BudgetState, LocalBudgetView
from zerosum.sync.mutations import MutationManager, MutationOutcome, MutationStatus
from zerosum.sync.notifications import Notification, NotificationCenter, NotificationType
from zerosum.sync.pending_log import PendingMutationLog
from zerosum.sync.pool import MonthSyncStatus, PooledMonth, SubscriptionPool

__all__ = [
    # Local state
    "BudgetState",
    "LocalBudgetView",
    # Mutations
    "MutationManager",
    "MutationOutcome",
    "MutationStatus",
    "PendingMutationLog",
    # Notifications
    "Notification",
    "NotificationCenter",
    "NotificationType",
    # Subscriptions
    "MonthSyncStatus",
    "PooledMonth",
    "SubscriptionPool",
]
