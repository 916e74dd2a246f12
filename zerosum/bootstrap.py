"""
Data Bootstrapping

Three ways data appears without a user edit:

1. cold_start            - a brand-new user gets two empty accounts, the
                           Ready to Assign category and four starter
                           categories, budgeted at zero for the current month
2. seed_demo_data        - a realistic sample budget for trying the app out
3. ensure_cc_payment_categories
                         - every credit-card account gets its payment
                           category the first time it is seen

DESIGN DECISION: Each of these writes ONE batch directly through the
repository. They are system actions, not user edits, so they bypass the
optimistic mutation path; a failure simply raises and can be repeated.
All three are idempotent.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import structlog

from zerosum.audit import AuditLogger
from zerosum.models.audit import AuditEventBuilder
from zerosum.models.budget import (
    RTA_CATEGORY_NAME,
    Account,
    AccountType,
    CategoryMetadata,
    MonthlyAllocation,
    Transaction,
    TransactionStatus,
)
from zerosum.services.storage import BudgetRepository, WriteBatch


logger = structlog.get_logger(__name__)


# =============================================================================
# SEED DATA
# =============================================================================

COLD_START_ACCOUNTS = [
    {"name": "Main Checking", "type": AccountType.CHECKING, "balance": "0"},
    {"name": "Savings", "type": AccountType.SAVINGS, "balance": "0"},
]

COLD_START_CATEGORIES = [
    {"name": RTA_CATEGORY_NAME, "color": "bg-slate-500", "hex": "#64748b", "is_rta": True},
    {"name": "Rent / Mortgage", "color": "bg-blue-500", "hex": "#3b82f6"},
    {"name": "Groceries", "color": "bg-emerald-500", "hex": "#10b981"},
    {"name": "Utilities", "color": "bg-yellow-500", "hex": "#eab308"},
    {"name": "Dining Out", "color": "bg-orange-500", "hex": "#f97316"},
]

DEMO_ACCOUNTS = [
    {"name": "Main Checking", "type": AccountType.CHECKING, "balance": "3200"},
    {"name": "Savings", "type": AccountType.SAVINGS, "balance": "15000"},
    {"name": "Credit Card", "type": AccountType.CREDIT_CARD, "balance": "-450"},
]

# name, color, hex, budgeted, spent this month
DEMO_CATEGORIES = [
    ("Rent / Mortgage", "bg-blue-500", "#3b82f6", "1500", "1500"),
    ("Electric", "bg-yellow-500", "#eab308", "120", "110"),
    ("Internet", "bg-indigo-500", "#6366f1", "80", "80"),
    ("Auto Insurance", "bg-pink-500", "#ec4899", "100", "0"),
    ("Dining Out", "bg-orange-500", "#f97316", "300", "245"),
    ("Emergency Fund", "bg-emerald-500", "#10b981", "500", "0"),
]

CC_PAYMENT_COLOR = ("bg-purple-500", "#a855f7")


# =============================================================================
# COLD START
# =============================================================================

async def cold_start(
    repository: BudgetRepository,
    month: str,
    audit_logger: Optional[AuditLogger] = None,
) -> bool:
    """
    Seed a brand-new user.

    Returns:
        False if the user already has accounts (nothing written)
    """
    if await repository.list_accounts():
        return False

    batch = WriteBatch()
    for fields in COLD_START_ACCOUNTS:
        repository.put_account(batch, Account(**fields))
    for fields in COLD_START_CATEGORIES:
        category = CategoryMetadata(**fields)
        repository.put_category(batch, category)
        repository.put_allocation(batch, MonthlyAllocation(month=month, category_id=category.id))
    await repository.store.commit(batch)

    logger.info("cold_start_seeded", user_id=repository.user_id, month=month)
    if audit_logger:
        await audit_logger.log(AuditEventBuilder.data_seeded(
            "cold_start", len(COLD_START_ACCOUNTS), len(COLD_START_CATEGORIES)
        ))
    return True


# =============================================================================
# DEMO DATA
# =============================================================================

async def seed_demo_data(
    repository: BudgetRepository,
    month: str,
    audit_logger: Optional[AuditLogger] = None,
) -> bool:
    """
    Load a sample budget for `month`.

    Accounts and categories are matched by name, so seeding on top of a
    cold start reuses what exists. Demo spending is recorded as cleared
    transactions from Main Checking.

    Returns:
        False if the user already has transactions (nothing written)
    """
    if await repository.list_transactions():
        return False

    accounts = {a.name.casefold(): a for a in await repository.list_accounts()}
    categories = {c.name.casefold(): c for c in await repository.list_categories()}
    batch = WriteBatch()
    created_accounts = 0
    created_categories = 0

    for fields in DEMO_ACCOUNTS:
        if fields["name"].casefold() not in accounts:
            account = Account(**fields)
            repository.put_account(batch, account)
            accounts[account.name.casefold()] = account
            created_accounts += 1

    if RTA_CATEGORY_NAME.casefold() not in categories and not any(c.is_rta for c in categories.values()):
        rta = CategoryMetadata(**COLD_START_CATEGORIES[0])
        repository.put_category(batch, rta)
        categories[rta.name.casefold()] = rta
        created_categories += 1

    checking = accounts["main checking"]
    for day, (name, color, hex_code, budgeted, spent) in enumerate(DEMO_CATEGORIES, start=1):
        category = categories.get(name.casefold())
        if category is None:
            category = CategoryMetadata(name=name, color=color, hex=hex_code)
            repository.put_category(batch, category)
            categories[name.casefold()] = category
            created_categories += 1
        repository.put_allocation(
            batch,
            MonthlyAllocation(month=month, category_id=category.id, budgeted=budgeted),
        )
        if Decimal(spent) > 0:
            repository.put_transaction(batch, Transaction(
                date=date.fromisoformat(f"{month}-{day * 3:02d}"),
                payee=f"{name} (demo)",
                category_id=category.id,
                category=category.name,
                amount=-Decimal(spent),
                account_id=checking.id,
                status=TransactionStatus.CLEARED,
            ))

    # Demo balances are final balances; the transactions are already reflected in them
    await repository.store.commit(batch)
    logger.info("demo_data_seeded", user_id=repository.user_id, month=month)
    if audit_logger:
        await audit_logger.log(AuditEventBuilder.data_seeded("demo", created_accounts, created_categories))

    await ensure_cc_payment_categories(repository, audit_logger)
    return True


# =============================================================================
# CREDIT-CARD PAYMENT CATEGORIES
# =============================================================================

def payment_category_name(account: Account, taken: set[str]) -> str:
    name = f"{account.name} Payment"
    if name.casefold() in taken:
        name = f"{account.name} Payment ({account.id[:6]})"
    return name


async def ensure_cc_payment_categories(
    repository: BudgetRepository,
    audit_logger: Optional[AuditLogger] = None,
) -> list[CategoryMetadata]:
    """
    Create the payment category of every credit-card account lacking one.

    Returns:
        The categories created
    """
    accounts = await repository.list_accounts()
    categories = await repository.list_categories()
    linked = {c.linked_account_id for c in categories if c.is_cc_payment}
    taken = {c.name.casefold() for c in categories}

    created = []
    batch = WriteBatch()
    for account in accounts:
        if not account.is_credit_card or account.id in linked:
            continue
        category = CategoryMetadata(
            name=payment_category_name(account, taken),
            color=CC_PAYMENT_COLOR[0],
            hex=CC_PAYMENT_COLOR[1],
            is_cc_payment=True,
            linked_account_id=account.id,
        )
        taken.add(category.name.casefold())
        repository.put_category(batch, category)
        created.append(category)

    if not created:
        return []
    await repository.store.commit(batch)
    for category in created:
        logger.info("cc_payment_category_created", account_id=category.linked_account_id, category_id=category.id)
        if audit_logger:
            await audit_logger.log(AuditEventBuilder.cc_category_created(category.linked_account_id, category.id))
    return created
