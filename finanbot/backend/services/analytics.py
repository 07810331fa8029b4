from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from finanbot.core import database
from finanbot.core.data_models import FinancialContext, FinancialInsight, TransactionType
from finanbot.core.errors import NotFound, ValidationError

from ..state import dashboard_cache

logger = logging.getLogger("finanbot.backend.analytics")

RECENT_WINDOW = timedelta(days=30)
RECENT_LIMIT = 100
TREND_MONTHS = 6
BREAKDOWN_PERIODS = ("month", "quarter", "year")


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _shift_months(moment: datetime, months: int) -> datetime:
    """First day of the month ``months`` away from ``moment``'s month."""
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Current calendar month as [first day 00:00, first day of next month)."""
    start = _month_start(now)
    return start, _shift_months(start, 1)


def _resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return database.utcnow()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def build_context(user_id: str, now: Optional[datetime] = None) -> FinancialContext:
    """
    Snapshot of the user's finances.

    Balances come from active accounts only. Income and expenses cover the
    current calendar month, spending by category counts DEBIT rows only, and
    recent transactions are the last 30 days (newest first, capped at 100).
    """
    now = _resolve_now(now)
    month_start, month_end = _month_window(now)

    accounts = database.list_accounts(user_id, active_only=True)
    recent = database.list_user_transactions(user_id, since=now - RECENT_WINDOW, limit=RECENT_LIMIT)
    monthly = database.list_user_transactions(user_id, since=month_start, until=month_end)

    spending: Dict[str, float] = defaultdict(float)
    income = 0.0
    expenses = 0.0
    for tx in monthly:
        if tx.type == TransactionType.CREDIT:
            income += tx.amount
        else:
            expenses += tx.amount
            spending[tx.category] += tx.amount

    return FinancialContext(
        accounts=accounts,
        recent_transactions=recent,
        monthly_spending={category: round(amount, 2) for category, amount in spending.items()},
        total_balance=round(sum(account.balance for account in accounts), 2),
        monthly_income=round(income, 2),
        monthly_expenses=round(expenses, 2),
    )


def _transaction_trends(user_id: str, now: datetime) -> Dict[str, Any]:
    first_month = _shift_months(now, -(TREND_MONTHS - 1))
    labels = [_shift_months(first_month, offset).strftime("%Y-%m") for offset in range(TREND_MONTHS)]
    totals: Dict[str, Dict[str, float]] = {label: {"income": 0.0, "expenses": 0.0} for label in labels}

    for tx in database.list_user_transactions(user_id, since=first_month, newest_first=False):
        bucket = totals.get(tx.date.astimezone(timezone.utc).strftime("%Y-%m"))
        if bucket is None:
            continue
        key = "income" if tx.type == TransactionType.CREDIT else "expenses"
        bucket[key] += tx.amount

    return {
        "labels": labels,
        "datasets": [
            {
                "label": "Receitas",
                "data": [round(totals[label]["income"], 2) for label in labels],
                "background_color": "#10b981",
                "border_color": "#059669",
            },
            {
                "label": "Gastos",
                "data": [round(totals[label]["expenses"], 2) for label in labels],
                "background_color": "#ef4444",
                "border_color": "#dc2626",
            },
        ],
    }


def get_dashboard_overview(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    use_cache = now is None
    if use_cache and user_id in dashboard_cache:
        logger.debug("Dashboard cache hit for user %s", user_id)
        return dashboard_cache[user_id]

    resolved_now = _resolve_now(now)
    context = build_context(user_id, now=resolved_now)
    overview = {
        "total_balance": context.total_balance,
        "monthly_income": context.monthly_income,
        "monthly_expenses": context.monthly_expenses,
        "savings_rate": context.savings_rate,
        "expenses_by_category": context.monthly_spending,
        "transaction_trends": _transaction_trends(user_id, resolved_now),
    }
    if use_cache:
        dashboard_cache[user_id] = overview
    return overview


def _period_start(period: str, now: datetime) -> datetime:
    if period == "quarter":
        return now.replace(month=((now.month - 1) // 3) * 3 + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return _month_start(now)


def get_expense_breakdown(user_id: str, period: str = "month", now: Optional[datetime] = None) -> Dict[str, Any]:
    if period not in BREAKDOWN_PERIODS:
        raise ValidationError(f"period must be one of {', '.join(BREAKDOWN_PERIODS)}")

    start = _period_start(period, _resolve_now(now))
    transactions = database.list_user_transactions(user_id, since=start, tx_type=TransactionType.DEBIT)

    by_category: Dict[str, float] = defaultdict(float)
    for tx in transactions:
        by_category[tx.category] += tx.amount
    total = sum(by_category.values())

    breakdown = [
        {
            "category": category,
            "amount": round(amount, 2),
            "percentage": round(amount / total * 100, 1) if total > 0 else 0.0,
        }
        for category, amount in by_category.items()
    ]
    breakdown.sort(key=lambda item: item["amount"], reverse=True)
    return {
        "breakdown": breakdown,
        "total_expenses": round(total, 2),
        "period": period,
        "transaction_count": len(transactions),
    }


def get_recent_transactions(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100")
    return database.list_recent_transactions_with_account(user_id, limit=limit)


def get_account_balances(user_id: str) -> Dict[str, Any]:
    accounts = sorted(database.list_accounts(user_id, active_only=True), key=lambda a: a.balance, reverse=True)
    return {
        "accounts": [
            {
                "id": account.id,
                "bank_name": account.bank_name,
                "account_type": account.account_type.value,
                "balance": account.balance,
                "currency": account.currency,
                "last_sync_at": account.last_sync_at,
            }
            for account in accounts
        ],
        "total_balance": round(sum(account.balance for account in accounts), 2),
        "account_count": len(accounts),
    }


def list_insights(user_id: str, limit: int = 10) -> List[FinancialInsight]:
    return database.list_insights(user_id, limit=limit)


def mark_insight_read(user_id: str, insight_id: str) -> None:
    if not database.mark_insight_read(user_id, insight_id):
        raise NotFound(f"Insight {insight_id} not found")
