from __future__ import annotations

from fastapi import APIRouter, Depends

from finanbot.core.data_models import User

from ..schemas import ok
from ..security import get_current_user
from ..services import analytics, insights

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/overview")
async def overview(user: User = Depends(get_current_user)):
    return ok(analytics.get_dashboard_overview(user.id))


@router.get("/expenses/breakdown")
async def expense_breakdown(period: str = "month", user: User = Depends(get_current_user)):
    return ok(analytics.get_expense_breakdown(user.id, period))


@router.get("/transactions/recent")
async def recent_transactions(limit: int = 10, user: User = Depends(get_current_user)):
    return ok(analytics.get_recent_transactions(user.id, limit=limit))


@router.get("/accounts/balances")
async def account_balances(user: User = Depends(get_current_user)):
    return ok(analytics.get_account_balances(user.id))


@router.get("/insights")
async def list_insights(user: User = Depends(get_current_user)):
    return ok(analytics.list_insights(user.id))


@router.post("/insights/refresh")
async def refresh_insights(user: User = Depends(get_current_user)):
    return ok(insights.refresh_insights(user.id))


@router.patch("/insights/{insight_id}/read")
async def mark_insight_read(insight_id: str, user: User = Depends(get_current_user)):
    analytics.mark_insight_read(user.id, insight_id)
    return ok({"message": "Insight marked as read"})
