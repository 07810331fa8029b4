from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from finanbot.core import database
from finanbot.core.categorizer import fold_text
from finanbot.core.data_models import (
    BudgetAlertData,
    FinancialContext,
    FinancialInsight,
    InsightData,
    InsightPriority,
    InsightType,
    SavingsRateData,
    TopSpendingCategoryData,
)

from .analytics import build_context

logger = logging.getLogger("finanbot.backend.insights")

BUDGET_ALERT_THRESHOLD = 0.9
SPENDING_KEYWORDS = ("gasto", "categoria")
SAVING_KEYWORDS = ("economizar", "poupar")
BUDGET_KEYWORDS = ("orcamento",)
REFRESHED_KINDS = ("top_spending_category", "budget_alert", "savings_rate")


def _mentions(message: str, keywords) -> bool:
    text = fold_text(message or "")
    return any(keyword in text for keyword in keywords)


def top_spending_category(context: FinancialContext) -> Optional[TopSpendingCategoryData]:
    if not context.monthly_spending:
        return None
    category, amount = max(context.monthly_spending.items(), key=lambda item: item[1])
    percentage = round(amount / context.monthly_expenses * 100, 1) if context.monthly_expenses > 0 else 0.0
    return TopSpendingCategoryData(category=category, amount=round(amount, 2), percentage=percentage)


def budget_alert(context: FinancialContext) -> Optional[BudgetAlertData]:
    if context.monthly_expenses <= context.monthly_income * BUDGET_ALERT_THRESHOLD:
        return None
    if context.monthly_income <= 0:
        return BudgetAlertData(message="Você tem gastos sem receitas registradas este mês", spending_ratio=0.0)
    ratio = round(context.monthly_expenses / context.monthly_income * 100, 1)
    return BudgetAlertData(message="Seus gastos estão altos este mês", spending_ratio=ratio)


def generate_insights(message: str, context: FinancialContext) -> List[InsightData]:
    """Insights attached to an assistant reply for ``message``."""
    insights: List[InsightData] = []
    if _mentions(message, SPENDING_KEYWORDS):
        top = top_spending_category(context)
        if top is not None:
            insights.append(top)
    alert = budget_alert(context)
    if alert is not None:
        insights.append(alert)
    return insights


def generate_suggested_actions(message: str, context: FinancialContext) -> List[str]:
    actions: List[str] = []
    if _mentions(message, SAVING_KEYWORDS):
        actions.extend(
            [
                "Analise seus gastos com alimentação",
                "Configure alertas de gastos",
                "Revise suas assinaturas mensais",
            ]
        )
    if _mentions(message, BUDGET_KEYWORDS):
        actions.extend(
            [
                "Crie um orçamento mensal",
                "Defina metas de economia",
                "Monitore seus gastos semanalmente",
            ]
        )
    if context.monthly_expenses > context.monthly_income:
        actions.extend(
            [
                "Identifique gastos desnecessários",
                "Considere fontes de renda adicional",
                "Renegocie suas despesas fixas",
            ]
        )
    return actions


def _insight(user_id: str, kind: InsightType, title: str, description: str, data, priority, now) -> FinancialInsight:
    return FinancialInsight(
        id=database.new_id(),
        user_id=user_id,
        type=kind,
        title=title,
        description=description,
        data=data,
        priority=priority,
        created_at=now,
    )


def refresh_insights(user_id: str, now: Optional[datetime] = None) -> List[FinancialInsight]:
    """Derive dashboard insights from the current month and store them.

    Unread insights of the refreshed kinds are replaced; read ones stay as history.
    """
    now = now or database.utcnow()
    context = build_context(user_id, now=now)
    generated: List[FinancialInsight] = []

    top = top_spending_category(context)
    if top is not None:
        generated.append(
            _insight(
                user_id,
                InsightType.EXPENSE_ANALYSIS,
                f"Maior gasto: {top.category}",
                f"{top.category} representa {top.percentage}% dos seus gastos este mês.",
                top,
                InsightPriority.MEDIUM,
                now,
            )
        )

    alert = budget_alert(context)
    if alert is not None:
        generated.append(
            _insight(
                user_id,
                InsightType.BUDGET_ALERT,
                "Alerta de orçamento",
                alert.message,
                alert,
                InsightPriority.HIGH,
                now,
            )
        )

    if context.monthly_income > 0:
        rate = context.savings_rate
        generated.append(
            _insight(
                user_id,
                InsightType.INCOME_ANALYSIS if rate >= 10 else InsightType.RECOMMENDATION,
                "Taxa de poupança",
                f"Você poupou {rate}% da sua receita este mês.",
                SavingsRateData(rate=rate),
                InsightPriority.LOW if rate >= 10 else InsightPriority.MEDIUM,
                now,
            )
        )

    replaced = database.delete_unread_insights(user_id, REFRESHED_KINDS)
    for insight in generated:
        database.save_insight(insight)
    logger.info("Stored %d insights for user %s (%d replaced)", len(generated), user_id, replaced)
    return generated
