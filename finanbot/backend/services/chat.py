"""
Financial assistant chat.

Replies are grounded in the user's FinancialContext. The language model is
reached through a ``completion_fn(system, prompt) -> Completion`` callable so
tests and alternative providers can be plugged in without touching callers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import openai

from finanbot.core import database
from finanbot.core.data_models import (
    AssistantReplyContext,
    ChatMessage,
    FinancialContext,
    TransactionType,
    UserQuestionContext,
)
from finanbot.core.errors import UpstreamError, ValidationError

from ..config import settings
from .analytics import build_context
from .insights import generate_insights, generate_suggested_actions

logger = logging.getLogger("finanbot.backend.chat")

MAX_MESSAGE_LENGTH = 1000
REPLY_CONFIDENCE = 0.9
FALLBACK_REPLY = "Desculpe, não consegui processar sua solicitação."

SYSTEM_PROMPT = """Você é Pierre, um assistente financeiro pessoal especializado em Open Finance brasileiro.
Responda sempre em português brasileiro, com linguagem clara e acessível.
Baseie suas respostas nos dados financeiros fornecidos e sugira ações práticas quando fizer sentido.
Não forneça conselhos de investimento específicos nem recomende produtos financeiros.
"""


@dataclass
class Completion:
    content: str
    model: Optional[str] = None
    tokens: Optional[int] = None


CompletionFn = Callable[[str, str], Completion]


def make_openai_completion_fn(
    api_key: Optional[str] = None,
    model: Optional[str] = None,
) -> Optional[CompletionFn]:
    """Build a completion callback backed by OpenAI chat completions, or None without a key."""
    api_key = api_key or settings.openai_api_key
    if not api_key:
        return None

    client = openai.OpenAI(api_key=api_key)
    model_name = model or settings.openai_model

    def completion_fn(system: str, prompt: str) -> Completion:
        try:
            response = client.chat.completions.create(
                model=model_name,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=settings.openai_max_tokens,
            )
        except openai.OpenAIError as exc:
            logger.error("OpenAI completion failed: %s", exc)
            raise UpstreamError("Failed to generate AI response", provider="openai") from exc

        content = response.choices[0].message.content if response.choices else None
        usage = getattr(response, "usage", None)
        return Completion(
            content=content or FALLBACK_REPLY,
            model=getattr(response, "model", None) or model_name,
            tokens=getattr(usage, "total_tokens", None),
        )

    return completion_fn


def render_context(context: FinancialContext) -> str:
    """Plain-text grounding block sent along with the user's question."""
    lines = [
        "DADOS FINANCEIROS ATUAIS:",
        f"- Saldo total: R$ {context.total_balance:.2f}",
        f"- Receita mensal: R$ {context.monthly_income:.2f}",
        f"- Gastos mensais: R$ {context.monthly_expenses:.2f}",
        f"- Taxa de poupança: {context.savings_rate:.1f}%",
        "",
        "CONTAS BANCÁRIAS:",
    ]
    lines.extend(
        f"- {account.bank_name} ({account.account_type.value}): R$ {account.balance:.2f}"
        for account in context.accounts
    )
    lines.extend(["", "GASTOS POR CATEGORIA (MÊS ATUAL):"])
    lines.extend(f"- {category}: R$ {amount:.2f}" for category, amount in context.monthly_spending.items())
    lines.extend(["", "TRANSAÇÕES RECENTES:"])
    for tx in context.recent_transactions[:10]:
        direction = "Saída" if tx.type == TransactionType.DEBIT else "Entrada"
        lines.append(f"- {tx.date:%d/%m/%Y}: {tx.description} - R$ {tx.amount:.2f} ({direction})")
    return "\n".join(lines)


def send_message(
    user_id: str,
    message: str,
    completion_fn: Optional[CompletionFn] = None,
) -> Dict[str, Any]:
    text = (message or "").strip()
    if not text:
        raise ValidationError("message must not be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message must be at most {MAX_MESSAGE_LENGTH} characters")

    completion_fn = completion_fn or make_openai_completion_fn()
    if completion_fn is None:
        raise UpstreamError("The assistant is not configured", provider="openai")

    context = build_context(user_id)
    user_message = database.save_chat_message(
        ChatMessage(
            id=database.new_id(),
            user_id=user_id,
            role="user",
            content=text,
            timestamp=database.utcnow(),
            context=UserQuestionContext(
                total_balance=context.total_balance,
                monthly_income=context.monthly_income,
                monthly_expenses=context.monthly_expenses,
            ),
        )
    )

    prompt = f"{render_context(context)}\n\nPERGUNTA DO USUÁRIO: {text}"
    completion = completion_fn(SYSTEM_PROMPT, prompt)

    insights = generate_insights(text, context)
    suggested_actions = generate_suggested_actions(text, context)
    ai_message = database.save_chat_message(
        ChatMessage(
            id=database.new_id(),
            user_id=user_id,
            role="assistant",
            content=completion.content,
            timestamp=database.utcnow(),
            tokens=completion.tokens,
            model=completion.model,
            context=AssistantReplyContext(
                confidence=REPLY_CONFIDENCE,
                suggested_actions=suggested_actions,
                insights=insights,
            ),
        )
    )
    logger.info("Answered chat message for user %s (%d insights)", user_id, len(insights))
    return {
        "user_message": user_message,
        "ai_message": ai_message,
        "suggested_actions": suggested_actions,
        "insights": insights,
        "confidence": REPLY_CONFIDENCE,
    }


def get_history(user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100")

    total = database.count_chat_messages(user_id)
    messages = database.list_chat_messages(user_id, offset=(page - 1) * limit, limit=limit)
    return {
        "messages": messages,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


def delete_history(user_id: str) -> int:
    deleted = database.delete_chat_messages(user_id)
    logger.info("Deleted %d chat messages for user %s", deleted, user_id)
    return deleted
