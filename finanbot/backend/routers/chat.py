from __future__ import annotations

from fastapi import APIRouter, Depends

from finanbot.core.data_models import User

from ..schemas import ChatMessageRequest, ok
from ..security import get_current_user
from ..services import analytics, chat

router = APIRouter(prefix="/api/chat", tags=["chat"])


# Plain ``def`` so the blocking OpenAI call runs in the threadpool.
@router.post("/message")
def send_message(req: ChatMessageRequest, user: User = Depends(get_current_user)):
    return ok(chat.send_message(user.id, req.message))


@router.get("/history")
async def get_history(page: int = 1, limit: int = 20, user: User = Depends(get_current_user)):
    return ok(chat.get_history(user.id, page=page, limit=limit))


@router.delete("/history")
async def delete_history(user: User = Depends(get_current_user)):
    deleted = chat.delete_history(user.id)
    return ok({"message": "Chat history deleted successfully", "deleted": deleted})


@router.get("/context")
async def get_context(user: User = Depends(get_current_user)):
    context = analytics.build_context(user.id)
    return ok({**context.model_dump(), "savings_rate": context.savings_rate})
