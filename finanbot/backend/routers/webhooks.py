from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request

from ..schemas import ok
from ..services import webhooks

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/pluggy")
async def pluggy_webhook(request: Request, x_pluggy_signature: Optional[str] = Header(default=None)):
    body = await request.body()
    return ok(await webhooks.handle_pluggy_webhook(body, x_pluggy_signature))
