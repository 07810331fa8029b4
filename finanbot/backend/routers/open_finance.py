from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from finanbot.core.data_models import User

from ..schemas import ConnectRequest, ExchangeCodeRequest, SyncTransactionsRequest, ok
from ..security import get_current_user
from ..services import banking, connections, reconciliation

router = APIRouter(prefix="/api/open-finance", tags=["open-finance"])


@router.get("/banks")
async def list_banks(user: User = Depends(get_current_user)):
    return ok(banking.list_banks(user.id))


@router.post("/connect")
async def connect_bank(req: ConnectRequest, user: User = Depends(get_current_user)):
    result = await connections.initiate_connection(user.id, req.institution_id, provider=req.provider)
    return ok(result.to_dict())


@router.post("/exchange-code")
async def exchange_code(req: ExchangeCodeRequest, user: User = Depends(get_current_user)):
    connection = await connections.complete_connection(req.consent_id, code=req.code, user_id=user.id)
    return ok(connection.summary())


@router.get("/connections")
async def list_connections(user: User = Depends(get_current_user)):
    return ok(connections.list_connections(user.id))


@router.post("/connections/{connection_id}/sync-accounts")
async def sync_accounts(connection_id: str, user: User = Depends(get_current_user)):
    accounts = await reconciliation.sync_connection_accounts(connection_id, user_id=user.id)
    return ok({"accounts": accounts, "count": len(accounts)})


@router.post("/connections/{connection_id}/refresh")
async def refresh_connection(connection_id: str, user: User = Depends(get_current_user)):
    connection = await connections.refresh_connection(connection_id, user_id=user.id)
    return ok(connection.summary())


@router.post("/accounts/{account_id}/sync-transactions")
async def sync_transactions(
    account_id: str,
    req: Optional[SyncTransactionsRequest] = None,
    user: User = Depends(get_current_user),
):
    req = req or SyncTransactionsRequest()
    transactions = await reconciliation.sync_account_transactions(
        account_id, from_date=req.from_date, to_date=req.to_date, user_id=user.id
    )
    return ok({"transactions": transactions, "count": len(transactions)})


@router.delete("/connections/{connection_id}")
async def revoke_connection(connection_id: str, user: User = Depends(get_current_user)):
    return ok(connections.revoke_connection(user.id, connection_id).to_dict())
