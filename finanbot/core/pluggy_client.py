import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .aggregator import AggregatorClient, LinkResult, LinkStatus, SessionRefresh
from .data_models import OpenFinanceConnection, RawAccount, RawTransaction
from .errors import UpstreamError

logger = logging.getLogger(__name__)

CONNECT_WIDGET_URL = "https://connect.pluggy.ai"
ITEM_PERMISSIONS = ["ACCOUNTS_READ", "TRANSACTIONS_READ", "IDENTITY_READ"]
REAUTH_ITEM_STATUSES = {"LOGIN_ERROR", "OUTDATED"}


class PluggyClient(AggregatorClient):
    """
    Client for the Pluggy aggregator. A Pluggy item id doubles as the
    consent id and as the session handle stored on the connection.
    """

    provider = "pluggy"

    def __init__(
        self,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        client_name: str = "FinanBot",
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_base_url, client_id, client_secret, timeout=timeout, transport=transport)
        self.client_name = client_name
        self._api_key: Optional[str] = None
        self._key_lock = asyncio.Lock()

    async def _get_api_key(self) -> str:
        async with self._key_lock:
            if self._api_key:
                return self._api_key
            logger.info("Authenticating with Pluggy at %s", self.api_base_url)
            payload = await self._request_json(
                "POST",
                "/auth",
                json={"clientId": self.client_id, "clientSecret": self.client_secret},
            )
            api_key = payload.get("apiKey") if isinstance(payload, dict) else None
            if not api_key:
                raise self._malformed("auth")
            self._api_key = api_key
            return api_key

    async def _authorized(self, method: str, url: str, **kwargs: Any) -> Any:
        api_key = await self._get_api_key()
        headers = {**kwargs.pop("headers", {}), "Authorization": f"Bearer {api_key}"}
        return await self._request_json(method, url, headers=headers, **kwargs)

    @staticmethod
    def _results(payload: Any) -> Any:
        if isinstance(payload, dict):
            return payload.get("results")
        return payload

    async def create_link(self, institution_id: str, user_id: str) -> LinkResult:
        try:
            connector_id = int(institution_id)
        except ValueError as exc:
            raise UpstreamError(f"Invalid Pluggy connector id {institution_id!r}", provider=self.provider) from exc

        logger.info("Creating Pluggy item for user %s (connector %s)", user_id, connector_id)
        item = await self._authorized("POST", "/items", json={"connectorId": connector_id, "parameters": {}})
        item_id = item.get("id") if isinstance(item, dict) else None
        if not item_id:
            raise self._malformed("item")

        authorization_url = (
            f"{CONNECT_WIDGET_URL}?connectorId={institution_id}&itemId={item_id}&clientName={self.client_name}"
        )
        return LinkResult(
            consent_id=item_id,
            authorization_url=authorization_url,
            permissions=list(ITEM_PERMISSIONS),
            institution_name=self._jget(item, ["connector", "name"]),
            access_token=item_id,
        )

    async def check_link_status(self, handle: str) -> LinkStatus:
        item = await self._authorized("GET", f"/items/{handle}")
        status = str(self._jget(item, ["status"], "")).upper()
        return LinkStatus(handle=handle, status=status, reauth_required=status in REAUTH_ITEM_STATUSES)

    async def _ensure_item_usable(self, item_id: str) -> None:
        link = await self.check_link_status(item_id)
        if link.reauth_required:
            logger.warning("Pluggy item %s requires re-authentication (status=%s)", item_id, link.status)
            raise UpstreamError(
                "Item requires user re-authentication",
                provider=self.provider,
                reauth_required=True,
                details={"item_status": link.status},
            )

    async def exchange_code(self, code: Optional[str], consent_id: str) -> SessionRefresh:
        await self._ensure_item_usable(consent_id)
        return SessionRefresh(access_token=consent_id)

    async def refresh_session(self, connection: OpenFinanceConnection) -> SessionRefresh:
        await self._ensure_item_usable(connection.consent_id)
        return SessionRefresh(access_token=connection.access_token or connection.consent_id)

    async def list_accounts(self, connection: OpenFinanceConnection) -> List[RawAccount]:
        payload = await self._authorized("GET", "/accounts", params={"itemId": connection.consent_id})
        items = self._results(payload)
        if not isinstance(items, list):
            raise self._malformed("account")
        accounts = self._map_accounts(items)
        logger.info("Fetched %d Pluggy accounts for item %s", len(accounts), connection.consent_id)
        return accounts

    async def list_transactions(
        self,
        connection: OpenFinanceConnection,
        account_ref: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[RawTransaction]:
        payload = await self._authorized(
            "GET",
            "/transactions",
            params={
                "accountId": account_ref,
                "from": from_date.date().isoformat(),
                "to": to_date.date().isoformat(),
            },
        )
        items = self._results(payload)
        if not isinstance(items, list):
            raise self._malformed("transaction")
        transactions = self._map_transactions(items)
        logger.info("Fetched %d Pluggy transactions for account %s", len(transactions), account_ref)
        return transactions

    def _to_raw_account(self, item: Dict[str, Any]) -> RawAccount:
        return RawAccount(
            number=item["number"],
            type=item.get("type") or "",
            balance=item.get("balance") or 0.0,
            currency=item.get("currencyCode") or "BRL",
            name=item.get("name"),
            external_id=item.get("id"),
        )

    def _to_raw_transaction(self, item: Dict[str, Any]) -> RawTransaction:
        merchant = item.get("merchant") or {}
        return RawTransaction(
            external_id=item["id"],
            amount=item["amount"],
            currency=item.get("currencyCode") or "BRL",
            timestamp=item["date"],
            description=item.get("description") or "",
            category_hint=item.get("category"),
            merchant_name=merchant.get("name") or merchant.get("businessName"),
            status=item.get("status"),
        )
