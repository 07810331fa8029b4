import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .aggregator import AggregatorClient, LinkResult, LinkStatus, SessionRefresh
from .data_models import OpenFinanceConnection, RawAccount, RawTransaction
from .errors import UpstreamError

logger = logging.getLogger(__name__)

CONSENT_PERMISSIONS = [
    "ACCOUNTS_READ",
    "ACCOUNTS_BALANCES_READ",
    "RESOURCES_READ",
    "PAYMENTS_READ",
    "CREDIT_CARDS_ACCOUNTS_READ",
]
CONSENT_VALIDITY = timedelta(days=365)
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=5)
TOKEN_EXPIRY_MARGIN = timedelta(minutes=1)
REAUTH_CONSENT_STATUSES = {"REJECTED", "EXPIRED", "REVOKED"}


class OpenFinanceClient(AggregatorClient):
    """Client for the Brazilian Open Finance consent and account APIs."""

    provider = "open_finance"

    def __init__(
        self,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_base_url, client_id, client_secret, timeout=timeout, transport=transport)
        self.redirect_uri = redirect_uri
        self._cc_token: Optional[str] = None
        self._cc_token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.client_id, self.client_secret)

    def _fapi_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "x-fapi-auth-date": self._utcnow().isoformat(),
            "x-fapi-customer-ip-address": "127.0.0.1",
            "x-fapi-interaction-id": self._interaction_id(),
        }

    async def _client_credentials_token(self) -> str:
        async with self._token_lock:
            if self._cc_token and self._cc_token_expires_at and self._utcnow() < self._cc_token_expires_at:
                return self._cc_token

            logger.info("Requesting client credentials token from %s", self.api_base_url)
            payload = await self._request_json(
                "POST",
                "/token",
                data={"grant_type": "client_credentials", "scope": "consents"},
                auth=self._basic_auth(),
            )
            token = payload.get("access_token") if isinstance(payload, dict) else None
            if not token:
                raise self._malformed("token")

            expires_in = payload.get("expires_in")
            lifetime = timedelta(seconds=int(expires_in)) if expires_in else DEFAULT_TOKEN_LIFETIME
            self._cc_token = token
            self._cc_token_expires_at = self._utcnow() + lifetime - TOKEN_EXPIRY_MARGIN
            return token

    def _to_session(self, payload: Any, fallback_refresh: Optional[str] = None) -> SessionRefresh:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise self._malformed("token")
        expires_in = payload.get("expires_in")
        expires_at = self._utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return SessionRefresh(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh,
            expires_at=expires_at,
        )

    async def create_link(self, institution_id: str, user_id: str) -> LinkResult:
        token = await self._client_credentials_token()
        body = {
            "institutionId": institution_id,
            "permissions": CONSENT_PERMISSIONS,
            "expirationDateTime": (self._utcnow() + CONSENT_VALIDITY).isoformat(),
        }
        logger.info("Creating consent at %s for user %s (institution %s)", self.api_base_url, user_id, institution_id)
        payload = await self._request_json(
            "POST",
            "/consents",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        consent_id = self._jget(payload, ["data", "consentId"])
        if not consent_id:
            raise self._malformed("consent")

        authorization_url = (
            f"{self.api_base_url}/auth?consent_id={consent_id}"
            f"&redirect_uri={quote(self.redirect_uri, safe='')}"
        )
        return LinkResult(
            consent_id=consent_id,
            authorization_url=authorization_url,
            permissions=list(CONSENT_PERMISSIONS),
        )

    async def check_link_status(self, handle: str) -> LinkStatus:
        token = await self._client_credentials_token()
        payload = await self._request_json(
            "GET",
            f"/consents/{handle}",
            headers={"Authorization": f"Bearer {token}"},
        )
        status = str(self._jget(payload, ["data", "status"], "")).upper()
        return LinkStatus(handle=handle, status=status, reauth_required=status in REAUTH_CONSENT_STATUSES)

    async def exchange_code(self, code: Optional[str], consent_id: str) -> SessionRefresh:
        if not code:
            raise UpstreamError("Authorization code is required for Open Finance", provider=self.provider)
        logger.info("Exchanging authorization code for consent %s", consent_id)
        payload = await self._request_json(
            "POST",
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "consent_id": consent_id,
            },
            auth=self._basic_auth(),
        )
        return self._to_session(payload)

    async def refresh_session(self, connection: OpenFinanceConnection) -> SessionRefresh:
        if not connection.refresh_token:
            raise UpstreamError(
                "Connection has no refresh token",
                provider=self.provider,
                reauth_required=True,
            )
        payload = await self._request_json(
            "POST",
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": connection.refresh_token},
            auth=self._basic_auth(),
        )
        return self._to_session(payload, fallback_refresh=connection.refresh_token)

    async def list_accounts(self, connection: OpenFinanceConnection) -> List[RawAccount]:
        payload = await self._request_json("GET", "/accounts", headers=self._fapi_headers(connection.access_token))
        items = self._jget(payload, ["data"])
        if not isinstance(items, list):
            raise self._malformed("account")
        accounts = self._map_accounts(items)
        logger.info("Fetched %d accounts for connection %s", len(accounts), connection.id)
        return accounts

    async def list_transactions(
        self,
        connection: OpenFinanceConnection,
        account_ref: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[RawTransaction]:
        payload = await self._request_json(
            "GET",
            f"/accounts/{account_ref}/transactions",
            params={"fromDate": from_date.isoformat(), "toDate": to_date.isoformat()},
            headers=self._fapi_headers(connection.access_token),
        )
        items = self._jget(payload, ["data"])
        if not isinstance(items, list):
            raise self._malformed("transaction")
        transactions = self._map_transactions(items)
        logger.info("Fetched %d transactions for account %s", len(transactions), account_ref)
        return transactions

    def _to_raw_account(self, item: Dict[str, Any]) -> RawAccount:
        balance = item.get("balance") or {}
        return RawAccount(
            number=item["accountNumber"],
            type=item.get("type") or "",
            balance=balance.get("current", 0.0) if isinstance(balance, dict) else balance,
            currency=item.get("currency") or "BRL",
            branch_code=item.get("branchCode"),
            compe_code=item.get("compeCode"),
            external_id=item.get("accountId"),
        )

    def _to_raw_transaction(self, item: Dict[str, Any]) -> RawTransaction:
        return RawTransaction(
            external_id=item["transactionId"],
            amount=item["amount"],
            direction=item.get("creditDebitType"),
            currency=item.get("transactionCurrency") or "BRL",
            timestamp=item.get("transactionDateTime") or item["bookingDateTime"],
            description=item.get("transactionInformation") or "",
        )
