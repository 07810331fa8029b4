"""Shared plumbing for Open Finance aggregator clients."""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .data_models import OpenFinanceConnection, RawAccount, RawTransaction
from .errors import UpstreamError

logger = logging.getLogger(__name__)
DEFAULT_TIMEOUT = httpx.Timeout(20.0, connect=5.0)

RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.NetworkError,
)


def _is_retryable(exc: BaseException) -> bool:
    """Retry only on transport errors and HTTP 5xx."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


api_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


@dataclass
class LinkResult:
    """Outcome of starting a bank link at the aggregator."""

    consent_id: str
    authorization_url: str
    permissions: List[str] = field(default_factory=list)
    institution_name: Optional[str] = None
    access_token: str = ""


@dataclass
class SessionRefresh:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class LinkStatus:
    handle: str
    status: str
    reauth_required: bool = False


class AggregatorClient(ABC):
    """
    Base class for provider clients. Subclasses map provider JSON into
    RawAccount / RawTransaction; every transport or HTTP failure surfaces as
    UpstreamError once the retry budget is spent.
    """

    provider: str = "aggregator"

    def __init__(
        self,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not all([api_base_url, client_id, client_secret]):
            raise ValueError("api_base_url, client_id, and client_secret are required.")

        self.api_base_url = api_base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = httpx.AsyncClient(
            base_url=self.api_base_url,
            timeout=timeout or DEFAULT_TIMEOUT,
            transport=transport,
        )

    @api_retry
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        """Perform a request and decode JSON, translating failures to UpstreamError."""
        try:
            response = await self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("%s %s %s failed with HTTP %s", self.provider, method, url, status)
            raise UpstreamError(
                f"{self.provider} responded with HTTP {status}",
                provider=self.provider,
                status=status,
                reauth_required=status in (401, 403),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("%s %s %s transport error: %s", self.provider, method, url, exc)
            raise UpstreamError(f"{self.provider} is unreachable", provider=self.provider) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.provider} returned a non-JSON body", provider=self.provider) from exc

    def _malformed(self, what: str, exc: Optional[BaseException] = None) -> UpstreamError:
        logger.error("Malformed %s payload from %s: %s", what, self.provider, exc)
        return UpstreamError(f"{self.provider} returned a malformed {what} payload", provider=self.provider)

    def _map_accounts(self, items: Iterable[Any]) -> List[RawAccount]:
        try:
            return [self._to_raw_account(item) for item in items]
        except (KeyError, TypeError, AttributeError, PydanticValidationError) as exc:
            raise self._malformed("account", exc) from exc

    def _map_transactions(self, items: Iterable[Any]) -> List[RawTransaction]:
        try:
            return [self._to_raw_transaction(item) for item in items]
        except (KeyError, TypeError, AttributeError, PydanticValidationError) as exc:
            raise self._malformed("transaction", exc) from exc

    @staticmethod
    def _jget(d: Any, path: List[str], default: Any = None) -> Any:
        cur = d
        for p in path:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    @staticmethod
    def _interaction_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(timezone.utc)

    @abstractmethod
    def _to_raw_account(self, item: Dict[str, Any]) -> RawAccount:
        ...

    @abstractmethod
    def _to_raw_transaction(self, item: Dict[str, Any]) -> RawTransaction:
        ...

    @abstractmethod
    async def list_accounts(self, connection: OpenFinanceConnection) -> List[RawAccount]:
        ...

    @abstractmethod
    async def list_transactions(
        self,
        connection: OpenFinanceConnection,
        account_ref: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[RawTransaction]:
        ...

    @abstractmethod
    async def create_link(self, institution_id: str, user_id: str) -> LinkResult:
        ...

    @abstractmethod
    async def check_link_status(self, handle: str) -> LinkStatus:
        ...

    @abstractmethod
    async def exchange_code(self, code: Optional[str], consent_id: str) -> SessionRefresh:
        ...

    @abstractmethod
    async def refresh_session(self, connection: OpenFinanceConnection) -> SessionRefresh:
        ...

    async def close(self) -> None:
        """Dispose the underlying HTTP client."""
        await self._client.aclose()
