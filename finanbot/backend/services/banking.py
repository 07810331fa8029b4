from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from finanbot.core.aggregator import DEFAULT_TIMEOUT, AggregatorClient
from finanbot.core.database import list_connections
from finanbot.core.data_models import ConnectionStatus, Provider
from finanbot.core.errors import NotFound, UpstreamError, ValidationError
from finanbot.core.open_finance_client import OpenFinanceClient
from finanbot.core.pluggy_client import PluggyClient

from ..config import INSTITUTIONS, InstitutionConfig, settings

logger = logging.getLogger("finanbot.backend.banking")


def resolve_provider(provider: Optional[str] = None) -> Provider:
    value = (provider or settings.aggregator_provider or "").lower()
    try:
        return Provider(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown aggregator provider '{value}'") from exc


def get_institution(institution_id: str, provider: Optional[str] = None) -> InstitutionConfig:
    """Return the catalogue entry, raising NotFound for unknown institutions."""
    catalogue = INSTITUTIONS[resolve_provider(provider).value]
    institution = catalogue.get(str(institution_id))
    if institution is None:
        raise NotFound(f"Institution '{institution_id}' is not supported")
    return institution


def bank_code_for(institution_id: str, provider: Optional[str] = None) -> str:
    try:
        return get_institution(institution_id, provider).code
    except NotFound:
        logger.warning("No bank code known for institution %s; using the id", institution_id)
        return str(institution_id)


def _timeout() -> httpx.Timeout:
    if settings.http_timeout == DEFAULT_TIMEOUT.read:
        return DEFAULT_TIMEOUT
    return httpx.Timeout(settings.http_timeout, connect=5.0)


def build_aggregator_client(
    provider: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AggregatorClient:
    """Construct the client for ``provider`` from settings; credentials must be configured."""
    resolved = resolve_provider(provider)
    if resolved is Provider.PLUGGY:
        if not settings.pluggy_client_id or not settings.pluggy_client_secret:
            raise UpstreamError("Pluggy credentials are not configured", provider=resolved.value)
        return PluggyClient(
            api_base_url=settings.pluggy_base_url,
            client_id=settings.pluggy_client_id,
            client_secret=settings.pluggy_client_secret,
            timeout=_timeout(),
            transport=transport,
        )

    if not all(
        [settings.open_finance_base_url, settings.open_finance_client_id, settings.open_finance_client_secret]
    ):
        raise UpstreamError("Open Finance credentials are not configured", provider=resolved.value)
    return OpenFinanceClient(
        api_base_url=settings.open_finance_base_url,
        client_id=settings.open_finance_client_id,
        client_secret=settings.open_finance_client_secret,
        redirect_uri=settings.open_finance_redirect_uri,
        timeout=_timeout(),
        transport=transport,
    )


@asynccontextmanager
async def aggregator_client(provider: Optional[str] = None) -> AsyncIterator[AggregatorClient]:
    client = build_aggregator_client(provider)
    try:
        yield client
    finally:
        await client.close()


def list_banks(user_id: Optional[str] = None, provider: Optional[str] = None) -> Dict[str, Any]:
    resolved = resolve_provider(provider)
    connected_ids = set()
    if user_id:
        connected_ids = {
            connection.institution_id
            for connection in list_connections(user_id)
            if connection.provider == resolved and connection.status == ConnectionStatus.ACTIVE
        }

    banks: List[Dict[str, Any]] = []
    for institution_id, institution in INSTITUTIONS[resolved.value].items():
        banks.append({**institution, "connected": institution_id in connected_ids})
    return {"provider": resolved.value, "banks": banks}


@asynccontextmanager
async def use_client(
    provider: Optional[str] = None,
    client: Optional[AggregatorClient] = None,
) -> AsyncIterator[AggregatorClient]:
    """Yield ``client`` unchanged when supplied; otherwise open (and close) one for ``provider``."""
    if client is not None:
        yield client
        return
    async with aggregator_client(provider) as owned:
        yield owned
