from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from finanbot.core import database
from finanbot.core.aggregator import AggregatorClient
from finanbot.core.data_models import (
    TERMINAL_CONNECTION_STATUSES,
    ConnectionStatus,
    OpenFinanceConnection,
)
from finanbot.core.errors import ConflictError, InvalidState, NotFound, UpstreamError

from ..config import DEFAULT_LINK_VALIDITY_DAYS
from ..state import invalidate_user_cache
from .banking import get_institution, resolve_provider, use_client

logger = logging.getLogger("finanbot.backend.connections")


@dataclass
class ConnectionInitResult:
    connection_id: str
    consent_id: str
    authorization_url: str
    provider: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "consent_id": self.consent_id,
            "authorization_url": self.authorization_url,
            "provider": self.provider,
        }


@dataclass
class RevokeResult:
    connection_id: str
    deactivated_accounts: int
    already_revoked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "deactivated_accounts": self.deactivated_accounts,
            "already_revoked": self.already_revoked,
        }


def _get_owned_connection(connection_id: str, user_id: Optional[str] = None) -> OpenFinanceConnection:
    connection = database.get_connection(connection_id)
    if connection is None or (user_id and connection.user_id != user_id):
        raise NotFound(f"Connection {connection_id} not found")
    return connection


def _ensure_not_terminal(connection: OpenFinanceConnection) -> None:
    if connection.status in TERMINAL_CONNECTION_STATUSES:
        raise InvalidState(
            f"Connection {connection.id} is {connection.status.value}",
            details={"status": connection.status.value},
        )


async def initiate_connection(
    user_id: str,
    institution_id: str,
    client: Optional[AggregatorClient] = None,
    provider: Optional[str] = None,
) -> ConnectionInitResult:
    """
    Start linking ``institution_id`` for the user.

    The connection is stored ACTIVE with placeholder credentials until the
    callback completes it (Pluggy items carry their id as the session handle).
    """
    resolved = resolve_provider(provider or (client.provider if client else None))
    institution = get_institution(institution_id, resolved.value)

    try:
        async with use_client(resolved.value, client) as aggregator:
            link = await aggregator.create_link(institution.id, user_id)
    except UpstreamError as exc:
        database.add_bank_status_log(user_id, institution.id, "initiate_connection", "error", exc.message)
        raise

    expires_at = database.utcnow() + timedelta(days=DEFAULT_LINK_VALIDITY_DAYS[resolved.value])
    try:
        connection = database.create_connection(
            user_id=user_id,
            provider=resolved.value,
            institution_id=institution.id,
            institution_name=link.institution_name or institution.name,
            consent_id=link.consent_id,
            expires_at=expires_at,
            permissions=link.permissions,
            access_token=link.access_token,
            status=ConnectionStatus.ACTIVE.value,
        )
    except ConflictError:
        connection = database.find_connection_by_consent_id(link.consent_id)
        if connection is None or connection.user_id != user_id:
            raise
        logger.info("Consent %s already stored as connection %s", link.consent_id, connection.id)

    database.add_bank_status_log(
        user_id, institution.id, "initiate_connection", "success", f"consent {link.consent_id}"
    )
    logger.info("Initiated %s connection %s for user %s", resolved.value, connection.id, user_id)
    return ConnectionInitResult(
        connection_id=connection.id,
        consent_id=connection.consent_id,
        authorization_url=link.authorization_url,
        provider=resolved.value,
    )


async def complete_connection(
    consent_id: str,
    code: Optional[str] = None,
    client: Optional[AggregatorClient] = None,
    user_id: Optional[str] = None,
) -> OpenFinanceConnection:
    """Store the session obtained for ``consent_id`` once the user authorized it."""
    connection = database.find_connection_by_consent_id(consent_id)
    if connection is None or (user_id and connection.user_id != user_id):
        raise NotFound(f"No connection for consent {consent_id}")
    _ensure_not_terminal(connection)

    try:
        async with use_client(connection.provider.value, client) as aggregator:
            session = await aggregator.exchange_code(code, consent_id)
    except UpstreamError as exc:
        database.add_bank_status_log(connection.user_id, connection.id, "complete_connection", "error", exc.message)
        raise

    database.update_connection_credentials(
        connection.id,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
    )
    database.add_bank_status_log(connection.user_id, connection.id, "complete_connection", "success", "session stored")
    logger.info("Completed connection %s (consent %s)", connection.id, consent_id)
    return database.get_connection(connection.id)


async def refresh_connection(
    connection_id: str,
    client: Optional[AggregatorClient] = None,
    user_id: Optional[str] = None,
) -> OpenFinanceConnection:
    """Renew the session; any failure marks the connection EXPIRED."""
    connection = _get_owned_connection(connection_id, user_id)
    _ensure_not_terminal(connection)

    try:
        async with use_client(connection.provider.value, client) as aggregator:
            session = await aggregator.refresh_session(connection)
    except UpstreamError as exc:
        database.update_connection_status(connection.id, ConnectionStatus.EXPIRED.value)
        database.add_bank_status_log(connection.user_id, connection.id, "refresh_connection", "error", exc.message)
        logger.warning("Refresh failed for connection %s; marked EXPIRED: %s", connection.id, exc.message)
        raise UpstreamError(
            "Failed to refresh connection",
            provider=exc.provider,
            status=exc.status,
            reauth_required=True,
        ) from exc

    database.update_connection_credentials(
        connection.id,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
    )
    database.add_bank_status_log(connection.user_id, connection.id, "refresh_connection", "success", "session renewed")
    return database.get_connection(connection.id)


def revoke_connection(user_id: str, connection_id: str) -> RevokeResult:
    """Mark the connection REVOKED and deactivate the accounts it sourced."""
    connection = _get_owned_connection(connection_id, user_id)
    if connection.status == ConnectionStatus.REVOKED:
        return RevokeResult(connection_id=connection.id, deactivated_accounts=0, already_revoked=True)

    database.update_connection_status(connection.id, ConnectionStatus.REVOKED.value)
    deactivated = database.deactivate_connection_accounts(user_id, connection.id)
    invalidate_user_cache(user_id)
    database.add_bank_status_log(
        user_id, connection.id, "revoke_connection", "success", f"{deactivated} accounts deactivated"
    )
    logger.info("Revoked connection %s for user %s (%d accounts deactivated)", connection.id, user_id, deactivated)
    return RevokeResult(connection_id=connection.id, deactivated_accounts=deactivated)


def list_connections(user_id: str) -> List[Dict[str, Any]]:
    return [connection.summary() for connection in database.list_connections(user_id)]
