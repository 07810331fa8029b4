from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from finanbot.core import database
from finanbot.core.aggregator import AggregatorClient
from finanbot.core.errors import AuthenticationError, ValidationError

from ..config import settings
from .reconciliation import sync_connection_accounts

logger = logging.getLogger("finanbot.backend.webhooks")

ITEM_UPDATED_EVENT = "item/updated"


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Raise AuthenticationError unless ``signature`` is the HMAC-SHA256 hex digest of the body."""
    if not secret:
        raise AuthenticationError("Webhook secret is not configured")
    expected = sign_payload(raw_body, secret)
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        raise AuthenticationError("Invalid webhook signature")


def _item_id(payload: Dict[str, Any]) -> Optional[str]:
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    item_id = payload.get("itemId")
    return str(item_id) if item_id else None


async def handle_pluggy_webhook(
    raw_body: bytes,
    signature: Optional[str],
    client: Optional[AggregatorClient] = None,
    secret: Optional[str] = None,
) -> Dict[str, Any]:
    verify_signature(raw_body, signature, secret or settings.pluggy_webhook_secret)

    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event = payload.get("event")
    result: Dict[str, Any] = {"event": event, "handled": False}
    if event != ITEM_UPDATED_EVENT:
        logger.info("Ignoring Pluggy webhook event %s", event)
        return result

    item_id = _item_id(payload)
    connection = database.find_connection_by_consent_id(item_id) if item_id else None
    if connection is None:
        logger.info("Pluggy webhook for unknown item %s ignored", item_id)
        return result
    if not connection.is_usable:
        logger.info("Pluggy webhook for inactive connection %s ignored", connection.id)
        return result

    accounts = await sync_connection_accounts(connection.id, client=client)
    result.update({"handled": True, "connection_id": connection.id, "accounts": len(accounts)})
    return result
