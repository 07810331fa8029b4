"""Map aggregator vocabularies onto the normalized account/transaction enums."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from .data_models import AccountType, TransactionType

logger = logging.getLogger(__name__)

# Keys are upper-cased; lookups are case-insensitive.
ACCOUNT_TYPE_ALIASES: Dict[str, AccountType] = {
    # Normalized names
    "CHECKING": AccountType.CHECKING,
    "SAVINGS": AccountType.SAVINGS,
    "CREDIT_CARD": AccountType.CREDIT_CARD,
    "INVESTMENT": AccountType.INVESTMENT,
    # Open Finance Brasil
    "CONTA_DEPOSITO_A_VISTA": AccountType.CHECKING,
    "CONTA_POUPANCA": AccountType.SAVINGS,
    "CONTA_PAGAMENTO_PRE_PAGA": AccountType.CREDIT_CARD,
    "CONTA_DEPOSITO_A_PRAZO": AccountType.INVESTMENT,
    # Pluggy
    "BANK": AccountType.CHECKING,
    "CHECKING_ACCOUNT": AccountType.CHECKING,
    "SAVINGS_ACCOUNT": AccountType.SAVINGS,
    "CREDIT": AccountType.CREDIT_CARD,
}

DIRECTION_ALIASES: Dict[str, TransactionType] = {
    "DEBIT": TransactionType.DEBIT,
    "DEBITO": TransactionType.DEBIT,
    "DÉBITO": TransactionType.DEBIT,
    "OUT": TransactionType.DEBIT,
    "OUTFLOW": TransactionType.DEBIT,
    "CREDIT": TransactionType.CREDIT,
    "CREDITO": TransactionType.CREDIT,
    "CRÉDITO": TransactionType.CREDIT,
    "IN": TransactionType.CREDIT,
    "INFLOW": TransactionType.CREDIT,
}


def _key(value: str) -> str:
    return value.strip().upper().replace("-", "_").replace(" ", "_")


def register_account_type_alias(raw: str, account_type: AccountType) -> None:
    ACCOUNT_TYPE_ALIASES[_key(raw)] = account_type


def register_direction_alias(raw: str, transaction_type: TransactionType) -> None:
    DIRECTION_ALIASES[_key(raw)] = transaction_type


def normalize_account_type(raw_type: Optional[str]) -> AccountType:
    if not raw_type:
        return AccountType.CHECKING
    account_type = ACCOUNT_TYPE_ALIASES.get(_key(raw_type))
    if account_type is None:
        logger.debug("Unknown account type %r, defaulting to CHECKING", raw_type)
        return AccountType.CHECKING
    return account_type


def normalize_transaction_type(value: Union[int, float, str, None]) -> TransactionType:
    """Accept a signed amount or a direction flag."""
    if isinstance(value, bool):
        raise TypeError("direction must be a signed amount or a flag string")
    if isinstance(value, (int, float)):
        return TransactionType.DEBIT if value < 0 else TransactionType.CREDIT
    if not value:
        return TransactionType.CREDIT
    return DIRECTION_ALIASES.get(_key(value), TransactionType.CREDIT)
