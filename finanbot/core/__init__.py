"""Core package exposing primary interfaces for the FinanBot project."""

from .aggregator import AggregatorClient, LinkResult, LinkStatus, SessionRefresh
from .data_models import BankAccount, FinancialContext, OpenFinanceConnection, Transaction
from .open_finance_client import OpenFinanceClient
from .pluggy_client import PluggyClient

__all__ = [
    "AggregatorClient",
    "BankAccount",
    "FinancialContext",
    "LinkResult",
    "LinkStatus",
    "OpenFinanceClient",
    "OpenFinanceConnection",
    "PluggyClient",
    "SessionRefresh",
    "Transaction",
]
