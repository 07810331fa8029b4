"""Data models for the FinanBot core."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class AccountType(str, Enum):
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    INVESTMENT = "INVESTMENT"


class TransactionType(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    ERROR = "ERROR"


TERMINAL_CONNECTION_STATUSES = {ConnectionStatus.EXPIRED, ConnectionStatus.REVOKED}


class Provider(str, Enum):
    OPEN_FINANCE = "open_finance"
    PLUGGY = "pluggy"


class InsightType(str, Enum):
    EXPENSE_ANALYSIS = "EXPENSE_ANALYSIS"
    INCOME_ANALYSIS = "INCOME_ANALYSIS"
    BUDGET_ALERT = "BUDGET_ALERT"
    RECOMMENDATION = "RECOMMENDATION"


class InsightPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class User(BaseModel):
    id: str
    email: str
    name: str
    avatar: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Location(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None


class BankAccount(BaseModel):
    """A user-owned account at one institution."""

    id: str
    user_id: str
    connection_id: Optional[str] = None
    external_id: Optional[str] = None
    bank_code: str
    bank_name: str
    account_type: AccountType
    account_number: str
    agency: Optional[str] = None
    balance: float
    currency: str = "BRL"
    is_active: bool = True
    connected_at: datetime
    last_sync_at: Optional[datetime] = None


class Transaction(BaseModel):
    """A transaction stored under its aggregator-assigned id."""

    id: str
    account_id: str
    amount: float = Field(ge=0)
    type: TransactionType
    category: str
    subcategory: Optional[str] = None
    description: str
    merchant_name: Optional[str] = None
    date: datetime
    status: TransactionStatus = TransactionStatus.COMPLETED
    tags: List[str] = Field(default_factory=list)
    location: Optional[Location] = None


class OpenFinanceConnection(BaseModel):
    """A consented link between one user and one institution."""

    id: str
    user_id: str
    provider: Provider
    institution_id: str
    institution_name: str
    consent_id: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime
    permissions: List[str] = Field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    created_at: datetime
    updated_at: datetime

    @property
    def is_pending_activation(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE and not self.access_token

    @property
    def is_usable(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE and bool(self.access_token)

    def summary(self) -> Dict[str, Any]:
        """Connection fields safe to return to the front end."""
        return {
            "id": self.id,
            "provider": self.provider.value,
            "institution_id": self.institution_id,
            "institution_name": self.institution_name,
            "status": self.status.value,
            "pending_activation": self.is_pending_activation,
            "permissions": self.permissions,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# Raw aggregator payloads, already mapped out of the provider JSON.


class RawAccount(BaseModel):
    number: str
    type: str = ""
    balance: float = 0.0
    currency: str = "BRL"
    branch_code: Optional[str] = None
    compe_code: Optional[str] = None
    name: Optional[str] = None
    external_id: Optional[str] = None


class RawTransaction(BaseModel):
    external_id: str
    amount: float
    direction: Optional[str] = None
    currency: str = "BRL"
    timestamp: datetime
    description: str = ""
    category_hint: Optional[str] = None
    merchant_name: Optional[str] = None
    status: Optional[str] = None


# Insight payloads, discriminated by ``kind``.


class TopSpendingCategoryData(BaseModel):
    kind: Literal["top_spending_category"] = "top_spending_category"
    category: str
    amount: float
    percentage: float


class BudgetAlertData(BaseModel):
    kind: Literal["budget_alert"] = "budget_alert"
    message: str
    spending_ratio: float


class SavingsRateData(BaseModel):
    kind: Literal["savings_rate"] = "savings_rate"
    rate: float


InsightData = Annotated[
    Union[TopSpendingCategoryData, BudgetAlertData, SavingsRateData],
    Field(discriminator="kind"),
]


class FinancialInsight(BaseModel):
    id: str
    user_id: str
    type: InsightType
    title: str
    description: str
    data: InsightData
    priority: InsightPriority = InsightPriority.MEDIUM
    is_read: bool = False
    created_at: datetime


# Chat message context payloads, discriminated by ``kind``.


class UserQuestionContext(BaseModel):
    kind: Literal["user_question"] = "user_question"
    total_balance: float
    monthly_income: float
    monthly_expenses: float


class AssistantReplyContext(BaseModel):
    kind: Literal["assistant_reply"] = "assistant_reply"
    confidence: float
    suggested_actions: List[str] = Field(default_factory=list)
    insights: List[InsightData] = Field(default_factory=list)


ChatContext = Annotated[
    Union[UserQuestionContext, AssistantReplyContext],
    Field(discriminator="kind"),
]


class ChatMessage(BaseModel):
    id: str
    user_id: str
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime
    tokens: Optional[int] = None
    model: Optional[str] = None
    context: Optional[ChatContext] = None


class FinancialContext(BaseModel):
    """Snapshot of a user's finances used by the dashboard and the assistant."""

    accounts: List[BankAccount] = Field(default_factory=list)
    recent_transactions: List[Transaction] = Field(default_factory=list)
    monthly_spending: Dict[str, float] = Field(default_factory=dict)
    total_balance: float = 0.0
    monthly_income: float = 0.0
    monthly_expenses: float = 0.0

    @property
    def savings_rate(self) -> float:
        if self.monthly_income <= 0:
            return 0.0
        return round((self.monthly_income - self.monthly_expenses) / self.monthly_income * 100, 2)
