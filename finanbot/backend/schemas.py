from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from finanbot.core.data_models import User


def ok(data: Any) -> Dict[str, Any]:
    """Success envelope shared by every endpoint."""
    return {"success": True, "data": data}


# Auth schemas
class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: str = Field(min_length=2, max_length=100)
    password: str = Field(min_length=8, max_length=128)
    avatar: Optional[str] = None


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class AuthResponse(BaseModel):
    token: str
    user: User


# Open Finance schemas
class ConnectRequest(BaseModel):
    institution_id: str
    provider: Optional[str] = None


class ExchangeCodeRequest(BaseModel):
    consent_id: str
    code: Optional[str] = None


class SyncTransactionsRequest(BaseModel):
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


# Chat schemas
class ChatMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=1000)
