from __future__ import annotations

from fastapi import APIRouter, Depends

from finanbot.core import database
from finanbot.core.data_models import User
from finanbot.core.errors import AuthenticationError

from ..schemas import AuthResponse, LoginRequest, RegisterRequest, ok
from ..security import create_access_token, get_current_user, hash_password, verify_password

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=201)
async def register(req: RegisterRequest):
    user = database.create_user(
        email=req.email,
        name=req.name,
        avatar=req.avatar,
        password_hash=hash_password(req.password),
    )
    return ok(AuthResponse(token=create_access_token(user.id), user=user))


@router.post("/login")
async def login(req: LoginRequest):
    """Issue a token when the email and password match a registered user."""
    credentials = database.find_user_credentials(req.email)
    if credentials is None or not verify_password(req.password, credentials[1]):
        raise AuthenticationError("Invalid credentials")
    user, _ = credentials
    return ok(AuthResponse(token=create_access_token(user.id), user=user))


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return ok(user)
