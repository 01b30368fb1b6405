"""
Auth API routes — register, login, current user.

Route prefix: /api/v1/auth

These exist so the financial routes have a bearer token to check; a user is
just an email, a display name and a bcrypt hash.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from auth.jwt import create_token
from auth.password import hash_password, verify_password
from database.helpers import create_user, find_user_by_email
from database.models import User

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=2, max_length=64)
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=8, max_length=72)  # bcrypt input limit


class LoginRequest(BaseModel):
    email: str
    password: str


class SessionResponse(BaseModel):
    user_id: str
    display_name: str
    email: str
    token: str


def _profile(user: User) -> Dict[str, Any]:
    return {"user_id": user.user_id, "display_name": user.display_name or "", "email": user.email}


@router.post("/register", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def register(
    req: RegisterRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    if await find_user_by_email(session, req.email) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = await create_user(session, req.email, req.username, hash_password(req.password))
    logger.info("Registered user %s", user.user_id)
    return {**_profile(user), "token": create_token(user.user_id)}


@router.post("/login", response_model=SessionResponse)
async def login(
    req: LoginRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    user = await find_user_by_email(session, req.email)
    # Same answer for unknown email and wrong password.
    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password"
        )
    return {**_profile(user), "token": create_token(user.user_id)}


@router.get("/me")
async def me(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _profile(user)
