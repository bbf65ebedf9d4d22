"""
NoteX Backend — Authentication Routes
=======================================

What:  POST /api/auth/telegram-login and POST /api/auth/logout.
Who:   Called by the Telegram mini-app on launch with `Telegram.WebApp.initData`.

Response contract (login):
    {"success": true, "user": {...profile...}, "token": "<64 hex chars>"}
    The token is sent back as `Authorization: Bearer <token>` on every
    authenticated call.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_auth_service, get_current_user
from notex.models.user import User
from notex.schemas.account import TelegramLoginRequest
from notex.schemas.common import ErrorResponse
from notex.services.auth_service import AuthService
from notex.services.user_service import user_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post(
    "/telegram-login",
    responses={
        400: {"description": "Payload without a user", "model": ErrorResponse},
        401: {"description": "Invalid or expired Telegram signature", "model": ErrorResponse},
    },
    summary="Log in with Telegram WebApp initData",
)
async def telegram_login(
    body: TelegramLoginRequest,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
):
    user = await auth.login(db, body.init_data)
    logger.info("User %s logged in", user.id)
    return {"success": True, "user": user_profile(user), "token": user.session_token}


@router.post("/logout", summary="Revoke the current session token")
async def logout(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.logout(db, user)
    return {"success": True}
