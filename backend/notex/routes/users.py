"""
NoteX Backend — User Routes
=============================

What:  Dashboard, profile, rewarded-ad credits, seller payouts and the
       referral list for the authenticated user.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_current_user, get_ledger_service, get_user_service
from notex.exceptions import ValidationError
from notex.models.ledger import JOB_REWARDED_AD
from notex.models.user import User
from notex.schemas.account import AddCreditsRequest, PayoutRequest, ProfileUpdate
from notex.schemas.common import ErrorResponse
from notex.services.ledger_service import LedgerService
from notex.services.user_service import UserService, user_profile

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/users",
    tags=["Users"],
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
)


@router.get("/dashboard", summary="Profile summary, stats, recent purchases and listings")
async def dashboard(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    users: UserService = Depends(get_user_service),
):
    return {"success": True, **await users.dashboard(db, user)}


@router.get("/profile", summary="The caller's profile")
async def get_profile(user: User = Depends(get_current_user)):
    return {"success": True, "user": user_profile(user)}


@router.put(
    "/profile",
    responses={400: {"description": "Nothing to update", "model": ErrorResponse}},
    summary="Update email and/or username",
)
async def update_profile(
    body: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    users: UserService = Depends(get_user_service),
):
    user = await users.update_profile(db, user, email=body.email, username=body.username)
    return {"success": True, "user": user_profile(user)}


@router.post(
    "/add-credits",
    responses={429: {"description": "Daily ad limit reached", "model": ErrorResponse}},
    summary="Claim credits for a watched rewarded ad",
)
async def add_credits(
    body: AddCreditsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    ledger: LedgerService = Depends(get_ledger_service),
):
    if body.type != JOB_REWARDED_AD:
        raise ValidationError("Invalid credit type", field="type")
    credits = await ledger.grant_ad_credit(db, user, body.amount)
    return {"success": True, "credits": credits, "message": f"+{body.amount} credit added!"}


@router.post(
    "/request-payout",
    responses={400: {"description": "Below minimum or insufficient balance", "model": ErrorResponse}},
    summary="Withdraw seller earnings",
)
async def request_payout(
    body: PayoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    ledger: LedgerService = Depends(get_ledger_service),
):
    payout = await ledger.request_payout(db, user, body.amount, body.method)
    return {
        "success": True,
        "payout": {
            "id": payout.id,
            "amount_usd": float(payout.amount_usd),
            "method": payout.method,
            "status": payout.status,
            "created_at": payout.created_at,
        },
        "wallet_balance": float(user.wallet_balance),
        "message": "Payout request submitted. Processing takes 3-5 business days.",
    }


@router.get("/referrals", summary="Users the caller has referred")
async def referrals(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    users: UserService = Depends(get_user_service),
):
    return {"success": True, **await users.referrals(db, user)}
