"""
NoteX Backend — Purchase & Subscription Routes
================================================

What:  Opens Stripe checkouts and reports purchase history.
Why:   Checkout only records a pending Purchase; the purchase completes (and
       the seller is paid) when the Stripe webhook arrives. The verify
       endpoint lets the success page poll Stripe while it waits.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_checkout_service, get_current_user
from notex.models.user import User
from notex.schemas.common import ErrorResponse
from notex.schemas.payment import CheckoutRequest, CheckoutResponse, SubscriptionRequest
from notex.services.checkout_service import CheckoutService

router = APIRouter(
    prefix="/api/purchases",
    tags=["Purchases"],
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
)


@router.post(
    "/create-checkout",
    response_model=CheckoutResponse,
    responses={
        404: {"description": "Note not found or not published", "model": ErrorResponse},
        409: {"description": "Already purchased", "model": ErrorResponse},
    },
    summary="Open a Stripe checkout for a note",
)
async def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return await checkout.create_checkout(db, user, body.note_id)


@router.post(
    "/create-subscription",
    response_model=CheckoutResponse,
    responses={
        400: {"description": "Unknown plan", "model": ErrorResponse},
        409: {"description": "Already subscribed", "model": ErrorResponse},
    },
    summary="Open a Stripe checkout for the pro or elite plan",
)
async def create_subscription(
    body: SubscriptionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return await checkout.create_subscription(db, user, body.plan)


@router.get("/my-purchases", summary="Completed purchases of the caller")
async def my_purchases(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return {"success": True, "purchases": await checkout.my_purchases(db, user)}


@router.get("/verify/{session_id}", summary="Stripe payment status of a checkout session")
async def verify_session(
    session_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return {"success": True, **await checkout.verify_session(db, user, session_id)}


@router.get("/stats", summary="Purchase count and total spent")
async def purchase_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return {"success": True, "stats": await checkout.purchase_stats(db, user)}
