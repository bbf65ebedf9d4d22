"""
NoteX Backend — Stripe Webhook Route
======================================

What:  POST /webhooks/stripe
Why:   Stripe signs the exact bytes it sends. The body is therefore read raw
       (never parsed by a Pydantic model) and verified before anything
       touches the database.

Response semantics (Stripe retries on anything but 2xx):
    400: bad or missing signature, nothing mutated, Stripe gives up
    500: database failure, transaction rolled back, Stripe retries
    200: applied, duplicate, or ignored
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_payment_gateway, get_webhook_reconciler
from notex.services.payment_gateway import StripeGateway
from notex.services.webhook_service import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", summary="Stripe event receiver", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    gateway: StripeGateway = Depends(get_payment_gateway),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
    db: AsyncSession = Depends(get_db_session),
):
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)

    outcome = await reconciler.handle(db, event)
    # Commit before acknowledging so a failed commit is answered with 500
    await db.commit()
    return {"received": True, "outcome": outcome}
