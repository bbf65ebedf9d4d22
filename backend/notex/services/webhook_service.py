"""
NoteX Backend — Stripe Webhook Reconciler
===========================================

What:  Applies verified Stripe events to local purchases, subscriptions,
       seller wallets and user plans.
Why:   Stripe delivers events at least once and sometimes out of order. The
       reconciler must credit a seller exactly once per checkout session and
       must never move a record backwards.
How:   Signature verification happens before this module is reached (see
       StripeGateway.construct_event). Each handler then runs inside the
       request's transaction:
         - The purchase transition is a conditional UPDATE
           (stripe_session_id = :id AND status = 'pending') with RETURNING.
           Zero rows means a redelivery (or an unknown session), and the
           wallet credit is skipped.
         - Wallet and plan changes are relative / absolute SQL updates.
         - Database failures propagate: the transaction rolls back, the
           endpoint answers 500, and Stripe retries the delivery.
         - Malformed metadata or references to unknown rows are logged and
           acknowledged; retrying them would never succeed. The exception is
           a pending purchase whose seller row is missing: that raises, so
           the purchase stays pending instead of completing uncredited.

Event Table:
    checkout.session.completed  (note metadata)  → purchase completed, seller credited
    checkout.session.completed  (plan metadata)  → subscription active, plan granted
    checkout.session.expired                     → pending purchase dropped
    invoice.paid                                 → subscription active
    invoice.payment_failed                       → subscription past_due
    customer.subscription.updated                → status mirrored (may downgrade)
    customer.subscription.deleted                → canceled, user downgraded
    anything else                                → acknowledged, ignored
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import utcnow
from notex.exceptions import DatabaseError
from notex.models.ledger import JOB_PURCHASE_COMPLETED, AIJob
from notex.models.payment import (
    PURCHASE_COMPLETED,
    PURCHASE_PENDING,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_PAST_DUE,
    Purchase,
    Subscription,
)
from notex.models.user import (
    DEFAULT_FREE_CREDITS,
    PAID_PLANS,
    PLAN_FREE,
    UNLIMITED_CREDITS,
    User,
)

logger = logging.getLogger(__name__)

# Outcomes reported back to the caller (and logged)
APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"

# Stripe subscription status → local status
STRIPE_STATUS_MAP = {
    "active": SUBSCRIPTION_ACTIVE,
    "trialing": SUBSCRIPTION_ACTIVE,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "incomplete": SUBSCRIPTION_PAST_DUE,
    "paused": SUBSCRIPTION_PAST_DUE,
    "canceled": SUBSCRIPTION_CANCELED,
    "unpaid": SUBSCRIPTION_CANCELED,
    "incomplete_expired": SUBSCRIPTION_CANCELED,
}


def _parse_uuid(value: Any) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Invoices carry the subscription id at the top level (older API versions)
    or under parent.subscription_details (newer ones)."""
    sub = invoice.get("subscription")
    if isinstance(sub, dict):
        sub = sub.get("id")
    if sub:
        return sub
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class WebhookReconciler:
    """Dispatches verified Stripe events to their state transitions."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Callable[[AsyncSession, Dict[str, Any]], Awaitable[str]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "checkout.session.expired": self._on_checkout_expired,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
        }

    async def handle(self, db: AsyncSession, event: Dict[str, Any]) -> str:
        """
        Apply one verified event.

        Returns:
            "applied", "duplicate" or "ignored".
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Stripe event %s (%s) acknowledged without handling", event.get("id"), event_type)
            return IGNORED

        outcome = await handler(db, obj)
        logger.info("Stripe event %s (%s): %s", event.get("id"), event_type, outcome)
        return outcome

    # ── Checkout ──────────────────────────────────────────────────────────

    async def _on_checkout_completed(self, db: AsyncSession, session: Dict[str, Any]) -> str:
        metadata = session.get("metadata") or {}
        if metadata.get("note_id"):
            return await self._complete_purchase(db, session, metadata)
        if metadata.get("plan"):
            return await self._activate_subscription(db, session, metadata)
        logger.warning("Checkout session %s has no NoteX metadata", session.get("id"))
        return IGNORED

    async def _complete_purchase(
        self, db: AsyncSession, session: Dict[str, Any], metadata: Dict[str, Any]
    ) -> str:
        session_id = session.get("id")
        seller_id = _parse_uuid(metadata.get("seller_id"))
        try:
            earnings = Decimal(str(metadata.get("seller_earnings"))).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            earnings = None
        if not session_id or seller_id is None or earnings is None or earnings < 0:
            logger.warning("Checkout session %s has malformed purchase metadata: %s", session_id, metadata)
            return IGNORED

        # Idempotency guard: only a pending purchase can complete
        completed = (
            await db.execute(
                update(Purchase)
                .where(
                    Purchase.stripe_session_id == session_id,
                    Purchase.status == PURCHASE_PENDING,
                )
                .values(
                    status=PURCHASE_COMPLETED,
                    payment_reference=session.get("payment_intent"),
                    completed_at=utcnow(),
                )
                .returning(Purchase.id, Purchase.buyer_id, Purchase.note_id)
            )
        ).first()
        if completed is None:
            logger.info("Checkout session %s already reconciled or unknown; no credit applied", session_id)
            return DUPLICATE

        new_balance = await db.scalar(
            update(User)
            .where(User.id == seller_id)
            .values(wallet_balance=User.wallet_balance + earnings)
            .returning(User.wallet_balance)
        )
        if new_balance is None:
            # Raising rolls the purchase back to pending; Stripe redelivers the event
            logger.error("Seller %s for session %s not found; earnings not credited", seller_id, session_id)
            raise DatabaseError(context={"session_id": session_id, "seller_id": str(seller_id)})

        db.add(
            AIJob(
                user_id=completed.buyer_id,
                job_type=JOB_PURCHASE_COMPLETED,
                input_hash=session_id,
                output={
                    "note_id": str(completed.note_id),
                    "amount": metadata.get("amount"),
                    "seller_earnings": str(earnings),
                },
                cost_units=0,
            )
        )
        await db.flush()
        logger.info(
            "Purchase %s completed; seller %s credited %s (balance %s)",
            completed.id, seller_id, earnings, new_balance,
        )
        return APPLIED

    async def _activate_subscription(
        self, db: AsyncSession, session: Dict[str, Any], metadata: Dict[str, Any]
    ) -> str:
        user_id = _parse_uuid(metadata.get("user_id"))
        tier = metadata.get("plan")
        if user_id is None or tier not in PAID_PLANS:
            logger.warning("Checkout session %s has malformed plan metadata: %s", session.get("id"), metadata)
            return IGNORED

        user_exists = await db.scalar(select(User.id).where(User.id == user_id))
        if user_exists is None:
            logger.warning("Subscription checkout for unknown user %s", user_id)
            return IGNORED

        stripe_subscription_id = session.get("subscription")
        if isinstance(stripe_subscription_id, dict):
            stripe_subscription_id = stripe_subscription_id.get("id")

        subscription = await db.scalar(
            select(Subscription).where(Subscription.user_id == user_id).with_for_update()
        )
        if subscription is None:
            db.add(
                Subscription(
                    user_id=user_id,
                    stripe_subscription_id=stripe_subscription_id,
                    tier=tier,
                    status=SUBSCRIPTION_ACTIVE,
                )
            )
        else:
            subscription.stripe_subscription_id = stripe_subscription_id
            subscription.tier = tier
            subscription.status = SUBSCRIPTION_ACTIVE
            subscription.started_at = utcnow()
            subscription.canceled_at = None

        await db.execute(
            update(User).where(User.id == user_id).values(plan=tier, credits=UNLIMITED_CREDITS, premium_until=None)
        )
        await db.flush()
        return APPLIED

    async def _on_checkout_expired(self, db: AsyncSession, session: Dict[str, Any]) -> str:
        """An abandoned checkout frees the buyer to try again."""
        result = await db.execute(
            delete(Purchase).where(
                Purchase.stripe_session_id == session.get("id"),
                Purchase.status == PURCHASE_PENDING,
            )
        )
        return APPLIED if result.rowcount else IGNORED

    # ── Invoices ──────────────────────────────────────────────────────────

    async def _set_subscription_status(self, db: AsyncSession, stripe_subscription_id: str, status: str) -> str:
        # A canceled subscription is terminal; late invoice events cannot revive it
        row = (
            await db.execute(
                update(Subscription)
                .where(
                    Subscription.stripe_subscription_id == stripe_subscription_id,
                    Subscription.status != SUBSCRIPTION_CANCELED,
                )
                .values(status=status)
                .returning(Subscription.id)
            )
        ).first()
        if row is None:
            logger.warning("No open subscription %s to mark %s", stripe_subscription_id, status)
            return IGNORED
        return APPLIED

    async def _on_invoice_paid(self, db: AsyncSession, invoice: Dict[str, Any]) -> str:
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return IGNORED
        return await self._set_subscription_status(db, sub_id, SUBSCRIPTION_ACTIVE)

    async def _on_invoice_failed(self, db: AsyncSession, invoice: Dict[str, Any]) -> str:
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return IGNORED
        return await self._set_subscription_status(db, sub_id, SUBSCRIPTION_PAST_DUE)

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def _cancel_subscription(self, db: AsyncSession, stripe_subscription_id: Optional[str]) -> str:
        row = (
            await db.execute(
                update(Subscription)
                .where(
                    Subscription.stripe_subscription_id == stripe_subscription_id,
                    Subscription.status != SUBSCRIPTION_CANCELED,
                )
                .values(status=SUBSCRIPTION_CANCELED, canceled_at=utcnow())
                .returning(Subscription.user_id)
            )
        ).first()
        if row is None:
            logger.info("Subscription %s unknown or already canceled", stripe_subscription_id)
            return DUPLICATE

        await db.execute(
            update(User)
            .where(User.id == row.user_id)
            .values(plan=PLAN_FREE, credits=DEFAULT_FREE_CREDITS, premium_until=None)
        )
        logger.info("Subscription %s canceled; user %s downgraded", stripe_subscription_id, row.user_id)
        return APPLIED

    async def _on_subscription_deleted(self, db: AsyncSession, subscription: Dict[str, Any]) -> str:
        return await self._cancel_subscription(db, subscription.get("id"))

    async def _on_subscription_updated(self, db: AsyncSession, subscription: Dict[str, Any]) -> str:
        status = STRIPE_STATUS_MAP.get(subscription.get("status", ""))
        if status is None:
            logger.warning("Unmapped Stripe subscription status %r", subscription.get("status"))
            return IGNORED
        if status == SUBSCRIPTION_CANCELED:
            return await self._cancel_subscription(db, subscription.get("id"))
        return await self._set_subscription_status(db, subscription.get("id"), status)
