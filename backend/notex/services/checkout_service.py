"""
NoteX Backend — Checkout Orchestrator
=======================================

What:  Opens Stripe checkout sessions for note purchases and plan
       subscriptions, and answers purchase history / verification queries.
Why:   The pending Purchase row written here is keyed by the Stripe session
       id; the webhook reconciler later completes it exactly once.

Fee split (per sale, USD, rounded half-up to cents):
    platform_fee    = price × 30%
    processor_fee   = price × 2.9% + $0.30
    seller_earnings = price − platform_fee − processor_fee
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from notex.exceptions import ConfigurationError, ConflictError, NotFoundError, ValidationError
from notex.models.note import NOTE_PUBLISHED, Note
from notex.models.payment import (
    PURCHASE_COMPLETED,
    PURCHASE_PENDING,
    SUBSCRIPTION_ACTIVE,
    Purchase,
    Subscription,
)
from notex.models.user import PLAN_ELITE, PLAN_PRO, User
from notex.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    platform_fee: Decimal
    processor_fee: Decimal
    seller_earnings: Decimal

    @property
    def total_fee(self) -> Decimal:
        return self.platform_fee + self.processor_fee

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def compute_fees(
    price: Any,
    platform_rate: Decimal = Decimal("0.30"),
    processor_rate: Decimal = Decimal("0.029"),
    processor_fixed: Decimal = Decimal("0.30"),
) -> FeeBreakdown:
    amount = Decimal(str(price)).quantize(CENT, rounding=ROUND_HALF_UP)
    platform_fee = (amount * platform_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    processor_fee = (amount * processor_rate + processor_fixed).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeBreakdown(
        amount=amount,
        platform_fee=platform_fee,
        processor_fee=processor_fee,
        seller_earnings=amount - platform_fee - processor_fee,
    )


class CheckoutService:
    """
    Stripe checkout orchestration.

    Args:
        gateway:      configured StripeGateway
        price_ids:    tier → Stripe recurring price id (None when unconfigured)
        fee rates:    see module docstring
    """

    def __init__(
        self,
        gateway: StripeGateway,
        price_ids: Optional[Dict[str, Optional[str]]] = None,
        platform_rate: Decimal = Decimal("0.30"),
        processor_rate: Decimal = Decimal("0.029"),
        processor_fixed: Decimal = Decimal("0.30"),
    ):
        self.gateway = gateway
        self.price_ids = price_ids or {}
        self.platform_rate = platform_rate
        self.processor_rate = processor_rate
        self.processor_fixed = processor_fixed

    def fees_for(self, price: Any) -> FeeBreakdown:
        return compute_fees(price, self.platform_rate, self.processor_rate, self.processor_fixed)

    async def create_checkout(self, db: AsyncSession, user: User, note_id: UUID) -> Dict[str, Any]:
        """
        Open a one-off checkout for a published note.

        Raises:
            NotFoundError: note missing or not published.
            ConflictError: the user already has a pending or completed purchase.
        """
        note = await db.scalar(
            select(Note).where(Note.id == note_id, Note.status == NOTE_PUBLISHED)
        )
        if note is None:
            raise NotFoundError(resource="Note", resource_id=str(note_id))

        existing = await db.scalar(
            select(Purchase.status).where(
                Purchase.note_id == note_id,
                Purchase.buyer_id == user.id,
                Purchase.status.in_((PURCHASE_PENDING, PURCHASE_COMPLETED)),
            ).limit(1)
        )
        if existing is not None:
            raise ConflictError("You already own this note", context={"status": existing})

        fees = self.fees_for(note.price_usd)
        session = await self.gateway.create_payment_session(
            name=note.title,
            description=note.description or note.title,
            amount_cents=fees.amount_cents,
            metadata={
                "note_id": str(note.id),
                "buyer_id": str(user.id),
                "seller_id": str(note.seller_id),
                "amount": str(fees.amount),
                "platform_fee": str(fees.platform_fee),
                "stripe_fee": str(fees.processor_fee),
                "seller_earnings": str(fees.seller_earnings),
            },
        )

        db.add(
            Purchase(
                buyer_id=user.id,
                note_id=note.id,
                amount_usd=fees.amount,
                fee_usd=fees.total_fee,
                stripe_session_id=session["id"],
                status=PURCHASE_PENDING,
            )
        )
        await db.flush()
        logger.info("Checkout opened: session=%s note=%s buyer=%s", session["id"], note.id, user.id)
        return {"session_id": session["id"], "checkout_url": session["url"]}

    async def create_subscription(self, db: AsyncSession, user: User, tier: Optional[str]) -> Dict[str, Any]:
        """
        Open a subscription-mode checkout for the pro or elite plan.

        Raises:
            ValidationError: unknown tier.
            ConfigurationError: tier has no Stripe price configured.
            ConflictError: user already holds an active subscription.
        """
        if tier not in (PLAN_PRO, PLAN_ELITE):
            raise ValidationError("Invalid plan. Choose 'pro' or 'elite'", field="plan")

        price_id = self.price_ids.get(tier)
        if not price_id:
            raise ConfigurationError(
                f"Stripe price for the '{tier}' plan is not configured",
                context={"tier": tier},
            )

        active = await db.scalar(
            select(Subscription.id).where(
                Subscription.user_id == user.id,
                Subscription.status == SUBSCRIPTION_ACTIVE,
            )
        )
        if active is not None:
            raise ConflictError("You already have an active subscription")

        session = await self.gateway.create_subscription_session(
            price_id=price_id,
            metadata={"user_id": str(user.id), "plan": tier},
        )
        logger.info("Subscription checkout opened: session=%s user=%s tier=%s", session["id"], user.id, tier)
        return {"session_id": session["id"], "checkout_url": session["url"]}

    async def my_purchases(self, db: AsyncSession, user: User) -> List[Dict[str, Any]]:
        rows = (
            await db.execute(
                select(Purchase, Note.title, Note.subject, Note.level)
                .join(Note, Note.id == Purchase.note_id)
                .where(Purchase.buyer_id == user.id, Purchase.status == PURCHASE_COMPLETED)
                .order_by(Purchase.created_at.desc())
            )
        ).all()
        return [
            {
                "id": purchase.id,
                "note_id": purchase.note_id,
                "title": title,
                "subject": subject,
                "level": level,
                "amount_usd": float(purchase.amount_usd),
                "status": purchase.status,
                "created_at": purchase.created_at,
                "completed_at": purchase.completed_at,
            }
            for purchase, title, subject, level in rows
        ]

    async def verify_session(self, db: AsyncSession, user: User, session_id: str) -> Dict[str, Any]:
        """Report Stripe's payment status alongside the caller's purchase row."""
        purchase = await db.scalar(
            select(Purchase).where(
                Purchase.stripe_session_id == session_id,
                Purchase.buyer_id == user.id,
            )
        )
        if purchase is None:
            raise NotFoundError(resource="Purchase", resource_id=session_id)

        session = await self.gateway.retrieve_session(session_id)
        return {
            "payment_status": session.get("payment_status"),
            "purchase": {
                "id": purchase.id,
                "note_id": purchase.note_id,
                "amount_usd": float(purchase.amount_usd),
                "status": purchase.status,
            },
        }

    async def purchase_stats(self, db: AsyncSession, user: User) -> Dict[str, Any]:
        count, spent = (
            await db.execute(
                select(func.count(Purchase.id), func.coalesce(func.sum(Purchase.amount_usd), 0))
                .where(Purchase.buyer_id == user.id, Purchase.status == PURCHASE_COMPLETED)
            )
        ).one()
        return {"total_purchases": int(count), "total_spent": round(float(spent), 2)}
