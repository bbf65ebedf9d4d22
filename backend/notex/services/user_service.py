"""
NoteX Backend — User Dashboard & Profile
==========================================

What:  Read models for the dashboard, profile editing and the referral list.
Why:   Aggregates the user's purchases, listings, earnings and AI usage into
       the single payload the mini-app's home screen renders.

Balance-changing user actions (rewarded-ad credits, payouts) are delegated
to LedgerService so their guards live in one place.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notex.exceptions import ConflictError, ValidationError
from notex.models.ledger import AIJob, Referral
from notex.models.note import NOTE_PUBLISHED, Note
from notex.models.payment import PURCHASE_COMPLETED, Purchase
from notex.models.user import User

logger = logging.getLogger(__name__)

RECENT_LIMIT = 5


def user_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "plan": user.effective_plan,
        "credits": user.credits,
        "wallet_balance": float(user.wallet_balance or 0),
    }


def user_profile(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "telegram_id": user.telegram_id,
        "username": user.username,
        "first_name": user.first_name,
        "email": user.email,
        "plan": user.effective_plan,
        "credits": user.credits,
        "wallet_balance": float(user.wallet_balance or 0),
        "referral_code": user.referral_code,
        "premium_until": user.premium_until,
        "created_at": user.created_at,
    }


class UserService:
    """Dashboard and profile queries for the authenticated user."""

    async def dashboard(self, db: AsyncSession, user: User) -> Dict[str, Any]:
        seller_notes = select(Note.id).where(Note.seller_id == user.id)
        stats = (
            await db.execute(
                select(
                    select(func.count(Purchase.id))
                    .where(Purchase.buyer_id == user.id, Purchase.status == PURCHASE_COMPLETED)
                    .scalar_subquery(),
                    select(func.count(Note.id)).where(Note.seller_id == user.id).scalar_subquery(),
                    select(func.coalesce(func.sum(Purchase.amount_usd - Purchase.fee_usd), 0))
                    .where(Purchase.note_id.in_(seller_notes), Purchase.status == PURCHASE_COMPLETED)
                    .scalar_subquery(),
                    select(func.count(AIJob.id)).where(AIJob.user_id == user.id).scalar_subquery(),
                )
            )
        ).one()
        purchases_count, notes_count, total_earnings, ai_uses = stats

        recent = (
            await db.execute(
                select(Purchase, Note.title)
                .join(Note, Note.id == Purchase.note_id)
                .where(Purchase.buyer_id == user.id, Purchase.status == PURCHASE_COMPLETED)
                .order_by(Purchase.created_at.desc())
                .limit(RECENT_LIMIT)
            )
        ).all()

        sales = (
            select(func.count(Purchase.id))
            .where(Purchase.note_id == Note.id, Purchase.status == PURCHASE_COMPLETED)
            .correlate(Note)
            .scalar_subquery()
        )
        earnings = (
            select(func.coalesce(func.sum(Purchase.amount_usd - Purchase.fee_usd), 0))
            .where(Purchase.note_id == Note.id, Purchase.status == PURCHASE_COMPLETED)
            .correlate(Note)
            .scalar_subquery()
        )
        selling = (
            await db.execute(
                select(Note.id, Note.title, sales.label("sales"), earnings.label("earnings"))
                .where(Note.seller_id == user.id, Note.status == NOTE_PUBLISHED)
                .order_by(Note.created_at.desc())
                .limit(RECENT_LIMIT)
            )
        ).all()

        return {
            "user": user_summary(user),
            "stats": {
                "purchases_count": int(purchases_count or 0),
                "notes_count": int(notes_count or 0),
                "total_earnings": round(float(total_earnings or 0), 2),
                "ai_uses": int(ai_uses or 0),
            },
            "recent_purchases": [
                {
                    "id": purchase.id,
                    "note_id": purchase.note_id,
                    "title": title,
                    "amount_usd": float(purchase.amount_usd),
                    "created_at": purchase.created_at,
                }
                for purchase, title in recent
            ],
            "selling_notes": [
                {
                    "id": row.id,
                    "title": row.title,
                    "sales": int(row.sales or 0),
                    "earnings": round(float(row.earnings or 0), 2),
                }
                for row in selling
            ],
        }

    async def update_profile(
        self, db: AsyncSession, user: User, email: Optional[str] = None, username: Optional[str] = None
    ) -> User:
        if not email and not username:
            raise ValidationError("No updates provided")
        if email:
            user.email = email.strip()
        if username:
            user.username = username.strip()
        try:
            await db.flush()
        except IntegrityError as e:
            raise ConflictError("Profile update conflicts with another account") from e
        logger.info("Profile updated for user %s", user.id)
        return user

    async def referrals(self, db: AsyncSession, user: User) -> Dict[str, Any]:
        rows = (
            await db.execute(
                select(Referral, User.username)
                .join(User, User.id == Referral.referred_id)
                .where(Referral.referrer_id == user.id)
                .order_by(Referral.created_at.desc())
            )
        ).all()
        referrals: List[Dict[str, Any]] = [
            {
                "id": referral.id,
                "referred_username": username,
                "reward_credits": referral.reward_credits,
                "created_at": referral.created_at,
            }
            for referral, username in rows
        ]
        return {
            "referral_code": user.referral_code,
            "referrals": referrals,
            "stats": {
                "total_referrals": len(referrals),
                "total_credits_earned": sum(r["reward_credits"] for r in referrals),
            },
        }
