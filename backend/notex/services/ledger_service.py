"""
NoteX Backend — Credit / Referral Ledger
==========================================

What:  Every operation that changes a user's AI credits, seller wallet or
       referral counters.
Why:   These balances must never go negative and must never be applied
       twice or half-way. Keeping all of them in one module makes the rules
       reviewable in one place.
How:   - Balance changes are relative SQL updates (credits = credits - 1),
         never read-modify-write in Python, so concurrent requests for the
         same user cannot lose updates.
       - Guards are part of the UPDATE's WHERE clause (credits > 0,
         wallet_balance >= amount, status = 'pending'); "zero rows updated"
         means the guard failed.
       - Nothing here commits. The caller's session_scope() commits all
         sub-effects together or rolls all of them back.

Rules:
    AI job          free plan: -1 credit per job (fails at 0); pro/elite: free
    Rewarded ad     +1 credit, at most 5 per user per UTC day
    Referral        referrer +5 credits & +1 count, referred +3 credits,
                    referrer reaching 3 referrals → pro for 7 days (Stripe
                    subscribers keep their plan)
    Payout          minimum $20.00, wallet debited when requested,
                    credited back exactly once if the payout fails
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import utcnow
from notex.exceptions import (
    AlreadyReferredError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    InvalidReferralCodeError,
    NotFoundError,
    RateLimitExceededError,
    SelfReferralError,
    ValidationError,
)
from notex.models.ledger import JOB_REWARDED_AD, AIJob, Referral
from notex.models.payment import (
    PAYOUT_FAILED,
    PAYOUT_PENDING,
    PAYOUT_PROCESSING,
    Payout,
)
from notex.models.user import PAID_PLANS, PLAN_FREE, PLAN_PRO, User

logger = logging.getLogger(__name__)

AD_DAILY_CAP = 5
MAX_AD_CREDITS = 5
REFERRER_REWARD = 5
REFERRED_BONUS = 3
PREMIUM_REFERRAL_THRESHOLD = 3
PREMIUM_DAYS = 7
MIN_PAYOUT = Decimal("20.00")
CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce a number/string to a 2-decimal Decimal."""
    return Decimal(str(value)).quantize(CENT)


class LedgerService:
    """Stateless ledger operations; each takes the request's session."""

    # ── AI Credits ────────────────────────────────────────────────────────

    @staticmethod
    def ensure_has_credits(user: User) -> None:
        """Pre-check before calling the model, so an empty balance costs no API call."""
        if not user.is_subscriber and user.credits <= 0:
            raise InsufficientCreditsError(credits=user.credits)

    async def consume_credit_for_ai_job(
        self,
        db: AsyncSession,
        user: User,
        job_type: str,
        input_hash: Optional[str] = None,
        output: Any = None,
    ) -> Optional[int]:
        """
        Charge one credit for an AI job and append its AI_Job record.

        Returns:
            Remaining credits, or None for subscribers (unlimited).

        Raises:
            InsufficientCreditsError: free plan with no credits left.
        """
        if user.plan in PAID_PLANS and not user.is_subscriber:
            await self._expire_referral_premium(db, user)

        if user.is_subscriber:
            db.add(AIJob(user_id=user.id, job_type=job_type, input_hash=input_hash,
                         output=output, cost_units=0))
            await db.flush()
            return None

        remaining = await db.scalar(
            update(User)
            .where(User.id == user.id, User.credits > 0)
            .values(credits=User.credits - 1)
            .returning(User.credits)
        )
        if remaining is None:
            raise InsufficientCreditsError(credits=0)

        db.add(AIJob(user_id=user.id, job_type=job_type, input_hash=input_hash,
                     output=output, cost_units=1))
        await db.flush()
        user.credits = remaining
        return remaining

    async def _expire_referral_premium(self, db: AsyncSession, user: User) -> None:
        """Drop a lapsed referral plan back to free; its holder pays per job again."""
        await db.execute(
            update(User)
            .where(User.id == user.id, User.premium_until.is_not(None))
            .values(plan=PLAN_FREE, premium_until=None)
        )
        logger.info("Referral premium of user %s expired; plan reset to free", user.id)
        user.plan = PLAN_FREE
        user.premium_until = None

    async def grant_ad_credit(self, db: AsyncSession, user: User, amount: int = 1) -> int:
        """
        Credit a rewarded-ad view.

        Returns:
            The new credit balance.

        Raises:
            ValidationError: amount outside 1..5.
            RateLimitExceededError: the user already claimed 5 ads today (UTC).
        """
        if amount < 1 or amount > MAX_AD_CREDITS:
            raise ValidationError(f"Amount must be between 1 and {MAX_AD_CREDITS}", field="amount")

        # Serialize concurrent grants for this user (no-op on SQLite)
        await db.execute(select(User.id).where(User.id == user.id).with_for_update())

        now = utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        granted_today = await db.scalar(
            select(func.count(AIJob.id)).where(
                AIJob.user_id == user.id,
                AIJob.job_type == JOB_REWARDED_AD,
                AIJob.created_at >= start_of_day,
            )
        )
        if granted_today >= AD_DAILY_CAP:
            retry_after = int((start_of_day + timedelta(days=1) - now).total_seconds()) + 1
            raise RateLimitExceededError(
                retry_after=retry_after,
                message="Daily ad limit reached",
                context={"daily_limit": AD_DAILY_CAP},
            )

        credits = await db.scalar(
            update(User)
            .where(User.id == user.id)
            .values(credits=User.credits + amount)
            .returning(User.credits)
        )
        db.add(AIJob(user_id=user.id, job_type=JOB_REWARDED_AD,
                     output={"credits": amount}, cost_units=0))
        await db.flush()
        user.credits = credits
        logger.info("Rewarded ad credit: user=%s +%d (today=%d)", user.id, amount, granted_today + 1)
        return credits

    # ── Referrals ─────────────────────────────────────────────────────────

    async def apply_referral(self, db: AsyncSession, user: User, code: Optional[str]) -> Dict[str, Any]:
        """
        Redeem a referral code for `user`.

        All four effects (referral row, referrer reward, referred bonus,
        optional premium grant) happen in the caller's transaction.

        Raises:
            ValidationError, SelfReferralError, AlreadyReferredError,
            InvalidReferralCodeError
        """
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("Referral code is required", field="referral_code")
        if user.referral_code and user.referral_code.upper() == code:
            raise SelfReferralError()

        already = await db.scalar(select(Referral.id).where(Referral.referred_id == user.id))
        if already is not None:
            raise AlreadyReferredError()

        referrer_id = await db.scalar(select(User.id).where(User.referral_code == code))
        if referrer_id is None:
            raise InvalidReferralCodeError()
        if referrer_id == user.id:
            raise SelfReferralError()

        db.add(Referral(referrer_id=referrer_id, referred_id=user.id, reward_credits=REFERRER_REWARD))
        await db.flush()

        premium_granted = await self._reward_referrer(db, referrer_id)
        credits = await self._reward_referred(db, user)

        logger.info(
            "Referral applied: referrer=%s referred=%s premium_granted=%s",
            referrer_id, user.id, premium_granted,
        )
        return {"bonus": REFERRED_BONUS, "credits": credits, "premium_granted": premium_granted}

    async def _reward_referrer(self, db: AsyncSession, referrer_id: UUID) -> bool:
        new_count = await db.scalar(
            update(User)
            .where(User.id == referrer_id)
            .values(
                referrals_count=User.referrals_count + 1,
                credits=User.credits + REFERRER_REWARD,
            )
            .returning(User.referrals_count)
        )
        if new_count < PREMIUM_REFERRAL_THRESHOLD:
            return False

        # Stripe subscribers (paid plan, no premium_until) keep the plan they pay for
        granted = await db.scalar(
            update(User)
            .where(
                User.id == referrer_id,
                or_(User.plan.not_in(PAID_PLANS), User.premium_until.is_not(None)),
            )
            .values(plan=PLAN_PRO, premium_until=utcnow() + timedelta(days=PREMIUM_DAYS))
            .returning(User.id)
        )
        return granted is not None

    async def _reward_referred(self, db: AsyncSession, user: User) -> int:
        credits = await db.scalar(
            update(User)
            .where(User.id == user.id)
            .values(credits=User.credits + REFERRED_BONUS)
            .returning(User.credits)
        )
        user.credits = credits
        return credits

    async def referral_stats(self, db: AsyncSession, user: User) -> Dict[str, Any]:
        row = (
            await db.execute(
                select(
                    func.count(Referral.id),
                    func.coalesce(func.sum(Referral.reward_credits), 0),
                ).where(Referral.referrer_id == user.id)
            )
        ).one()
        return {
            "referral_code": user.referral_code,
            "referrals_count": user.referrals_count,
            "successful_referrals": row[0],
            "total_credits_earned": int(row[1]),
            "referrals_needed": max(0, PREMIUM_REFERRAL_THRESHOLD - user.referrals_count),
            "has_premium": user.has_referral_premium,
            "premium_until": user.premium_until,
        }

    @staticmethod
    def referral_link(user: User, frontend_url: str) -> Dict[str, Any]:
        return {
            "referral_code": user.referral_code,
            "referral_link": f"{frontend_url.rstrip('/')}?ref={user.referral_code}",
            "instructions": "Share this code with friends! They can enter it in the app.",
        }

    # ── Payouts ───────────────────────────────────────────────────────────

    async def request_payout(
        self, db: AsyncSession, seller: User, amount: Any, method: Optional[str] = None
    ) -> Payout:
        """
        Reserve `amount` from the seller's wallet and open a pending payout.

        Raises:
            ValidationError: amount missing or below $20.00.
            InsufficientBalanceError: wallet holds less than `amount`.
        """
        try:
            amount = to_money(amount)
        except (ArithmeticError, ValueError, TypeError) as e:
            raise ValidationError(f"Minimum payout is ${MIN_PAYOUT}", field="amount") from e
        if amount < MIN_PAYOUT:
            raise ValidationError(f"Minimum payout is ${MIN_PAYOUT}", field="amount")

        balance = await db.scalar(
            update(User)
            .where(User.id == seller.id, User.wallet_balance >= amount)
            .values(wallet_balance=User.wallet_balance - amount)
            .returning(User.wallet_balance)
        )
        if balance is None:
            raise InsufficientBalanceError()

        payout = Payout(seller_id=seller.id, amount_usd=amount,
                        method=method or "paypal", status=PAYOUT_PENDING)
        db.add(payout)
        await db.flush()
        seller.wallet_balance = to_money(balance)
        logger.info("Payout requested: seller=%s amount=%s", seller.id, amount)
        return payout

    async def release_failed_payout(self, db: AsyncSession, payout_id: UUID) -> Payout:
        """
        Mark an open payout failed and return its amount to the wallet.

        The status flip is conditional on the payout still being open, so a
        second call credits nothing.
        """
        flipped = await db.execute(
            update(Payout)
            .where(Payout.id == payout_id, Payout.status.in_((PAYOUT_PENDING, PAYOUT_PROCESSING)))
            .values(status=PAYOUT_FAILED, processed_at=utcnow())
            .returning(Payout.seller_id, Payout.amount_usd)
        )
        row = flipped.first()
        payout = await db.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError(resource="payout", resource_id=str(payout_id))
        if row is None:
            logger.info("Payout %s already settled (%s); nothing released", payout_id, payout.status)
            return payout

        await db.execute(
            update(User)
            .where(User.id == row.seller_id)
            .values(wallet_balance=User.wallet_balance + row.amount_usd)
        )
        logger.info("Payout %s failed; released %s to seller %s", payout_id, row.amount_usd, row.seller_id)
        return payout
