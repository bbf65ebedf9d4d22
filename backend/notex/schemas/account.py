"""
NoteX Backend — Account Request Schemas
=========================================

Request bodies for login, profile, credits, payouts and referrals.
Business-rule bounds (payout minimum, ad amount, referral code format) are
enforced by the services so every rejection shares the error envelope.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramLoginRequest(BaseModel):
    """The raw `Telegram.WebApp.initData` query string."""

    model_config = ConfigDict(populate_by_name=True)

    init_data: str = Field(default="", alias="initData")


class ProfileUpdate(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, max_length=255)


class AddCreditsRequest(BaseModel):
    type: Optional[str] = None
    amount: int = 1


class PayoutRequest(BaseModel):
    amount: Optional[Decimal] = None
    method: Optional[str] = Field(default=None, max_length=50)


class ReferralApplyRequest(BaseModel):
    referral_code: Optional[str] = Field(default=None, max_length=20)
