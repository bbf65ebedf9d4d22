"""
NoteX Backend — Checkout Schemas
==================================
"""

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: uuid.UUID = Field(alias="noteId")


class SubscriptionRequest(BaseModel):
    plan: Optional[str] = Field(default=None, description="'pro' or 'elite'")


class CheckoutResponse(BaseModel):
    success: bool = True
    session_id: str
    checkout_url: Optional[str] = None
