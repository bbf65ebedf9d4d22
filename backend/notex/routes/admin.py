"""
NoteX Backend — Operator Routes
=================================

What:  Back-office actions that no end user may trigger.
Who:   Called by operators or the payout processor, authenticated with the
       X-Admin-Key header (ADMIN_API_KEY). With no key configured every call
       is rejected.

Payout lifecycle:
    request-payout debits the wallet up front. When the transfer later fails,
    POST /internal/payouts/{id}/fail marks the payout failed and returns the
    amount to the seller's wallet. Repeating the call credits nothing.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_ledger_service, require_admin_key
from notex.schemas.common import ErrorResponse
from notex.services.ledger_service import LedgerService

router = APIRouter(
    prefix="/internal",
    tags=["Operator"],
    dependencies=[Depends(require_admin_key)],
    responses={401: {"description": "Missing or wrong admin key", "model": ErrorResponse}},
)


@router.post(
    "/payouts/{payout_id}/fail",
    responses={404: {"description": "Payout not found", "model": ErrorResponse}},
    summary="Mark a payout failed and release its amount to the seller",
)
async def fail_payout(
    payout_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    ledger: LedgerService = Depends(get_ledger_service),
):
    payout = await ledger.release_failed_payout(db, payout_id)
    return {
        "success": True,
        "payout": {
            "id": payout.id,
            "seller_id": payout.seller_id,
            "amount_usd": float(payout.amount_usd),
            "status": payout.status,
        },
    }
