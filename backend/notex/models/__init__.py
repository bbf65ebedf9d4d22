# Models package init: importing it registers every table on Base.metadata
from notex.models.user import User
from notex.models.note import Note, Review
from notex.models.payment import Payout, Purchase, Subscription
from notex.models.ledger import AIJob, Referral

__all__ = [
    "AIJob",
    "Note",
    "Payout",
    "Purchase",
    "Referral",
    "Review",
    "Subscription",
    "User",
]
