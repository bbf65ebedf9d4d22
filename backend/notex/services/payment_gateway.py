"""
NoteX Backend — Stripe Payment Gateway
========================================

What:  Thin async wrapper around the Stripe SDK: checkout sessions (one-off
       and subscription mode), session lookup and webhook event verification.
Why:   Keeps the API key and webhook secret in one configuration-bound object
       that checkout and webhook code receive by injection, instead of the
       process-wide `stripe.api_key` global.
How:   The Stripe SDK is blocking, so every network call runs in FastAPI's
       threadpool. The key is passed per call (`api_key=`). Stripe errors are
       logged and re-raised as PaymentServiceError with a generic message.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from notex.exceptions import PaymentServiceError, WebhookSignatureError

logger = logging.getLogger(__name__)


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Convert Stripe objects to plain (recursive) dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    for method in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, method, None)
        if callable(converter):
            result = converter()
            if isinstance(result, dict):
                return result
    return dict(obj)


def stripe_get(obj: Any, key: str) -> Any:
    """Fetch a key from a Stripe object, dict, or plain attribute holder."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class StripeGateway:
    """
    Configuration-bound Stripe client.

    Attributes:
        secret_key:      Stripe secret API key (sk_...)
        webhook_secret:  Signing secret of the webhook endpoint (whsec_...)
        frontend_url:    Base URL used for success/cancel redirects
    """

    def __init__(self, secret_key: str, webhook_secret: str, frontend_url: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        if not self.configured:
            raise PaymentServiceError(context={"operation": operation, "reason": "missing secret key"})
        try:
            return await run_in_threadpool(func, *args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, str(exc))
            raise PaymentServiceError(context={"operation": operation}) from exc

    async def create_payment_session(
        self,
        *,
        name: str,
        description: str,
        amount_cents: int,
        metadata: Dict[str, str],
        success_path: str = "/purchase/success",
        cancel_path: str = "/purchase/cancel",
    ) -> Dict[str, Any]:
        """
        Open a one-off card checkout for a single note.

        Returns:
            {"id": <session id>, "url": <hosted checkout url>}
        """
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {"name": name, "description": description[:500]},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{self.frontend_url}{success_path}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}{cancel_path}",
            "metadata": metadata,
        }
        session = await self._call("checkout.create", stripe.checkout.Session.create, **params)
        return {"id": stripe_get(session, "id"), "url": stripe_get(session, "url")}

    async def create_subscription_session(
        self,
        *,
        price_id: str,
        metadata: Dict[str, str],
        success_path: str = "/subscription/success",
        cancel_path: str = "/pricing",
    ) -> Dict[str, Any]:
        """Open a subscription-mode checkout for a recurring plan price."""
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self.frontend_url}{success_path}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}{cancel_path}",
            "metadata": metadata,
        }
        session = await self._call("subscription.create", stripe.checkout.Session.create, **params)
        return {"id": stripe_get(session, "id"), "url": stripe_get(session, "url")}

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        session = await self._call("checkout.retrieve", stripe.checkout.Session.retrieve, session_id)
        return stripe_to_dict(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and return the event as a plain dict.

        Raises:
            WebhookSignatureError: missing header/secret, bad payload or bad signature.
        """
        if not signature or not self.webhook_secret:
            raise WebhookSignatureError(context={"reason": "missing signature or secret"})
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Stripe webhook signature verification failed: %s", str(exc))
            raise WebhookSignatureError(context={"reason": str(exc)}) from exc
        # The verified bytes, decoded as plain dicts for the reconciler
        return json.loads(payload)
