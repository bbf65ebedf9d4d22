"""
NoteX Backend — API Integration Tests
=======================================

What:  End-to-end tests through the FastAPI app (routes, dependencies,
       middleware, exception handlers).
How:   HTTPX AsyncClient over ASGITransport (no server), per-test SQLite
       database, FakeLLM for Gemini. Stripe webhooks are signed with the
       test webhook secret and verified by the real stripe library.

Test Strategy:
    ✅ Health endpoint shape
    ✅ Login → bearer token → profile / dashboard
    ✅ Auth required on protected routes (401 envelope)
    ✅ Catalog listing, upload (multipart) and seller inventory
    ✅ AI endpoint charges a credit; out-of-credit answer carries upgrade flag
    ✅ Webhook: bad signature 400 with no mutation, signed event applied once
    ✅ Request id header propagated, also on a 429
    ✅ Operator route releases a failed payout once, only with the admin key
"""

import json
import time
from decimal import Decimal

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from notex.database import session_scope
from notex.middleware.rate_limit import RateLimitMiddleware
from notex.middleware.request_id import RequestIDMiddleware
from notex.models.payment import PURCHASE_COMPLETED, PURCHASE_PENDING, Purchase
from notex.models.user import User

from conftest import sign_init_data, sign_stripe_payload

LECTURE = "Mitochondria produce ATP through oxidative phosphorylation in the inner membrane."


async def _login(client, telegram_id=777001, username="grace_h"):
    init_data = sign_init_data(
        {
            "auth_date": int(time.time()),
            "user": {"id": telegram_id, "first_name": "Grace", "username": username},
        }
    )
    response = await client.post("/api/auth/telegram-login", json={"initData": init_data})
    assert response.status_code == 200
    body = response.json()
    return body["token"], body["user"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_components(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "connected"
        assert body["gemini"] == "available"
        assert body["stripe"] == "configured"
        assert body["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, test_client):
        response = await test_client.get("/health", headers={"X-Request-ID": "trace-abc"})
        assert response.headers["X-Request-ID"] == "trace-abc"


class TestAuthFlow:

    @pytest.mark.asyncio
    async def test_login_then_profile(self, test_client):
        token, user = await _login(test_client)
        assert user["plan"] == "free"
        assert user["credits"] == 10
        assert len(token) == 64

        response = await test_client.get("/api/users/profile", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["user"]["username"] == "grace_h"

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, test_client):
        response = await test_client.post(
            "/api/auth/telegram-login",
            json={"initData": "auth_date=1&user=%7B%22id%22%3A1%7D&hash=deadbeef"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_protected_route_without_token_is_401(self, test_client):
        response = await test_client.get("/api/users/dashboard")
        assert response.status_code == 401
        body = response.json()
        assert body["message"] == "No token provided"
        assert "request_id" in body

    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, test_client):
        token, _ = await _login(test_client)
        assert (await test_client.post("/api/auth/logout", headers=_auth(token))).status_code == 200
        response = await test_client.get("/api/users/profile", headers=_auth(token))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_profile_update_without_fields_is_400(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.put("/api/users/profile", json={}, headers=_auth(token))
        assert response.status_code == 400
        assert response.json()["message"] == "No updates provided"


class TestMarketplace:

    @pytest.mark.asyncio
    async def test_list_notes(self, test_client, make_user, make_note):
        seller = await make_user()
        await make_note(seller, title="Genetics Crash Course", subject="biology")

        response = await test_client.get("/api/notes", params={"subject": "biology"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["notes"][0]["title"] == "Genetics Crash Course"
        assert body["pagination"]["total"] == 1
        assert response.headers["X-Total-Count"] == "1"

    @pytest.mark.asyncio
    async def test_unknown_note_is_404(self, test_client):
        response = await test_client.get("/api/notes/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_upload_then_seller_inventory(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.post(
            "/api/notes/upload",
            headers=_auth(token),
            data={"title": "Statics", "description": "Free-body diagrams", "subject": "engineering",
                  "price_usd": "7.50", "tags": "mechanics"},
            files={"file": ("statics.pdf", b"%PDF-1.4 statics", "application/pdf")},
        )
        assert response.status_code == 201
        note = response.json()["note"]
        assert note["status"] == "pending"
        assert note["price_usd"] == 7.5

        mine = await test_client.get("/api/notes/seller/my-notes", headers=_auth(token))
        assert [n["title"] for n in mine.json()["notes"]] == ["Statics"]

        # Pending notes stay out of the public catalog
        public = await test_client.get("/api/notes")
        assert public.json()["notes"] == []

    @pytest.mark.asyncio
    async def test_upload_rejects_executable(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.post(
            "/api/notes/upload",
            headers=_auth(token),
            data={"title": "T", "description": "D", "subject": "S", "price_usd": "5"},
            files={"file": ("payload.exe", b"MZ", "application/octet-stream")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestAIEndpoints:

    @pytest.mark.asyncio
    async def test_summarize_charges_credit(self, test_client, fake_llm):
        token, _ = await _login(test_client)
        response = await test_client.post("/api/ai/summarize", json={"text": LECTURE}, headers=_auth(token))
        assert response.status_code == 200
        body = response.json()
        assert body["credits_remaining"] == 9
        assert body["summary"] == fake_llm.responses[0]

    @pytest.mark.asyncio
    async def test_out_of_credits_is_403_with_upgrade_flag(self, test_client, session_factory):
        token, user = await _login(test_client)
        async with session_scope(session_factory) as db:
            await db.execute(update(User).where(User.telegram_id == user["telegram_id"]).values(credits=0))

        response = await test_client.post("/api/ai/summarize", json={"text": LECTURE}, headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["details"]["upgrade"] is True

    @pytest.mark.asyncio
    async def test_short_text_is_400(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.post("/api/ai/summarize", json={"text": "hi"}, headers=_auth(token))
        assert response.status_code == 400


class TestRewardsAndReferrals:

    @pytest.mark.asyncio
    async def test_rewarded_ad_credit(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.post(
            "/api/users/add-credits", json={"type": "rewarded_ad", "amount": 1}, headers=_auth(token)
        )
        assert response.status_code == 200
        assert response.json()["credits"] == 11

        bad = await test_client.post("/api/users/add-credits", json={"type": "gift"}, headers=_auth(token))
        assert bad.status_code == 400

    @pytest.mark.asyncio
    async def test_apply_referral(self, test_client):
        _, referrer = await _login(test_client, telegram_id=880001, username="referrer")
        token, _ = await _login(test_client, telegram_id=880002, username="newcomer")

        response = await test_client.post(
            "/api/referrals/apply", json={"referral_code": referrer["referral_code"]}, headers=_auth(token)
        )
        assert response.status_code == 200
        assert response.json()["credits"] == 13

        again = await test_client.post(
            "/api/referrals/apply", json={"referral_code": referrer["referral_code"]}, headers=_auth(token)
        )
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_payout_below_minimum_is_400(self, test_client):
        token, _ = await _login(test_client)
        response = await test_client.post(
            "/api/users/request-payout", json={"amount": "5.00", "method": "paypal"}, headers=_auth(token)
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Minimum payout is $20.00"


class TestStripeWebhook:

    async def _pending_purchase(self, make_user, make_note, make_purchase):
        seller = await make_user(wallet_balance=Decimal("0.00"))
        note = await make_note(seller, price_usd=Decimal("10.00"))
        buyer = await make_user()
        await make_purchase(buyer, note, stripe_session_id="cs_hook", status=PURCHASE_PENDING)
        return seller, note, buyer

    def _payload(self, seller, note, buyer) -> bytes:
        event = {
            "id": "evt_hook_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_hook",
                    "object": "checkout.session",
                    "payment_intent": "pi_hook",
                    "metadata": {
                        "note_id": str(note.id),
                        "buyer_id": str(buyer.id),
                        "seller_id": str(seller.id),
                        "amount": "10.00",
                        "seller_earnings": "6.41",
                    },
                }
            },
        }
        return json.dumps(event).encode()

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_mutation(
        self, test_client, session_factory, make_user, make_note, make_purchase
    ):
        seller, note, buyer = await self._pending_purchase(make_user, make_note, make_purchase)
        payload = self._payload(seller, note, buyer)

        response = await test_client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_stripe_payload(payload, secret="whsec_wrong")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

        missing = await test_client.post("/webhooks/stripe", content=payload)
        assert missing.status_code == 400

        async with session_scope(session_factory) as db:
            purchase = await db.scalar(select(Purchase).where(Purchase.stripe_session_id == "cs_hook"))
            assert purchase.status == PURCHASE_PENDING
            assert (await db.get(User, seller.id)).wallet_balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_signed_event_applied_once(
        self, test_client, session_factory, make_user, make_note, make_purchase
    ):
        seller, note, buyer = await self._pending_purchase(make_user, make_note, make_purchase)
        payload = self._payload(seller, note, buyer)

        outcomes = []
        for _ in range(2):
            response = await test_client.post(
                "/webhooks/stripe",
                content=payload,
                headers={"stripe-signature": sign_stripe_payload(payload)},
            )
            assert response.status_code == 200
            outcomes.append(response.json()["outcome"])

        assert outcomes == ["applied", "duplicate"]
        async with session_scope(session_factory) as db:
            purchase = await db.scalar(select(Purchase).where(Purchase.stripe_session_id == "cs_hook"))
            assert purchase.status == PURCHASE_COMPLETED
            assert (await db.get(User, seller.id)).wallet_balance == Decimal("6.41")


class TestOperatorPayouts:

    @pytest.mark.asyncio
    async def test_failed_payout_released_through_operator_route(self, test_client, session_factory):
        token, user = await _login(test_client)
        async with session_scope(session_factory) as db:
            await db.execute(
                update(User).where(User.telegram_id == user["telegram_id"]).values(wallet_balance=Decimal("40.00"))
            )
        payout = await test_client.post(
            "/api/users/request-payout", json={"amount": "25.00", "method": "paypal"}, headers=_auth(token)
        )
        assert payout.status_code == 200
        payout_id = payout.json()["payout"]["id"]

        for _ in range(2):
            response = await test_client.post(
                f"/internal/payouts/{payout_id}/fail", headers={"X-Admin-Key": "admin_test_key"}
            )
            assert response.status_code == 200
            assert response.json()["payout"]["status"] == "failed"

        async with session_scope(session_factory) as db:
            balance = await db.scalar(
                select(User.wallet_balance).where(User.telegram_id == user["telegram_id"])
            )
        assert balance == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_operator_route_requires_admin_key(self, test_client):
        path = "/internal/payouts/00000000-0000-0000-0000-000000000000/fail"
        assert (await test_client.post(path)).status_code == 401
        wrong = await test_client.post(path, headers={"X-Admin-Key": "guess"})
        assert wrong.status_code == 401
        assert wrong.json()["message"] == "Invalid admin key"

        unknown = await test_client.post(path, headers={"X-Admin-Key": "admin_test_key"})
        assert unknown.status_code == 404


class TestRateLimit:

    def test_request_id_assigned_before_rate_limit(self):
        from notex.main import app

        chain = [middleware.cls for middleware in app.user_middleware]
        assert chain.index(RequestIDMiddleware) < chain.index(RateLimitMiddleware)

    @pytest.mark.asyncio
    async def test_rejected_request_carries_request_id(self):
        app = FastAPI()

        @app.get("/api/ping")
        async def ping():
            return {"pong": True}

        app.add_middleware(RateLimitMiddleware, max_requests=10, window_seconds=60)
        app.add_middleware(RequestIDMiddleware)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            for _ in range(10):
                assert (await client.get("/api/ping")).status_code == 200
            response = await client.get("/api/ping", headers={"X-Request-ID": "trace-429"})

        assert response.status_code == 429
        assert response.json()["request_id"] == "trace-429"
        assert response.headers["X-Request-ID"] == "trace-429"
        assert int(response.headers["Retry-After"]) >= 1
