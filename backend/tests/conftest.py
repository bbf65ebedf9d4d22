"""
NoteX Backend — Test Configuration (conftest.py)
==================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Ledger and webhook guarantees (no double credit, all-or-nothing
       referrals) are properties of real SQL updates, so they are tested
       against a real database: a fresh SQLite file per test via aiosqlite.
       External services (Gemini, Stripe) are replaced with fakes.

Fixture Hierarchy (all function-scoped):
    ├── engine / session_factory: per-test SQLite database with all tables
    ├── make_user / make_note / make_purchase: row factories
    ├── file_service: FileService over a temp directory
    ├── fake_llm / fake_gateway: stand-ins for Gemini and Stripe
    └── test_client: HTTPX AsyncClient wired to the app with those overrides
"""

import hashlib
import hmac
import itertools
import json
import os
import tempfile
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

# Override settings BEFORE any notex import: notex.config reads the
# environment once, at import time.
_TEST_DIR = tempfile.mkdtemp(prefix="notex_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/health.db"
os.environ["GEMINI_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_not_real"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_PRO"] = "price_pro_test"
os.environ["STRIPE_PRICE_ELITE"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = "123456:TEST-BOT-TOKEN"
os.environ["FILES_DIR"] = os.path.join(_TEST_DIR, "files")
os.environ["ADMIN_API_KEY"] = "admin_test_key"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from notex.database import Base, session_scope
from notex.exceptions import LLMServiceError
from notex.models.note import NOTE_PUBLISHED, Note
from notex.models.payment import PURCHASE_COMPLETED, Purchase
from notex.models.user import User
from notex.services.file_service import FileService
from notex.services.llm_base import LLMService

BOT_TOKEN = os.environ["TELEGRAM_BOT_TOKEN"]
WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

_telegram_ids = itertools.count(100_000)


# ══════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════

def sign_init_data(fields: Dict[str, Any], bot_token: str = BOT_TOKEN) -> str:
    """Build a Telegram initData string signed the way Telegram signs it."""
    values = {k: json.dumps(v) if isinstance(v, dict) else str(v) for k, v in fields.items()}
    data_check_string = "\n".join(f"{k}={values[k]}" for k in sorted(values))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    values["hash"] = hmac.new(secret, data_check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode(values)


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header for `payload`."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeLLM(LLMService):
    """Returns canned responses and records prompts."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or ["- point one\n- point two"])
        self.error = error
        self.prompts: List[str] = []

    async def generate_text(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    async def health_check(self) -> bool:
        return self.error is None


class FakeGateway:
    """Records checkout sessions instead of calling Stripe."""

    configured = True

    def __init__(self):
        self.sessions: List[Dict[str, Any]] = []
        self.payment_status = "paid"

    async def create_payment_session(self, **kwargs) -> Dict[str, Any]:
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({"id": session_id, "mode": "payment", **kwargs})
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    async def create_subscription_session(self, **kwargs) -> Dict[str, Any]:
        session_id = f"cs_sub_{len(self.sessions) + 1}"
        self.sessions.append({"id": session_id, "mode": "subscription", **kwargs})
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        return {"id": session_id, "payment_status": self.payment_status}


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notex.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def make_user(session_factory):
    """
    Factory for persisted users.

    Usage:
        seller = await make_user(wallet_balance=Decimal("50.00"))
    """
    async def _make(**overrides) -> User:
        telegram_id = next(_telegram_ids)
        values = {
            "telegram_id": telegram_id,
            "username": f"user{telegram_id}",
            "first_name": "Student",
            "referral_code": f"CODE{telegram_id}",
        }
        values.update(overrides)
        async with session_scope(session_factory) as db:
            user = User(**values)
            db.add(user)
            await db.flush()
        return user

    return _make


@pytest.fixture
def make_note(session_factory):
    async def _make(seller: User, **overrides) -> Note:
        values = {
            "seller_id": seller.id,
            "title": "Organic Chemistry Summary",
            "description": "Reaction mechanisms, chapters 1-6",
            "subject": "chemistry",
            "price_usd": Decimal("10.00"),
            "file_path": "2025/01/15/sample.pdf",
            "original_filename": "orgo.pdf",
            "status": NOTE_PUBLISHED,
        }
        values.update(overrides)
        async with session_scope(session_factory) as db:
            note = Note(**values)
            db.add(note)
            await db.flush()
        return note

    return _make


@pytest.fixture
def make_purchase(session_factory):
    async def _make(buyer: User, note: Note, **overrides) -> Purchase:
        values = {
            "buyer_id": buyer.id,
            "note_id": note.id,
            "amount_usd": note.price_usd,
            "fee_usd": Decimal("3.59"),
            "stripe_session_id": f"cs_seed_{buyer.telegram_id}_{note.id.hex[:8]}",
            "status": PURCHASE_COMPLETED,
        }
        values.update(overrides)
        async with session_scope(session_factory) as db:
            purchase = Purchase(**values)
            db.add(purchase)
            await db.flush()
        return purchase

    return _make


# ══════════════════════════════════════════════════════════════════════════
# Service Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def file_service(tmp_path):
    return FileService(files_dir=str(tmp_path / "files"), max_file_size=1_048_576)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def failing_llm():
    return FakeLLM(error=LLMServiceError("AI processing failed after multiple attempts."))


@pytest.fixture
def fake_gateway():
    return FakeGateway()


# ══════════════════════════════════════════════════════════════════════════
# API Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(session_factory, fake_llm, file_service):
    """
    HTTPX AsyncClient over the real app with the per-test database, a fake
    LLM and a temp file store. The real StripeGateway is kept so webhook
    signatures are verified exactly as in production.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    from notex.database import dispose_engine, get_db_session
    from notex.dependencies import get_file_service, get_llm_service
    from notex.main import app

    async def _db_session():
        async with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db_session] = _db_session
    app.dependency_overrides[get_llm_service] = lambda: fake_llm
    app.dependency_overrides[get_file_service] = lambda: file_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    # /health probes the module-level engine; drop its connections with this test's loop
    await dispose_engine()
