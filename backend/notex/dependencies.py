"""
NoteX Backend — Dependency Providers
======================================

What:  FastAPI dependencies that hand services and the current user to routes.
Why:   External clients (Gemini, Stripe, file store) are built once in
       create_app() and kept on app.state; services are cheap per-request
       objects built around them. Tests swap any provider through
       app.dependency_overrides.

Session sharing:
    get_current_user and the route both depend on get_db_session. FastAPI
    caches a dependency per request, so the user is loaded in the same
    session (and transaction) the route then mutates.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from notex.config import settings
from notex.database import get_db_session
from notex.exceptions import AuthenticationError
from notex.models.user import PLAN_ELITE, PLAN_PRO, User
from notex.services.ai_service import AIJobRunner
from notex.services.auth_service import AuthService
from notex.services.catalog_service import CatalogService
from notex.services.checkout_service import CheckoutService
from notex.services.file_service import FileService
from notex.services.ledger_service import LedgerService
from notex.services.llm_base import LLMService
from notex.services.payment_gateway import StripeGateway
from notex.services.user_service import UserService
from notex.services.webhook_service import WebhookReconciler


# ── External clients (built in create_app) ────────────────────────────────

def get_llm_service(request: Request) -> LLMService:
    return request.app.state.llm


def get_payment_gateway(request: Request) -> StripeGateway:
    return request.app.state.payments


def get_file_service(request: Request) -> FileService:
    return request.app.state.files


# ── Services ──────────────────────────────────────────────────────────────

def get_auth_service() -> AuthService:
    return AuthService(
        bot_token=settings.telegram_bot_token,
        session_ttl_hours=settings.session_ttl_hours,
        auth_max_age=settings.telegram_auth_max_age,
    )


def get_ledger_service() -> LedgerService:
    return LedgerService()


def get_catalog_service(files: FileService = Depends(get_file_service)) -> CatalogService:
    return CatalogService(files)


def get_checkout_service(gateway: StripeGateway = Depends(get_payment_gateway)) -> CheckoutService:
    return CheckoutService(
        gateway,
        price_ids={PLAN_PRO: settings.stripe_price_pro, PLAN_ELITE: settings.stripe_price_elite},
        platform_rate=settings.platform_fee_rate,
        processor_rate=settings.processor_fee_rate,
        processor_fixed=settings.processor_fee_fixed,
    )


def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler()


def get_ai_runner(
    llm: LLMService = Depends(get_llm_service),
    ledger: LedgerService = Depends(get_ledger_service),
) -> AIJobRunner:
    return AIJobRunner(llm, ledger)


def get_user_service() -> UserService:
    return UserService()


# ── Authentication ────────────────────────────────────────────────────────

def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    """Resolve `Authorization: Bearer <token>` to a User or raise 401."""
    return await auth.resolve_session(db, _bearer_token(authorization))


def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Gate /internal/* behind the ADMIN_API_KEY shared secret."""
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise AuthenticationError("Invalid admin key")
