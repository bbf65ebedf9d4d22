"""
NoteX Backend — Telegram Login & Sessions
===========================================

What:  Verifies Telegram WebApp `initData`, maps it to a local user, and
       issues / resolves bearer session tokens.
Why:   The mini-app has no passwords. Telegram signs the launch payload with
       a key derived from our bot token; a valid signature proves the
       embedded user profile came from Telegram.

Signature scheme (Telegram WebApp):
    secret_key = HMAC_SHA256(key="WebAppData", msg=bot_token)
    data_check_string = "\n".join(sorted(f"{k}={v}" for every field but hash))
    expected_hash = hex(HMAC_SHA256(key=secret_key, msg=data_check_string))

Session policy:
    One active token per user (a new login replaces the old one), valid for
    SESSION_TTL_HOURS. Expiry is checked in SQL when the token is resolved.
"""

import hashlib
import hmac
import json
import logging
import secrets
import string
import time
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import utcnow
from notex.exceptions import AuthenticationError, ValidationError
from notex.models.user import DEFAULT_FREE_CREDITS, PLAN_FREE, User

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ATTEMPTS = 10


def verify_init_data(init_data: str, bot_token: str, max_age_seconds: int = 0) -> Dict[str, Any]:
    """
    Validate a Telegram initData query string.

    Returns:
        The decoded fields, with `user` parsed from JSON.

    Raises:
        AuthenticationError: missing/invalid hash, or payload older than
            max_age_seconds (0 disables the age check).
        ValidationError: no `user` field in a correctly signed payload.
    """
    if not init_data or not bot_token:
        raise AuthenticationError("Invalid Telegram authentication")

    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = fields.pop("hash", None)
    if not received_hash:
        raise AuthenticationError("Invalid Telegram authentication")

    data_check_string = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    expected_hash = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()

    if not hmac.compare_digest(expected_hash, received_hash):
        logger.warning("Telegram initData signature mismatch")
        raise AuthenticationError("Invalid Telegram authentication")

    if max_age_seconds:
        try:
            auth_date = int(fields.get("auth_date", "0"))
        except ValueError:
            auth_date = 0
        if time.time() - auth_date > max_age_seconds:
            raise AuthenticationError("Telegram authentication has expired")

    raw_user = fields.get("user")
    if not raw_user:
        raise ValidationError("Telegram payload does not include a user", field="initData")
    try:
        fields["user"] = json.loads(raw_user)
    except json.JSONDecodeError as e:
        raise ValidationError("Telegram user payload is malformed", field="initData") from e
    if "id" not in fields["user"]:
        raise ValidationError("Telegram user payload is malformed", field="initData")
    return fields


async def generate_referral_code(db: AsyncSession) -> str:
    """
    Pick an unused 8-character A-Z0-9 code.

    Tries REFERRAL_CODE_ATTEMPTS random codes against the unique column,
    then falls back to a timestamp-derived code.
    """
    for _ in range(REFERRAL_CODE_ATTEMPTS):
        code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
        taken = await db.scalar(select(User.id).where(User.referral_code == code))
        if taken is None:
            return code
    fallback = "REF" + str(int(time.time() * 1000))[-5:]
    logger.warning("Referral code attempts exhausted; using fallback %s", fallback)
    return fallback


class AuthService:
    """Telegram login and bearer-session resolution."""

    def __init__(self, bot_token: str, session_ttl_hours: int = 720, auth_max_age: int = 0):
        self.bot_token = bot_token
        self.session_ttl = timedelta(hours=session_ttl_hours)
        self.auth_max_age = auth_max_age

    async def login(self, db: AsyncSession, init_data: str) -> User:
        """
        Verify initData, find-or-create the user, and rotate its session.

        Returns:
            The user, with `session_token` set to the freshly issued token.
        """
        payload = verify_init_data(init_data, self.bot_token, self.auth_max_age)
        tg_user = payload["user"]
        telegram_id = int(tg_user["id"])

        user = await db.scalar(select(User).where(User.telegram_id == telegram_id))
        if user is None:
            user = User(
                telegram_id=telegram_id,
                username=tg_user.get("username") or f"user{telegram_id}",
                first_name=tg_user.get("first_name") or "Student",
                plan=PLAN_FREE,
                credits=DEFAULT_FREE_CREDITS,
                referral_code=await generate_referral_code(db),
            )
            db.add(user)
            await db.flush()
            logger.info("Created user %s for telegram_id=%s", user.id, telegram_id)
        elif not user.referral_code:
            user.referral_code = await generate_referral_code(db)

        now = utcnow()
        user.session_token = secrets.token_hex(32)
        user.session_expires_at = now + self.session_ttl
        user.last_login = now
        await db.flush()
        return user

    async def resolve_session(self, db: AsyncSession, token: Optional[str]) -> User:
        """Map a bearer token to its user; unknown or expired → AuthenticationError."""
        if not token:
            raise AuthenticationError("No token provided")
        user = await db.scalar(
            select(User).where(
                User.session_token == token,
                User.session_expires_at > utcnow(),
            )
        )
        if user is None:
            raise AuthenticationError("Invalid or expired session")
        return user

    async def logout(self, db: AsyncSession, user: User) -> None:
        await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(session_token=None, session_expires_at=None)
        )
