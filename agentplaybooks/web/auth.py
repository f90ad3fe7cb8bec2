"""Session and API-key credentials.

Two kinds of bearer credential reach the API:

1. Session tokens: HS256 JWTs whose ``sub`` is the user id. Browsers send
   them in the ``session`` cookie; scripts may send them as
   ``Authorization: Bearer <jwt>``.
2. API keys: ``apb_live_`` followed by 40 hex chars, scoped either to one
   playbook or to a user. Only the SHA-256 hex digest is stored; the plain
   key is shown once on creation.

A bearer value starting with ``apb_`` is always treated as an API key and
never as a session token.
"""

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from agentplaybooks.config import AuthConfig
from agentplaybooks.persistence.models import UserRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import ProfileUpdate

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
profile_router = APIRouter(prefix="/api/user", tags=["auth"])

API_KEY_PREFIX = "apb_"
LIVE_KEY_PREFIX = "apb_live_"

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,30}$")


# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_jwt(user_id: str, secret: str, expiry_days: int = 7) -> str:
    """Create an HS256 JWT with the user's database ID."""
    payload = {
        "sub": str(user_id),
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(days=expiry_days),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_jwt(token: str, secret: str) -> dict | None:
    """Decode and validate a JWT. Returns payload or None on failure."""
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError:
        return None


# ---------------------------------------------------------------------------
# Identifier and API key helpers
# ---------------------------------------------------------------------------


def generate_guid() -> str:
    """Public playbook identifier: 16 lowercase hex chars."""
    return secrets.token_hex(8)


def generate_api_key() -> str:
    return LIVE_KEY_PREFIX + secrets.token_hex(20)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def key_prefix(api_key: str) -> str:
    """Displayable stub of a key, e.g. ``apb_live_1a2...``."""
    return api_key[:12] + "..."


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :].strip() or None


# ---------------------------------------------------------------------------
# Helpers to read config/repo from app state
# ---------------------------------------------------------------------------


def _get_auth_config(request: Request) -> AuthConfig | None:
    config = getattr(request.app.state, "auth_config", None)
    if config and config.enabled:
        return config
    return None


def _get_repo(request: Request) -> PostgresRepository:
    return request.app.state.repo


async def session_user(request: Request) -> UserRecord | None:
    """Resolve the session user from the cookie or a non-API-key bearer token.

    The cookie is tried first; a bearer JWT still wins when the cookie is
    stale or invalid.
    """
    auth_config = _get_auth_config(request)
    if not auth_config:
        return None

    candidates = [request.cookies.get(auth_config.cookie_name)]
    bearer = bearer_token(request)
    if bearer and not bearer.startswith(API_KEY_PREFIX):
        candidates.append(bearer)

    for token in candidates:
        if not token:
            continue
        payload = decode_jwt(token, auth_config.session_secret)
        if payload and payload.get("sub"):
            return await _get_repo(request).get_user(payload["sub"])

    return None


async def _require_session_user(request: Request) -> UserRecord:
    user = await session_user(request)
    if not user:
        raise HTTPException(401, "Unauthorized")
    return user


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@auth_router.get("/me")
async def get_me(request: Request):
    """Return the current authenticated user, or 401."""
    user = await _require_session_user(request)
    return user.to_dict()


@auth_router.post("/logout")
async def logout(request: Request):
    """Clear the session cookie."""
    auth_config = _get_auth_config(request)
    response = JSONResponse({"success": True})
    response.delete_cookie(
        auth_config.cookie_name if auth_config else "session",
        domain=(auth_config.cookie_domain if auth_config else None) or None,
    )
    return response


@profile_router.get("/profile")
async def get_profile(request: Request):
    user = await _require_session_user(request)
    return user.to_dict()


@profile_router.put("/profile")
async def update_profile(body: ProfileUpdate, request: Request):
    """Rename the current user. Display names are unique when set."""
    user = await _require_session_user(request)

    display_name = body.display_name.strip()
    if not USERNAME_PATTERN.match(display_name):
        raise HTTPException(
            400, "Username must be 3-30 characters, alphanumeric, hyphens, or underscores"
        )

    try:
        user = await _get_repo(request).update_user_display_name(user.id, display_name)
    except IntegrityError:
        raise HTTPException(409, "Username already taken")

    logger.info(f"User {user.id} renamed to {display_name}")
    return user.to_dict()
